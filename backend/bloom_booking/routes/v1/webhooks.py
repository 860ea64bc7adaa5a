# backend/bloom_booking/routes/v1/webhooks.py
"""
Practice-management webhook endpoint (v1).

Endpoints:
    POST /scheduling - Signed change notification; queues a sync for the
        practitioner the event refers to
"""

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ...api.dependencies.services import get_sync_trigger
from ...core.config import Settings, get_settings
from ...database import get_db
from ...repositories.provider_repository import ProviderRepository
from ...schemas.sync import SchedulingWebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADERS = ("X-Halaxy-Signature", "X-Webhook-Signature")
PRACTITIONER_PREFIX = "Practitioner/"


def _compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _verify_signature(request: Request, raw_body: bytes, settings: Settings) -> None:
    secret = settings.scheduling_webhook_secret.get_secret_value()
    if not secret:
        logger.error("Scheduling webhook secret is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook authentication not configured",
        )

    provided = next(
        (request.headers.get(name) for name in SIGNATURE_HEADERS if request.headers.get(name)),
        None,
    )
    if not provided:
        logger.warning("Missing scheduling webhook signature header")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    normalized = provided.strip()
    if normalized.lower().startswith("sha256="):
        normalized = normalized.split("=", 1)[1].strip()

    if not hmac.compare_digest(normalized, _compute_signature(secret, raw_body)):
        logger.warning("Scheduling webhook signature mismatch", extra={"evt": "webhook_invalid_sig"})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _practitioner_reference(resource: Dict[str, Any]) -> Optional[str]:
    """Pull the practitioner's external id out of a FHIR resource."""
    if resource.get("resourceType") == "Practitioner":
        return resource.get("id")

    candidates = [resource.get("practitioner")]
    for participant in resource.get("participant") or []:
        if isinstance(participant, dict):
            candidates.append(participant.get("actor"))

    for candidate in candidates:
        reference = candidate.get("reference") if isinstance(candidate, dict) else candidate
        if isinstance(reference, str) and reference.startswith(PRACTITIONER_PREFIX):
            return reference[len(PRACTITIONER_PREFIX):] or None
    return None


def _lookup_provider_id(db: Session, external_provider_id: str) -> Optional[str]:
    provider = ProviderRepository(db).get_by_external_id(external_provider_id)
    if provider is None or not provider.is_active:
        return None
    return provider.id


@router.post(
    "/scheduling", response_model=SchedulingWebhookAck, status_code=status.HTTP_202_ACCEPTED
)
async def scheduling_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    trigger: Callable[[Optional[str]], Any] = Depends(get_sync_trigger),
) -> SchedulingWebhookAck:
    raw_body = await request.body()
    _verify_signature(request, raw_body, settings)

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload"
        ) from None

    event = payload.get("event") if isinstance(payload, dict) else None
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(event, str) or not isinstance(data, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event or data"
        )

    external_id = _practitioner_reference(data)
    provider_id = (
        await asyncio.to_thread(_lookup_provider_id, db, external_id) if external_id else None
    )
    if provider_id is None:
        logger.info(
            "scheduling_webhook_ignored",
            extra={"evt": event, "external_provider_id": external_id},
        )
        return SchedulingWebhookAck(event=event)

    result = await asyncio.to_thread(trigger, provider_id)
    logger.info(
        "scheduling_webhook_sync_queued", extra={"evt": event, "provider_id": provider_id}
    )
    return SchedulingWebhookAck(
        event=event, queued=True, provider_id=provider_id, task_id=str(result.id)
    )
