"""Convert FHIR Slot resources into canonical slot windows."""

import logging
from typing import Any, Dict, Optional

from ..core.enums import LocationType
from ..core.timestamps import parse_iso8601, unix_from_datetime
from ..repositories.slot_repository import SlotWindow

logger = logging.getLogger(__name__)

_TELEHEALTH_WORDS = ("telehealth", "video", "online")
_PHONE_WORDS = ("phone", "telephone")


def extract_location_type(resource: Dict[str, Any]) -> str:
    """Infer the appointment modality from the slot's ``serviceType`` codings."""
    texts = []
    for service_type in resource.get("serviceType") or []:
        if service_type.get("text"):
            texts.append(service_type["text"])
        for coding in service_type.get("coding") or []:
            texts.extend(str(coding[key]) for key in ("display", "code") if coding.get(key))
    haystack = " ".join(texts).lower()

    if any(word in haystack for word in _TELEHEALTH_WORDS):
        return LocationType.TELEHEALTH.value
    if any(word in haystack for word in _PHONE_WORDS):
        return LocationType.PHONE.value
    return LocationType.IN_PERSON.value


def _canonical_unix(resource: Dict[str, Any], display_key: str, unix_key: str) -> Optional[int]:
    display = resource.get(display_key)
    if display:
        return unix_from_datetime(parse_iso8601(display))
    raw = resource.get(unix_key)
    if raw is None:
        return None
    return int(raw)


def window_from_fhir_slot(resource: Dict[str, Any]) -> Optional[SlotWindow]:
    """
    Build a SlotWindow, or None if the resource cannot describe a bookable window.

    Epoch seconds are always recomputed from the display instant. A
    provider-supplied ``startUnix``/``endUnix`` is only read when the display
    instant is missing.
    """
    slot_id = resource.get("id")
    if not slot_id:
        logger.warning("Skipping slot without id")
        return None

    try:
        start_unix = _canonical_unix(resource, "start", "startUnix")
        end_unix = _canonical_unix(resource, "end", "endUnix")
    except (TypeError, ValueError) as exc:
        logger.warning("Skipping slot with unparseable time", extra={"external_slot_id": slot_id, "error": str(exc)})
        return None

    if start_unix is None or end_unix is None or start_unix >= end_unix:
        logger.warning(
            "Skipping slot with invalid window",
            extra={"external_slot_id": slot_id, "start_unix": start_unix, "end_unix": end_unix},
        )
        return None
    if (end_unix - start_unix) < 60:
        logger.warning("Skipping slot shorter than one minute", extra={"external_slot_id": slot_id})
        return None

    return SlotWindow(
        external_slot_id=str(slot_id),
        start_unix=start_unix,
        end_unix=end_unix,
        location_type=extract_location_type(resource),
    )
