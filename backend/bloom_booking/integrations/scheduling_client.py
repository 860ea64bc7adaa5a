"""Client for the practice-management system's FHIR API (availability, directory, appointments)."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional, cast
from uuid import uuid4

import httpx
from pydantic import SecretStr

from ..core.config import Settings
from ..core.timestamps import datetime_from_unix

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_BUFFER_SECONDS = 60
FHIR_JSON = "application/fhir+json"

# Resource ids the API uses for OperationOutcome placeholders rather than real records.
_PLACEHOLDER_IDS = {"warning", "error"}

# Location codes understood by the Appointment/$book operation.
_BOOKING_LOCATION_CODES = {
    "in-person": "clinic",
    "telehealth": "telehealth",
    "phone": "telehealth",
}


class SchedulingClientError(RuntimeError):
    """Raised when the practice-management API responds with an error or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        error_body: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_body = error_body

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


def is_valid_resource_id(resource_id: Any) -> bool:
    return (
        isinstance(resource_id, str)
        and resource_id not in _PLACEHOLDER_IDS
        and not resource_id.startswith("outcome")
        and len(resource_id) > 3
    )


def format_au_phone(phone: str) -> str:
    """Normalise a local phone number to +61 international form."""
    compact = re.sub(r"\s", "", phone)
    if compact.startswith("0"):
        return "+61" + compact[1:]
    if not compact.startswith("+"):
        return "+61" + compact
    return compact


def _fhir_instant(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


class TokenManager:
    """
    OAuth2 client-credentials token cache.

    The cached token is treated as expired one minute before the server's
    stated expiry. One instance per client; the lock keeps concurrent callers
    in a worker from fetching twice.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str | SecretStr,
        token_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        secret_value = (
            client_secret.get_secret_value()
            if isinstance(client_secret, SecretStr)
            else client_secret
        )
        if not client_id or not secret_value:
            raise ValueError("Scheduling API client credentials must be provided")
        self._auth = httpx.BasicAuth(client_id, secret_value)
        self._token_url = token_url
        self._timeout = timeout
        self._transport = transport
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def get_token(self) -> str:
        with self._lock:
            if self._token and self._clock() < self._expires_at:
                return self._token
            self._token, self._expires_at = self._fetch()
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0
        logger.info("Scheduling API token invalidated")

    def _fetch(self) -> tuple[str, float]:
        logger.info("Fetching scheduling API access token")
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(
                    self._token_url,
                    data={"grant_type": "client_credentials"},
                    auth=self._auth,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise SchedulingClientError(
                f"Token endpoint responded with status {exc.response.status_code}",
                status_code=exc.response.status_code,
                error_body=exc.response.text[:500],
            ) from exc
        except httpx.RequestError as exc:
            raise SchedulingClientError("Failed to reach token endpoint") from exc
        except json.JSONDecodeError as exc:
            raise SchedulingClientError("Received malformed token response") from exc

        token = payload.get("access_token")
        if not token:
            raise SchedulingClientError("Token response did not include an access_token")
        expires_in = int(payload.get("expires_in", 3600))
        return token, self._clock() + expires_in - TOKEN_EXPIRY_BUFFER_SECONDS


class SchedulingClient:
    """Thin client for the practice-management FHIR API."""

    def __init__(
        self,
        *,
        base_url: str,
        token_manager: TokenManager,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        practitioner_role_id: str | None = None,
        healthcare_service_id: str | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._tokens = token_manager
        self._timeout = timeout
        self._transport = transport
        self._practitioner_role_id = practitioner_role_id
        self._healthcare_service_id = healthcare_service_id

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.BaseTransport | None = None
    ) -> "SchedulingClient":
        tokens = TokenManager(
            client_id=settings.scheduling_client_id,
            client_secret=settings.scheduling_client_secret,
            token_url=settings.scheduling_token_url,
            timeout=settings.scheduling_timeout_seconds,
            transport=transport,
        )
        return cls(
            base_url=settings.scheduling_api_base,
            token_manager=tokens,
            timeout=settings.scheduling_timeout_seconds,
            transport=transport,
            practitioner_role_id=settings.scheduling_practitioner_role_id,
            healthcare_service_id=settings.scheduling_healthcare_service_id,
        )

    # ------------------------------------------------------------- availability

    def get_free_slots(
        self, external_provider_id: str, start: datetime, end: datetime
    ) -> List[Dict[str, Any]]:
        """All free FHIR Slot resources for the practitioner inside ``[start, end]``."""
        return self._get_all_pages(
            "/Slot",
            {
                "practitioner": f"Practitioner/{external_provider_id}",
                "start": f"ge{_fhir_instant(start)}",
                "end": f"le{_fhir_instant(end)}",
                "status": "free",
            },
        )

    # ---------------------------------------------------------------- directory

    def find_practitioner_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        results = self._get_first_page("/Practitioner", {"email": email, "_count": "1"})
        return results[0] if results else None

    # ------------------------------------------------------------- appointments

    def create_or_find_patient(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        phone: str | None = None,
    ) -> Dict[str, Any]:
        existing = self._get_first_page("/Patient", {"email": email, "_count": "1"})
        if existing:
            logger.info("Found existing patient", extra={"patient_id": existing[0]["id"]})
            return existing[0]

        telecom: List[Dict[str, str]] = [{"system": "email", "value": email, "use": "home"}]
        if phone:
            telecom.append({"system": "sms", "value": format_au_phone(phone), "use": "mobile"})
        patient = self.request(
            "POST",
            "/Patient",
            json_body={
                "resourceType": "Patient",
                "active": True,
                "name": [{"use": "official", "family": last_name, "given": [first_name]}],
                "telecom": telecom,
            },
        )
        if not is_valid_resource_id(patient.get("id")):
            raise SchedulingClientError(
                f"Scheduling API returned invalid patient id: {patient.get('id')!r}",
                error_body=patient,
            )
        return patient

    def create_appointment(
        self,
        *,
        patient_id: str,
        practitioner_id: str,
        start_unix: int,
        end_unix: int,
        location_type: str = "in-person",
        description: str | None = None,
    ) -> Dict[str, Any]:
        """Book through the ``Appointment/$book`` operation."""
        if not is_valid_resource_id(patient_id):
            raise SchedulingClientError(f"Invalid patient id: {patient_id!r}")

        role_id = self._practitioner_role_id or practitioner_id
        params: List[Dict[str, Any]] = [
            {
                "name": "appt-resource",
                "resource": {
                    "resourceType": "Appointment",
                    "start": _fhir_instant(datetime_from_unix(start_unix)),
                    "end": _fhir_instant(datetime_from_unix(end_unix)),
                    "minutesDuration": (end_unix - start_unix) // 60,
                    "description": description or "Appointment booked via website",
                    "participant": [
                        {
                            "actor": {
                                "reference": f"PractitionerRole/{role_id}",
                                "type": "PractitionerRole",
                            }
                        }
                    ],
                },
            },
            {
                "name": "patient-id",
                "valueReference": {"reference": f"Patient/{patient_id}", "type": "Patient"},
            },
            {
                "name": "location-type",
                "valueCode": _BOOKING_LOCATION_CODES.get(location_type, "clinic"),
            },
            {"name": "status", "valueCode": "booked"},
        ]
        if self._healthcare_service_id:
            params.append(
                {
                    "name": "healthcare-service-id",
                    "valueReference": {
                        "reference": f"HealthcareService/{self._healthcare_service_id}",
                        "type": "HealthcareService",
                    },
                }
            )
        return self.request(
            "POST",
            "/Appointment/$book",
            json_body={"resourceType": "Parameters", "parameter": params},
        )

    def cancel_appointment(self, appointment_id: str, reason: str | None = None) -> None:
        body: Dict[str, Any] = {"status": "cancelled"}
        if reason:
            body["cancelationReason"] = {"text": reason}
        self.request(
            "PATCH",
            f"/Appointment/{appointment_id}",
            json_body=body,
            headers={"Content-Type": "application/merge-patch+json"},
        )
        logger.info("Appointment cancelled", extra={"appointment_id": appointment_id})

    # -------------------------------------------------------------------- HTTP

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        """
        Perform an authenticated request and return the parsed JSON payload.

        ``path`` may also be an absolute URL (pagination ``next`` links). A 401
        invalidates the cached token and the request is sent once more.
        """
        url = path if path.startswith("http") else f"{self._base_url}{path}"
        response = self._send(method, url, json_body=json_body, params=params, headers=headers)
        if response.status_code == 401:
            self._tokens.invalidate()
            response = self._send(method, url, json_body=json_body, params=params, headers=headers)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error(
                "Scheduling API error %s for %s %s: %s",
                status,
                method,
                path,
                exc.response.text[:500],
            )
            raise SchedulingClientError(
                f"Scheduling API responded with status {status}",
                status_code=status,
                error_body=exc.response.text[:2000],
            ) from exc

        if not response.content:
            return {}
        try:
            return cast(Dict[str, Any], response.json())
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON from scheduling API for %s %s", method, path)
            raise SchedulingClientError("Received malformed JSON from scheduling API") from exc

    def _send(
        self,
        method: str,
        url: str,
        *,
        json_body: Dict[str, Any] | None,
        params: Dict[str, Any] | None,
        headers: Dict[str, str] | None,
    ) -> httpx.Response:
        request_headers = {
            "Authorization": f"Bearer {self._tokens.get_token()}",
            "Accept": FHIR_JSON,
            "Content-Type": FHIR_JSON,
            **(headers or {}),
        }
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                return client.request(
                    method, url, json=json_body, params=params, headers=request_headers
                )
        except httpx.RequestError as exc:
            logger.error("Scheduling API request failure for %s %s: %s", method, url, str(exc))
            raise SchedulingClientError("Failed to reach scheduling API") from exc

    @staticmethod
    def _bundle_resources(bundle: Dict[str, Any]) -> List[Dict[str, Any]]:
        resources = []
        for entry in bundle.get("entry") or []:
            resource = entry.get("resource") or {}
            if is_valid_resource_id(resource.get("id")):
                resources.append(resource)
        return resources

    def _get_first_page(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._bundle_resources(self.request("GET", path, params=params))

    def _get_all_pages(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        bundle = self.request("GET", path, params=params)
        while True:
            results.extend(self._bundle_resources(bundle))
            next_url = next(
                (link.get("url") for link in bundle.get("link") or [] if link.get("relation") == "next"),
                None,
            )
            if not next_url:
                return results
            bundle = self.request("GET", next_url)


class FakeSchedulingClient(SchedulingClient):
    """In-memory stand-in used outside production when no credentials are configured."""

    def __init__(self) -> None:
        self._logger = logging.getLogger(self.__class__.__name__)
        self.slots: Dict[str, List[Dict[str, Any]]] = {}
        self.practitioners: Dict[str, Dict[str, Any]] = {}
        self.appointments: Dict[str, Dict[str, Any]] = {}

    def get_free_slots(
        self, external_provider_id: str, start: datetime, end: datetime
    ) -> List[Dict[str, Any]]:
        return list(self.slots.get(external_provider_id, []))

    def find_practitioner_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.practitioners.get(email.lower())

    def create_or_find_patient(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        phone: str | None = None,
    ) -> Dict[str, Any]:
        return {"resourceType": "Patient", "id": f"fake-patient-{uuid4().hex[:12]}"}

    def create_appointment(
        self,
        *,
        patient_id: str,
        practitioner_id: str,
        start_unix: int,
        end_unix: int,
        location_type: str = "in-person",
        description: str | None = None,
    ) -> Dict[str, Any]:
        appointment_id = f"fake-appt-{uuid4().hex[:12]}"
        self.appointments[appointment_id] = {
            "resourceType": "Appointment",
            "id": appointment_id,
            "status": "booked",
            "patient_id": patient_id,
            "practitioner_id": practitioner_id,
        }
        self._logger.debug("Fake appointment created", extra={"appointment_id": appointment_id})
        return self.appointments[appointment_id]

    def cancel_appointment(self, appointment_id: str, reason: str | None = None) -> None:
        if appointment_id in self.appointments:
            self.appointments[appointment_id]["status"] = "cancelled"


def build_scheduling_client(settings: Settings) -> SchedulingClient:
    """Real client when credentials exist; the fake only outside production."""
    if settings.scheduling_configured:
        return SchedulingClient.from_settings(settings)
    if settings.is_production:
        raise ValueError("Scheduling API credentials are required in production")
    logger.warning("Scheduling API credentials not configured - using FakeSchedulingClient")
    return FakeSchedulingClient()
