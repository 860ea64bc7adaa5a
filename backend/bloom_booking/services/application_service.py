# backend/bloom_booking/services/application_service.py
"""
Application Service.

State machine for a candidate practitioner's path from application to an
accepted offer, plus the downstream steps that turn an accepted, verified
application into a bookable provider.

Offer tokens are single-use. Sending a new offer replaces the live token;
acceptance moves it to ``consumed_offer_token``, where it only answers
replays with "already accepted".
"""

from dataclasses import dataclass
import secrets
from typing import Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.enums import ApplicationStatus
from ..core.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    PreconditionFailedException,
    UpstreamFailureException,
    ValidationException,
)
from ..core.timestamps import utc_now
from ..integrations.scheduling_client import SchedulingClient, SchedulingClientError
from ..models.application import Application
from ..models.provider import Provider
from ..repositories.factory import RepositoryFactory
from .base import BaseService

S = ApplicationStatus

APPLICATION_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    S.SUBMITTED.value: frozenset({S.REVIEWING.value, S.WITHDRAWN.value}),
    S.REVIEWING.value: frozenset({S.INTERVIEW.value, S.ACCEPTED.value, S.WITHDRAWN.value}),
    S.INTERVIEW.value: frozenset({S.ACCEPTED.value, S.WITHDRAWN.value}),
    S.ACCEPTED.value: frozenset({S.OFFER_SENT.value, S.WITHDRAWN.value}),
    # Re-sending an offer issues a fresh token.
    S.OFFER_SENT.value: frozenset({S.OFFER_SENT.value, S.OFFER_ACCEPTED.value, S.WITHDRAWN.value}),
    S.OFFER_ACCEPTED.value: frozenset({S.WITHDRAWN.value}),
    S.WITHDRAWN.value: frozenset(),
}

INVALID_OFFER_MESSAGE = "Invalid or expired offer link"


@dataclass(frozen=True)
class OfferIssued:
    application: Application
    offer_url: str


@dataclass(frozen=True)
class OfferView:
    application: Application
    is_accepted: bool


@dataclass(frozen=True)
class AcceptResult:
    application: Application
    already_accepted: bool


@dataclass(frozen=True)
class VerificationResult:
    application: Application
    verified: bool
    changed: bool
    discrepancy: Optional[str] = None


class ApplicationService(BaseService):
    def __init__(
        self,
        db: Session,
        directory: Optional[SchedulingClient] = None,
        settings: Optional[Settings] = None,
    ):
        super().__init__(db, settings)
        self.directory = directory
        self.application_repository = RepositoryFactory.create_application_repository(db)
        self.provider_repository = RepositoryFactory.create_provider_repository(db)

    # ------------------------------------------------------------ lifecycle

    @BaseService.measure_operation("submit_application")
    def submit(
        self, first_name: str, last_name: str, email: str, phone: Optional[str] = None
    ) -> Application:
        email = email.strip().lower()
        if self.application_repository.get_active_by_email(email):
            raise ConflictException(
                "An application with this email is already in progress",
                code="APPLICATION_EXISTS",
            )
        with self.transaction():
            application = self.application_repository.create(
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                email=email,
                phone=phone,
                status=S.SUBMITTED.value,
            )
        self.log_operation("application_submitted", application_id=application.id)
        return application

    def get(self, application_id: str) -> Application:
        application = self.application_repository.get_by_id(application_id)
        if application is None:
            raise NotFoundException(
                "Application not found",
                code="APPLICATION_NOT_FOUND",
                details={"application_id": application_id},
            )
        return application

    def start_review(self, application_id: str, reviewer: str) -> Application:
        return self._advance(application_id, S.REVIEWING.value, reviewer=reviewer)

    def schedule_interview(self, application_id: str, reviewer: str) -> Application:
        return self._advance(application_id, S.INTERVIEW.value, reviewer=reviewer)

    def accept(self, application_id: str, reviewer: str) -> Application:
        return self._advance(application_id, S.ACCEPTED.value, reviewer=reviewer)

    def withdraw(self, application_id: str, actor: str) -> Application:
        if self.provider_repository.get_by_application_id(application_id) is not None:
            raise ConflictException(
                "An activated application cannot be withdrawn",
                code="APPLICATION_ACTIVATED",
            )
        return self._advance(application_id, S.WITHDRAWN.value, reviewer=actor)

    def update_status(self, application_id: str, status: str, actor: str) -> Application:
        """Reviewer-driven moves. Offer transitions have their own operations."""
        handlers = {
            S.REVIEWING.value: self.start_review,
            S.INTERVIEW.value: self.schedule_interview,
            S.ACCEPTED.value: self.accept,
            S.WITHDRAWN.value: self.withdraw,
        }
        handler = handlers.get(status)
        if handler is None:
            raise ValidationException(
                f"Status '{status}' cannot be set directly",
                code="STATUS_NOT_SETTABLE",
                details={"allowed": sorted(handlers)},
            )
        return handler(application_id, actor)

    # ---------------------------------------------------------------- offer

    def attach_contract(self, application_id: str, contract_url: str) -> Application:
        application = self.get(application_id)
        if application.status in (S.OFFER_ACCEPTED.value, S.WITHDRAWN.value):
            raise ConflictException(
                "The contract can no longer be changed",
                code="CONTRACT_LOCKED",
                details={"status": application.status},
            )
        with self.transaction():
            application.contract_url = self._require_url(contract_url)
        return application

    @BaseService.measure_operation("send_offer")
    def send_offer(self, application_id: str) -> OfferIssued:
        application = self.get(application_id)
        if application.status == S.OFFER_ACCEPTED.value:
            raise ConflictException(
                "This offer has already been accepted", code="OFFER_ALREADY_ACCEPTED"
            )
        self._check_transition(application, S.OFFER_SENT.value)
        if not application.contract_url:
            raise PreconditionFailedException(
                "A contract must be attached before sending an offer", code="CONTRACT_REQUIRED"
            )

        token = secrets.token_urlsafe(32)
        with self.transaction():
            application.offer_token = token
            application.offer_sent_at = utc_now()
            application.status = S.OFFER_SENT.value
        offer_url = f"{self.settings.onboarding_base_url.rstrip('/')}/accept-offer/{token}"
        self.log_operation("offer_sent", application_id=application_id)
        return OfferIssued(application=application, offer_url=offer_url)

    def get_offer(self, token: str) -> OfferView:
        application = self._by_token(token)
        return OfferView(
            application=application,
            is_accepted=application.status == S.OFFER_ACCEPTED.value,
        )

    def attach_signed_contract(self, token: str, signed_contract_url: str) -> Application:
        application = self._by_token(token)
        if application.status != S.OFFER_SENT.value or application.offer_token != token:
            raise ConflictException(
                "This offer has already been accepted", code="OFFER_ALREADY_ACCEPTED"
            )
        with self.transaction():
            application.signed_contract_url = self._require_url(signed_contract_url)
        return application

    @BaseService.measure_operation("accept_offer")
    def accept_offer(self, token: str) -> AcceptResult:
        """
        ``offer_sent -> offer_accepted`` through the offer token.

        Raises:
            NotFoundException: unknown token
            PreconditionFailedException: no signed contract (code ``requiresSignedContract``)
        """
        application = self._by_token(token)
        if application.consumed_offer_token == token:
            return AcceptResult(application=application, already_accepted=True)
        if not application.signed_contract_url:
            raise PreconditionFailedException(
                "Please upload your signed contract before accepting the offer",
                code="requiresSignedContract",
            )

        with self.transaction():
            accepted = self.application_repository.consume_offer_token(
                application.id, token, utc_now()
            )
        application = self.get(application.id)
        if not accepted:
            if application.consumed_offer_token == token:
                return AcceptResult(application=application, already_accepted=True)
            raise ConflictException(
                "This offer can no longer be accepted",
                code="OFFER_NOT_ACCEPTABLE",
                details={"status": application.status},
            )
        self.log_operation("offer_accepted", application_id=application.id)
        return AcceptResult(application=application, already_accepted=False)

    # ----------------------------------------------------- directory & activation

    @BaseService.measure_operation("verify_with_directory")
    def verify_with_directory(self, application_id: str) -> VerificationResult:
        """
        Link the application to the external practitioner directory by email.

        Re-runnable. A miss or a different match never clears an existing
        link; it is only reported as a discrepancy. Lookup errors change
        nothing.
        """
        application = self.get(application_id)
        if application.status == S.WITHDRAWN.value:
            raise ConflictException("Application has been withdrawn", code="APPLICATION_WITHDRAWN")
        if self.directory is None:
            raise UpstreamFailureException(
                "Practitioner directory is not available", code="DIRECTORY_UNAVAILABLE"
            )

        try:
            practitioner = self.directory.find_practitioner_by_email(application.email)
        except SchedulingClientError as exc:
            self.logger.error(
                "directory_lookup_failed",
                extra={"application_id": application_id, "error": str(exc)},
            )
            raise UpstreamFailureException(
                "Could not reach the practitioner directory. Please try again.",
                code="DIRECTORY_UNAVAILABLE",
            ) from exc

        linked = application.linked_provider_id
        if practitioner is None:
            discrepancy = (
                "Practitioner no longer found in directory; existing link kept"
                if application.verified_with_provider
                else "No practitioner found in directory for this email"
            )
            self.logger.warning(
                "directory_verification_miss",
                extra={"application_id": application_id, "linked_provider_id": linked},
            )
            return VerificationResult(
                application=application,
                verified=application.verified_with_provider,
                changed=False,
                discrepancy=discrepancy,
            )

        practitioner_id = str(practitioner["id"])
        if application.verified_with_provider:
            discrepancy = None
            if linked != practitioner_id:
                discrepancy = (
                    f"Directory now returns practitioner {practitioner_id}; "
                    f"existing link {linked} kept"
                )
                self.logger.warning(
                    "directory_verification_mismatch",
                    extra={"application_id": application_id, "linked_provider_id": linked},
                )
            return VerificationResult(
                application=application, verified=True, changed=False, discrepancy=discrepancy
            )

        with self.transaction():
            application.verified_with_provider = True
            application.verified_at = utc_now()
            application.linked_provider_id = practitioner_id
        self.log_operation(
            "application_verified", application_id=application_id, linked_provider_id=practitioner_id
        )
        return VerificationResult(application=application, verified=True, changed=True)

    @BaseService.measure_operation("activate_provider")
    def activate_provider(self, application_id: str) -> Provider:
        """Create (or re-enable) the bookable provider for an accepted, verified application."""
        application = self.get(application_id)
        if application.status != S.OFFER_ACCEPTED.value:
            raise PreconditionFailedException(
                "The offer must be accepted before activation", code="OFFER_NOT_ACCEPTED"
            )
        if not application.verified_with_provider or not application.linked_provider_id:
            raise PreconditionFailedException(
                "Practitioner must be verified with the directory before activation",
                code="PRACTITIONER_NOT_VERIFIED",
            )

        with self.transaction():
            provider = self.provider_repository.get_by_application_id(application_id)
            if provider is None:
                provider = self.provider_repository.get_by_external_id(application.linked_provider_id)
            if provider is None:
                provider = self.provider_repository.create(
                    external_provider_id=application.linked_provider_id,
                    display_name=application.full_name,
                    email=application.email,
                    application_id=application_id,
                    is_active=True,
                    booking_enabled=True,
                )
            else:
                provider.is_active = True
                provider.booking_enabled = True
        self.log_operation("provider_activated", application_id=application_id, provider_id=provider.id)
        return provider

    @BaseService.measure_operation("reset_application")
    def reset(self, application_id: str, actor: str) -> Application:
        """
        Administrative reset back to ``reviewing``.

        Deletes the provider this application created (its slots go with it)
        and clears offer, contract and directory linkage. Refused in production.
        """
        if self.settings.is_production:
            raise ForbiddenException(
                "Application reset is not available in production", code="RESET_FORBIDDEN"
            )
        application = self.get(application_id)
        with self.transaction():
            provider = self.provider_repository.get_by_application_id(application_id)
            if provider is not None:
                self.db.delete(provider)
            application.status = S.REVIEWING.value
            application.offer_token = None
            application.consumed_offer_token = None
            application.offer_sent_at = None
            application.offer_accepted_at = None
            application.signed_contract_url = None
            application.verified_with_provider = False
            application.verified_at = None
            application.linked_provider_id = None
        self.log_operation(
            "application_reset",
            application_id=application_id,
            actor=actor,
            provider_deleted=provider is not None,
        )
        return application

    # --------------------------------------------------------------- helpers

    def _advance(self, application_id: str, to_status: str, *, reviewer: str) -> Application:
        application = self.get(application_id)
        self._check_transition(application, to_status)
        with self.transaction():
            application.status = to_status
            application.reviewed_by = reviewer
            application.reviewed_at = utc_now()
            if to_status == S.WITHDRAWN.value:
                application.offer_token = None
        self.log_operation(
            "application_status_changed", application_id=application_id, status=to_status
        )
        return application

    @staticmethod
    def _check_transition(application: Application, to_status: str) -> None:
        if to_status not in APPLICATION_TRANSITIONS.get(application.status, frozenset()):
            raise InvalidTransitionException("application", application.status, to_status)

    def _by_token(self, token: str) -> Application:
        application = self.application_repository.get_by_any_offer_token(token) if token else None
        if application is None or application.status == S.WITHDRAWN.value:
            raise NotFoundException(INVALID_OFFER_MESSAGE, code="OFFER_NOT_FOUND")
        return application

    @staticmethod
    def _require_url(url: str) -> str:
        value = (url or "").strip()
        if not value.startswith(("https://", "http://")):
            raise ValidationException("A valid http(s) URL is required", code="INVALID_URL")
        return value
