# backend/bloom_booking/core/exceptions.py
"""
Domain-specific exceptions for the booking core.

These exceptions carry business-focused messages and a stable ``code`` so the
API layer can translate them into HTTP responses without inspecting strings.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when request data fails business validation."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised on a lost race, a status mismatch or a reused token."""

    status_code = status.HTTP_409_CONFLICT


class PreconditionFailedException(DomainException):
    """Raised when a guard on a transition is not satisfied."""

    status_code = status.HTTP_400_BAD_REQUEST


class ForbiddenException(DomainException):
    """Raised when an operation is not permitted in this environment."""

    status_code = status.HTTP_403_FORBIDDEN


class UpstreamFailureException(DomainException):
    """
    Raised when the payment gateway or the scheduling provider fails.

    Distinguished from ConflictException because the caller may retry.
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True

    def to_http_exception(self) -> HTTPException:
        exc = super().to_http_exception()
        exc.headers = {"Retry-After": "2"}
        return exc


class InvariantViolation(DomainException):
    """
    Raised when persisted state contradicts a model invariant.

    Logged as a defect by the error handler; callers only see a generic message.
    """

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": "An internal error occurred",
                "code": "INTERNAL_ERROR",
                "details": {},
            },
        )


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class NoAvailabilityException(NotFoundException):
    """Raised when no free slot matches the requested window."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="No available slot matches the requested time",
            code="SLOT_UNAVAILABLE",
            details=details or {},
        )


class SlotConflictException(ConflictException):
    """Raised when a compare-and-swap on a slot loses."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "This time slot was just taken by another booking",
            code="SLOT_CONFLICT",
            details=details or {},
        )


class LeaseExpiredException(ConflictException):
    """Raised when a hold is used after its lease has expired."""

    def __init__(self, slot_id: str):
        super().__init__(
            message="Your hold on this time slot has expired",
            code="LEASE_EXPIRED",
            details={"slot_id": slot_id},
        )


class InvalidTransitionException(ConflictException):
    """Raised when a state machine is asked for a transition it does not allow."""

    def __init__(self, entity: str, from_status: str, to_status: str):
        super().__init__(
            message=f"Cannot move {entity} from '{from_status}' to '{to_status}'",
            code="INVALID_TRANSITION",
            details={"from": from_status, "to": to_status},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as connection issues,
    query failures, or constraint violations.
    """
