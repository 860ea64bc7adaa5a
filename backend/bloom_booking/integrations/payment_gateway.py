"""
Payment gateway adapter.

``PaymentGateway`` is the narrow surface the booking saga depends on.
``StripePaymentGateway`` implements it with manual-capture PaymentIntents.
Without a secret key it runs in mock mode, which is refused in production.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, Optional, Protocol
from uuid import uuid4

import stripe

from ..core.config import Settings
from ..core.enums import PaymentStatus
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

# Stripe intent statuses mapped onto authorization statuses.
_STRIPE_STATUS_MAP = {
    "requires_capture": PaymentStatus.AUTHORIZED.value,
    "succeeded": PaymentStatus.CAPTURED.value,
    "canceled": PaymentStatus.CANCELLED.value,
}


@dataclass(frozen=True)
class GatewayResult:
    intent_id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


class PaymentGatewayError(Exception):
    """Raised when the gateway rejects a request or cannot be reached."""

    def __init__(self, message: str, *, code: Optional[str] = None, retryable: bool = True):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class PaymentGateway(Protocol):
    def authorize(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        *,
        payment_method_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult: ...

    def capture(self, intent_id: str) -> GatewayResult: ...

    def cancel(self, intent_id: str, reason: str) -> GatewayResult: ...


def _map_status(stripe_status: str) -> str:
    return _STRIPE_STATUS_MAP.get(stripe_status, PaymentStatus.FAILED.value)


class StripePaymentGateway:
    """Manual-capture PaymentIntents; every call keyed by the intent for idempotency."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.currency = settings.stripe_currency
        self.stripe_configured = False
        self._mock_intents: Dict[str, str] = {}

        if settings.stripe_secret_key:
            stripe.api_key = settings.stripe_secret_key.get_secret_value()
            stripe.max_network_retries = 1
            self.stripe_configured = True
            logger.info("Stripe gateway configured successfully")
        elif settings.is_production:
            raise ValueError("STRIPE_SECRET_KEY is required in production")
        else:
            logger.warning("Stripe secret key not configured - gateway will operate in mock mode")

    def authorize(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        *,
        payment_method_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult:
        if amount_cents <= 0:
            raise PaymentGatewayError("Amount must be positive", code="invalid_amount", retryable=False)

        if not self.stripe_configured:
            intent_id = f"mock_pi_{uuid4().hex[:16]}"
            self._mock_intents[intent_id] = "requires_capture"
            prometheus_metrics.record_gateway_call("authorize", "mock")
            return GatewayResult(intent_id=intent_id, status=PaymentStatus.AUTHORIZED.value)

        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "capture_method": "manual",
            "metadata": metadata,
        }
        if payment_method_id:
            params.update({"payment_method": payment_method_id, "confirm": True, "off_session": True})
        try:
            pi = stripe.PaymentIntent.create(**params, idempotency_key=idempotency_key)
        except stripe.CardError as e:
            prometheus_metrics.record_gateway_call("authorize", "declined")
            logger.warning(f"Card declined during authorization: {str(e)}")
            raise PaymentGatewayError("Payment was declined", code=getattr(e, "code", None), retryable=False)
        except stripe.StripeError as e:
            prometheus_metrics.record_gateway_call("authorize", "error")
            logger.error(f"Stripe error creating authorization: {str(e)}")
            raise PaymentGatewayError(f"Failed to authorize payment: {str(e)}")

        status = _map_status(pi.status)
        prometheus_metrics.record_gateway_call("authorize", "success")
        if payment_method_id and status != PaymentStatus.AUTHORIZED.value:
            # e.g. requires_action: the card needs customer interaction we cannot complete here
            raise PaymentGatewayError(
                f"Authorization not completed (status={pi.status})",
                code=pi.status,
                retryable=False,
            )
        return GatewayResult(intent_id=pi.id, status=PaymentStatus.AUTHORIZED.value, raw={"status": pi.status})

    def capture(self, intent_id: str) -> GatewayResult:
        if not self.stripe_configured:
            self._mock_intents[intent_id] = "succeeded"
            prometheus_metrics.record_gateway_call("capture", "mock")
            return GatewayResult(intent_id=intent_id, status=PaymentStatus.CAPTURED.value)

        try:
            pi = stripe.PaymentIntent.capture(intent_id, idempotency_key=f"capture-{intent_id}")
        except stripe.InvalidRequestError as e:
            current = self._retrieve_status(intent_id)
            if current == "succeeded":
                logger.info(f"Payment intent {intent_id} already captured")
                prometheus_metrics.record_gateway_call("capture", "already_captured")
                return GatewayResult(intent_id=intent_id, status=PaymentStatus.CAPTURED.value)
            prometheus_metrics.record_gateway_call("capture", "error")
            logger.error(f"Stripe rejected capture of {intent_id}: {str(e)}")
            raise PaymentGatewayError(f"Failed to capture payment: {str(e)}", retryable=False)
        except stripe.StripeError as e:
            prometheus_metrics.record_gateway_call("capture", "error")
            logger.error(f"Stripe error capturing payment intent: {str(e)}")
            raise PaymentGatewayError(f"Failed to capture payment: {str(e)}")

        prometheus_metrics.record_gateway_call("capture", "success")
        return GatewayResult(intent_id=intent_id, status=_map_status(pi.status), raw={"status": pi.status})

    def cancel(self, intent_id: str, reason: str) -> GatewayResult:
        """
        Release the authorization.

        An intent that is already cancelled counts as success. An intent that
        was already captured is reported as captured, not raised.
        """
        if not self.stripe_configured:
            current = self._mock_intents.get(intent_id, "requires_capture")
            if current != "succeeded":
                self._mock_intents[intent_id] = "canceled"
            prometheus_metrics.record_gateway_call("cancel", "mock")
            return GatewayResult(intent_id=intent_id, status=_map_status(self._mock_intents[intent_id]))

        try:
            pi = stripe.PaymentIntent.cancel(
                intent_id,
                cancellation_reason="abandoned",
                metadata={"reason": reason},
                idempotency_key=f"cancel-{intent_id}",
            )
        except stripe.InvalidRequestError as e:
            current = self._retrieve_status(intent_id)
            if current in ("canceled", "succeeded"):
                logger.info(
                    f"Payment intent {intent_id} already {current}; treating cancel as complete"
                )
                prometheus_metrics.record_gateway_call("cancel", f"already_{current}")
                return GatewayResult(intent_id=intent_id, status=_map_status(current))
            prometheus_metrics.record_gateway_call("cancel", "error")
            logger.error(f"Stripe rejected cancel of {intent_id}: {str(e)}")
            raise PaymentGatewayError(f"Failed to cancel payment intent: {str(e)}", retryable=False)
        except stripe.StripeError as e:
            prometheus_metrics.record_gateway_call("cancel", "error")
            logger.error(f"Stripe error canceling payment intent: {str(e)}")
            raise PaymentGatewayError(f"Failed to cancel payment intent: {str(e)}")

        prometheus_metrics.record_gateway_call("cancel", "success")
        return GatewayResult(intent_id=intent_id, status=_map_status(pi.status), raw={"status": pi.status})

    def _retrieve_status(self, intent_id: str) -> Optional[str]:
        try:
            return str(stripe.PaymentIntent.retrieve(intent_id).status)
        except stripe.StripeError as e:
            logger.warning(f"Could not retrieve payment intent {intent_id}: {str(e)}")
            return None
