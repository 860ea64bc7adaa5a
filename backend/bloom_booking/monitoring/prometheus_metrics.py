"""
Prometheus metrics module for the booking core.

Metric families live on a dedicated registry; the ``prometheus_metrics``
façade is what services call. Recording helpers never raise into the
operation they observe.
"""

import logging
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "bloom_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "bloom_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "bloom_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

slot_transitions_total = Counter(
    "bloom_slot_transitions_total",
    "Slot compare-and-swap attempts by edge and outcome",
    ["from_status", "to_status", "outcome"],
    registry=REGISTRY,
)

reservation_attempts_total = Counter(
    "bloom_reservation_attempts_total",
    "Reservation requests by outcome (reserved|no_availability|conflict)",
    ["outcome"],
    registry=REGISTRY,
)

booking_saga_total = Counter(
    "bloom_booking_saga_total",
    "Booking saga terminal outcomes",
    ["outcome"],
    registry=REGISTRY,
)

availability_sync_total = Counter(
    "bloom_availability_sync_total",
    "Per-provider availability sync runs",
    ["outcome"],
    registry=REGISTRY,
)

payment_gateway_calls_total = Counter(
    "bloom_payment_gateway_calls_total",
    "Payment gateway calls by operation and outcome",
    ["operation", "outcome"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'SlotReservationService')
            operation: Operation name (e.g., 'reserve')
            duration: Operation duration in seconds
            status: 'success' or 'error'
            error_type: Exception class name if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_slot_transition(from_status: str, to_status: str, success: bool) -> None:
        slot_transitions_total.labels(
            from_status=from_status,
            to_status=to_status,
            outcome="applied" if success else "lost",
        ).inc()

    @staticmethod
    def record_reservation(outcome: str) -> None:
        reservation_attempts_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_saga_outcome(outcome: str) -> None:
        booking_saga_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_sync(outcome: str) -> None:
        availability_sync_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(operation: str, outcome: str) -> None:
        payment_gateway_calls_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)


# Singleton instance
prometheus_metrics = PrometheusMetrics()
