# backend/tests/tasks/test_booking_tasks.py
"""Tests for the payment and availability Celery tasks."""

from contextlib import contextmanager
from unittest.mock import MagicMock, patch

from celery.exceptions import Retry
import pytest

from bloom_booking.core.exceptions import NotFoundException
from bloom_booking.services.availability_sync_service import SyncResult
from bloom_booking.services.booking_payment_service import ReconcileResult
from bloom_booking.tasks.beat_schedule import get_beat_schedule
from bloom_booking.tasks.celery_app import celery_app
from bloom_booking.tasks.enqueue import (
    RETRY_CAPTURE_TASK,
    SYNC_AVAILABILITY_TASK,
    schedule_capture_retry,
    trigger_availability_sync,
)
from bloom_booking.tasks.payment_tasks import (
    CAPTURE_MAX_RETRIES,
    capture_backoff_seconds,
    reconcile_booking_sagas,
    retry_capture,
)
from bloom_booking.tasks.sync_tasks import sync_availability


@contextmanager
def fake_session():
    yield MagicMock()


@pytest.fixture
def payment_service():
    service = MagicMock()
    service.get_saga.return_value.capture_halted_at = None
    with patch("bloom_booking.tasks.payment_tasks.get_db_session", fake_session), patch(
        "bloom_booking.tasks.payment_tasks._booking_payment_service", return_value=service
    ):
        yield service


class TestRetryCapture:
    def test_successful_capture(self, payment_service):
        payment_service.attempt_capture.return_value = True

        result = retry_capture.run("saga-1")

        assert result == {"saga_id": "saga-1", "captured": True}
        payment_service.attempt_capture.assert_called_once_with("saga-1")

    def test_failure_retries_with_backoff(self, payment_service):
        payment_service.attempt_capture.return_value = False

        with patch.object(retry_capture, "retry", side_effect=Retry()) as mock_retry:
            with pytest.raises(Retry):
                retry_capture.run("saga-1")

        mock_retry.assert_called_once_with(countdown=4)

    def test_exhausted_retries_hand_over_to_reconciliation(self, payment_service):
        payment_service.attempt_capture.return_value = False
        retry_capture.push_request(retries=CAPTURE_MAX_RETRIES)
        try:
            result = retry_capture.run("saga-1")
        finally:
            retry_capture.pop_request()

        assert result["handed_to_reconciliation"] is True

    def test_domain_error_is_not_retried(self, payment_service):
        payment_service.attempt_capture.side_effect = NotFoundException(
            "Booking not found", code="SAGA_NOT_FOUND"
        )

        result = retry_capture.run("saga-1")

        assert result == {"saga_id": "saga-1", "captured": False, "error": "SAGA_NOT_FOUND"}

    def test_halted_capture_is_not_retried(self, payment_service):
        payment_service.attempt_capture.return_value = False
        payment_service.get_saga.return_value.capture_halted_at = "2025-12-10T09:05:00Z"

        with patch.object(retry_capture, "retry") as mock_retry:
            result = retry_capture.run("saga-1")

        assert result == {"saga_id": "saga-1", "captured": False, "halted": True}
        mock_retry.assert_not_called()

    def test_backoff_doubles(self):
        assert [capture_backoff_seconds(n) for n in range(2)] == [4, 8]


class TestReconcile:
    def test_returns_summary(self, payment_service):
        payment_service.reconcile_abandoned.return_value = ReconcileResult(abandoned=2, captured=1)

        summary = reconcile_booking_sagas.run()

        assert summary == {
            "abandoned": 2,
            "orphaned_cancelled": 0,
            "captured": 1,
            "capture_errors": 0,
            "reclaimed_holds": 0,
        }


class TestSyncAvailability:
    @patch("bloom_booking.tasks.sync_tasks.get_scheduling_client")
    @patch("bloom_booking.tasks.sync_tasks.AvailabilitySyncService")
    @patch("bloom_booking.tasks.sync_tasks.get_db_session", fake_session)
    def test_all_providers(self, mock_service_cls, mock_client):
        mock_service_cls.return_value.sync_all_providers.return_value = [
            SyncResult(provider_id="p1", status="success", created=3),
            SyncResult(provider_id="p2", status="error", error="boom"),
        ]

        summary = sync_availability.run()

        assert summary["providers"] == 2
        assert summary["failed"] == ["p2"]
        assert summary["slots_created"] == 3

    @patch("bloom_booking.tasks.sync_tasks.get_scheduling_client")
    @patch("bloom_booking.tasks.sync_tasks.AvailabilitySyncService")
    @patch("bloom_booking.tasks.sync_tasks.get_db_session", fake_session)
    def test_single_provider(self, mock_service_cls, mock_client):
        service = mock_service_cls.return_value
        service.sync_provider_by_id.return_value = SyncResult(provider_id="p1", status="success")

        summary = sync_availability.run(provider_id="p1")

        service.sync_provider_by_id.assert_called_once_with("p1")
        service.sync_all_providers.assert_not_called()
        assert summary["providers"] == 1


class TestEnqueueAndSchedule:
    @patch.object(celery_app, "send_task")
    def test_capture_retry_is_sent_by_name(self, mock_send):
        mock_send.return_value = MagicMock(id="task-1")

        schedule_capture_retry("saga-1", countdown=2)

        mock_send.assert_called_once_with(RETRY_CAPTURE_TASK, args=("saga-1",), kwargs={}, countdown=2)

    @patch.object(celery_app, "send_task")
    def test_sync_trigger_is_sent_by_name(self, mock_send):
        mock_send.return_value = MagicMock(id="task-2")

        result = trigger_availability_sync("p1")

        assert result.id == "task-2"
        mock_send.assert_called_once_with(SYNC_AVAILABILITY_TASK, args=(), kwargs={"provider_id": "p1"})

    def test_beat_schedule_entries(self):
        schedule = get_beat_schedule("production")

        assert schedule["sync-provider-availability"]["task"] == SYNC_AVAILABILITY_TASK
        assert schedule["reconcile-booking-sagas"]["task"] == (
            "bloom_booking.tasks.payment_tasks.reconcile_booking_sagas"
        )
        assert schedule["reconcile-booking-sagas"]["schedule"].total_seconds() == 60
