# backend/tests/integrations/test_transformers.py
"""Tests for FHIR Slot -> SlotWindow conversion."""

import pytest

from bloom_booking.integrations.transformers import extract_location_type, window_from_fhir_slot

DEC_10_0900 = 1765357200


class TestWindowFromFhirSlot:
    def test_display_instant_is_canonical(self):
        window = window_from_fhir_slot(
            {
                "id": "slot-1",
                "start": "2025-12-10T19:00:00+10:00",
                "end": "2025-12-10T20:00:00+10:00",
                "startUnix": 1,
                "endUnix": 2,
            }
        )

        assert window.start_unix == DEC_10_0900
        assert window.end_unix == DEC_10_0900 + 3600
        assert window.duration_minutes == 60

    def test_fractional_seconds_are_floored(self):
        window = window_from_fhir_slot(
            {"id": "slot-1", "start": "2025-12-10T09:00:00.999Z", "end": "2025-12-10T10:00:00Z"}
        )

        assert window.start_unix == DEC_10_0900

    def test_unix_fields_only_when_display_missing(self):
        window = window_from_fhir_slot(
            {"id": "slot-1", "startUnix": DEC_10_0900, "endUnix": DEC_10_0900 + 1800}
        )

        assert window.duration_minutes == 30

    @pytest.mark.parametrize(
        "resource",
        [
            {"start": "2025-12-10T09:00:00Z", "end": "2025-12-10T10:00:00Z"},
            {"id": "slot-1", "start": "garbage", "end": "2025-12-10T10:00:00Z"},
            {"id": "slot-1", "start": "2025-12-10T10:00:00Z", "end": "2025-12-10T09:00:00Z"},
            {"id": "slot-1", "start": "2025-12-10T09:00:00Z", "end": "2025-12-10T09:00:30Z"},
            {"id": "slot-1", "start": "2025-12-10T09:00:00Z"},
        ],
    )
    def test_unusable_resources_are_skipped(self, resource):
        assert window_from_fhir_slot(resource) is None


class TestExtractLocationType:
    @pytest.mark.parametrize(
        "service_type,expected",
        [
            ([{"text": "Telehealth consult"}], "telehealth"),
            ([{"coding": [{"display": "Video appointment"}]}], "telehealth"),
            ([{"coding": [{"code": "phone"}]}], "phone"),
            ([{"text": "Initial consultation"}], "in-person"),
            (None, "in-person"),
        ],
    )
    def test_modality(self, service_type, expected):
        assert extract_location_type({"serviceType": service_type}) == expected
