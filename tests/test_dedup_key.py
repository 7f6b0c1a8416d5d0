"""Tests for dedup-key derivation."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from tether.ingestion import derive_dedup_key, embedded_event_id
from tether.models import (
    MeterValuesEvent,
    StartTransactionEvent,
    StatusNotificationEvent,
    StopTransactionEvent,
    UnrecognizedEvent,
)

RECEIVED_AT = datetime(2025, 3, 1, 10, 0, 5, 750000, tzinfo=UTC)


@pytest.mark.unit
class TestDeriveDedupKey:
    """Test the priority rules of dedup-key derivation."""

    def test_explicit_event_id_wins(self):
        """An explicit event id beats every other rule."""
        event = StopTransactionEvent(
            event_type="StopTransaction",
            transaction_id=42,
            charge_box_id="CB-001",
            event_id="evt-123",
            payload={"eventId": "other"},
        )

        assert derive_dedup_key(event, RECEIVED_AT) == "id:evt-123"

    def test_transaction_lifecycle_key(self):
        """Start/Stop with a transaction id are keyed by type, transaction and station."""
        start = StartTransactionEvent(
            event_type="StartTransaction", transaction_id=42, charge_box_id="CB-001"
        )
        stop = StopTransactionEvent(
            event_type="StopTransaction", transaction_id=42, charge_box_id="CB-001"
        )

        assert derive_dedup_key(start, RECEIVED_AT) == "t:StartTransaction|tx:42|cb:CB-001"
        assert derive_dedup_key(stop, RECEIVED_AT) == "t:StopTransaction|tx:42|cb:CB-001"

    def test_lifecycle_key_ignores_timestamp(self):
        """Retries of the same Stop at different times collapse to one key."""
        first = StopTransactionEvent(
            event_type="StopTransaction",
            transaction_id=7,
            charge_box_id="CB-001",
            timestamp=RECEIVED_AT,
        )
        retry = StopTransactionEvent(
            event_type="StopTransaction",
            transaction_id=7,
            charge_box_id="CB-001",
            timestamp=RECEIVED_AT + timedelta(minutes=3),
        )

        assert derive_dedup_key(first, RECEIVED_AT) == derive_dedup_key(retry, RECEIVED_AT)

    def test_lifecycle_key_without_charge_box(self):
        """A missing charge box is rendered as a placeholder."""
        event = StopTransactionEvent(event_type="StopTransaction", transaction_id=42)

        assert derive_dedup_key(event, RECEIVED_AT) == "t:StopTransaction|tx:42|cb:-"

    def test_lifecycle_kind_without_transaction_falls_through(self):
        """Without a transaction id a Start uses the later rules."""
        event = StartTransactionEvent(
            event_type="StartTransaction",
            charge_box_id="CB-001",
            timestamp=RECEIVED_AT,
        )

        assert derive_dedup_key(event, RECEIVED_AT) == (
            "t:StartTransaction|tx:-|cb:CB-001|ts:2025-03-01T10:00:05Z"
        )

    def test_embedded_payload_id(self):
        """An identifier inside the payload is used for non-lifecycle events."""
        event = MeterValuesEvent(
            event_type="MeterValues",
            transaction_id=42,
            charge_box_id="CB-001",
            payload={"eventId": "mv-9"},
        )

        assert derive_dedup_key(event, RECEIVED_AT) == "id:mv-9"

    def test_lifecycle_rule_beats_embedded_payload_id(self):
        """Rule 2 is applied before the payload identifier."""
        event = StopTransactionEvent(
            event_type="StopTransaction",
            transaction_id=42,
            charge_box_id="CB-001",
            payload={"id": "abc"},
        )

        assert derive_dedup_key(event, RECEIVED_AT) == "t:StopTransaction|tx:42|cb:CB-001"

    def test_fallback_floors_timestamp_to_second(self):
        """The fallback key uses the event time floored to the second in UTC."""
        event = StatusNotificationEvent(
            event_type="StatusNotification",
            charge_box_id="CB-001",
            connector_id=1,
            timestamp=datetime(2025, 3, 1, 12, 0, 5, 999999, tzinfo=timezone(timedelta(hours=2))),
        )

        assert derive_dedup_key(event, RECEIVED_AT) == (
            "t:StatusNotification|tx:-|cb:CB-001|ts:2025-03-01T10:00:05Z"
        )

    def test_fallback_uses_receipt_time_without_timestamp(self):
        """Events without a timestamp fall back to the receipt time."""
        event = UnrecognizedEvent(event_type="Heartbeat", charge_box_id="CB-001")

        assert derive_dedup_key(event, RECEIVED_AT) == (
            "t:Heartbeat|tx:-|cb:CB-001|ts:2025-03-01T10:00:05Z"
        )

    def test_fallback_collides_within_same_second(self):
        """Two keyless events of the same kind in the same second share a key."""
        first = UnrecognizedEvent(event_type="Heartbeat", charge_box_id="CB-001")
        second = UnrecognizedEvent(event_type="Heartbeat", charge_box_id="CB-001")

        assert derive_dedup_key(first, RECEIVED_AT) == derive_dedup_key(
            second, RECEIVED_AT + timedelta(milliseconds=200)
        )


@pytest.mark.unit
class TestEmbeddedEventId:
    """Test payload identifier extraction."""

    def test_key_order(self):
        assert embedded_event_id({"id": "c", "event_id": "b", "eventId": "a"}) == "a"
        assert embedded_event_id({"id": "c", "event_id": "b"}) == "b"
        assert embedded_event_id({"id": 17}) == "17"

    def test_ignores_blank_and_structured_values(self):
        assert embedded_event_id({"eventId": "  ", "id": {"nested": 1}}) is None
        assert embedded_event_id({"id": True}) is None
        assert embedded_event_id({}) is None
