"""Turn validated boundary input into a normalized event variant.

Typed fields are taken from the top-level input first and then from the
payload, accepting both camelCase (station gateway) and snake_case keys.
"""

from datetime import UTC, datetime
from typing import Any

from ..models.events import (
    EVENT_VARIANTS,
    NormalizedEvent,
    StartTransactionEvent,
    StatusNotificationEvent,
    StopTransactionEvent,
    UnrecognizedEvent,
)
from ..schemas import EventInput


def safe_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def safe_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def lookup_field(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def normalize_event(data: EventInput) -> NormalizedEvent:
    """Build the tagged event variant for a validated input."""
    payload = data.recorded_payload()
    variant = EVENT_VARIANTS.get(data.type, UnrecognizedEvent)

    common: dict[str, Any] = {
        "event_type": data.type,
        "payload": payload,
        "transaction_id": (
            data.transaction_id
            if data.transaction_id is not None
            else safe_int(lookup_field(payload, "transactionId", "transaction_id"))
        ),
        "charge_box_id": data.charge_box_id
        or safe_str(lookup_field(payload, "chargeBoxId", "charge_box_id")),
        "connector_id": (
            data.connector_id
            if data.connector_id is not None
            else safe_int(lookup_field(payload, "connectorId", "connector_id"))
        ),
        "id_tag": data.id_tag or safe_str(lookup_field(payload, "idTag", "id_tag")),
        "event_id": data.event_id,
        "timestamp": data.timestamp or safe_datetime(payload.get("timestamp")),
    }

    if variant is StartTransactionEvent:
        mode = safe_str(payload.get("mode"))
        return StartTransactionEvent(
            **common,
            meter_start=safe_int(lookup_field(payload, "meterStart", "meter_start")),
            mode=mode.upper() if mode else None,
        )
    if variant is StopTransactionEvent:
        return StopTransactionEvent(
            **common,
            meter_stop=safe_int(lookup_field(payload, "meterStop", "meter_stop")),
            reason=data.reason or safe_str(payload.get("reason")),
        )
    if variant is StatusNotificationEvent:
        return StatusNotificationEvent(
            **common,
            status=safe_str(payload.get("status")),
            error_code=safe_str(lookup_field(payload, "errorCode", "error_code")),
        )
    return variant(**common)
