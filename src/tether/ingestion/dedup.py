"""Dedup-key derivation.

The key decides whether two deliveries are the same logical occurrence.
Derivation is a pure function of the normalized event (plus the receipt time
used only by the last-resort rule), in priority order:

1. explicit caller-supplied event id          -> ``id:<event_id>``
2. Start/StopTransaction with a transaction id -> ``t:<type>|tx:<tx>|cb:<cb>``
3. identifier embedded in the payload          -> ``id:<value>``
4. fallback                                    -> ``t:<type>|tx:<tx>|cb:<cb>|ts:<second>``

Rule 4 accepts that two distinct keyless events of the same type, station
and transaction within the same second collide.
"""

from datetime import UTC, datetime
from typing import Any

from ..models.events import NormalizedEvent

PLACEHOLDER = "-"
PAYLOAD_ID_KEYS = ("eventId", "event_id", "id")


def embedded_event_id(payload: dict[str, Any]) -> str | None:
    """Application-level identifier carried inside the payload, if any."""
    for key in PAYLOAD_ID_KEYS:
        value = payload.get(key)
        if value is None or isinstance(value, (bool, dict, list)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def floor_to_second(instant: datetime) -> str:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def derive_dedup_key(event: NormalizedEvent, received_at: datetime) -> str:
    """Return the canonical dedup key for ``event``."""
    if event.event_id:
        return f"id:{event.event_id}"

    tx = event.transaction_id
    cb = event.charge_box_id or PLACEHOLDER

    if event.is_transaction_lifecycle and tx is not None:
        return f"t:{event.event_type}|tx:{tx}|cb:{cb}"

    embedded = embedded_event_id(event.payload)
    if embedded is not None:
        return f"id:{embedded}"

    instant = event.timestamp or received_at
    tx_part = PLACEHOLDER if tx is None else str(tx)
    return f"t:{event.event_type}|tx:{tx_part}|cb:{cb}|ts:{floor_to_second(instant)}"
