"""
Normalized telemetry events.

Every ingested message becomes exactly one of the variants below. Known
OCPP-style kinds get typed fields; anything else is kept as an
UnrecognizedEvent with its opaque payload so it can still be stored and
deduplicated.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional


class EventKind(str, Enum):
    START_TRANSACTION = "StartTransaction"
    STOP_TRANSACTION = "StopTransaction"
    STATUS_NOTIFICATION = "StatusNotification"
    METER_VALUES = "MeterValues"
    UNRECOGNIZED = "Unrecognized"


TRANSACTION_LIFECYCLE_KINDS = frozenset({EventKind.START_TRANSACTION, EventKind.STOP_TRANSACTION})


@dataclass(frozen=True)
class NormalizedEvent:
    """Fields shared by every event variant."""

    kind: ClassVar[EventKind] = EventKind.UNRECOGNIZED

    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    transaction_id: Optional[int] = None
    charge_box_id: Optional[str] = None
    connector_id: Optional[int] = None
    id_tag: Optional[str] = None
    event_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    source: str = "orchestrator"

    @property
    def is_transaction_lifecycle(self) -> bool:
        return self.kind in TRANSACTION_LIFECYCLE_KINDS


@dataclass(frozen=True)
class StartTransactionEvent(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.START_TRANSACTION

    meter_start: Optional[int] = None
    mode: Optional[str] = None


@dataclass(frozen=True)
class StopTransactionEvent(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.STOP_TRANSACTION

    meter_stop: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class StatusNotificationEvent(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.STATUS_NOTIFICATION

    status: Optional[str] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class MeterValuesEvent(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.METER_VALUES


@dataclass(frozen=True)
class UnrecognizedEvent(NormalizedEvent):
    kind: ClassVar[EventKind] = EventKind.UNRECOGNIZED


EVENT_VARIANTS: dict[str, type[NormalizedEvent]] = {
    EventKind.START_TRANSACTION.value: StartTransactionEvent,
    EventKind.STOP_TRANSACTION.value: StopTransactionEvent,
    EventKind.STATUS_NOTIFICATION.value: StatusNotificationEvent,
    EventKind.METER_VALUES.value: MeterValuesEvent,
}
