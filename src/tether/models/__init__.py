from .domain import (
    ALLOWED_TRANSITIONS,
    OPEN_COMMAND_STATUSES,
    ChargingMode,
    Command,
    CommandStatus,
    CommandTransition,
    CommandType,
    CostBreakdown,
    Event,
    Invoice,
    PricingSnapshot,
    Session,
    SessionStatus,
    Tariff,
    TariffScope,
)
from .events import (
    EventKind,
    MeterValuesEvent,
    NormalizedEvent,
    StartTransactionEvent,
    StatusNotificationEvent,
    StopTransactionEvent,
    UnrecognizedEvent,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "OPEN_COMMAND_STATUSES",
    "ChargingMode",
    "Command",
    "CommandStatus",
    "CommandTransition",
    "CommandType",
    "CostBreakdown",
    "Event",
    "EventKind",
    "Invoice",
    "MeterValuesEvent",
    "NormalizedEvent",
    "PricingSnapshot",
    "Session",
    "SessionStatus",
    "StartTransactionEvent",
    "StatusNotificationEvent",
    "StopTransactionEvent",
    "Tariff",
    "TariffScope",
    "UnrecognizedEvent",
]
