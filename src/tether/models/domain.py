"""Domain models for the charging orchestration core."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class ChargingMode(str, Enum):
    """Power delivery mode a session (or tariff) applies to."""

    AC = "AC"
    DC = "DC"
    ANY = "ANY"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class CommandType(str, Enum):
    REMOTE_START = "RemoteStart"
    REMOTE_STOP = "RemoteStop"


class CommandStatus(str, Enum):
    """
    Command lifecycle.

    pending -> sent -> accepted|rejected -> completed. ``rejected`` and
    ``completed`` are terminal.
    """

    PENDING = "pending"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_COMMAND_STATUSES


TERMINAL_COMMAND_STATUSES = frozenset({CommandStatus.REJECTED, CommandStatus.COMPLETED})
OPEN_COMMAND_STATUSES = (CommandStatus.PENDING, CommandStatus.SENT, CommandStatus.ACCEPTED)

ALLOWED_TRANSITIONS: dict[CommandStatus, frozenset[CommandStatus]] = {
    CommandStatus.PENDING: frozenset({CommandStatus.SENT, CommandStatus.REJECTED}),
    # A stop/start event can arrive before the dispatch channel reports back
    CommandStatus.SENT: frozenset(
        {CommandStatus.ACCEPTED, CommandStatus.REJECTED, CommandStatus.COMPLETED}
    ),
    CommandStatus.ACCEPTED: frozenset({CommandStatus.COMPLETED}),
    CommandStatus.REJECTED: frozenset(),
    CommandStatus.COMPLETED: frozenset(),
}


class TariffScope(str, Enum):
    GLOBAL = "global"
    CHARGE_BOX = "charge_box"


@dataclass
class Event:
    """An immutable, deduplicated telemetry fact."""

    id: Optional[int] = None
    source: str = "orchestrator"
    event_type: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    charge_box_id: Optional[str] = None
    connector_id: Optional[int] = None
    transaction_id: Optional[int] = None
    id_tag: Optional[str] = None
    dedup_key: str = ""
    occurred_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class PricingSnapshot:
    """Tariff values frozen onto a session when billing starts."""

    tariff_id: Optional[int]
    mode: ChargingMode
    price_kwh: Decimal
    connection_fee: Decimal
    idle_fee_per_minute: Decimal
    idle_grace_minutes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tariff_id": self.tariff_id,
            "mode": self.mode.value,
            "price_kwh": str(self.price_kwh),
            "connection_fee": str(self.connection_fee),
            "idle_fee_per_minute": str(self.idle_fee_per_minute),
            "idle_grace_minutes": self.idle_grace_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PricingSnapshot":
        return cls(
            tariff_id=data.get("tariff_id"),
            mode=ChargingMode(data.get("mode", "AC")),
            price_kwh=Decimal(str(data.get("price_kwh", "0"))),
            connection_fee=Decimal(str(data.get("connection_fee", "0"))),
            idle_fee_per_minute=Decimal(str(data.get("idle_fee_per_minute", "0"))),
            idle_grace_minutes=int(data.get("idle_grace_minutes", 0)),
        )


@dataclass
class Session:
    """
    One charging transaction.

    ``started_at`` is None only for a placeholder created by a Stop that was
    observed before its Start. Status and duration are derived, never stored.
    """

    id: Optional[int] = None
    transaction_id: int = 0
    charge_box_id: Optional[str] = None
    id_tag: Optional[str] = None
    connector_id: Optional[int] = None
    mode: ChargingMode = ChargingMode.AC
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    stop_reason: Optional[str] = None
    pricing_snapshot: Optional[PricingSnapshot] = None
    energy_kwh: Optional[Decimal] = None
    revenue: Optional[Decimal] = None
    idle_minutes: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def status(self) -> SessionStatus:
        return SessionStatus.COMPLETED if self.stopped_at else SessionStatus.ACTIVE

    @property
    def pending_start(self) -> bool:
        return self.started_at is None

    def duration_seconds(self, now: datetime | None = None) -> int | None:
        """Seconds between start and stop (or ``now`` while active)."""
        if self.started_at is None:
            return None
        end = self.stopped_at or now or datetime.now(UTC)
        return max(0, int((end - self.started_at).total_seconds()))


@dataclass
class Command:
    """An outbound control command tracked by the orchestrator."""

    id: Optional[int] = None
    command_type: CommandType = CommandType.REMOTE_START
    charge_box_id: Optional[str] = None
    transaction_id: Optional[int] = None
    idempotency_key: str = ""
    status: CommandStatus = CommandStatus.PENDING
    payload: dict[str, Any] = field(default_factory=dict)
    response: Optional[dict[str, Any]] = None
    session_id: Optional[int] = None
    requested_by: str = "api"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class CommandTransition:
    """One row of a command's status history."""

    id: Optional[int] = None
    command_id: int = 0
    from_status: Optional[CommandStatus] = None
    to_status: CommandStatus = CommandStatus.PENDING
    response: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None


@dataclass
class Tariff:
    """A versioned, time-bounded price schedule."""

    id: Optional[int] = None
    scope: TariffScope = TariffScope.GLOBAL
    charge_box_id: Optional[str] = None
    applies_mode: ChargingMode = ChargingMode.ANY
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    price_ac_kwh: Decimal = Decimal("0")
    price_dc_kwh: Decimal = Decimal("0")
    connection_fee: Decimal = Decimal("0")
    idle_fee_per_minute: Decimal = Decimal("0")
    idle_grace_minutes: int = 0
    created_at: Optional[datetime] = None

    def price_per_kwh(self, mode: ChargingMode) -> Decimal:
        return self.price_dc_kwh if mode == ChargingMode.DC else self.price_ac_kwh

    def snapshot(self, mode: ChargingMode) -> PricingSnapshot:
        return PricingSnapshot(
            tariff_id=self.id,
            mode=mode,
            price_kwh=self.price_per_kwh(mode),
            connection_fee=self.connection_fee,
            idle_fee_per_minute=self.idle_fee_per_minute,
            idle_grace_minutes=self.idle_grace_minutes,
        )


@dataclass(frozen=True)
class CostBreakdown:
    energy_kwh: Decimal
    energy_cost: Decimal
    idle_minutes: int
    billable_idle_minutes: int
    idle_cost: Decimal
    connection_fee: Decimal
    total: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "energy_kwh": str(self.energy_kwh),
            "energy_cost": str(self.energy_cost),
            "idle_minutes": self.idle_minutes,
            "billable_idle_minutes": self.billable_idle_minutes,
            "idle_cost": str(self.idle_cost),
            "connection_fee": str(self.connection_fee),
            "total": str(self.total),
        }


@dataclass
class Invoice:
    """Billing artifact; exactly one per closed session."""

    id: Optional[int] = None
    session_id: int = 0
    transaction_id: int = 0
    charge_box_id: Optional[str] = None
    id_tag: Optional[str] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    energy_kwh: Decimal = Decimal("0")
    idle_minutes: int = 0
    total: Decimal = Decimal("0")
    breakdown: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
