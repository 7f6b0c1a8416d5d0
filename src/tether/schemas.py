"""Pydantic input models for the service boundary.

Every boundary call follows a "validate → normalize → execute" flow: raw
dicts are parsed here first, so malformed input is rejected before any
storage work starts.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Annotated, Any, Literal, TypeVar

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import ChargingMode, CommandStatus, SessionStatus, TariffScope


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _upper(value: Any) -> Any:
    return value.strip().upper() if isinstance(value, str) else value


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def _clamp(low: int, high: int):
    def clamp(value: Any) -> Any:
        if value is None or value == "":
            return None
        return min(max(int(value), low), high)

    return clamp


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]
"""Datetime coerced to an aware UTC value."""

SessionMode = Annotated[Literal["AC", "DC"], BeforeValidator(_upper)]
TariffMode = Annotated[Literal["AC", "DC", "ANY"], BeforeValidator(_upper)]
SortOrder = Annotated[Literal["asc", "desc"], BeforeValidator(_lower)]

NonNegativeDecimal = Annotated[Decimal, Field(ge=0)]


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _Request(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class EventInput(BaseModel):
    """A telemetry event as delivered by the station gateway."""

    model_config = ConfigDict(frozen=True, extra="allow", str_strip_whitespace=True)

    type: str = Field(min_length=1)
    transaction_id: int | None = Field(
        default=None, validation_alias=_alias("transaction_id", "transactionId")
    )
    charge_box_id: str | None = Field(
        default=None, validation_alias=_alias("charge_box_id", "chargeBoxId")
    )
    connector_id: int | None = Field(
        default=None, validation_alias=_alias("connector_id", "connectorId")
    )
    id_tag: str | None = Field(default=None, validation_alias=_alias("id_tag", "idTag"))
    reason: str | None = None
    timestamp: UtcDatetime | None = None
    payload: dict[str, Any] | None = None
    event_id: str | None = Field(default=None, validation_alias=_alias("event_id", "eventId"))

    @field_validator("event_id", mode="before")
    @classmethod
    def _event_id_to_str(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("event_id must be a string or an integer")
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("charge_box_id", "id_tag", mode="after")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None

    def recorded_payload(self) -> dict[str, Any]:
        """The payload to store: the explicit payload, or the whole body when absent."""
        if self.payload is not None:
            return dict(self.payload)
        return self.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class RemoteStartRequest(_Request):
    charge_box_id: str = Field(
        min_length=1, validation_alias=_alias("charge_box_id", "chargeBoxId")
    )
    id_tag: str = Field(min_length=1, validation_alias=_alias("id_tag", "idTag"))
    connector_id: int | None = Field(
        default=None, gt=0, validation_alias=_alias("connector_id", "connectorId")
    )
    reservation_id: int | None = Field(
        default=None, gt=0, validation_alias=_alias("reservation_id", "reservationId")
    )


class RemoteStopRequest(_Request):
    transaction_id: int = Field(gt=0, validation_alias=_alias("transaction_id", "transactionId"))


class DispatchResultRequest(_Request):
    accepted: bool
    response: dict[str, Any] = Field(default_factory=dict)


class CommandFilter(_Request):
    transaction_id: int | None = None
    charge_box_id: str | None = None
    status: CommandStatus | None = None
    limit: Annotated[int | None, BeforeValidator(_clamp(1, 100))] = 100


# ---------------------------------------------------------------------------
# Sessions and events
# ---------------------------------------------------------------------------


class SessionFilter(_Request):
    charge_box_id: str | None = None
    id_tag: str | None = None
    transaction_id: int | None = None
    status: SessionStatus | None = None
    from_: UtcDatetime | None = Field(default=None, validation_alias=_alias("from_", "from"))
    to: UtcDatetime | None = None
    limit: Annotated[int, BeforeValidator(_clamp(1, 500))] = 50
    offset: Annotated[int, Field(ge=0)] = 0
    sort: SortOrder = "desc"


class EventFilter(_Request):
    event_type: str | None = None
    charge_box_id: str | None = None
    connector_id: int | None = None
    transaction_id: int | None = None
    id_tag: str | None = None
    from_: UtcDatetime | None = Field(default=None, validation_alias=_alias("from_", "from"))
    to: UtcDatetime | None = None
    limit: Annotated[int, BeforeValidator(_clamp(1, 500))] = 50
    offset: Annotated[int, Field(ge=0)] = 0
    sort: SortOrder = "desc"


# ---------------------------------------------------------------------------
# Billing and tariffs
# ---------------------------------------------------------------------------


class BillingStartRequest(_Request):
    transaction_id: int
    charge_box_id: str = Field(min_length=1)
    connector_id: int | None = None
    id_tag: str | None = None
    mode: SessionMode = "AC"
    started_at: UtcDatetime | None = None


class BillingRefreshRequest(_Request):
    transaction_id: int
    meter_latest: int = Field(ge=0, validation_alias=_alias("meter_latest", "meterLatest"))


class BillingCloseRequest(_Request):
    transaction_id: int
    meter_start: int = Field(ge=0, validation_alias=_alias("meter_start", "meterStart"))
    meter_stop: int = Field(ge=0, validation_alias=_alias("meter_stop", "meterStop"))
    stopped_at: UtcDatetime | None = None
    idle_minutes: int | None = Field(
        default=None, ge=0, validation_alias=_alias("idle_minutes", "idleMinutes")
    )


class TariffScopeInput(_Request):
    type: TariffScope = TariffScope.GLOBAL
    charge_box_id: str | None = Field(default=None, min_length=1)


class TariffCreate(_Request):
    scope: TariffScopeInput = Field(default_factory=TariffScopeInput)
    valid_from: UtcDatetime | None = None
    valid_to: UtcDatetime | None = None
    applies_mode: TariffMode = "ANY"
    price_ac_kwh: Decimal = Field(gt=0)
    price_dc_kwh: Decimal = Field(gt=0)
    connection_fee: NonNegativeDecimal = Decimal("0")
    idle_fee_per_minute: NonNegativeDecimal = Decimal("0")
    idle_grace_minutes: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_scope_and_window(self) -> TariffCreate:
        if self.scope.type == TariffScope.CHARGE_BOX and not self.scope.charge_box_id:
            raise ValueError("charge_box scope requires scope.charge_box_id")
        if self.valid_from and self.valid_to and self.valid_to <= self.valid_from:
            raise ValueError("valid_to must be after valid_from")
        return self


class TariffQuery(_Request):
    charge_box_id: str | None = None
    mode: SessionMode = "AC"
    active_at: UtcDatetime | None = None


class TariffPreviewRequest(TariffQuery):
    expected_kwh: NonNegativeDecimal = Decimal("0")
    expected_minutes: int = Field(default=0, ge=0)


class InvoiceFilter(_Request):
    from_: UtcDatetime | None = Field(default=None, validation_alias=_alias("from_", "from"))
    to: UtcDatetime | None = None
    charge_box_id: str | None = None
    id_tag: str | None = None
    limit: Annotated[int, BeforeValidator(_clamp(1, 1000))] = 100

    def window(self, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Query window, defaulting to the last 30 days."""
        end = self.to or now or datetime.now(UTC)
        start = self.from_ or end - timedelta(days=30)
        return start, end


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse(model_cls: type[ModelT], data: Any) -> ModelT:
    """Validate ``data`` into ``model_cls`` or raise the domain ValidationError."""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data if data is not None else {})
    except PydanticValidationError as e:
        issues = [
            {"path": list(err["loc"]), "message": err["msg"]}
            for err in e.errors(include_url=False)
        ]
        raise ValidationError(f"Invalid {model_cls.__name__}", issues=issues) from e


__all__ = [
    "BillingCloseRequest",
    "BillingRefreshRequest",
    "BillingStartRequest",
    "CommandFilter",
    "DispatchResultRequest",
    "EventFilter",
    "EventInput",
    "InvoiceFilter",
    "RemoteStartRequest",
    "RemoteStopRequest",
    "SessionFilter",
    "TariffCreate",
    "TariffPreviewRequest",
    "TariffQuery",
    "as_utc",
    "parse",
]
