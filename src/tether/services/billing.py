"""Tariff resolution and session billing."""

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

import aiosqlite

from ..errors import ConflictError, InvoiceNotFoundError, SessionNotFoundError, TariffNotFoundError
from ..ingestion.normalize import lookup_field, safe_int
from ..logging_utils import log_domain_event
from ..models import (
    ChargingMode,
    CostBreakdown,
    EventKind,
    Invoice,
    PricingSnapshot,
    Session,
    Tariff,
    TariffScope,
)
from ..repositories import EventRepository, InvoiceRepository, SessionRepository, TariffRepository
from ..schemas import (
    BillingCloseRequest,
    BillingRefreshRequest,
    BillingStartRequest,
    InvoiceFilter,
    TariffCreate,
    TariffPreviewRequest,
)
from .base import Component
from .idle import idle_minutes_for_session

CENTS = Decimal("0.01")
WATT_HOURS = Decimal("0.001")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def quantize_energy(value: Decimal) -> Decimal:
    return value.quantize(WATT_HOURS, rounding=ROUND_HALF_UP)


def energy_from_meters(meter_start: int, meter_stop: int) -> Decimal:
    """kWh between two Wh meter readings; a meter that went backwards yields 0."""
    return quantize_energy(max(Decimal(0), Decimal(meter_stop - meter_start) / Decimal(1000)))


def compute_cost(pricing: PricingSnapshot, energy_kwh: Decimal, idle_minutes: int) -> CostBreakdown:
    """
    Price a session.

    total = connection_fee + energy_kwh * price_kwh
            + max(0, idle_minutes - idle_grace_minutes) * idle_fee_per_minute

    Each money component is rounded half-up to cents before summing.
    """
    energy = quantize_energy(Decimal(energy_kwh))
    idle = max(0, int(idle_minutes))
    billable_idle = max(0, idle - pricing.idle_grace_minutes)

    energy_cost = quantize_money(energy * pricing.price_kwh)
    idle_cost = quantize_money(Decimal(billable_idle) * pricing.idle_fee_per_minute)
    connection_fee = quantize_money(pricing.connection_fee)

    return CostBreakdown(
        energy_kwh=energy,
        energy_cost=energy_cost,
        idle_minutes=idle,
        billable_idle_minutes=billable_idle,
        idle_cost=idle_cost,
        connection_fee=connection_fee,
        total=connection_fee + energy_cost + idle_cost,
    )


@dataclass(frozen=True)
class TariffPreview:
    tariff: Tariff
    mode: ChargingMode
    breakdown: CostBreakdown


@dataclass(frozen=True)
class BillingEstimate:
    """Live, unpersisted cost estimate for a running session."""

    session: Session
    pricing: PricingSnapshot
    meter_start: int
    meter_latest: int
    breakdown: CostBreakdown
    as_of: datetime


@dataclass(frozen=True)
class CloseResult:
    session: Session
    invoice: Invoice
    breakdown: CostBreakdown
    duration_seconds: int


class TariffResolver(Component):
    """Versioned, time-bounded tariffs and the lookup of the one in force."""

    async def create_tariff(self, request: TariffCreate) -> Tariff:
        now = datetime.now(UTC)
        tariff = Tariff(
            scope=request.scope.type,
            charge_box_id=(
                request.scope.charge_box_id
                if request.scope.type == TariffScope.CHARGE_BOX
                else None
            ),
            applies_mode=ChargingMode(request.applies_mode),
            valid_from=request.valid_from or now,
            valid_to=request.valid_to,
            price_ac_kwh=request.price_ac_kwh,
            price_dc_kwh=request.price_dc_kwh,
            connection_fee=request.connection_fee,
            idle_fee_per_minute=request.idle_fee_per_minute,
            idle_grace_minutes=request.idle_grace_minutes,
            created_at=now,
        )
        async with self.db.transaction() as conn:
            tariff = await TariffRepository(conn).create(tariff)

        log_domain_event(
            self.logger,
            "tariff_created",
            tariff_id=tariff.id,
            scope=tariff.scope.value,
            charge_box_id=tariff.charge_box_id,
            applies_mode=tariff.applies_mode.value,
            valid_from=tariff.valid_from,
            valid_to=tariff.valid_to,
        )
        return tariff

    async def resolve(
        self,
        charge_box_id: str | None,
        mode: ChargingMode,
        at: datetime | None = None,
        conn: aiosqlite.Connection | None = None,
    ) -> Tariff:
        """
        Return the tariff in force for ``charge_box_id`` and ``mode`` at ``at``.

        Raises:
            TariffNotFoundError: no tariff window covers the instant
        """
        at = at or datetime.now(UTC)
        async with self._reading(conn) as uow:
            tariff = await TariffRepository(uow).resolve(charge_box_id, mode, at)
        if tariff is None:
            raise TariffNotFoundError(
                "No tariff in force",
                charge_box_id=charge_box_id,
                mode=mode.value,
                at=at.isoformat(),
            )
        return tariff

    async def preview(self, request: TariffPreviewRequest) -> TariffPreview:
        mode = ChargingMode(request.mode)
        tariff = await self.resolve(request.charge_box_id, mode, request.active_at)
        breakdown = compute_cost(
            tariff.snapshot(mode), request.expected_kwh, request.expected_minutes
        )
        return TariffPreview(tariff=tariff, mode=mode, breakdown=breakdown)


class BillingCalculator(Component):
    """
    Prices sessions at start, on refresh and at close.

    The tariff is frozen onto the session as a pricing snapshot the first time
    billing starts, so later tariff changes never re-price a running session.
    """

    def __init__(self, db, tariffs: TariffResolver | None = None):
        super().__init__(db)
        self.tariffs = tariffs or TariffResolver(db)

    async def _ensure_snapshot(
        self, conn: aiosqlite.Connection, session: Session, now: datetime
    ) -> PricingSnapshot:
        if session.pricing_snapshot is not None:
            return session.pricing_snapshot
        tariff = await self.tariffs.resolve(
            session.charge_box_id, session.mode, session.started_at, conn=conn
        )
        snapshot = tariff.snapshot(session.mode)
        await SessionRepository(conn).set_pricing_snapshot_if_absent(session.id, snapshot, now)
        return snapshot

    async def start_billing(self, request: BillingStartRequest) -> Session:
        """Open (or re-open idempotently) billing for a transaction."""
        now = datetime.now(UTC)
        async with self.db.transaction() as conn:
            repo = SessionRepository(conn)
            session = await repo.upsert_start(
                request.transaction_id,
                started_at=request.started_at or now,
                now=now,
                charge_box_id=request.charge_box_id,
                id_tag=request.id_tag,
                connector_id=request.connector_id,
                mode=ChargingMode(request.mode),
            )
            had_snapshot = session.pricing_snapshot is not None
            snapshot = await self._ensure_snapshot(conn, session, now)
            session = await repo.get_by_id(session.id)

        if not had_snapshot:
            log_domain_event(
                self.logger,
                "billing_started",
                transaction_id=session.transaction_id,
                charge_box_id=session.charge_box_id,
                tariff_id=snapshot.tariff_id,
                mode=snapshot.mode.value,
            )
        return session

    async def refresh_billing(self, request: BillingRefreshRequest) -> BillingEstimate:
        """Estimate the running cost from the latest meter reading; nothing is stored."""
        now = datetime.now(UTC)
        async with self.db.read() as conn:
            session = await SessionRepository(conn).get_by_transaction_id(request.transaction_id)
            if session is None:
                raise SessionNotFoundError(
                    f"Session for transaction {request.transaction_id} not found",
                    transaction_id=request.transaction_id,
                )
            if session.pending_start:
                raise ConflictError(
                    f"Session for transaction {request.transaction_id} has not started",
                    transaction_id=request.transaction_id,
                )

            pricing = session.pricing_snapshot
            if pricing is None:
                tariff = await self.tariffs.resolve(
                    session.charge_box_id, session.mode, session.started_at, conn=conn
                )
                pricing = tariff.snapshot(session.mode)

            start_event = await EventRepository(conn).first_for_transaction(
                session.transaction_id, EventKind.START_TRANSACTION.value
            )
            meter_start = 0
            if start_event is not None:
                raw = lookup_field(start_event.payload, "meterStart", "meter_start")
                meter_start = safe_int(raw) or 0

            until = session.stopped_at or now
            idle_minutes = await idle_minutes_for_session(conn, session, until)

        breakdown = compute_cost(
            pricing, energy_from_meters(meter_start, request.meter_latest), idle_minutes
        )
        return BillingEstimate(
            session=session,
            pricing=pricing,
            meter_start=meter_start,
            meter_latest=request.meter_latest,
            breakdown=breakdown,
            as_of=now,
        )

    async def close_session(self, request: BillingCloseRequest) -> CloseResult:
        """
        Finalize a session's totals and write its invoice.

        Closing twice replaces the invoice instead of adding a second one;
        the stop time recorded first is always kept.
        """
        now = datetime.now(UTC)
        async with self.db.transaction() as conn:
            sessions = SessionRepository(conn)
            session = await sessions.get_by_transaction_id(request.transaction_id)
            if session is None:
                raise SessionNotFoundError(
                    f"Session for transaction {request.transaction_id} not found",
                    transaction_id=request.transaction_id,
                )
            if session.pending_start:
                raise ConflictError(
                    f"Session for transaction {request.transaction_id} has not started",
                    transaction_id=request.transaction_id,
                )

            stopped_at = session.stopped_at or request.stopped_at or now
            energy_kwh = energy_from_meters(request.meter_start, request.meter_stop)
            pricing = await self._ensure_snapshot(conn, session, now)

            if request.idle_minutes is not None:
                idle_minutes = request.idle_minutes
            else:
                idle_minutes = await idle_minutes_for_session(conn, session, stopped_at)

            breakdown = compute_cost(pricing, energy_kwh, idle_minutes)
            await sessions.record_totals(
                session.id,
                stopped_at=stopped_at,
                energy_kwh=breakdown.energy_kwh,
                revenue=breakdown.total,
                idle_minutes=breakdown.idle_minutes,
                now=now,
            )
            session = await sessions.get_by_id(session.id)

            invoices = InvoiceRepository(conn)
            await invoices.upsert(
                Invoice(
                    session_id=session.id,
                    transaction_id=session.transaction_id,
                    charge_box_id=session.charge_box_id,
                    id_tag=session.id_tag,
                    started_at=session.started_at,
                    stopped_at=session.stopped_at,
                    energy_kwh=breakdown.energy_kwh,
                    idle_minutes=breakdown.idle_minutes,
                    total=breakdown.total,
                    breakdown={**breakdown.to_dict(), "pricing": pricing.to_dict()},
                    created_at=now,
                )
            )
            invoice = await invoices.get_by_session_id(session.id)

        duration = session.duration_seconds() or 0
        log_domain_event(
            self.logger,
            "session_closed",
            transaction_id=session.transaction_id,
            invoice_id=invoice.id,
            energy_kwh=breakdown.energy_kwh,
            idle_minutes=breakdown.idle_minutes,
            total=breakdown.total,
            duration_seconds=duration,
        )
        return CloseResult(
            session=session, invoice=invoice, breakdown=breakdown, duration_seconds=duration
        )

    async def get_invoice(self, invoice_id: int) -> Invoice:
        async with self.db.read() as conn:
            invoice = await InvoiceRepository(conn).get_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    async def search_invoices(self, criteria: InvoiceFilter) -> list[Invoice]:
        started_from, started_to = criteria.window()
        async with self.db.read() as conn:
            return await InvoiceRepository(conn).search(
                started_from=started_from,
                started_to=started_to,
                charge_box_id=criteria.charge_box_id,
                id_tag=criteria.id_tag,
                limit=criteria.limit,
            )
