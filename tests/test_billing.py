"""Tests for tariff resolution, cost computation and session close-out."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from tether.errors import ConflictError, SessionNotFoundError, TariffNotFoundError
from tether.models import ChargingMode, PricingSnapshot
from tether.repositories import InvoiceRepository
from tether.services import TariffResolver, compute_cost
from tether.services.billing import energy_from_meters

T0 = datetime(2025, 3, 1, 10, 0, tzinfo=UTC)


def pricing(**overrides):
    values = {
        "tariff_id": 1,
        "mode": ChargingMode.AC,
        "price_kwh": Decimal("2.00"),
        "connection_fee": Decimal("5.00"),
        "idle_fee_per_minute": Decimal("0.50"),
        "idle_grace_minutes": 10,
        **overrides,
    }
    return PricingSnapshot(**values)


def status_event(status, at, connector_id=1):
    return {
        "type": "StatusNotification",
        "charge_box_id": "CB-001",
        "connector_id": connector_id,
        "timestamp": at.isoformat(),
        "payload": {"status": status, "errorCode": "NoError"},
    }


@pytest.mark.unit
class TestComputeCost:
    """Test the pricing formula."""

    def test_reference_session(self):
        """20 kWh at 2.00 + 5.00 fee + 5 billable idle minutes at 0.50."""
        breakdown = compute_cost(pricing(), Decimal("20"), 15)

        assert breakdown.energy_cost == Decimal("40.00")
        assert breakdown.billable_idle_minutes == 5
        assert breakdown.idle_cost == Decimal("2.50")
        assert breakdown.connection_fee == Decimal("5.00")
        assert breakdown.total == Decimal("47.50")

    def test_idle_within_grace_is_free(self):
        breakdown = compute_cost(pricing(), Decimal("1"), 8)

        assert breakdown.billable_idle_minutes == 0
        assert breakdown.idle_cost == Decimal("0.00")
        assert breakdown.total == Decimal("7.00")

    def test_rounds_half_up_to_cents(self):
        breakdown = compute_cost(
            pricing(price_kwh=Decimal("0.25"), connection_fee=Decimal("0")), Decimal("0.5"), 0
        )

        assert breakdown.energy_cost == Decimal("0.13")
        assert breakdown.total == Decimal("0.13")

    def test_energy_is_quantized_to_watt_hours(self):
        breakdown = compute_cost(pricing(), Decimal("1.23456"), 0)

        assert breakdown.energy_kwh == Decimal("1.235")
        assert breakdown.energy_cost == Decimal("2.47")

    def test_breakdown_serializes_decimals_as_strings(self):
        data = compute_cost(pricing(), Decimal("20"), 15).to_dict()

        assert data["total"] == "47.50"
        assert data["idle_minutes"] == 15

    def test_energy_from_meters(self):
        assert energy_from_meters(1000, 21000) == Decimal("20.000")
        assert energy_from_meters(1000, 1500) == Decimal("0.500")
        assert energy_from_meters(5000, 4000) == Decimal("0")


@pytest.mark.integration
class TestTariffResolution:
    """Test which tariff is in force."""

    async def test_no_tariff(self, temp_db):
        with pytest.raises(TariffNotFoundError) as exc_info:
            await TariffResolver(temp_db).resolve("CB-001", ChargingMode.AC, T0)

        assert exc_info.value.code == "tariff_not_found"

    async def test_charge_box_tariff_beats_global(self, service, global_tariff, global_tariff_body):
        local = await service.create_tariff(
            {
                **global_tariff_body,
                "scope": {"type": "charge_box", "charge_box_id": "CB-001"},
                "price_ac_kwh": "1.00",
            }
        )
        # A newer global tariff still loses to the charge-box one
        await service.create_tariff({**global_tariff_body, "price_ac_kwh": "9.00"})

        resolved = await service.resolve_tariff(charge_box_id="CB-001", active_at=T0)
        other = await service.resolve_tariff(charge_box_id="CB-002", active_at=T0)

        assert resolved["id"] == local["id"]
        assert other["price_ac_kwh"] == "9.00"

    async def test_newest_matching_tariff_wins(self, service, global_tariff, global_tariff_body):
        newer = await service.create_tariff({**global_tariff_body, "price_ac_kwh": "2.50"})

        resolved = await service.resolve_tariff(charge_box_id="CB-001", active_at=T0)

        assert resolved["id"] == newer["id"]
        assert resolved["id"] != global_tariff["id"]

    async def test_mode_specific_tariff(self, service, global_tariff, global_tariff_body):
        dc_only = await service.create_tariff({**global_tariff_body, "applies_mode": "DC"})

        dc = await service.resolve_tariff(charge_box_id="CB-001", mode="DC", active_at=T0)
        ac = await service.resolve_tariff(charge_box_id="CB-001", mode="AC", active_at=T0)

        assert dc["id"] == dc_only["id"]
        assert ac["id"] == global_tariff["id"]

    async def test_validity_window_end_is_exclusive(
        self, service, global_tariff, global_tariff_body
    ):
        promo = await service.create_tariff(
            {
                **global_tariff_body,
                "scope": {"type": "charge_box", "charge_box_id": "CB-001"},
                "valid_from": "2025-01-01T00:00:00Z",
                "valid_to": "2025-02-01T00:00:00Z",
            }
        )

        inside = await service.resolve_tariff(
            charge_box_id="CB-001", active_at="2025-01-15T00:00:00Z"
        )
        at_end = await service.resolve_tariff(
            charge_box_id="CB-001", active_at="2025-02-01T00:00:00Z"
        )

        assert inside["id"] == promo["id"]
        assert at_end["id"] == global_tariff["id"]

    async def test_global_scope_ignores_charge_box(self, service, global_tariff_body):
        tariff = await service.create_tariff(
            {**global_tariff_body, "scope": {"type": "global", "charge_box_id": "CB-001"}}
        )

        assert tariff["scope"] == {"type": "global", "charge_box_id": None}

    async def test_preview(self, service, global_tariff):
        preview = await service.preview_tariff(
            {
                "charge_box_id": "CB-001",
                "mode": "DC",
                "active_at": "2025-03-01T10:00:00Z",
                "expected_kwh": "10",
                "expected_minutes": 12,
            }
        )

        assert preview["tariff"]["id"] == global_tariff["id"]
        assert preview["mode"] == "DC"
        assert preview["breakdown"]["energy_cost"] == "30.00"
        assert preview["breakdown"]["idle_cost"] == "1.00"
        assert preview["breakdown"]["total"] == "36.00"


@pytest.mark.integration
class TestBillingLifecycle:
    """Test start, refresh and close of a billed session."""

    async def test_start_captures_snapshot(self, service, global_tariff):
        session = await service.billing_start(
            {"transaction_id": 42, "charge_box_id": "CB-001", "mode": "DC", "started_at": T0}
        )

        assert session["status"] == "active"
        assert session["mode"] == "DC"
        assert session["pricing_snapshot"]["tariff_id"] == global_tariff["id"]
        assert session["pricing_snapshot"]["price_kwh"] == "3.00"

    async def test_start_without_tariff_fails(self, service):
        with pytest.raises(TariffNotFoundError):
            await service.billing_start({"transaction_id": 42, "charge_box_id": "CB-001"})

    async def test_snapshot_survives_tariff_change(
        self, service, global_tariff, global_tariff_body
    ):
        """A tariff published after billing starts does not re-price the session."""
        await service.billing_start(
            {"transaction_id": 42, "charge_box_id": "CB-001", "started_at": T0}
        )
        await service.create_tariff({**global_tariff_body, "price_ac_kwh": "9.99"})

        again = await service.billing_start(
            {"transaction_id": 42, "charge_box_id": "CB-001", "started_at": T0}
        )
        closed = await service.billing_close(
            {"transaction_id": 42, "meter_start": 0, "meter_stop": 10000, "idle_minutes": 0}
        )

        assert again["pricing_snapshot"]["price_kwh"] == "2.00"
        assert closed["breakdown"]["energy_cost"] == "20.00"

    async def test_refresh_reads_meter_start_from_start_event(
        self, service, global_tariff, sample_start_event
    ):
        await service.ingest_event(sample_start_event)

        estimate = await service.billing_refresh({"transaction_id": 42, "meter_latest": 11000})

        assert estimate["meter_start"] == 1000
        assert estimate["breakdown"]["energy_kwh"] == "10.000"
        assert estimate["estimated_total"] == "25.00"

    async def test_refresh_with_unreadable_meter_start(
        self, service, global_tariff, sample_start_event
    ):
        """Payloads are opaque; an unparseable meterStart counts from zero."""
        await service.ingest_event({**sample_start_event, "payload": {"meterStart": "n/a"}})

        estimate = await service.billing_refresh({"transaction_id": 42, "meter_latest": 5000})

        assert estimate["meter_start"] == 0
        assert estimate["breakdown"]["energy_kwh"] == "5.000"

    async def test_refresh_reads_snake_case_meter_start(
        self, service, global_tariff, sample_start_event
    ):
        await service.ingest_event({**sample_start_event, "payload": {"meter_start": "2000"}})

        estimate = await service.billing_refresh({"transaction_id": 42, "meter_latest": 5000})

        assert estimate["meter_start"] == 2000

    async def test_refresh_does_not_persist(self, service, global_tariff, sample_start_event):
        await service.ingest_event(sample_start_event)

        await service.billing_refresh({"transaction_id": 42, "meter_latest": 11000})
        session = await service.get_session(42)

        assert session["revenue"] is None
        assert session["pricing_snapshot"] is None

    async def test_refresh_unknown_session(self, service, global_tariff):
        with pytest.raises(SessionNotFoundError):
            await service.billing_refresh({"transaction_id": 404, "meter_latest": 10})

    async def test_close_prices_idle_from_status_transitions(
        self, service, global_tariff, sample_start_event, sample_stop_event
    ):
        """End-to-end: 20 kWh AC with 15 idle minutes totals 47.50."""
        await service.ingest_event(sample_start_event)
        await service.ingest_event(status_event("Charging", T0 + timedelta(minutes=1)))
        await service.ingest_event(status_event("SuspendedEV", T0 + timedelta(minutes=30)))
        await service.ingest_event(status_event("Charging", T0 + timedelta(minutes=45)))
        # Another connector's idle time does not count
        await service.ingest_event(
            status_event("SuspendedEV", T0 + timedelta(minutes=5), connector_id=2)
        )
        await service.ingest_event(sample_stop_event)

        closed = await service.billing_close(
            {"transaction_id": 42, "meter_start": 1000, "meter_stop": 21000}
        )

        assert closed["breakdown"]["idle_minutes"] == 15
        assert closed["invoice"]["total"] == "47.50"
        assert closed["invoice"]["energy_kwh"] == "20.000"
        assert closed["invoice"]["breakdown"]["pricing"]["price_kwh"] == "2.00"
        assert closed["duration_seconds"] == 3600
        assert closed["session"]["revenue"] == "47.50"
        assert closed["session"]["stop_reason"] == "Local"

    async def test_close_keeps_recorded_stop_time(
        self, service, global_tariff, sample_start_event, sample_stop_event
    ):
        await service.ingest_event(sample_start_event)
        await service.ingest_event(sample_stop_event)

        closed = await service.billing_close(
            {
                "transaction_id": 42,
                "meter_start": 0,
                "meter_stop": 0,
                "stopped_at": "2025-03-01T12:00:00Z",
            }
        )

        assert closed["session"]["stopped_at"] == "2025-03-01T11:00:00+00:00"

    async def test_close_stops_active_session(self, service, global_tariff, sample_start_event):
        await service.ingest_event(sample_start_event)

        closed = await service.billing_close(
            {
                "transaction_id": 42,
                "meter_start": 1000,
                "meter_stop": 2000,
                "stopped_at": "2025-03-01T10:30:00Z",
            }
        )

        assert closed["session"]["status"] == "completed"
        assert closed["duration_seconds"] == 1800

    async def test_closing_twice_keeps_one_invoice(
        self, service, temp_db, global_tariff, sample_start_event, sample_stop_event
    ):
        await service.ingest_event(sample_start_event)
        await service.ingest_event(sample_stop_event)

        first = await service.billing_close(
            {"transaction_id": 42, "meter_start": 1000, "meter_stop": 11000, "idle_minutes": 0}
        )
        second = await service.billing_close(
            {"transaction_id": 42, "meter_start": 1000, "meter_stop": 21000, "idle_minutes": 0}
        )

        assert second["invoice"]["id"] == first["invoice"]["id"]
        assert second["invoice"]["total"] == "45.00"
        async with temp_db.read() as conn:
            count = await InvoiceRepository(conn).count_for_session(first["session"]["id"])
        assert count == 1

    async def test_repeated_close_refreshes_invoice_from_session(
        self, service, global_tariff, sample_start_event, sample_stop_event
    ):
        """A late, earlier Start moves the session start; the replaced invoice follows."""
        await service.ingest_event(sample_start_event)
        await service.ingest_event(sample_stop_event)
        first = await service.billing_close(
            {"transaction_id": 42, "meter_start": 1000, "meter_stop": 21000, "idle_minutes": 0}
        )

        await service.ingest_event(
            {
                **sample_start_event,
                "event_id": "late-earlier-start",
                "id_tag": "TAG-002",
                "timestamp": "2025-03-01T09:30:00Z",
            }
        )
        await service.billing_close(
            {"transaction_id": 42, "meter_start": 1000, "meter_stop": 21000, "idle_minutes": 0}
        )

        session = await service.get_session(42)
        invoice = await service.get_invoice(first["invoice"]["id"])
        assert session["started_at"] == "2025-03-01T09:30:00+00:00"
        assert invoice["started_at"] == session["started_at"]
        assert invoice["id_tag"] == session["id_tag"] == "TAG-002"
        page = await service.list_invoices(
            **{"from": "2025-03-01T09:00:00Z", "to": "2025-03-01T09:45:00Z"}
        )
        assert [item["id"] for item in page["items"]] == [invoice["id"]]

    async def test_close_placeholder_conflicts(self, service, global_tariff, sample_stop_event):
        await service.ingest_event(sample_stop_event)

        with pytest.raises(ConflictError):
            await service.billing_close(
                {"transaction_id": 42, "meter_start": 0, "meter_stop": 100}
            )

    async def test_close_unknown_session(self, service, global_tariff):
        with pytest.raises(SessionNotFoundError):
            await service.billing_close({"transaction_id": 404, "meter_start": 0, "meter_stop": 1})


@pytest.mark.integration
class TestInvoices:
    """Test invoice lookup and listing."""

    async def _close(self, service, transaction_id, charge_box_id, started_at):
        await service.billing_start(
            {
                "transaction_id": transaction_id,
                "charge_box_id": charge_box_id,
                "id_tag": "TAG-001",
                "started_at": started_at,
            }
        )
        return await service.billing_close(
            {
                "transaction_id": transaction_id,
                "meter_start": 0,
                "meter_stop": 1000,
                "stopped_at": started_at + timedelta(hours=1),
                "idle_minutes": 0,
            }
        )

    async def test_get_invoice(self, service, global_tariff):
        closed = await self._close(service, 1, "CB-001", T0)

        invoice = await service.get_invoice(closed["invoice"]["id"])

        assert invoice["transaction_id"] == 1
        assert invoice["total"] == "7.00"

    async def test_list_window_and_filters(self, service, global_tariff):
        await self._close(service, 1, "CB-001", T0)
        await self._close(service, 2, "CB-002", T0 + timedelta(days=1))
        await self._close(service, 3, "CB-001", T0 + timedelta(days=40))

        window = {"from": T0 - timedelta(days=1), "to": T0 + timedelta(days=2)}
        page = await service.list_invoices(**window)
        by_box = await service.list_invoices(**window, charge_box_id="CB-001")

        assert page["count"] == 2
        assert [item["transaction_id"] for item in page["items"]] == [2, 1]
        assert [item["transaction_id"] for item in by_box["items"]] == [1]

    async def test_default_window_is_last_thirty_days(self, service, global_tariff):
        now = datetime.now(UTC)
        await self._close(service, 1, "CB-001", now - timedelta(days=2))
        await self._close(service, 2, "CB-001", now - timedelta(days=45))

        page = await service.list_invoices()

        assert [item["transaction_id"] for item in page["items"]] == [1]
