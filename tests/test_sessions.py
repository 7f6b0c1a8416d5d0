"""Tests for the session state machine."""

from datetime import UTC, datetime, timedelta

import pytest

from tether.errors import SessionNotFoundError
from tether.models import ChargingMode, SessionStatus
from tether.schemas import SessionFilter, parse
from tether.services import SessionTracker

T0 = datetime(2025, 3, 1, 10, 0, tzinfo=UTC)


@pytest.mark.integration
class TestSessionTransitions:
    """Test Start/Stop transitions and their ordering guarantees."""

    async def test_start_creates_active_session(self, temp_db):
        tracker = SessionTracker(temp_db)

        session = await tracker.on_start(
            42, started_at=T0, charge_box_id="CB-001", id_tag="TAG-001", connector_id=1
        )

        assert session.transaction_id == 42
        assert session.status == SessionStatus.ACTIVE
        assert session.started_at == T0
        assert session.stopped_at is None
        assert session.mode == ChargingMode.AC
        assert session.duration_seconds(now=T0 + timedelta(minutes=5)) == 300

    async def test_stop_completes_session(self, temp_db):
        tracker = SessionTracker(temp_db)
        await tracker.on_start(42, started_at=T0, charge_box_id="CB-001")

        session = await tracker.on_stop(42, stopped_at=T0 + timedelta(hours=1), stop_reason="Local")

        assert session.status == SessionStatus.COMPLETED
        assert session.stop_reason == "Local"
        assert session.duration_seconds() == 3600

    async def test_repeated_start_keeps_earliest(self, temp_db):
        """A later Start never overwrites the start time; an earlier one does."""
        tracker = SessionTracker(temp_db)
        await tracker.on_start(42, started_at=T0, charge_box_id="CB-001")

        later = await tracker.on_start(42, started_at=T0 + timedelta(minutes=5))
        earlier = await tracker.on_start(42, started_at=T0 - timedelta(minutes=5))

        assert later.started_at == T0
        assert earlier.started_at == T0 - timedelta(minutes=5)

    async def test_start_refreshes_descriptive_fields(self, temp_db):
        tracker = SessionTracker(temp_db)
        await tracker.on_start(42, started_at=T0, charge_box_id="CB-001", id_tag="OLD")

        session = await tracker.on_start(
            42, started_at=T0, id_tag="NEW", connector_id=2, mode=ChargingMode.DC
        )

        assert session.charge_box_id == "CB-001"
        assert session.id_tag == "NEW"
        assert session.connector_id == 2
        assert session.mode == ChargingMode.DC

    async def test_first_stop_wins(self, temp_db):
        tracker = SessionTracker(temp_db)
        await tracker.on_start(42, started_at=T0)
        await tracker.on_stop(42, stopped_at=T0 + timedelta(hours=1), stop_reason="Local")

        session = await tracker.on_stop(
            42, stopped_at=T0 + timedelta(hours=2), stop_reason="Remote"
        )

        assert session.stopped_at == T0 + timedelta(hours=1)
        assert session.stop_reason == "Local"

    async def test_stop_before_start_creates_placeholder(self, temp_db):
        """A Stop for an unknown transaction creates a placeholder without a start."""
        tracker = SessionTracker(temp_db)

        placeholder = await tracker.on_stop(
            42, stopped_at=T0 + timedelta(hours=1), stop_reason="Local", charge_box_id="CB-001"
        )

        assert placeholder.pending_start is True
        assert placeholder.started_at is None
        assert placeholder.status == SessionStatus.COMPLETED
        assert placeholder.duration_seconds() is None

        session = await tracker.on_start(42, started_at=T0, id_tag="TAG-001")

        assert session.pending_start is False
        assert session.started_at == T0
        assert session.stopped_at == T0 + timedelta(hours=1)
        assert session.stop_reason == "Local"
        assert session.id_tag == "TAG-001"
        assert session.duration_seconds() == 3600

    async def test_any_arrival_order_converges(self, temp_db):
        """Stop-before-Start and duplicated Starts end in the same state."""
        in_order = SessionTracker(temp_db)
        await in_order.on_start(1, started_at=T0)
        await in_order.on_start(1, started_at=T0 + timedelta(minutes=1))
        await in_order.on_stop(1, stopped_at=T0 + timedelta(hours=1))
        await in_order.on_stop(1, stopped_at=T0 + timedelta(hours=2))

        reordered = SessionTracker(temp_db)
        await reordered.on_stop(2, stopped_at=T0 + timedelta(hours=1))
        await reordered.on_start(2, started_at=T0 + timedelta(minutes=1))
        await reordered.on_stop(2, stopped_at=T0 + timedelta(hours=2))
        await reordered.on_start(2, started_at=T0)

        first = await in_order.get(1)
        second = await reordered.get(2)
        assert (first.started_at, first.stopped_at) == (second.started_at, second.stopped_at)

    async def test_get_missing_session(self, temp_db):
        with pytest.raises(SessionNotFoundError) as exc_info:
            await SessionTracker(temp_db).get(404)

        assert exc_info.value.code == "session_not_found"


@pytest.mark.integration
class TestSessionSearch:
    """Test session listing filters."""

    async def _seed(self, tracker):
        await tracker.on_start(1, started_at=T0, charge_box_id="CB-001", id_tag="A")
        await tracker.on_start(2, started_at=T0 + timedelta(hours=1), charge_box_id="CB-001")
        await tracker.on_start(3, started_at=T0 + timedelta(hours=2), charge_box_id="CB-002")
        await tracker.on_stop(1, stopped_at=T0 + timedelta(minutes=30))

    async def test_filter_by_status(self, temp_db):
        tracker = SessionTracker(temp_db)
        await self._seed(tracker)

        active = await tracker.search(parse(SessionFilter, {"status": "active"}))
        completed = await tracker.search(parse(SessionFilter, {"status": "completed"}))

        assert [s.transaction_id for s in active] == [3, 2]
        assert [s.transaction_id for s in completed] == [1]

    async def test_filter_by_charge_box_and_sort(self, temp_db):
        tracker = SessionTracker(temp_db)
        await self._seed(tracker)

        sessions = await tracker.search(
            parse(SessionFilter, {"charge_box_id": "CB-001", "sort": "asc"})
        )

        assert [s.transaction_id for s in sessions] == [1, 2]

    async def test_time_window_and_paging(self, temp_db):
        tracker = SessionTracker(temp_db)
        await self._seed(tracker)

        window = await tracker.search(
            parse(
                SessionFilter,
                {"from": T0 + timedelta(minutes=30), "to": T0 + timedelta(hours=3)},
            )
        )
        page = await tracker.search(parse(SessionFilter, {"limit": 1, "offset": 1}))

        assert [s.transaction_id for s in window] == [3, 2]
        assert [s.transaction_id for s in page] == [2]

    async def test_limit_is_clamped(self):
        assert parse(SessionFilter, {"limit": 5000}).limit == 500
        assert parse(SessionFilter, {"limit": 0}).limit == 1
        assert parse(SessionFilter, {}).limit == 50
