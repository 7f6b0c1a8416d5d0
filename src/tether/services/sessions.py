"""Session state derived from transaction Start/Stop events."""

from datetime import UTC, datetime

import aiosqlite

from ..errors import SessionNotFoundError
from ..logging_utils import log_domain_event
from ..models import (
    ChargingMode,
    NormalizedEvent,
    Session,
    StartTransactionEvent,
    StopTransactionEvent,
)
from ..repositories import SessionRepository
from ..schemas import SessionFilter
from .base import Component


class SessionTracker(Component):
    """
    Maintains one session record per transaction id.

    Both transitions are commutative: Start keeps the earliest start time and
    Stop keeps the first stop, so replayed or reordered deliveries converge on
    the same row. A Stop for an unknown transaction creates a placeholder
    session that a later Start completes.
    """

    async def apply(
        self, event: NormalizedEvent, conn: aiosqlite.Connection | None = None
    ) -> Session | None:
        """Apply a lifecycle event; other event kinds leave sessions untouched."""
        if event.transaction_id is None:
            return None
        if isinstance(event, StartTransactionEvent):
            return await self.on_start(
                event.transaction_id,
                started_at=event.timestamp,
                charge_box_id=event.charge_box_id,
                id_tag=event.id_tag,
                connector_id=event.connector_id,
                mode=ChargingMode(event.mode) if event.mode in ("AC", "DC") else None,
                conn=conn,
            )
        if isinstance(event, StopTransactionEvent):
            return await self.on_stop(
                event.transaction_id,
                stopped_at=event.timestamp,
                stop_reason=event.reason,
                charge_box_id=event.charge_box_id,
                id_tag=event.id_tag,
                conn=conn,
            )
        return None

    async def on_start(
        self,
        transaction_id: int,
        started_at: datetime | None = None,
        charge_box_id: str | None = None,
        id_tag: str | None = None,
        connector_id: int | None = None,
        mode: ChargingMode | None = None,
        conn: aiosqlite.Connection | None = None,
    ) -> Session:
        now = datetime.now(UTC)
        async with self._unit_of_work(conn) as uow:
            repo = SessionRepository(uow)
            before = await repo.get_by_transaction_id(transaction_id)
            session = await repo.upsert_start(
                transaction_id,
                started_at=started_at or now,
                now=now,
                charge_box_id=charge_box_id,
                id_tag=id_tag,
                connector_id=connector_id,
                mode=mode,
            )

        if before is None:
            log_domain_event(
                self.logger,
                "session_started",
                transaction_id=transaction_id,
                charge_box_id=session.charge_box_id,
                started_at=session.started_at,
            )
        elif before.pending_start:
            log_domain_event(
                self.logger,
                "session_placeholder_completed",
                transaction_id=transaction_id,
                started_at=session.started_at,
            )
        return session

    async def on_stop(
        self,
        transaction_id: int,
        stopped_at: datetime | None = None,
        stop_reason: str | None = None,
        charge_box_id: str | None = None,
        id_tag: str | None = None,
        conn: aiosqlite.Connection | None = None,
    ) -> Session:
        now = datetime.now(UTC)
        async with self._unit_of_work(conn) as uow:
            repo = SessionRepository(uow)
            before = await repo.get_by_transaction_id(transaction_id)
            session = await repo.upsert_stop(
                transaction_id,
                stopped_at=stopped_at or now,
                now=now,
                stop_reason=stop_reason,
                charge_box_id=charge_box_id,
                id_tag=id_tag,
            )

        if before is None:
            log_domain_event(
                self.logger,
                "session_placeholder_created",
                transaction_id=transaction_id,
                stopped_at=session.stopped_at,
            )
        elif before.stopped_at is None:
            log_domain_event(
                self.logger,
                "session_stopped",
                transaction_id=transaction_id,
                stopped_at=session.stopped_at,
                stop_reason=session.stop_reason,
            )
        else:
            self.logger.debug(f"Ignoring repeated stop for transaction {transaction_id}")
        return session

    async def find(
        self, transaction_id: int, conn: aiosqlite.Connection | None = None
    ) -> Session | None:
        async with self._reading(conn) as uow:
            return await SessionRepository(uow).get_by_transaction_id(transaction_id)

    async def get(self, transaction_id: int, conn: aiosqlite.Connection | None = None) -> Session:
        session = await self.find(transaction_id, conn=conn)
        if session is None:
            raise SessionNotFoundError(
                f"Session for transaction {transaction_id} not found",
                transaction_id=transaction_id,
            )
        return session

    async def search(self, criteria: SessionFilter) -> list[Session]:
        async with self._reading() as uow:
            return await SessionRepository(uow).search(
                charge_box_id=criteria.charge_box_id,
                id_tag=criteria.id_tag,
                transaction_id=criteria.transaction_id,
                status=criteria.status,
                started_from=criteria.from_,
                started_to=criteria.to,
                limit=criteria.limit,
                offset=criteria.offset,
                ascending=criteria.sort == "asc",
            )
