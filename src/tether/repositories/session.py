"""Repository for charging session operations."""

from datetime import datetime
from decimal import Decimal

from ..models import ChargingMode, PricingSnapshot, Session, SessionStatus
from .base import BaseRepository, dump_json, load_json, to_decimal


class SessionRepository(BaseRepository):
    """Handles database operations for sessions (one row per transaction id)."""

    async def upsert_start(
        self,
        transaction_id: int,
        started_at: datetime,
        now: datetime,
        charge_box_id: str | None = None,
        id_tag: str | None = None,
        connector_id: int | None = None,
        mode: ChargingMode | None = None,
    ) -> Session:
        """
        Record a start for a transaction.

        The earliest start ever observed is kept (a placeholder's NULL is
        filled in); descriptive fields follow the latest call when provided.
        """
        mode_value = mode.value if mode else None
        query = """
            INSERT INTO session (
                transaction_id, charge_box_id, id_tag, connector_id, mode,
                started_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, COALESCE(?, 'AC'), ?, ?, ?)
            ON CONFLICT(transaction_id) DO UPDATE SET
                charge_box_id = COALESCE(excluded.charge_box_id, session.charge_box_id),
                id_tag = COALESCE(excluded.id_tag, session.id_tag),
                connector_id = COALESCE(excluded.connector_id, session.connector_id),
                mode = COALESCE(?, session.mode),
                started_at = CASE
                    WHEN session.started_at IS NULL THEN excluded.started_at
                    WHEN excluded.started_at < session.started_at THEN excluded.started_at
                    ELSE session.started_at
                END,
                updated_at = excluded.updated_at
        """
        await self._execute(
            query,
            (
                transaction_id,
                charge_box_id,
                id_tag,
                connector_id,
                mode_value,
                started_at,
                now,
                now,
                mode_value,
            ),
        )
        return await self.get_by_transaction_id(transaction_id)

    async def upsert_stop(
        self,
        transaction_id: int,
        stopped_at: datetime,
        now: datetime,
        stop_reason: str | None = None,
        charge_box_id: str | None = None,
        id_tag: str | None = None,
    ) -> Session:
        """
        Record a stop for a transaction.

        The first stop wins: an already-stopped session keeps its values. An
        unknown transaction gets a placeholder row with no start time.
        """
        query = """
            INSERT INTO session (
                transaction_id, charge_box_id, id_tag, started_at, stopped_at,
                stop_reason, created_at, updated_at
            ) VALUES (?, ?, ?, NULL, ?, ?, ?, ?)
            ON CONFLICT(transaction_id) DO UPDATE SET
                stop_reason = CASE
                    WHEN session.stopped_at IS NULL THEN excluded.stop_reason
                    ELSE session.stop_reason
                END,
                stopped_at = COALESCE(session.stopped_at, excluded.stopped_at),
                charge_box_id = COALESCE(session.charge_box_id, excluded.charge_box_id),
                id_tag = COALESCE(session.id_tag, excluded.id_tag),
                updated_at = CASE
                    WHEN session.stopped_at IS NULL THEN excluded.updated_at
                    ELSE session.updated_at
                END
        """
        await self._execute(
            query,
            (transaction_id, charge_box_id, id_tag, stopped_at, stop_reason, now, now),
        )
        return await self.get_by_transaction_id(transaction_id)

    async def set_pricing_snapshot_if_absent(
        self, session_id: int, snapshot: PricingSnapshot, now: datetime
    ) -> bool:
        """Attach a pricing snapshot unless one is already captured."""
        cursor = await self._execute(
            """
            UPDATE session
            SET pricing_snapshot = ?, updated_at = ?
            WHERE id = ? AND pricing_snapshot IS NULL
            """,
            (dump_json(snapshot.to_dict()), now, session_id),
        )
        return cursor.rowcount == 1

    async def record_totals(
        self,
        session_id: int,
        stopped_at: datetime,
        energy_kwh: Decimal,
        revenue: Decimal,
        idle_minutes: int,
        now: datetime,
        default_stop_reason: str = "Remote",
    ):
        """Persist close-out totals; an existing stop time and reason are kept."""
        await self._execute(
            """
            UPDATE session
            SET stopped_at = COALESCE(stopped_at, ?),
                stop_reason = COALESCE(stop_reason, ?),
                energy_kwh = ?,
                revenue = ?,
                idle_minutes = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (stopped_at, default_stop_reason, energy_kwh, revenue, idle_minutes, now, session_id),
        )

    async def get_by_id(self, session_id: int) -> Session | None:
        """Get session by database ID."""
        row = await self._fetchone("SELECT * FROM session WHERE id = ?", (session_id,))
        if row:
            return self._row_to_model(row)
        return None

    async def get_by_transaction_id(self, transaction_id: int) -> Session | None:
        """Get session by transaction ID."""
        row = await self._fetchone(
            "SELECT * FROM session WHERE transaction_id = ?", (transaction_id,)
        )
        if row:
            return self._row_to_model(row)
        return None

    async def search(
        self,
        charge_box_id: str | None = None,
        id_tag: str | None = None,
        transaction_id: int | None = None,
        status: SessionStatus | None = None,
        started_from: datetime | None = None,
        started_to: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
        ascending: bool = False,
    ) -> list[Session]:
        """Filter sessions, ordered by start time."""
        where: list[str] = []
        params: list = []

        if charge_box_id is not None:
            where.append("charge_box_id = ?")
            params.append(charge_box_id)
        if id_tag is not None:
            where.append("id_tag = ?")
            params.append(id_tag)
        if transaction_id is not None:
            where.append("transaction_id = ?")
            params.append(transaction_id)
        if status == SessionStatus.ACTIVE:
            where.append("stopped_at IS NULL")
        elif status == SessionStatus.COMPLETED:
            where.append("stopped_at IS NOT NULL")
        if started_from is not None:
            where.append("started_at >= ?")
            params.append(started_from)
        if started_to is not None:
            where.append("started_at < ?")
            params.append(started_to)

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        order = "ASC" if ascending else "DESC"
        rows = await self._fetchall(
            f"""
            SELECT * FROM session
            {where_sql}
            ORDER BY started_at {order}, id {order}
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        return [self._row_to_model(row) for row in rows]

    def _row_to_model(self, row) -> Session:
        """Convert database row to Session model."""
        snapshot = load_json(row["pricing_snapshot"])
        return Session(
            id=row["id"],
            transaction_id=row["transaction_id"],
            charge_box_id=row["charge_box_id"],
            id_tag=row["id_tag"],
            connector_id=row["connector_id"],
            mode=ChargingMode(row["mode"]),
            started_at=row["started_at"],
            stopped_at=row["stopped_at"],
            stop_reason=row["stop_reason"],
            pricing_snapshot=PricingSnapshot.from_dict(snapshot) if snapshot else None,
            energy_kwh=to_decimal(row["energy_kwh"]),
            revenue=to_decimal(row["revenue"]),
            idle_minutes=row["idle_minutes"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
