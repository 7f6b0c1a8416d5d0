"""Repository for the append-only event log."""

from datetime import datetime

from ..models import Event
from .base import BaseRepository, dump_json, load_json


class EventRepository(BaseRepository):
    """Handles database operations for telemetry events."""

    async def insert_if_absent(self, event: Event) -> int | None:
        """
        Insert an event unless its dedup key is already stored.

        Returns the new row id, or None when the key was a duplicate.
        """
        query = """
            INSERT INTO event (
                source, event_type, payload, charge_box_id, connector_id,
                transaction_id, id_tag, dedup_key, occurred_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(dedup_key) DO NOTHING
            RETURNING id
        """
        rows = await self._fetchall(
            query,
            (
                event.source,
                event.event_type,
                dump_json(event.payload or {}),
                event.charge_box_id,
                event.connector_id,
                event.transaction_id,
                event.id_tag,
                event.dedup_key,
                event.occurred_at,
                event.created_at,
            ),
        )
        return rows[0]["id"] if rows else None

    async def get_by_id(self, event_id: int) -> Event | None:
        """Get event by database ID."""
        row = await self._fetchone("SELECT * FROM event WHERE id = ?", (event_id,))
        if row:
            return self._row_to_model(row)
        return None

    async def get_by_dedup_key(self, dedup_key: str) -> Event | None:
        """Get the event stored under a dedup key."""
        row = await self._fetchone("SELECT * FROM event WHERE dedup_key = ?", (dedup_key,))
        if row:
            return self._row_to_model(row)
        return None

    async def count_by_dedup_key(self, dedup_key: str) -> int:
        """Count stored events for a dedup key (0 or 1)."""
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM event WHERE dedup_key = ?", (dedup_key,)
        )
        return row["n"] if row else 0

    async def first_for_transaction(self, transaction_id: int, event_type: str) -> Event | None:
        """Get the earliest stored event of a type for a transaction."""
        row = await self._fetchone(
            """
            SELECT * FROM event
            WHERE transaction_id = ? AND event_type = ?
            ORDER BY id ASC
            LIMIT 1
            """,
            (transaction_id, event_type),
        )
        if row:
            return self._row_to_model(row)
        return None

    async def status_history(
        self,
        charge_box_id: str,
        connector_id: int | None,
        until: datetime,
    ) -> list[Event]:
        """
        Get StatusNotification events for a connector up to ``until``, oldest first.

        With no connector, all connectors of the charge box are considered.
        """
        params: list = [charge_box_id, until]
        connector_clause = ""
        if connector_id is not None:
            connector_clause = "AND connector_id = ?"
            params.append(connector_id)

        rows = await self._fetchall(
            f"""
            SELECT * FROM event
            WHERE event_type = 'StatusNotification'
              AND charge_box_id = ?
              AND occurred_at <= ?
              {connector_clause}
            ORDER BY occurred_at ASC, id ASC
            """,
            tuple(params),
        )
        return [self._row_to_model(row) for row in rows]

    async def search(
        self,
        event_type: str | None = None,
        charge_box_id: str | None = None,
        connector_id: int | None = None,
        transaction_id: int | None = None,
        id_tag: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
        ascending: bool = False,
    ) -> list[Event]:
        """Filter the event log."""
        where: list[str] = []
        params: list = []

        for column, value in (
            ("event_type", event_type),
            ("charge_box_id", charge_box_id),
            ("connector_id", connector_id),
            ("transaction_id", transaction_id),
            ("id_tag", id_tag),
        ):
            if value is not None:
                where.append(f"{column} = ?")
                params.append(value)
        if created_from is not None:
            where.append("created_at >= ?")
            params.append(created_from)
        if created_to is not None:
            where.append("created_at < ?")
            params.append(created_to)

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        order = "ASC" if ascending else "DESC"
        rows = await self._fetchall(
            f"""
            SELECT * FROM event
            {where_sql}
            ORDER BY created_at {order}, id {order}
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        return [self._row_to_model(row) for row in rows]

    def _row_to_model(self, row) -> Event:
        """Convert database row to Event model."""
        return Event(
            id=row["id"],
            source=row["source"],
            event_type=row["event_type"],
            payload=load_json(row["payload"]) or {},
            charge_box_id=row["charge_box_id"],
            connector_id=row["connector_id"],
            transaction_id=row["transaction_id"],
            id_tag=row["id_tag"],
            dedup_key=row["dedup_key"],
            occurred_at=row["occurred_at"],
            created_at=row["created_at"],
        )
