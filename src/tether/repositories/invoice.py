"""Repository for invoice operations."""

from datetime import datetime

from ..models import Invoice
from .base import BaseRepository, dump_json, load_json, to_decimal


class InvoiceRepository(BaseRepository):
    """Handles database operations for invoices (one per session)."""

    async def upsert(self, invoice: Invoice) -> Invoice:
        """Create the session's invoice, or replace it on a repeated close."""
        query = """
            INSERT INTO invoice (
                session_id, transaction_id, charge_box_id, id_tag, started_at,
                stopped_at, energy_kwh, idle_minutes, total, breakdown, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                charge_box_id = excluded.charge_box_id,
                id_tag = excluded.id_tag,
                started_at = excluded.started_at,
                stopped_at = excluded.stopped_at,
                energy_kwh = excluded.energy_kwh,
                idle_minutes = excluded.idle_minutes,
                total = excluded.total,
                breakdown = excluded.breakdown
            RETURNING id
        """
        rows = await self._fetchall(
            query,
            (
                invoice.session_id,
                invoice.transaction_id,
                invoice.charge_box_id,
                invoice.id_tag,
                invoice.started_at,
                invoice.stopped_at,
                invoice.energy_kwh,
                invoice.idle_minutes,
                invoice.total,
                dump_json(invoice.breakdown),
                invoice.created_at,
            ),
        )
        invoice.id = rows[0]["id"] if rows else None
        return invoice

    async def get_by_id(self, invoice_id: int) -> Invoice | None:
        """Get invoice by database ID."""
        row = await self._fetchone("SELECT * FROM invoice WHERE id = ?", (invoice_id,))
        if row:
            return self._row_to_model(row)
        return None

    async def get_by_session_id(self, session_id: int) -> Invoice | None:
        row = await self._fetchone("SELECT * FROM invoice WHERE session_id = ?", (session_id,))
        if row:
            return self._row_to_model(row)
        return None

    async def count_for_session(self, session_id: int) -> int:
        """Count invoices for a session (0 or 1)."""
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM invoice WHERE session_id = ?", (session_id,)
        )
        return row["n"] if row else 0

    async def search(
        self,
        started_from: datetime,
        started_to: datetime,
        charge_box_id: str | None = None,
        id_tag: str | None = None,
        limit: int = 100,
    ) -> list[Invoice]:
        """List invoices for sessions started inside a window, newest first."""
        rows = await self._fetchall(
            """
            SELECT * FROM invoice
            WHERE started_at >= ? AND started_at < ?
              AND (? IS NULL OR charge_box_id = ?)
              AND (? IS NULL OR id_tag = ?)
            ORDER BY started_at DESC, id DESC
            LIMIT ?
            """,
            (started_from, started_to, charge_box_id, charge_box_id, id_tag, id_tag, limit),
        )
        return [self._row_to_model(row) for row in rows]

    def _row_to_model(self, row) -> Invoice:
        """Convert database row to Invoice model."""
        return Invoice(
            id=row["id"],
            session_id=row["session_id"],
            transaction_id=row["transaction_id"],
            charge_box_id=row["charge_box_id"],
            id_tag=row["id_tag"],
            started_at=row["started_at"],
            stopped_at=row["stopped_at"],
            energy_kwh=to_decimal(row["energy_kwh"]),
            idle_minutes=row["idle_minutes"],
            total=to_decimal(row["total"]),
            breakdown=load_json(row["breakdown"]) or {},
            created_at=row["created_at"],
        )
