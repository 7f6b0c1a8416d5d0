"""Repository for tariff operations."""

from datetime import datetime

from ..models import ChargingMode, Tariff, TariffScope
from .base import BaseRepository, to_decimal


class TariffRepository(BaseRepository):
    """Handles database operations for versioned tariffs."""

    async def create(self, tariff: Tariff) -> Tariff:
        """Insert a new tariff version."""
        query = """
            INSERT INTO tariff (
                scope, charge_box_id, applies_mode, valid_from, valid_to,
                price_ac_kwh, price_dc_kwh, connection_fee,
                idle_fee_per_minute, idle_grace_minutes, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
        """
        rows = await self._fetchall(
            query,
            (
                tariff.scope.value,
                tariff.charge_box_id,
                tariff.applies_mode.value,
                tariff.valid_from,
                tariff.valid_to,
                tariff.price_ac_kwh,
                tariff.price_dc_kwh,
                tariff.connection_fee,
                tariff.idle_fee_per_minute,
                tariff.idle_grace_minutes,
                tariff.created_at,
            ),
        )
        tariff.id = rows[0]["id"] if rows else None
        return tariff

    async def resolve(
        self, charge_box_id: str | None, mode: ChargingMode, at: datetime
    ) -> Tariff | None:
        """
        Find the tariff in force for a charge box and mode at an instant.

        Charge-box tariffs outrank global ones; among equals the most recently
        created wins.
        """
        row = await self._fetchone(
            """
            SELECT * FROM tariff
            WHERE valid_from <= ?
              AND (valid_to IS NULL OR ? < valid_to)
              AND applies_mode IN (?, 'ANY')
              AND (scope = 'global' OR (scope = 'charge_box' AND charge_box_id = ?))
            ORDER BY
              CASE scope WHEN 'charge_box' THEN 0 ELSE 1 END,
              created_at DESC,
              id DESC
            LIMIT 1
            """,
            (at, at, mode.value, charge_box_id),
        )
        if row:
            return self._row_to_model(row)
        return None

    def _row_to_model(self, row) -> Tariff:
        """Convert database row to Tariff model."""
        return Tariff(
            id=row["id"],
            scope=TariffScope(row["scope"]),
            charge_box_id=row["charge_box_id"],
            applies_mode=ChargingMode(row["applies_mode"]),
            valid_from=row["valid_from"],
            valid_to=row["valid_to"],
            price_ac_kwh=to_decimal(row["price_ac_kwh"]),
            price_dc_kwh=to_decimal(row["price_dc_kwh"]),
            connection_fee=to_decimal(row["connection_fee"]),
            idle_fee_per_minute=to_decimal(row["idle_fee_per_minute"]),
            idle_grace_minutes=row["idle_grace_minutes"],
            created_at=row["created_at"],
        )
