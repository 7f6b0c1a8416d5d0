"""Base repository class."""

import json
from decimal import Decimal
from typing import Any

import aiosqlite


def dump_json(value: Any) -> str | None:
    """Serialize a JSON column value (None stays NULL)."""
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def load_json(value: str | None) -> Any:
    """Deserialize a JSON column value."""
    if value is None or value == "":
        return None
    return json.loads(value)


def to_decimal(value: Any) -> Decimal | None:
    """Read a TEXT money/energy column back as Decimal."""
    if value is None:
        return None
    return Decimal(str(value))


class BaseRepository:
    """
    Base class for all repositories.

    Repositories never commit: they run inside the transaction opened by
    ``Database.transaction()`` for the current unit of work.
    """

    def __init__(self, connection: aiosqlite.Connection):
        self.conn = connection

    async def _execute(self, query: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a query and return the cursor."""
        return await self.conn.execute(query, params)

    async def _fetchone(self, query: str, params: tuple = ()) -> aiosqlite.Row | None:
        """Execute query and fetch one row."""
        cursor = await self.conn.execute(query, params)
        return await cursor.fetchone()

    async def _fetchall(self, query: str, params: tuple = ()) -> list[aiosqlite.Row]:
        """Execute query and fetch all rows."""
        cursor = await self.conn.execute(query, params)
        return list(await cursor.fetchall())
