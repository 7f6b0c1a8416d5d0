"""Database connection and transaction management."""

import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import aiosqlite

from ..errors import StorageError, TransientStorageError

DEFAULT_SCHEMA_PATH = Path(__file__).parent / "sql" / "001_initial.up.sql"


def _adapt_datetime(val: datetime) -> str:
    """Store datetimes as UTC ISO strings with fixed precision so they sort lexically."""
    if val.tzinfo is None:
        val = val.replace(tzinfo=timezone.utc)
    return val.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _convert_datetime(val: bytes) -> datetime:
    """Convert ISO format string from SQLite to an aware UTC datetime."""
    parsed = datetime.fromisoformat(val.decode())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_adapter(Decimal, str)
sqlite3.register_converter("datetime", _convert_datetime)
sqlite3.register_converter("DATETIME", _convert_datetime)

logger = logging.getLogger(__name__)


class Database:
    """
    Storage client shared by every component.

    Each unit of work gets its own short-lived connection and a single
    transaction, so several coroutines (or several processes pointed at the
    same file) can run operations concurrently. SQLite serializes writers:
    ``BEGIN IMMEDIATE`` takes the write lock up front, and a caller that
    cannot get it within ``timeout`` seconds sees a TransientStorageError.
    """

    def __init__(self, db_path: str = "tether.db", timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self.connection: aiosqlite.Connection | None = None

    async def _open(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(
            self.db_path,
            detect_types=sqlite3.PARSE_DECLTYPES,
            timeout=self.timeout,
            isolation_level=None,
        )
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA synchronous=NORMAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        return conn

    async def connect(self) -> aiosqlite.Connection:
        """Open (once) the long-lived administrative connection."""
        if self.connection is None:
            self.connection = await self._open()
            await self.connection.execute("PRAGMA journal_mode=WAL")
        return self.connection

    async def disconnect(self):
        """Close the administrative connection."""
        if self.connection:
            await self.connection.close()
            self.connection = None

    async def initialize_schema(self, schema_path: str | Path | None = None):
        """Create tables from the bundled SQL file unless they already exist."""
        conn = await self.connect()

        cursor = await conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='event'"
        )
        if await cursor.fetchone():
            logger.debug("Database schema already exists, skipping initialization")
            return

        schema_file = Path(schema_path) if schema_path else DEFAULT_SCHEMA_PATH
        if not schema_file.exists():
            raise FileNotFoundError(f"Schema file not found: {schema_file}")

        await conn.executescript(schema_file.read_text())
        logger.info(f"Initialized database schema in {self.db_path}")

    @asynccontextmanager
    async def transaction(self, immediate: bool = True) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a unit of work inside one transaction.

        Commits when the block exits normally and rolls back on any exception,
        so no partial mutation is ever observable. SQLite errors are mapped to
        StorageError (or TransientStorageError for lock timeouts and I/O).
        """
        try:
            conn = await self._open()
        except sqlite3.Error as e:
            raise TransientStorageError(f"Could not open database {self.db_path}: {e}") from e

        try:
            await conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN DEFERRED")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()
        except sqlite3.OperationalError as e:
            raise TransientStorageError(str(e)) from e
        except sqlite3.DatabaseError as e:
            raise StorageError(str(e)) from e
        finally:
            await conn.close()

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        """Read-only unit of work; a deferred transaction gives a consistent snapshot."""
        async with self.transaction(immediate=False) as conn:
            yield conn

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()
