"""Repository for command operations."""

from datetime import datetime
from typing import Any

from ..models import (
    OPEN_COMMAND_STATUSES,
    Command,
    CommandStatus,
    CommandTransition,
    CommandType,
)
from .base import BaseRepository, dump_json, load_json

_OPEN_PLACEHOLDERS = ", ".join("?" for _ in OPEN_COMMAND_STATUSES)
_OPEN_VALUES = tuple(status.value for status in OPEN_COMMAND_STATUSES)


class CommandRepository(BaseRepository):
    """Handles database operations for commands and their status history."""

    async def create(self, command: Command) -> Command:
        """Insert a new command row and its initial history entry."""
        query = """
            INSERT INTO command (
                command_type, charge_box_id, transaction_id, idempotency_key,
                status, payload, response, session_id, requested_by,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
        """
        rows = await self._fetchall(
            query,
            (
                command.command_type.value,
                command.charge_box_id,
                command.transaction_id,
                command.idempotency_key,
                command.status.value,
                dump_json(command.payload or {}),
                dump_json(command.response),
                command.session_id,
                command.requested_by,
                command.created_at,
                command.updated_at,
            ),
        )
        command.id = rows[0]["id"] if rows else None
        await self._add_history(command.id, None, command.status, None, command.created_at)
        return command

    async def transition(
        self,
        command_id: int,
        from_status: CommandStatus,
        to_status: CommandStatus,
        now: datetime,
        response: dict[str, Any] | None = None,
    ) -> bool:
        """
        Move a command from ``from_status`` to ``to_status``.

        The update is guarded by the expected current status, so it acts as
        an exclusive claim: it returns False (and changes nothing) when
        another caller already moved the command.
        """
        cursor = await self._execute(
            """
            UPDATE command
            SET status = ?,
                response = COALESCE(?, response),
                updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (to_status.value, dump_json(response), now, command_id, from_status.value),
        )
        if cursor.rowcount != 1:
            return False
        await self._add_history(command_id, from_status, to_status, response, now)
        return True

    async def find_open_by_key(self, idempotency_key: str) -> Command | None:
        """Get the newest non-terminal command for an idempotency key."""
        row = await self._fetchone(
            f"""
            SELECT * FROM command
            WHERE idempotency_key = ? AND status IN ({_OPEN_PLACEHOLDERS})
            ORDER BY id DESC
            LIMIT 1
            """,
            (idempotency_key, *_OPEN_VALUES),
        )
        if row:
            return self._row_to_model(row)
        return None

    async def find_open_stop(self, transaction_id: int) -> Command | None:
        """Get the newest non-terminal RemoteStop for a transaction."""
        row = await self._fetchone(
            f"""
            SELECT * FROM command
            WHERE command_type = ? AND transaction_id = ?
              AND status IN ({_OPEN_PLACEHOLDERS})
            ORDER BY id DESC
            LIMIT 1
            """,
            (CommandType.REMOTE_STOP.value, transaction_id, *_OPEN_VALUES),
        )
        if row:
            return self._row_to_model(row)
        return None

    async def find_open_start(self, charge_box_id: str, id_tag: str) -> Command | None:
        """Get the newest non-terminal RemoteStart for a charge box and id tag."""
        row = await self._fetchone(
            f"""
            SELECT * FROM command
            WHERE command_type = ? AND charge_box_id = ?
              AND json_extract(payload, '$.idTag') = ?
              AND status IN ({_OPEN_PLACEHOLDERS})
            ORDER BY id DESC
            LIMIT 1
            """,
            (CommandType.REMOTE_START.value, charge_box_id, id_tag, *_OPEN_VALUES),
        )
        if row:
            return self._row_to_model(row)
        return None

    async def get_by_id(self, command_id: int) -> Command | None:
        """Get command by database ID."""
        row = await self._fetchone("SELECT * FROM command WHERE id = ?", (command_id,))
        if row:
            return self._row_to_model(row)
        return None

    async def count_by_key(self, idempotency_key: str) -> int:
        """Count commands ever created for an idempotency key, open or not."""
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM command WHERE idempotency_key = ?", (idempotency_key,)
        )
        return row["n"] if row else 0

    async def search(
        self,
        transaction_id: int | None = None,
        charge_box_id: str | None = None,
        status: CommandStatus | None = None,
        limit: int = 100,
    ) -> list[Command]:
        """Filter commands, newest first."""
        where: list[str] = []
        params: list = []
        if transaction_id is not None:
            where.append("transaction_id = ?")
            params.append(transaction_id)
        if charge_box_id is not None:
            where.append("charge_box_id = ?")
            params.append(charge_box_id)
        if status is not None:
            where.append("status = ?")
            params.append(status.value)

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        rows = await self._fetchall(
            f"""
            SELECT * FROM command
            {where_sql}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (*params, limit),
        )
        return [self._row_to_model(row) for row in rows]

    async def history(self, command_id: int) -> list[CommandTransition]:
        """Get a command's status history, oldest first."""
        rows = await self._fetchall(
            "SELECT * FROM command_status_history WHERE command_id = ? ORDER BY id ASC",
            (command_id,),
        )
        return [
            CommandTransition(
                id=row["id"],
                command_id=row["command_id"],
                from_status=CommandStatus(row["from_status"]) if row["from_status"] else None,
                to_status=CommandStatus(row["to_status"]),
                response=load_json(row["response"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def _add_history(
        self,
        command_id: int,
        from_status: CommandStatus | None,
        to_status: CommandStatus,
        response: dict[str, Any] | None,
        now: datetime,
    ):
        await self._execute(
            """
            INSERT INTO command_status_history (
                command_id, from_status, to_status, response, created_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (
                command_id,
                from_status.value if from_status else None,
                to_status.value,
                dump_json(response),
                now,
            ),
        )

    def _row_to_model(self, row) -> Command:
        """Convert database row to Command model."""
        return Command(
            id=row["id"],
            command_type=CommandType(row["command_type"]),
            charge_box_id=row["charge_box_id"],
            transaction_id=row["transaction_id"],
            idempotency_key=row["idempotency_key"],
            status=CommandStatus(row["status"]),
            payload=load_json(row["payload"]) or {},
            response=load_json(row["response"]),
            session_id=row["session_id"],
            requested_by=row["requested_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
