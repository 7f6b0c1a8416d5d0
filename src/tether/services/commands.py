"""Outbound command lifecycle with idempotent creation."""

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from ..errors import CommandNotFoundError, ConflictError, SessionNotFoundError, StorageError
from ..logging_utils import log_domain_event
from ..models import (
    ALLOWED_TRANSITIONS,
    Command,
    CommandStatus,
    CommandTransition,
    CommandType,
)
from ..repositories import CommandRepository, SessionRepository
from ..schemas import CommandFilter, RemoteStartRequest, RemoteStopRequest
from .base import Component


def remote_start_key(charge_box_id: str, id_tag: str, connector_id: int | None) -> str:
    return f"RemoteStart|cb:{charge_box_id}|tag:{id_tag}|conn:{connector_id or 0}"


def remote_stop_key(transaction_id: int) -> str:
    return f"RemoteStop|tx:{transaction_id}"


@dataclass(frozen=True)
class CommandResult:
    command: Command
    idempotent_duplicate: bool = False


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of an auto-completion attempt triggered by an ingested event."""

    completed: bool
    command_id: int | None = None
    reason: str = "completed"


class CommandOrchestrator(Component):
    """
    Creates, deduplicates and advances remote start/stop commands.

    Lifecycle: pending -> sent -> accepted|rejected -> completed. Creation
    is a find-or-create inside one write transaction, and the partial unique
    index on open idempotency keys backs it up across processes, so callers
    sharing a key never both insert.
    """

    def __init__(self, db, requested_by: str = "api"):
        super().__init__(db)
        self.requested_by = requested_by

    async def issue_remote_start(
        self, request: RemoteStartRequest, requested_by: str | None = None
    ) -> CommandResult:
        key = remote_start_key(request.charge_box_id, request.id_tag, request.connector_id)
        payload: dict[str, Any] = {
            "chargeBoxId": request.charge_box_id,
            "idTag": request.id_tag,
        }
        if request.connector_id is not None:
            payload["connectorId"] = request.connector_id
        if request.reservation_id is not None:
            payload["reservationId"] = request.reservation_id

        async def build(_conn: aiosqlite.Connection, now: datetime) -> Command:
            return Command(
                command_type=CommandType.REMOTE_START,
                charge_box_id=request.charge_box_id,
                idempotency_key=key,
                payload=payload,
                requested_by=requested_by or self.requested_by,
                created_at=now,
                updated_at=now,
            )

        return await self._find_or_create(key, build)

    async def issue_remote_stop(
        self, request: RemoteStopRequest, requested_by: str | None = None
    ) -> CommandResult:
        transaction_id = request.transaction_id
        key = remote_stop_key(transaction_id)

        async def build(conn: aiosqlite.Connection, now: datetime) -> Command:
            session = await SessionRepository(conn).get_by_transaction_id(transaction_id)
            if session is None:
                raise SessionNotFoundError(
                    f"Session for transaction {transaction_id} not found",
                    transaction_id=transaction_id,
                )
            if session.stopped_at is not None:
                raise ConflictError(
                    f"Session for transaction {transaction_id} is already stopped",
                    transaction_id=transaction_id,
                )
            return Command(
                command_type=CommandType.REMOTE_STOP,
                charge_box_id=session.charge_box_id,
                transaction_id=transaction_id,
                idempotency_key=key,
                payload={"transactionId": transaction_id},
                session_id=session.id,
                requested_by=requested_by or self.requested_by,
                created_at=now,
                updated_at=now,
            )

        return await self._find_or_create(key, build, check_first=True)

    async def _find_or_create(self, key: str, build, check_first: bool = False) -> CommandResult:
        """
        Return the open command for ``key`` or create a new one in ``sent``.

        ``build`` receives the transaction's connection and may raise to
        refuse creation. With ``check_first`` it runs before the duplicate
        lookup, so precondition failures win over idempotent replays.
        """
        now = datetime.now(UTC)
        try:
            async with self.db.transaction() as conn:
                repo = CommandRepository(conn)
                command = await build(conn, now) if check_first else None

                existing = await repo.find_open_by_key(key)
                if existing is not None:
                    log_domain_event(
                        self.logger,
                        "command_duplicate",
                        command_id=existing.id,
                        idempotency_key=key,
                        status=existing.status.value,
                    )
                    return CommandResult(existing, idempotent_duplicate=True)

                if command is None:
                    command = await build(conn, now)
                command = await repo.create(command)
                await repo.transition(command.id, CommandStatus.PENDING, CommandStatus.SENT, now)
                command.status = CommandStatus.SENT
        except StorageError as e:
            if not isinstance(e.__cause__, sqlite3.IntegrityError):
                raise
            # Another writer committed an open command for this key first
            async with self.db.read() as conn:
                winner = await CommandRepository(conn).find_open_by_key(key)
            if winner is None:
                raise
            return CommandResult(winner, idempotent_duplicate=True)

        log_domain_event(
            self.logger,
            "command_created",
            command_id=command.id,
            command_type=command.command_type.value,
            idempotency_key=key,
            charge_box_id=command.charge_box_id,
            transaction_id=command.transaction_id,
        )
        return CommandResult(command)

    async def transition(
        self,
        command_id: int,
        to_status: CommandStatus,
        response: dict[str, Any] | None = None,
        conn: aiosqlite.Connection | None = None,
    ) -> Command:
        """Move a command to ``to_status``; illegal transitions raise ConflictError."""
        now = datetime.now(UTC)
        async with self._unit_of_work(conn) as uow:
            repo = CommandRepository(uow)
            command = await repo.get_by_id(command_id)
            if command is None:
                raise CommandNotFoundError(f"Command {command_id} not found", command_id=command_id)
            if command.is_terminal:
                raise ConflictError(
                    f"Command {command_id} is already {command.status.value}",
                    command_id=command_id,
                    status=command.status.value,
                )
            if to_status not in ALLOWED_TRANSITIONS[command.status]:
                raise ConflictError(
                    f"Command {command_id} cannot move from {command.status.value} "
                    f"to {to_status.value}",
                    command_id=command_id,
                    status=command.status.value,
                )
            if not await repo.transition(command_id, command.status, to_status, now, response):
                raise ConflictError(
                    f"Command {command_id} changed concurrently", command_id=command_id
                )
            updated = await repo.get_by_id(command_id)

        log_domain_event(
            self.logger,
            "command_transitioned",
            command_id=command_id,
            from_status=command.status.value,
            to_status=to_status.value,
        )
        return updated

    async def record_dispatch_result(
        self, command_id: int, accepted: bool, response: dict[str, Any] | None = None
    ) -> Command:
        """Apply the dispatch channel's verdict: sent -> accepted or rejected."""
        target = CommandStatus.ACCEPTED if accepted else CommandStatus.REJECTED
        current = await self.get(command_id)
        if current.status == target:
            return current
        return await self.transition(command_id, target, response=response)

    async def complete_remote_stop(
        self,
        transaction_id: int,
        response: dict[str, Any] | None = None,
        conn: aiosqlite.Connection | None = None,
    ) -> CompletionResult:
        async with self._unit_of_work(conn) as uow:
            repo = CommandRepository(uow)
            command = await repo.find_open_stop(transaction_id)
            result = await self._claim_completion(repo, command, response)

        self._log_completion(result, CommandType.REMOTE_STOP, transaction_id=transaction_id)
        return result

    async def complete_remote_start(
        self,
        charge_box_id: str,
        id_tag: str,
        response: dict[str, Any] | None = None,
        conn: aiosqlite.Connection | None = None,
    ) -> CompletionResult:
        async with self._unit_of_work(conn) as uow:
            repo = CommandRepository(uow)
            command = await repo.find_open_start(charge_box_id, id_tag)
            result = await self._claim_completion(repo, command, response)

        self._log_completion(
            result, CommandType.REMOTE_START, charge_box_id=charge_box_id, id_tag=id_tag
        )
        return result

    async def _claim_completion(
        self,
        repo: CommandRepository,
        command: Command | None,
        response: dict[str, Any] | None,
    ) -> CompletionResult:
        """Try to claim ``command`` for completion; losing the claim is a no-op."""
        if command is None:
            return CompletionResult(completed=False, reason="no_open_command")
        if CommandStatus.COMPLETED not in ALLOWED_TRANSITIONS[command.status]:
            return CompletionResult(
                completed=False,
                command_id=command.id,
                reason=f"not_completable_from_{command.status.value}",
            )
        claimed = await repo.transition(
            command.id,
            command.status,
            CommandStatus.COMPLETED,
            datetime.now(UTC),
            response,
        )
        if not claimed:
            return CompletionResult(
                completed=False, command_id=command.id, reason="already_claimed"
            )
        return CompletionResult(completed=True, command_id=command.id)

    def _log_completion(self, result: CompletionResult, command_type: CommandType, **fields):
        if result.completed:
            log_domain_event(
                self.logger,
                "command_completed",
                command_id=result.command_id,
                command_type=command_type.value,
                **fields,
            )
        else:
            log_domain_event(
                self.logger,
                "command_completion_skipped",
                command_id=result.command_id,
                command_type=command_type.value,
                reason=result.reason,
                **fields,
            )

    async def get(self, command_id: int, conn: aiosqlite.Connection | None = None) -> Command:
        async with self._reading(conn) as uow:
            command = await CommandRepository(uow).get_by_id(command_id)
        if command is None:
            raise CommandNotFoundError(f"Command {command_id} not found", command_id=command_id)
        return command

    async def search(self, criteria: CommandFilter) -> list[Command]:
        async with self._reading() as uow:
            return await CommandRepository(uow).search(
                transaction_id=criteria.transaction_id,
                charge_box_id=criteria.charge_box_id,
                status=criteria.status,
                limit=criteria.limit or 100,
            )

    async def history(self, command_id: int) -> list[CommandTransition]:
        async with self._reading() as uow:
            repo = CommandRepository(uow)
            if await repo.get_by_id(command_id) is None:
                raise CommandNotFoundError(f"Command {command_id} not found", command_id=command_id)
            return await repo.history(command_id)
