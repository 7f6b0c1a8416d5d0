"""Exception hierarchy for the orchestration core."""

from typing import Any


class TetherError(Exception):
    """Base exception for all orchestration errors."""

    code = "error"
    retryable = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Render the error the way boundary callers receive it."""
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(TetherError):
    """Malformed input, rejected before any mutation."""

    code = "invalid_payload"


class NotFoundError(TetherError):
    """A referenced entity does not exist."""

    code = "not_found"


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"


class CommandNotFoundError(NotFoundError):
    code = "command_not_found"


class TariffNotFoundError(NotFoundError):
    code = "tariff_not_found"


class InvoiceNotFoundError(NotFoundError):
    code = "invoice_not_found"


class EventNotFoundError(NotFoundError):
    code = "event_not_found"


class ConflictError(TetherError):
    """The operation contradicts current state (e.g. session already stopped)."""

    code = "conflict"


class StorageError(TetherError):
    """Non-transient storage fault, such as a constraint unrelated to deduplication."""

    code = "storage_error"


class TransientStorageError(StorageError):
    """Connectivity loss or lock timeout. Safe to retry."""

    code = "transient_storage_error"
    retryable = True


class InternalError(TetherError):
    """Unexpected failure."""

    code = "internal_error"
