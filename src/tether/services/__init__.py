"""Domain components: session tracking, commands, tariffs and billing."""

from .base import Component
from .billing import (
    BillingCalculator,
    BillingEstimate,
    CloseResult,
    TariffPreview,
    TariffResolver,
    compute_cost,
)
from .commands import CommandOrchestrator, CommandResult, CompletionResult
from .idle import IDLE_STATUSES, idle_minutes_from_transitions
from .sessions import SessionTracker

__all__ = [
    "IDLE_STATUSES",
    "BillingCalculator",
    "BillingEstimate",
    "CloseResult",
    "CommandOrchestrator",
    "CommandResult",
    "CompletionResult",
    "Component",
    "SessionTracker",
    "TariffPreview",
    "TariffResolver",
    "compute_cost",
    "idle_minutes_from_transitions",
]
