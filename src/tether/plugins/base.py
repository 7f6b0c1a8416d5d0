"""Base plugin infrastructure for the orchestrator service."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..service import OrchestratorService

logger = logging.getLogger(__name__)


class PluginHook(str, Enum):
    """
    Available plugin hooks in the orchestration lifecycle.

    Every hook fires after the operation's transaction has committed, so a
    plugin only ever observes durable state. Hook failures are logged and
    never change the operation's result.
    """

    # Ingestion hooks
    AFTER_EVENT_INGESTED = "after_event_ingested"
    AFTER_DUPLICATE_EVENT = "after_duplicate_event"

    # Session hooks
    AFTER_SESSION_STARTED = "after_session_started"
    AFTER_SESSION_STOPPED = "after_session_stopped"

    # Command hooks
    AFTER_COMMAND_CREATED = "after_command_created"
    AFTER_COMMAND_DUPLICATE = "after_command_duplicate"
    AFTER_COMMAND_TRANSITION = "after_command_transition"
    AFTER_COMMAND_COMPLETED = "after_command_completed"

    # Billing hooks
    AFTER_BILLING_STARTED = "after_billing_started"
    AFTER_SESSION_CLOSED = "after_session_closed"
    AFTER_TARIFF_CREATED = "after_tariff_created"


@dataclass
class PluginContext:
    """
    Context provided to plugin hooks.

    Contains:
    - service: the OrchestratorService that ran the operation
    - hook: the hook being executed
    - data: the validated input of the operation
    - result: the response returned to the caller
    """

    service: "OrchestratorService"
    hook: PluginHook
    data: dict[str, Any] = field(default_factory=dict)
    result: Any = None


class OrchestratorPlugin(ABC):
    """
    Base class for orchestrator plugins.

    To create a plugin, subclass OrchestratorPlugin, return a mapping of hooks
    to method names from ``hooks()``, and implement each method as a coroutine
    taking a PluginContext.

    Example:
        class SessionLogger(OrchestratorPlugin):
            def hooks(self) -> dict[PluginHook, str]:
                return {PluginHook.AFTER_SESSION_CLOSED: "on_closed"}

            async def on_closed(self, context: PluginContext):
                logger.info(f"Invoice {context.result['invoice']['id']} written")
    """

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    def hooks(self) -> dict[PluginHook, str]:
        """
        Return a mapping of hooks to handler method names.

        Returns:
            Dictionary mapping PluginHook enum values to method names on this class.
        """

    async def initialize(self, service: "OrchestratorService"):
        """Called once when the service starts."""
        _ = service

    async def cleanup(self, service: "OrchestratorService"):
        """Called when the service shuts down."""
        _ = service
