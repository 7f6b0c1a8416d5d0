"""Plugin for structured audit logging to Fluentd."""

import asyncio
from typing import Any

from fluent import sender

from .base import OrchestratorPlugin, PluginContext, PluginHook

AUDIT_TAGS: dict[PluginHook, str] = {
    PluginHook.AFTER_EVENT_INGESTED: "event.ingested",
    PluginHook.AFTER_DUPLICATE_EVENT: "event.duplicate",
    PluginHook.AFTER_SESSION_STARTED: "session.started",
    PluginHook.AFTER_SESSION_STOPPED: "session.stopped",
    PluginHook.AFTER_COMMAND_CREATED: "command.created",
    PluginHook.AFTER_COMMAND_DUPLICATE: "command.duplicate",
    PluginHook.AFTER_COMMAND_TRANSITION: "command.transition",
    PluginHook.AFTER_COMMAND_COMPLETED: "command.completed",
    PluginHook.AFTER_BILLING_STARTED: "billing.started",
    PluginHook.AFTER_SESSION_CLOSED: "session.closed",
    PluginHook.AFTER_TARIFF_CREATED: "tariff.created",
}


class FluentdAuditPlugin(OrchestratorPlugin):
    """
    Sends a structured audit trail of orchestration facts to Fluentd.

    Every committed operation that changes state (event stored, session
    started or stopped, command created or advanced, invoice written, tariff
    published) becomes one record under ``<tag_prefix>.<tag>``.

    Example log entry (tag ``tether.command.completed``):
    {
        "type": "audit",
        "hook": "after_command_completed",
        "input": {"type": "StopTransaction", "transaction_id": 42},
        "result": {"command_id": 7, "status": "completed"}
    }
    """

    def __init__(
        self,
        tag_prefix: str = "tether",
        host: str = "localhost",
        port: int = 24224,
        timeout: float = 3.0,
        buffer_overflow_handler: Any = None,
        nanosecond_precision: bool = False,
    ):
        """
        Initialize the Fluentd audit plugin.

        Args:
            tag_prefix: Prefix for Fluentd tags (default: "tether")
            host: Fluentd server hostname (default: "localhost")
            port: Fluentd server port (default: 24224)
            timeout: Connection timeout in seconds (default: 3.0)
            buffer_overflow_handler: Handler for buffer overflow (default: None)
            nanosecond_precision: Use nanosecond precision timestamps (default: False)
        """
        super().__init__()
        self.tag_prefix = tag_prefix
        self.host = host
        self.port = port
        self.timeout = timeout
        self.buffer_overflow_handler = buffer_overflow_handler
        self.nanosecond_precision = nanosecond_precision
        self.sender = None

    def hooks(self) -> dict[PluginHook, str]:
        return {hook: "audit" for hook in AUDIT_TAGS}

    async def initialize(self, service):
        """Create the Fluentd sender when the service starts."""
        try:
            self.sender = sender.FluentSender(
                self.tag_prefix,
                host=self.host,
                port=self.port,
                timeout=self.timeout,
                buffer_overflow_handler=self.buffer_overflow_handler,
                nanosecond_precision=self.nanosecond_precision,
            )
        except Exception as e:
            self.logger.error(f"Failed to initialize Fluentd sender: {e}", exc_info=True)
            self.sender = None

    async def cleanup(self, service):
        """Close the Fluentd sender when the service shuts down."""
        if self.sender:
            try:
                await asyncio.to_thread(self.sender.close)
            except Exception as e:
                self.logger.error(f"Error closing Fluentd sender: {e}", exc_info=True)
            self.sender = None

    async def _send_event(self, tag: str, data: dict):
        """Send one record to Fluentd without blocking the event loop."""
        if not self.sender:
            return

        try:
            await asyncio.to_thread(self.sender.emit, tag, data)
        except Exception as e:
            self.logger.error(f"Failed to send event to Fluentd (tag={tag}): {e}")

    async def audit(self, context: PluginContext):
        """Record one committed operation."""
        tag = AUDIT_TAGS.get(context.hook)
        if tag is None:
            return
        await self._send_event(
            tag,
            {
                "type": "audit",
                "hook": context.hook.value,
                "input": context.data,
                "result": context.result,
            },
        )
