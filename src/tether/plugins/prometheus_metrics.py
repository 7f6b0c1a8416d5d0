"""Plugin for Prometheus metrics instrumentation."""

import time

from prometheus_client import Counter, Gauge

from .base import OrchestratorPlugin, PluginContext, PluginHook


class PrometheusMetricsPlugin(OrchestratorPlugin):
    """
    Exposes Prometheus metrics for the orchestration core.

    This plugin tracks:
    - Ingested and duplicate events per type
    - Session starts, stops and closes, with delivered energy and revenue
    - Command creation, idempotent replays and completions

    Metrics live in the default prometheus_client registry. Use
    prometheus_client.start_http_server() or generate_latest() to expose them.
    """

    # Class-level metrics (shared across all plugin instances)

    tether_up = Gauge(
        "tether_up",
        "1 if the orchestrator service is running, 0 otherwise",
    )

    tether_events_total = Counter(
        "tether_events_total",
        "Events accepted for storage",
        labelnames=["event_type"],
    )

    tether_events_duplicate_total = Counter(
        "tether_events_duplicate_total",
        "Events rejected as duplicates",
        labelnames=["event_type"],
    )

    tether_last_event_ts = Gauge(
        "tether_last_event_ts",
        "Unix timestamp of the last accepted event",
        labelnames=["charge_box_id"],
    )

    tether_sessions_started_total = Counter(
        "tether_sessions_started_total",
        "Sessions started",
        labelnames=["charge_box_id"],
    )

    tether_sessions_stopped_total = Counter(
        "tether_sessions_stopped_total",
        "Sessions stopped",
        labelnames=["charge_box_id"],
    )

    tether_sessions_closed_total = Counter(
        "tether_sessions_closed_total",
        "Sessions closed with an invoice",
        labelnames=["charge_box_id"],
    )

    tether_energy_kwh_total = Counter(
        "tether_energy_kwh_total",
        "Energy billed at session close (kWh)",
        labelnames=["charge_box_id"],
    )

    tether_revenue_total = Counter(
        "tether_revenue_total",
        "Revenue billed at session close",
        labelnames=["charge_box_id"],
    )

    tether_commands_total = Counter(
        "tether_commands_total",
        "Commands created",
        labelnames=["command_type"],
    )

    tether_commands_duplicate_total = Counter(
        "tether_commands_duplicate_total",
        "Command requests answered with an existing open command",
        labelnames=["command_type"],
    )

    tether_commands_completed_total = Counter(
        "tether_commands_completed_total",
        "Commands completed by an ingested event",
        labelnames=["command_type"],
    )

    def __init__(self):
        super().__init__()
        self.tether_up.set(1)

    def hooks(self) -> dict[PluginHook, str]:
        return {
            PluginHook.AFTER_EVENT_INGESTED: "after_event_ingested",
            PluginHook.AFTER_DUPLICATE_EVENT: "after_duplicate_event",
            PluginHook.AFTER_SESSION_STARTED: "after_session_started",
            PluginHook.AFTER_SESSION_STOPPED: "after_session_stopped",
            PluginHook.AFTER_SESSION_CLOSED: "after_session_closed",
            PluginHook.AFTER_COMMAND_CREATED: "after_command_created",
            PluginHook.AFTER_COMMAND_DUPLICATE: "after_command_duplicate",
            PluginHook.AFTER_COMMAND_COMPLETED: "after_command_completed",
        }

    async def cleanup(self, service):
        self.tether_up.set(0)

    @staticmethod
    def _label(value) -> str:
        return str(value) if value is not None else "unknown"

    async def after_event_ingested(self, context: PluginContext):
        self.tether_events_total.labels(event_type=context.data.get("type", "unknown")).inc()
        charge_box_id = context.data.get("charge_box_id")
        if charge_box_id:
            self.tether_last_event_ts.labels(charge_box_id=charge_box_id).set(time.time())

    async def after_duplicate_event(self, context: PluginContext):
        self.tether_events_duplicate_total.labels(
            event_type=context.data.get("type", "unknown")
        ).inc()

    async def after_session_started(self, context: PluginContext):
        cb = self._label(context.result.get("charge_box_id"))
        self.tether_sessions_started_total.labels(charge_box_id=cb).inc()

    async def after_session_stopped(self, context: PluginContext):
        cb = self._label(context.result.get("charge_box_id"))
        self.tether_sessions_stopped_total.labels(charge_box_id=cb).inc()

    async def after_session_closed(self, context: PluginContext):
        """Track closes and accumulate energy and revenue."""
        session = context.result.get("session", {})
        invoice = context.result.get("invoice", {})
        cb = self._label(session.get("charge_box_id"))

        self.tether_sessions_closed_total.labels(charge_box_id=cb).inc()
        try:
            energy = float(invoice.get("energy_kwh") or 0)
            total = float(invoice.get("total") or 0)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Error reading close totals for metrics: {e}")
            return
        self.tether_energy_kwh_total.labels(charge_box_id=cb).inc(energy)
        self.tether_revenue_total.labels(charge_box_id=cb).inc(total)

    async def after_command_created(self, context: PluginContext):
        command_type = self._label(context.result.get("command_type"))
        self.tether_commands_total.labels(command_type=command_type).inc()

    async def after_command_duplicate(self, context: PluginContext):
        command_type = self._label(context.result.get("command_type"))
        self.tether_commands_duplicate_total.labels(command_type=command_type).inc()

    async def after_command_completed(self, context: PluginContext):
        command_type = self._label(context.result.get("command_type"))
        self.tether_commands_completed_total.labels(command_type=command_type).inc()
