"""Plugin framework for extending the orchestrator service."""

from .base import OrchestratorPlugin, PluginContext, PluginHook
from .fluentd_audit import FluentdAuditPlugin
from .prometheus_metrics import PrometheusMetricsPlugin

__all__ = [
    "FluentdAuditPlugin",
    "OrchestratorPlugin",
    "PluginContext",
    "PluginHook",
    "PrometheusMetricsPlugin",
]
