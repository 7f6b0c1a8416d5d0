"""Tests for the Prometheus metrics plugin."""

from datetime import UTC, datetime

import pytest
from prometheus_client import REGISTRY

from tether.plugins import PrometheusMetricsPlugin
from tether.service import OrchestratorService


def get_metric_value(metric, labels):
    """Helper to get current value of a metric with specific labels."""
    for sample in metric.collect()[0].samples:
        if sample.labels == labels and not sample.name.endswith("_created"):
            return sample.value
    return None


def value_or_zero(metric, labels):
    return get_metric_value(metric, labels) or 0.0


@pytest.fixture
async def metered_service(temp_db):
    plugin = PrometheusMetricsPlugin()
    service = OrchestratorService(temp_db, plugins=[plugin])
    await service.start()
    yield service, plugin
    await service.stop()


@pytest.mark.integration
class TestPrometheusMetricsPlugin:
    """Test the Prometheus metrics plugin.

    Metrics are process-wide, so assertions compare values before and after.
    """

    async def test_plugin_initialization(self, metered_service):
        """Test that the service is reported as up."""
        _, plugin = metered_service

        samples = list(plugin.tether_up.collect()[0].samples)
        assert len(samples) > 0
        assert samples[0].value == 1.0

    async def test_cleanup_marks_down(self, temp_db):
        plugin = PrometheusMetricsPlugin()
        service = OrchestratorService(temp_db, plugins=[plugin])

        await service.start()
        await service.stop()

        assert get_metric_value(plugin.tether_up, {}) == 0.0

    async def test_event_tracking(self, metered_service, sample_stop_event):
        """Test that accepted and duplicate events are counted per type."""
        service, plugin = metered_service
        labels = {"event_type": "StopTransaction"}
        accepted_before = value_or_zero(plugin.tether_events_total, labels)
        duplicate_before = value_or_zero(plugin.tether_events_duplicate_total, labels)

        await service.ingest_event(sample_stop_event)
        await service.ingest_event(sample_stop_event)

        assert value_or_zero(plugin.tether_events_total, labels) == accepted_before + 1
        assert (
            value_or_zero(plugin.tether_events_duplicate_total, labels) == duplicate_before + 1
        )
        last_seen = get_metric_value(plugin.tether_last_event_ts, {"charge_box_id": "CB-001"})
        assert last_seen is not None
        assert last_seen > 0

    async def test_session_tracking(self, metered_service, sample_start_event, sample_stop_event):
        service, plugin = metered_service
        labels = {"charge_box_id": "CB-001"}
        started_before = value_or_zero(plugin.tether_sessions_started_total, labels)
        stopped_before = value_or_zero(plugin.tether_sessions_stopped_total, labels)

        await service.ingest_event(sample_start_event)
        await service.ingest_event(sample_stop_event)

        assert value_or_zero(plugin.tether_sessions_started_total, labels) == started_before + 1
        assert value_or_zero(plugin.tether_sessions_stopped_total, labels) == stopped_before + 1

    async def test_close_tracks_energy_and_revenue(
        self, metered_service, global_tariff_body, sample_start_event
    ):
        service, plugin = metered_service
        labels = {"charge_box_id": "CB-001"}
        closed_before = value_or_zero(plugin.tether_sessions_closed_total, labels)
        energy_before = value_or_zero(plugin.tether_energy_kwh_total, labels)
        revenue_before = value_or_zero(plugin.tether_revenue_total, labels)

        await service.create_tariff(global_tariff_body)
        await service.ingest_event(sample_start_event)
        await service.billing_close(
            {
                "transaction_id": 42,
                "meter_start": 1000,
                "meter_stop": 21000,
                "stopped_at": datetime(2025, 3, 1, 11, 0, tzinfo=UTC),
                "idle_minutes": 15,
            }
        )

        assert value_or_zero(plugin.tether_sessions_closed_total, labels) == closed_before + 1
        assert value_or_zero(plugin.tether_energy_kwh_total, labels) == pytest.approx(
            energy_before + 20.0
        )
        assert value_or_zero(plugin.tether_revenue_total, labels) == pytest.approx(
            revenue_before + 47.5
        )

    async def test_command_tracking(
        self, metered_service, sample_start_event, sample_stop_event
    ):
        service, plugin = metered_service
        labels = {"command_type": "RemoteStop"}
        created_before = value_or_zero(plugin.tether_commands_total, labels)
        duplicate_before = value_or_zero(plugin.tether_commands_duplicate_total, labels)
        completed_before = value_or_zero(plugin.tether_commands_completed_total, labels)

        await service.ingest_event(sample_start_event)
        await service.remote_stop({"transaction_id": 42})
        await service.remote_stop({"transaction_id": 42})
        await service.ingest_event(sample_stop_event)

        assert value_or_zero(plugin.tether_commands_total, labels) == created_before + 1
        assert (
            value_or_zero(plugin.tether_commands_duplicate_total, labels) == duplicate_before + 1
        )
        assert (
            value_or_zero(plugin.tether_commands_completed_total, labels) == completed_before + 1
        )

    async def test_metrics_exposed_in_registry(self, metered_service):
        """Test that metrics are registered with the default registry."""
        names = {metric.name for metric in REGISTRY.collect()}

        assert "tether_up" in names
        assert "tether_events" in names
        assert "tether_commands_completed" in names
