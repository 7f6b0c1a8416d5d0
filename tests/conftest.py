"""Pytest configuration and fixtures."""

import tempfile
from pathlib import Path

import pytest

from tether.database import Database
from tether.service import OrchestratorService


@pytest.fixture
async def temp_db():
    """Create a temporary SQLite database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        db_path = tmp.name

    # Initialize database with schema
    db = Database(db_path)
    await db.initialize_schema()

    yield db

    # Cleanup
    await db.disconnect()
    for suffix in ("", "-wal", "-shm"):
        Path(db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
async def db_connection(temp_db):
    """Provide a database connection for testing."""
    async with temp_db.transaction() as conn:
        yield conn


@pytest.fixture
async def service(temp_db):
    """Orchestrator service over the temporary database."""
    return OrchestratorService(temp_db)


@pytest.fixture
def global_tariff_body():
    """Global tariff: 2.00/kWh AC, 3.00/kWh DC, 5.00 connection fee, 0.50/min idle after 10 min."""
    return {
        "scope": {"type": "global"},
        "valid_from": "2024-01-01T00:00:00Z",
        "applies_mode": "ANY",
        "price_ac_kwh": "2.00",
        "price_dc_kwh": "3.00",
        "connection_fee": "5.00",
        "idle_fee_per_minute": "0.50",
        "idle_grace_minutes": 10,
    }


@pytest.fixture
async def global_tariff(service, global_tariff_body):
    """A published global tariff."""
    return await service.create_tariff(global_tariff_body)


@pytest.fixture
def sample_start_event():
    """StartTransaction event as delivered by the station gateway."""
    return {
        "type": "StartTransaction",
        "transaction_id": 42,
        "charge_box_id": "CB-001",
        "connector_id": 1,
        "id_tag": "TAG-001",
        "timestamp": "2025-03-01T10:00:00Z",
        "payload": {"meterStart": 1000, "connectorId": 1, "idTag": "TAG-001"},
    }


@pytest.fixture
def sample_stop_event():
    """StopTransaction event for the sample start."""
    return {
        "type": "StopTransaction",
        "transaction_id": 42,
        "charge_box_id": "CB-001",
        "reason": "Local",
        "timestamp": "2025-03-01T11:00:00Z",
        "payload": {"meterStop": 21000},
    }
