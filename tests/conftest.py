"""
Shared fixtures for hub tests.

Every test gets its own sqlite file under tmp_path.
"""

import pytest
import pytest_asyncio

from cove_hub.config import (
    DaemonConfig,
    DiscoveryConfig,
    DriverConfig,
    HubSettings,
)
from cove_hub.drivers import DriverRegistry
from cove_hub.drivers.mock import MockDriver
from cove_hub.registry import DeviceRegistry
from cove_hub.storage import Database, DeviceRepository, StorageConfig


@pytest.fixture
def storage_config(tmp_path):
    return StorageConfig(path=tmp_path / "hub.db")


@pytest_asyncio.fixture
async def db(storage_config):
    database = Database(storage_config)
    await database.initialize()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def registry(db):
    reg = DeviceRegistry(DeviceRepository(db))
    await reg.load()
    return reg


@pytest.fixture
def driver_config():
    return DriverConfig(
        pairing_timeout=0.5,
        connect_timeout=0.2,
        disconnect_timeout=0.2,
        connect_after_pairing=False,
    )


@pytest.fixture
def mock_registry():
    """Driver registry with only the in-memory mock driver."""
    drivers = DriverRegistry()
    drivers.register("mock", MockDriver)
    return drivers


@pytest.fixture
def hub_settings(storage_config, driver_config):
    """Settings for a daemon that never touches the network."""
    return HubSettings(
        hub_id="hub-test",
        storage=storage_config,
        driver=driver_config,
        daemon=DaemonConfig(liveness_interval_seconds=0, connect_on_start=False, stop_timeout=0.5),
        discovery=DiscoveryConfig(enabled=False),
    )
