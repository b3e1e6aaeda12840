"""
Tests for settings loading from the environment.
"""

import pytest
from pydantic import ValidationError

from cove_hub.config import DaemonConfig, DriverConfig, HubSettings
from cove_hub.drivers import default_driver_registry


class TestSettings:
    """Environment variables override defaults."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("COVE_HUB_LOG_LEVEL", raising=False)
        settings = HubSettings(_env_file=None)

        assert settings.log_level == "INFO"
        assert settings.driver.pairing_timeout == 5.0
        assert settings.daemon.auto_pair_protocols == []
        assert settings.esphome.default_port == 6053

    def test_component_env_prefix(self, monkeypatch):
        monkeypatch.setenv("COVE_HUB_DRIVER_CONNECT_TIMEOUT", "1.5")
        monkeypatch.setenv("COVE_HUB_DAEMON_AUTO_PAIR_PROTOCOLS", '["esphome"]')

        assert DriverConfig(_env_file=None).connect_timeout == 1.5
        assert DaemonConfig(_env_file=None).auto_pair_protocols == ["esphome"]

    def test_log_level_normalized(self):
        assert HubSettings(_env_file=None, log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            HubSettings(_env_file=None, log_level="chatty")


class TestDefaultDrivers:
    """Driver factories follow the enabled protocols."""

    def test_default_protocols(self):
        drivers = default_driver_registry(HubSettings(_env_file=None))
        assert drivers.protocols == ["esphome", "matter"]

    def test_mock_and_disabled(self):
        settings = HubSettings(_env_file=None)
        settings.matter.enabled = False
        settings.driver.enable_mock_driver = True

        assert default_driver_registry(settings).protocols == ["esphome", "mock"]
