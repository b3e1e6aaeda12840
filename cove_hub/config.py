"""
Centralized configuration management using Pydantic Settings.

Configuration is loaded from environment variables with sensible defaults.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .storage.config import StorageConfig


class DriverConfig(BaseSettings):
    """Driver manager time bounds and behavior."""

    model_config = SettingsConfigDict(env_prefix="COVE_HUB_DRIVER_", env_file=".env", extra="ignore")

    pairing_timeout: float = Field(default=5.0, description="Seconds allowed for a pairing handshake")
    connect_timeout: float = Field(default=3.0, description="Seconds allowed for a driver connect")
    disconnect_timeout: float = Field(default=1.0, description="Seconds allowed for a driver disconnect")
    status_timeout: float = Field(default=0.5, description="Seconds allowed for a liveness ping")
    command_timeout: float = Field(default=2.0, description="Seconds allowed for an entity command")
    command_rate_limit: int = Field(default=10, description="Commands accepted per entity per window")
    command_rate_window: float = Field(default=1.0, description="Rate limit window in seconds")
    connect_after_pairing: bool = Field(default=True, description="Connect a device right after it pairs")
    enable_mock_driver: bool = Field(default=False, description="Register the in-process mock driver")


class DaemonConfig(BaseSettings):
    """Hub daemon lifecycle behavior."""

    model_config = SettingsConfigDict(env_prefix="COVE_HUB_DAEMON_", env_file=".env", extra="ignore")

    liveness_interval_seconds: float = Field(default=30.0, description="Interval between liveness checks (0=disabled)")
    auto_reconnect: bool = Field(default=True, description="Reconnect offline or errored devices on liveness checks")
    connect_on_start: bool = Field(default=True, description="Connect paired devices when the daemon starts")
    stop_timeout: float = Field(default=2.0, description="Per-driver disconnect bound during shutdown")
    event_queue_size: int = Field(default=1000, description="Maximum queued events before dropping")
    auto_pair_protocols: list[str] = Field(
        default_factory=list,
        description="Protocols whose discovered devices are paired without credentials",
    )


class DiscoveryConfig(BaseSettings):
    """Network device discovery configuration."""

    model_config = SettingsConfigDict(env_prefix="COVE_HUB_DISCOVERY_", env_file=".env", extra="ignore")

    enabled: bool = Field(default=True, description="Enable device discovery")
    scan_on_startup: bool = Field(default=True, description="Scan network on startup")
    scan_interval_seconds: int = Field(default=300, description="Periodic scan interval (0=disabled)")
    mdns_enabled: bool = Field(default=True, description="Enable mDNS scanning")
    scan_timeout: float = Field(default=5.0, description="Scan timeout in seconds")


class ESPHomeConfig(BaseSettings):
    """ESPHome native API driver configuration."""

    model_config = SettingsConfigDict(env_prefix="COVE_HUB_ESPHOME_", env_file=".env", extra="ignore")

    enabled: bool = Field(default=True, description="Register the ESPHome driver")
    default_port: int = Field(default=6053, description="Native API port")
    client_info: str = Field(default="cove-hub", description="Client name announced to devices")


class MatterConfig(BaseSettings):
    """Matter controller configuration."""

    model_config = SettingsConfigDict(env_prefix="COVE_HUB_MATTER_", env_file=".env", extra="ignore")

    enabled: bool = Field(default=True, description="Register the Matter driver")
    server_url: str = Field(
        default="ws://localhost:5580/ws",
        description="python-matter-server WebSocket URL",
    )
    network_only: bool = Field(default=True, description="Commission over IP only (no BLE)")


class APIConfig(BaseSettings):
    """HTTP API configuration."""

    model_config = SettingsConfigDict(env_prefix="COVE_HUB_API_", env_file=".env", extra="ignore")

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8420, description="Bind port")


class HubSettings(BaseSettings):
    """Hub-wide settings."""

    model_config = SettingsConfigDict(
        env_prefix="COVE_HUB_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # General
    hub_id: Optional[str] = Field(default=None, description="Stable hub identifier (generated when unset)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Nested configs
    storage: StorageConfig = Field(default_factory=StorageConfig)
    driver: DriverConfig = Field(default_factory=DriverConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    esphome: ESPHomeConfig = Field(default_factory=ESPHomeConfig)
    matter: MatterConfig = Field(default_factory=MatterConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the logging level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


# Settings used by the application entry point
settings = HubSettings()
