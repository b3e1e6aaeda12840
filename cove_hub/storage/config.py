"""
Storage configuration for the hub.

Configuration is loaded from environment variables with sensible defaults.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageConfig(BaseSettings):
    """Embedded sqlite store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COVE_HUB_DB_",
        env_file=".env",
        extra="ignore",
    )

    path: Path = Field(
        default=Path("data/hub.db"),
        description="Path of the sqlite database file"
    )
    auto_migrate: bool = Field(
        default=True,
        description="Apply pending schema migrations on open"
    )
    # sqlite busy timeout
    timeout: float = Field(
        default=5.0,
        description="Seconds to wait on a locked database"
    )
    wal: bool = Field(
        default=True,
        description="Use write-ahead logging"
    )
