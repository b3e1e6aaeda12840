"""
Storage module for the hub.

Provides the embedded sqlite store for devices and entities.
"""

from .config import StorageConfig
from .database import Database
from .exceptions import (
    DatabaseOperationError,
    DatabaseUnavailableError,
    SchemaMismatch,
    StorageError,
)
from .models import Device, DevicePatch, DeviceStatus, Entity
from .repositories import DeviceRepository

__all__ = [
    # Config
    "StorageConfig",
    # Database
    "Database",
    # Models
    "Device",
    "DevicePatch",
    "DeviceStatus",
    "Entity",
    # Repositories
    "DeviceRepository",
    # Exceptions
    "StorageError",
    "DatabaseUnavailableError",
    "DatabaseOperationError",
    "SchemaMismatch",
]
