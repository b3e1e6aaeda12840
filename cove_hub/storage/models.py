"""
Data models for hub storage.

Devices and entities are plain dataclasses; the registry keeps one copy of
each in memory and mirrors every change to sqlite.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from ..capabilities import Capability, dump_capability


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceStatus(str, Enum):
    """Lifecycle status of a device."""
    DISCOVERED = "discovered"
    PAIRING = "pairing"
    PAIRED = "paired"
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"
    REMOVED = "removed"


@dataclass
class Device:
    """A physical device known to the hub."""

    id: str
    protocol: str
    name: str
    status: DeviceStatus = DeviceStatus.DISCOVERED
    host: Optional[str] = None
    port: Optional[int] = None
    credentials: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    last_error: Optional[str] = None
    paired_at: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_paired(self) -> bool:
        return self.paired_at is not None

    @property
    def is_removed(self) -> bool:
        return self.status == DeviceStatus.REMOVED

    def to_dict(self) -> dict[str, Any]:
        """Public view of the device. Credentials are never included."""
        return {
            "id": self.id,
            "protocol": self.protocol,
            "name": self.name,
            "status": self.status.value,
            "host": self.host,
            "port": self.port,
            "paired": self.is_paired,
            "metadata": self.metadata,
            "last_error": self.last_error,
            "paired_at": self.paired_at.isoformat() if self.paired_at else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DevicePatch:
    """
    Partial device record for DeviceRegistry.upsert.

    Fields left as None are preserved from the stored record. ``protocol``
    is required when the device does not exist yet.
    """

    id: str
    protocol: Optional[str] = None
    name: Optional[str] = None
    status: Optional[DeviceStatus] = None
    host: Optional[str] = None
    port: Optional[int] = None
    credentials: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    paired_at: Optional[datetime] = None


@dataclass
class Entity:
    """One capability-bearing facet of a device."""

    device_id: str
    key: str
    capability: Capability
    name: Optional[str] = None
    value: Any = None
    unit: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return f"{self.device_id}:{self.key}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "key": self.key,
            "name": self.name,
            "capability": dump_capability(self.capability),
            "value": self.value,
            "unit": self.unit,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
