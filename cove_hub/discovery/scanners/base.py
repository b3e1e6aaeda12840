"""
Scanner interface for finding hub devices on the local network.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


@dataclass
class ScanResult:
    """One announced device, before it reaches the registry."""

    host: str
    protocol: str  # hub protocol tag (esphome, matter)

    name: Optional[str] = None
    identifier: Optional[str] = None  # mac or discriminator from the announcement
    port: Optional[int] = None

    # TXT record values, kept as device metadata
    properties: dict[str, str] = field(default_factory=dict)

    def generate_device_id(self) -> str:
        """Device id as ``<protocol>.<slug>``, preferring the announced identifier."""
        if self.identifier:
            return f"{self.protocol}.{_slug(self.identifier)}"
        if self.name:
            return f"{self.protocol}.{_slug(self.name)}"
        return f"{self.protocol}.{self.host.replace('.', '_').replace(':', '_')}"


class BaseScanner(ABC):
    """A discovery mechanism that yields ScanResults."""

    @property
    @abstractmethod
    def protocol_name(self) -> str:
        """Short name used in logs (e.g. 'mdns')."""
        ...

    @abstractmethod
    async def scan(self, timeout: float = 5.0) -> list[ScanResult]:
        """
        Listen for announcements for up to ``timeout`` seconds.

        A scanner that fails raises; the discovery service logs and skips it.
        """
        ...

    async def is_available(self) -> bool:
        """False when the host cannot run this scanner (no multicast, etc.)."""
        return True
