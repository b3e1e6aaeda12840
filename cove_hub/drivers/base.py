"""
Base class for protocol drivers.

A driver owns the connection to one device over one protocol family. The
driver manager creates one instance per device from a registered factory
and bounds every call with a timeout.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from ..capabilities import EntityDescriptor
from ..exceptions import CommandError, DriverConnectionError

if TYPE_CHECKING:
    from ..events import EventBus


@dataclass
class DriverContext:
    """Everything a driver factory needs to build a driver for one device."""

    device_id: str
    host: Optional[str] = None
    port: Optional[int] = None
    credentials: dict[str, Any] = field(default_factory=dict)
    bus: Optional["EventBus"] = None


@dataclass
class PairingResult:
    """Outcome of a successful pairing handshake."""

    # Final device id; None keeps the provisional id
    device_id: Optional[str] = None
    name: Optional[str] = None
    credentials: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    entities: list[EntityDescriptor] = field(default_factory=list)


class ProtocolDriver(ABC):
    """
    Abstract protocol driver.

    Contract:
    - connect() raises DriverConnectionError on network/protocol failure,
      AuthError on bad credentials and AlreadyConnected on a live session
    - disconnect() is idempotent and safe before any connect()
    - is_connected never blocks
    - pair() returns a PairingResult or raises PairingError
    - ping() raises DriverConnectionError when the session is gone
    - send_command() raises CommandError when the device refuses
    """

    protocol: str = ""

    def __init__(self, context: DriverContext):
        self.context = context

    @property
    def device_id(self) -> str:
        return self.context.device_id

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the device session is live."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Open the device session."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the device session."""
        ...

    @abstractmethod
    async def pair(
        self,
        device_id: str,
        credentials: Optional[dict[str, Any]] = None,
    ) -> PairingResult:
        """
        Run the protocol's pairing or commissioning handshake.

        Args:
            device_id: Provisional id of the device being paired
            credentials: Protocol-specific secrets (keys, setup codes)

        Returns:
            PairingResult describing the paired device
        """
        ...

    async def list_entities(self) -> list[EntityDescriptor]:
        """Entities the device currently exposes."""
        return []

    async def ping(self) -> None:
        """
        Confirm the session is still live.

        The default only checks is_connected; drivers that can reach the
        device cheaply should round-trip to it.
        """
        if not self.is_connected:
            raise DriverConnectionError(self.device_id, "session is closed")

    async def send_command(self, key: str, value: Any) -> None:
        """
        Set an entity to ``value``.

        The value has already been validated against the entity's capability.
        """
        raise CommandError(self.device_id, key, f"{self.protocol or 'this'} driver does not accept commands")

    def _publish(self, event: Any) -> None:
        if self.context.bus is not None:
            self.context.bus.publish(event)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.device_id} connected={self.is_connected}>"
