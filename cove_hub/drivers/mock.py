"""
Mock protocol driver for development and testing.

Simulates a device without any network I/O. Delays and failures are
configurable so timeouts and error paths can be exercised.
"""

import asyncio
import logging
from typing import Any, Optional

from ..capabilities import BrightnessCapability, EntityDescriptor, NumericCapability, OnOffCapability
from ..events import DeviceStatusChanged, EntityStateChanged
from ..exceptions import AlreadyConnected, DriverConnectionError, PairingError
from ..storage.models import DeviceStatus
from .base import DriverContext, PairingResult, ProtocolDriver

logger = logging.getLogger("cove.hub.drivers.mock")


def default_entities() -> list[EntityDescriptor]:
    return [
        EntityDescriptor(key="power", name="Power", capability=OnOffCapability(), value=False),
        EntityDescriptor(
            key="level",
            name="Level",
            unit="%",
            capability=BrightnessCapability(unit="%", min=0, max=100),
            value=0,
        ),
        EntityDescriptor(
            key="temperature",
            name="Temperature",
            unit="°C",
            capability=NumericCapability(unit="°C", precision=1),
        ),
    ]


class MockDriver(ProtocolDriver):
    """
    Mock driver for exercising the manager and daemon.

    Tracks call counts and the peak number of concurrent calls.
    """

    protocol = "mock"

    def __init__(
        self,
        context: DriverContext,
        connect_delay: float = 0.0,
        pair_delay: float = 0.0,
        connect_error: Optional[Exception] = None,
        pair_error: Optional[Exception] = None,
        entities: Optional[list[EntityDescriptor]] = None,
    ):
        super().__init__(context)
        self.connect_delay = connect_delay
        self.pair_delay = pair_delay
        self.connect_error = connect_error
        self.pair_error = pair_error
        self.entities = entities if entities is not None else default_entities()
        self.command_delay = 0.0
        self.command_error: Optional[Exception] = None
        self.ping_delay = 0.0
        self.commands: list[tuple[str, Any]] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.pair_calls = 0
        self.ping_calls = 0
        self.active_calls = 0
        self.max_active_calls = 0
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def _enter(self, delay: float) -> None:
        self.active_calls += 1
        self.max_active_calls = max(self.max_active_calls, self.active_calls)
        try:
            if delay:
                await asyncio.sleep(delay)
        finally:
            self.active_calls -= 1

    async def connect(self) -> None:
        self.connect_calls += 1
        if self._connected:
            raise AlreadyConnected(self.device_id)
        await self._enter(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True
        logger.info("Mock device %s connected", self.device_id)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    async def pair(
        self,
        device_id: str,
        credentials: Optional[dict[str, Any]] = None,
    ) -> PairingResult:
        self.pair_calls += 1
        await self._enter(self.pair_delay)
        if self.pair_error is not None:
            raise self.pair_error
        credentials = dict(credentials or {})
        if credentials.get("reject"):
            raise PairingError(str(credentials["reject"]), device_id)
        return PairingResult(
            name=credentials.get("name"),
            credentials=credentials,
            metadata={"mock": True},
            entities=list(self.entities),
        )

    async def list_entities(self) -> list[EntityDescriptor]:
        return list(self.entities)

    async def ping(self) -> None:
        self.ping_calls += 1
        if not self._connected:
            raise DriverConnectionError(self.device_id, "session is closed")
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)

    async def send_command(self, key: str, value: Any) -> None:
        if not self._connected:
            raise DriverConnectionError(self.device_id, "session is closed")
        await self._enter(self.command_delay)
        if self.command_error is not None:
            raise self.command_error
        self.commands.append((key, value))

    def simulate_drop(self, error: str = "connection lost") -> None:
        """Pretend the device went away and report it on the bus."""
        self._connected = False
        self._publish(DeviceStatusChanged(self.device_id, DeviceStatus.OFFLINE, error))

    def simulate_value(self, key: str, value: Any, unit: Optional[str] = None) -> None:
        self._publish(EntityStateChanged(self.device_id, key, value, unit))
