"""
Protocol tag to driver factory map.

Populated explicitly at startup; there is no module scanning.
"""

import logging
from typing import Callable, Optional

from ..exceptions import UnsupportedProtocol
from .base import DriverContext, ProtocolDriver

logger = logging.getLogger("cove.hub.drivers.registry")

DriverFactory = Callable[[DriverContext], ProtocolDriver]


class DriverRegistry:
    """Maps protocol tags such as 'esphome' to driver factories."""

    def __init__(self) -> None:
        self._factories: dict[str, DriverFactory] = {}

    def register(self, protocol: str, factory: DriverFactory) -> None:
        """Register a factory for a protocol tag."""
        if protocol in self._factories:
            logger.warning("Overwriting driver factory: %s", protocol)
        self._factories[protocol] = factory
        logger.info("Registered driver factory: %s", protocol)

    def unregister(self, protocol: str) -> bool:
        if protocol in self._factories:
            del self._factories[protocol]
            return True
        return False

    def get(self, protocol: str) -> Optional[DriverFactory]:
        return self._factories.get(protocol)

    def create(self, protocol: str, context: DriverContext) -> ProtocolDriver:
        """
        Build a driver for one device.

        Raises:
            UnsupportedProtocol: no factory is registered for the tag
        """
        factory = self._factories.get(protocol)
        if factory is None:
            raise UnsupportedProtocol(protocol)
        return factory(context)

    @property
    def protocols(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, protocol: str) -> bool:
        return protocol in self._factories


def default_driver_registry(settings) -> DriverRegistry:
    """Build the driver registry for the configured protocols."""
    from .esphome import ESPHomeDriver, TCPNativeAPITransport
    from .matter import MatterDriver, MatterServerClient
    from .mock import MockDriver

    registry = DriverRegistry()

    if settings.esphome.enabled:
        esphome = settings.esphome
        registry.register(
            "esphome",
            lambda ctx: ESPHomeDriver(
                ctx,
                TCPNativeAPITransport(client_info=esphome.client_info),
                default_port=esphome.default_port,
            ),
        )

    if settings.matter.enabled:
        matter = settings.matter
        registry.register(
            "matter",
            lambda ctx: MatterDriver(
                ctx,
                MatterServerClient(matter.server_url),
                network_only=matter.network_only,
            ),
        )

    if settings.driver.enable_mock_driver:
        registry.register("mock", MockDriver)

    return registry
