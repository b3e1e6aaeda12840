"""
mDNS (Multicast DNS) scanner for hub device discovery.

Discovers ESPHome nodes (_esphomelib._tcp) and commissionable Matter
devices (_matterc._udp) announced on the local network.
"""

import asyncio
import logging
from typing import Optional

from zeroconf import IPVersion, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .base import BaseScanner, ScanResult

logger = logging.getLogger("cove.hub.discovery.scanners.mdns")

ESPHOME_SERVICE_TYPE = "_esphomelib._tcp.local."
MATTER_COMMISSIONABLE_SERVICE_TYPE = "_matterc._udp.local."

# mDNS service type -> hub protocol tag
SERVICE_PROTOCOLS = {
    ESPHOME_SERVICE_TYPE: "esphome",
    MATTER_COMMISSIONABLE_SERVICE_TYPE: "matter",
}


def _decode_properties(info: AsyncServiceInfo) -> dict[str, str]:
    properties = {}
    for key, value in (info.properties or {}).items():
        if isinstance(key, bytes):
            key = key.decode("utf-8", errors="ignore")
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="ignore")
        properties[key] = value if value is not None else ""
    return properties


def service_info_to_result(service_type: str, info: AsyncServiceInfo) -> Optional[ScanResult]:
    """Convert a resolved service to a ScanResult."""
    addresses = info.parsed_addresses()
    if not addresses:
        logger.warning("No addresses for service %s", info.name)
        return None

    protocol = SERVICE_PROTOCOLS[service_type]
    properties = _decode_properties(info)
    instance = info.name.removesuffix("." + service_type)

    if protocol == "esphome":
        identifier = properties.get("mac") or instance
        name = properties.get("friendly_name") or instance
    else:
        # Discriminator plus vendor/product identify a commissionable device
        discriminator = properties.get("D")
        identifier = f"{properties.get('VP', 'unknown')}-{discriminator}" if discriminator else instance
        name = properties.get("DN") or instance

    return ScanResult(
        host=addresses[0],
        protocol=protocol,
        name=name,
        identifier=identifier,
        port=info.port,
        properties=properties,
    )


class MDNSScanner(BaseScanner):
    """
    mDNS/Zeroconf network scanner for ESPHome and Matter devices.
    """

    def __init__(self, service_types: Optional[list[str]] = None):
        self._service_types = service_types or list(SERVICE_PROTOCOLS)

    @property
    def protocol_name(self) -> str:
        return "mdns"

    async def scan(self, timeout: float = 5.0) -> list[ScanResult]:
        """
        Browse the network for announced devices.

        Args:
            timeout: How long to browse for services (seconds)

        Returns:
            List of discovered devices
        """
        logger.info("Starting mDNS scan (timeout=%.1fs)", timeout)

        discovered: dict[str, str] = {}

        def on_service_state_change(
            zeroconf: Zeroconf,
            service_type: str,
            name: str,
            state_change: ServiceStateChange,
        ) -> None:
            if state_change in (ServiceStateChange.Added, ServiceStateChange.Updated):
                logger.debug("mDNS: Found service %s", name)
                discovered[name] = service_type

        aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        browser = AsyncServiceBrowser(
            aiozc.zeroconf,
            self._service_types,
            handlers=[on_service_state_change],
        )
        try:
            await asyncio.sleep(timeout)

            results = []
            for service_name, service_type in list(discovered.items()):
                info = AsyncServiceInfo(service_type, service_name)
                try:
                    if not await info.async_request(aiozc.zeroconf, timeout=2000):
                        continue
                except Exception as e:
                    logger.warning("Failed to resolve service %s: %s", service_name, e)
                    continue
                result = service_info_to_result(service_type, info)
                if result:
                    results.append(result)
                    logger.debug(
                        "Resolved %s device %s at %s:%d",
                        result.protocol,
                        result.name,
                        result.host,
                        result.port or 0,
                    )
        finally:
            await browser.async_cancel()
            await aiozc.async_close()

        logger.info("mDNS scan complete: found %d devices", len(results))
        return results
