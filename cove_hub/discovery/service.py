"""
Discovery service for ESPHome and Matter devices.

Runs the configured scanners, periodically if asked, and publishes a
DeviceFound event for each announced device. What happens to those events
is up to the bus subscribers.
"""

import asyncio
import logging
from typing import Optional

from ..config import DiscoveryConfig
from ..events import DeviceFound, EventBus
from .scanners import BaseScanner, MDNSScanner, ScanResult

logger = logging.getLogger("cove.hub.discovery.service")


class DiscoveryService:
    """
    Coordinates network scanning.

    Features:
    - Multiple scanner support
    - Periodic background scanning
    - Results published on the event bus
    """

    def __init__(
        self,
        bus: EventBus,
        config: Optional[DiscoveryConfig] = None,
        scanners: Optional[list[BaseScanner]] = None,
    ):
        self._bus = bus
        self._config = config or DiscoveryConfig()
        self._scan_task: Optional[asyncio.Task] = None

        if scanners is not None:
            self._scanners = list(scanners)
        else:
            self._scanners = []
            if self._config.mdns_enabled:
                self._scanners.append(MDNSScanner())
                logger.info("mDNS scanner enabled")

    @property
    def is_running(self) -> bool:
        return self._scan_task is not None and not self._scan_task.done()

    async def start(self) -> None:
        """Start periodic scanning in the background."""
        if self.is_running:
            return
        if not self._scanners:
            logger.warning("No scanners configured, discovery disabled")
            return
        self._scan_task = asyncio.create_task(self._scan_loop())
        logger.info("Discovery service started with %d scanners", len(self._scanners))

    async def stop(self) -> None:
        """Stop periodic scanning."""
        if self._scan_task and not self._scan_task.done():
            self._scan_task.cancel()
            try:
                await self._scan_task
            except asyncio.CancelledError:
                pass
        self._scan_task = None
        logger.info("Discovery service stopped")

    async def _scan_loop(self) -> None:
        interval = self._config.scan_interval_seconds
        if self._config.scan_on_startup:
            await self.scan()
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            await self.scan()

    async def scan(self, timeout: Optional[float] = None) -> list[ScanResult]:
        """
        Run all scanners once and publish what they find.

        Args:
            timeout: Scan timeout in seconds

        Returns:
            List of scan results
        """
        timeout = timeout if timeout is not None else self._config.scan_timeout
        all_results: list[ScanResult] = []

        for scanner in self._scanners:
            try:
                if await scanner.is_available():
                    results = await scanner.scan(timeout=timeout)
                    all_results.extend(results)
                    logger.info(
                        "%s scanner found %d devices",
                        scanner.protocol_name.upper(),
                        len(results),
                    )
                else:
                    logger.warning("%s scanner not available", scanner.protocol_name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("%s scanner failed: %s", scanner.protocol_name, e)

        for result in all_results:
            self._bus.publish(self._to_event(result))

        logger.info("Scan complete: %d devices discovered", len(all_results))
        return all_results

    def _to_event(self, result: ScanResult) -> DeviceFound:
        return DeviceFound(
            protocol=result.protocol,
            device_id=result.generate_device_id(),
            name=result.name or f"{result.protocol} ({result.host})",
            host=result.host,
            port=result.port,
            metadata={"mdns": result.properties} if result.properties else {},
        )
