"""
Tests for network discovery: scan results, mDNS record mapping and the
discovery service.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from cove_hub.config import DiscoveryConfig
from cove_hub.discovery import BaseScanner, DiscoveryService, ScanResult
from cove_hub.discovery.scanners.mdns import (
    ESPHOME_SERVICE_TYPE,
    MATTER_COMMISSIONABLE_SERVICE_TYPE,
    service_info_to_result,
)
from cove_hub.events import DeviceFound, EventBus


class FakeScanner(BaseScanner):
    """Scanner returning canned results."""

    def __init__(self, results=None, available=True, error=None):
        self.results = results or []
        self.available = available
        self.error = error
        self.scans = 0

    @property
    def protocol_name(self) -> str:
        return "fake"

    async def scan(self, timeout: float = 5.0):
        self.scans += 1
        if self.error is not None:
            raise self.error
        return list(self.results)

    async def is_available(self) -> bool:
        return self.available


def _service_info(name, service_type, properties, addresses=("192.168.1.20",), port=6053):
    info = MagicMock()
    info.name = f"{name}.{service_type}"
    info.server = f"{name}.local."
    info.port = port
    info.properties = properties
    info.parsed_addresses.return_value = list(addresses)
    return info


# ===================================================================
# Scan results
# ===================================================================

class TestScanResult:
    """Stable device ids from announcements."""

    def test_id_from_identifier(self):
        result = ScanResult(host="10.0.0.5", protocol="esphome", identifier="AC:67:B2:01:02:03")
        assert result.generate_device_id() == "esphome.ac-67-b2-01-02-03"

    def test_id_from_name(self):
        result = ScanResult(host="10.0.0.5", protocol="esphome", name="Kitchen Plug")
        assert result.generate_device_id() == "esphome.kitchen-plug"

    def test_id_from_host(self):
        result = ScanResult(host="10.0.0.5", protocol="matter")
        assert result.generate_device_id() == "matter.10_0_0_5"


class TestMDNSMapping:
    """Resolved mDNS services become scan results."""

    def test_esphome_service(self):
        info = _service_info(
            "kitchen-plug",
            ESPHOME_SERVICE_TYPE,
            {b"mac": b"ac67b2010203", b"friendly_name": b"Kitchen Plug", b"version": b"2024.6.0"},
        )
        result = service_info_to_result(ESPHOME_SERVICE_TYPE, info)

        assert result.protocol == "esphome"
        assert result.host == "192.168.1.20"
        assert result.port == 6053
        assert result.name == "Kitchen Plug"
        assert result.generate_device_id() == "esphome.ac67b2010203"
        assert result.properties["version"] == "2024.6.0"

    def test_matter_service(self):
        info = _service_info(
            "4F2A1B3C5D6E7F80",
            MATTER_COMMISSIONABLE_SERVICE_TYPE,
            {b"D": b"3840", b"VP": b"65521+32768", b"DN": b"Hall light"},
            port=5540,
        )
        result = service_info_to_result(MATTER_COMMISSIONABLE_SERVICE_TYPE, info)

        assert result.protocol == "matter"
        assert result.name == "Hall light"
        assert result.generate_device_id() == "matter.65521-32768-3840"

    def test_service_without_address(self):
        info = _service_info("x", ESPHOME_SERVICE_TYPE, {}, addresses=())
        assert service_info_to_result(ESPHOME_SERVICE_TYPE, info) is None


# ===================================================================
# Discovery service
# ===================================================================

class TestDiscoveryService:
    """Scans publish DeviceFound events."""

    @pytest.mark.asyncio
    async def test_scan_publishes_events(self):
        bus = EventBus()
        seen = []
        bus.subscribe(DeviceFound, seen.append)
        scanner = FakeScanner([
            ScanResult(host="10.0.0.5", protocol="esphome", name="Kitchen", identifier="aa:bb", port=6053,
                       properties={"version": "1"}),
        ])
        service = DiscoveryService(bus, DiscoveryConfig(), scanners=[scanner])

        await bus.start()
        try:
            results = await service.scan(timeout=0.1)
            await bus.drain()
        finally:
            await bus.stop()

        assert len(results) == 1
        [event] = seen
        assert event.device_id == "esphome.aa-bb"
        assert event.protocol == "esphome"
        assert event.host == "10.0.0.5"
        assert event.port == 6053
        assert event.metadata == {"mdns": {"version": "1"}}

    @pytest.mark.asyncio
    async def test_failing_scanner_is_isolated(self):
        bus = EventBus()
        good = FakeScanner([ScanResult(host="10.0.0.6", protocol="esphome", name="Good")])
        bad = FakeScanner(error=OSError("multicast unavailable"))
        unavailable = FakeScanner([ScanResult(host="10.0.0.7", protocol="esphome")], available=False)
        service = DiscoveryService(bus, DiscoveryConfig(), scanners=[bad, unavailable, good])

        results = await service.scan(timeout=0.1)

        assert [r.name for r in results] == ["Good"]
        assert unavailable.scans == 0

    @pytest.mark.asyncio
    async def test_start_scans_on_startup(self):
        scanner = FakeScanner()
        service = DiscoveryService(
            EventBus(),
            DiscoveryConfig(scan_on_startup=True, scan_interval_seconds=0, scan_timeout=0.1),
            scanners=[scanner],
        )

        await service.start()
        await asyncio.sleep(0.05)
        await service.stop()

        assert scanner.scans == 1
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_no_scanners(self):
        service = DiscoveryService(EventBus(), DiscoveryConfig(mdns_enabled=False))
        await service.start()
        assert not service.is_running
