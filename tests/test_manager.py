"""
Tests for the driver manager: pairing sessions, connect/disconnect status
handling, time bounds, serialization, entity commands and shutdown.
"""

import asyncio
from typing import Any, Optional

import pytest

from cove_hub.config import DriverConfig
from cove_hub.drivers import DriverManager, DriverRegistry, PairingResult, PairingTarget
from cove_hub.drivers.manager import PairingOutcome
from cove_hub.drivers.mock import MockDriver
from cove_hub.exceptions import (
    AlreadyConnected,
    AuthError,
    CommandError,
    CommandRateLimited,
    DriverConnectionError,
    DriverTimeout,
    InvalidCommand,
    InvalidTransition,
    PairingError,
    UnknownDevice,
    UnknownEntity,
    UnsupportedProtocol,
)
from cove_hub.storage import DevicePatch, DeviceStatus

S = DeviceStatus


def _manager(registry, config: DriverConfig, factory=MockDriver, protocol: str = "mock") -> DriverManager:
    drivers = DriverRegistry()
    drivers.register(protocol, factory)
    return DriverManager(registry, drivers, config)


async def _pair(manager: DriverManager, device_id: str = "mock.dev-1", **credentials):
    return await manager.start_pairing("mock", PairingTarget(device_id=device_id, credentials=credentials))


class _IdAssigningDriver(MockDriver):
    """Driver that names the device itself during pairing."""

    async def pair(self, device_id: str, credentials: Optional[dict[str, Any]] = None) -> PairingResult:
        result = await super().pair(device_id, credentials)
        result.device_id = "mock.serial-42"
        return result


# ===================================================================
# Pairing
# ===================================================================

class TestPairing:
    """Pairing writes nothing until the handshake succeeds."""

    @pytest.mark.asyncio
    async def test_successful_pairing(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        session = await _pair(manager, name="Desk lamp")

        assert session.outcome == PairingOutcome.SUCCEEDED
        device = registry.get("mock.dev-1")
        assert device.status == S.PAIRED
        assert device.name == "Desk lamp"
        assert device.paired_at is not None
        assert {e.key for e in registry.list_entities("mock.dev-1")} == {"power", "level", "temperature"}
        assert manager.get_driver("mock.dev-1") is not None

    @pytest.mark.asyncio
    async def test_unsupported_protocol_writes_nothing(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        with pytest.raises(UnsupportedProtocol) as exc_info:
            await manager.start_pairing("zwave-legacy", PairingTarget(device_id="zwave-legacy.1"))

        assert exc_info.value.protocol == "zwave-legacy"
        assert registry.count(include_removed=True) == 0
        assert manager.pairing_sessions == []

    @pytest.mark.asyncio
    async def test_rejected_pairing_leaves_no_record(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        with pytest.raises(PairingError):
            await _pair(manager, reject="wrong code")

        assert registry.get("mock.dev-1") is None
        [session] = manager.pairing_sessions
        assert session.outcome == PairingOutcome.FAILED
        assert session.reason == "wrong code"

    @pytest.mark.asyncio
    async def test_rejected_pairing_releases_driver(self, registry, driver_config):
        created = []

        def factory(ctx):
            created.append(MockDriver(ctx))
            return created[-1]

        manager = _manager(registry, driver_config, factory)
        with pytest.raises(PairingError):
            await _pair(manager, reject="wrong code")

        [driver] = created
        assert driver.disconnect_calls == 1
        assert manager.get_driver("mock.dev-1") is None

    @pytest.mark.asyncio
    async def test_driver_failure_becomes_pairing_error(self, registry, driver_config):
        manager = _manager(registry, driver_config, lambda ctx: MockDriver(ctx, pair_error=OSError("no route")))
        with pytest.raises(PairingError) as exc_info:
            await _pair(manager)

        assert "no route" in exc_info.value.reason
        assert registry.get("mock.dev-1") is None

    @pytest.mark.asyncio
    async def test_pairing_timeout_leaves_no_record(self, registry):
        config = DriverConfig(pairing_timeout=0.05, connect_after_pairing=False)
        manager = _manager(registry, config, lambda ctx: MockDriver(ctx, pair_delay=1.0))

        with pytest.raises(DriverTimeout) as exc_info:
            await _pair(manager)

        assert exc_info.value.operation == "pair"
        assert registry.get("mock.dev-1") is None

    @pytest.mark.asyncio
    async def test_failed_pairing_reverts_discovered_device(self, registry, driver_config):
        await registry.upsert(DevicePatch(id="mock.dev-1", protocol="mock", name="Found"))
        manager = _manager(registry, driver_config)

        with pytest.raises(PairingError):
            await _pair(manager, reject="nope")

        device = registry.get("mock.dev-1")
        assert device.status == S.DISCOVERED
        assert not device.is_paired

    @pytest.mark.asyncio
    async def test_pairing_discovered_device_keeps_address(self, registry, driver_config):
        await registry.upsert(DevicePatch(id="mock.dev-1", protocol="mock", name="Found", host="10.0.0.9"))
        manager = _manager(registry, driver_config)

        await _pair(manager)

        device = registry.get("mock.dev-1")
        assert device.status == S.PAIRED
        assert device.host == "10.0.0.9"
        assert manager.get_driver("mock.dev-1").context.host == "10.0.0.9"

    @pytest.mark.asyncio
    async def test_already_paired_rejected(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager)

        with pytest.raises(PairingError, match="already paired"):
            await _pair(manager)

    @pytest.mark.asyncio
    async def test_id_registered_under_other_protocol_rejected(self, registry, driver_config):
        await registry.upsert(DevicePatch(id="mock.dev-1", protocol="esphome"))
        manager = _manager(registry, driver_config)

        with pytest.raises(PairingError):
            await _pair(manager)
        assert registry.get("mock.dev-1").protocol == "esphome"

    @pytest.mark.asyncio
    async def test_provisional_id_without_target(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        session = await manager.start_pairing("mock")

        assert session.device_id.startswith("mock.")
        assert registry.get(session.device_id).status == S.PAIRED

    @pytest.mark.asyncio
    async def test_driver_supplied_id(self, registry, driver_config):
        manager = _manager(registry, driver_config, _IdAssigningDriver)
        session = await manager.start_pairing("mock")

        assert session.device_id == "mock.serial-42"
        assert registry.get("mock.serial-42").status == S.PAIRED
        assert manager.get_driver("mock.serial-42").device_id == "mock.serial-42"

    @pytest.mark.asyncio
    async def test_connect_after_pairing(self, registry):
        config = DriverConfig(connect_after_pairing=True, connect_timeout=0.5)
        manager = _manager(registry, config)

        session = await _pair(manager)

        assert session.device.status == S.ONLINE
        assert registry.get("mock.dev-1").status == S.ONLINE

    @pytest.mark.asyncio
    async def test_cancelled_pairing_leaves_no_record(self, registry):
        config = DriverConfig(pairing_timeout=5.0, connect_after_pairing=False)
        manager = _manager(registry, config, lambda ctx: MockDriver(ctx, pair_delay=5.0))

        task = asyncio.create_task(_pair(manager))
        await asyncio.sleep(0.02)
        assert manager.cancel_all() == 1

        with pytest.raises(asyncio.CancelledError):
            await task
        assert registry.get("mock.dev-1") is None
        assert manager.pairing_sessions[0].outcome == PairingOutcome.FAILED


# ===================================================================
# Connect / disconnect
# ===================================================================

class TestConnections:
    """Driver outcomes are reflected in device status."""

    @pytest.mark.asyncio
    async def test_connect_marks_online(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager)

        device = await manager.connect_device("mock.dev-1")

        assert device.status == S.ONLINE
        assert manager.get_driver("mock.dev-1").is_connected

    @pytest.mark.asyncio
    async def test_connect_unknown_device(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        with pytest.raises(UnknownDevice):
            await manager.connect_device("mock.ghost")

    @pytest.mark.asyncio
    async def test_connect_unpaired_device(self, registry, driver_config):
        await registry.upsert(DevicePatch(id="mock.dev-1", protocol="mock"))
        manager = _manager(registry, driver_config)

        with pytest.raises(InvalidTransition):
            await manager.connect_device("mock.dev-1")
        assert registry.get("mock.dev-1").status == S.DISCOVERED

    @pytest.mark.asyncio
    async def test_timeout_then_recovery(self, registry, driver_config):
        manager = _manager(registry, driver_config, lambda ctx: MockDriver(ctx, connect_delay=1.0))
        await _pair(manager)

        with pytest.raises(DriverTimeout):
            await manager.connect_device("mock.dev-1")
        device = registry.get("mock.dev-1")
        assert device.status == S.ERROR
        assert "timed out" in device.last_error

        manager.get_driver("mock.dev-1").connect_delay = 0
        device = await manager.connect_device("mock.dev-1")
        assert device.status == S.ONLINE
        assert device.last_error is None

    @pytest.mark.parametrize(
        "error, expected",
        [
            (AuthError("mock.dev-1"), AuthError),
            (DriverConnectionError("mock.dev-1", "refused"), DriverConnectionError),
            (RuntimeError("driver bug"), DriverConnectionError),
        ],
    )
    @pytest.mark.asyncio
    async def test_connect_failure_marks_error(self, registry, driver_config, error, expected):
        manager = _manager(registry, driver_config, lambda ctx: MockDriver(ctx, connect_error=error))
        await _pair(manager)

        with pytest.raises(expected):
            await manager.connect_device("mock.dev-1")
        assert registry.get("mock.dev-1").status == S.ERROR

    @pytest.mark.asyncio
    async def test_already_connected_counts_as_success(self, registry, driver_config):
        manager = _manager(
            registry, driver_config,
            lambda ctx: MockDriver(ctx, connect_error=AlreadyConnected(ctx.device_id)),
        )
        await _pair(manager)

        device = await manager.connect_device("mock.dev-1")
        assert device.status == S.ONLINE

    @pytest.mark.asyncio
    async def test_disconnect_marks_offline(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager)
        await manager.connect_device("mock.dev-1")

        device = await manager.disconnect_device("mock.dev-1")

        assert device.status == S.OFFLINE
        assert not manager.get_driver("mock.dev-1").is_connected

    @pytest.mark.asyncio
    async def test_disconnect_is_best_effort(self, registry, driver_config):
        class FailingDisconnect(MockDriver):
            async def disconnect(self):
                raise DriverConnectionError(self.device_id, "socket already gone")

        manager = _manager(registry, driver_config, FailingDisconnect)
        await _pair(manager)
        await manager.connect_device("mock.dev-1")

        device = await manager.disconnect_device("mock.dev-1")

        assert device.status == S.OFFLINE
        assert manager.get_driver("mock.dev-1") is None

    @pytest.mark.asyncio
    async def test_remove_device(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager)
        await manager.connect_device("mock.dev-1")

        device = await manager.remove_device("mock.dev-1")

        assert device.status == S.REMOVED
        assert manager.get_driver("mock.dev-1") is None
        with pytest.raises(InvalidTransition):
            await manager.connect_device("mock.dev-1")


# ===================================================================
# Serialization
# ===================================================================

class TestSerialization:
    """Same id: one operation at a time. Different ids: concurrent."""

    @pytest.mark.asyncio
    async def test_same_device_operations_serialized(self, registry, driver_config):
        manager = _manager(registry, driver_config, lambda ctx: MockDriver(ctx, connect_delay=0.05))
        await _pair(manager)

        results = await asyncio.gather(
            manager.connect_device("mock.dev-1"),
            manager.connect_device("mock.dev-1"),
        )

        driver = manager.get_driver("mock.dev-1")
        assert driver.max_active_calls == 1
        assert driver.connect_calls == 1
        assert all(d.status == S.ONLINE for d in results)

    @pytest.mark.asyncio
    async def test_different_devices_concurrent(self, registry, driver_config):
        both_inside = asyncio.Event()
        inside = 0

        class RendezvousDriver(MockDriver):
            async def connect(self):
                nonlocal inside
                inside += 1
                if inside == 2:
                    both_inside.set()
                # Only returns if the other device's connect runs at the same time
                await both_inside.wait()
                await super().connect()

        manager = _manager(registry, driver_config, RendezvousDriver)
        await _pair(manager, "mock.a")
        await _pair(manager, "mock.b")

        await asyncio.gather(manager.connect_device("mock.a"), manager.connect_device("mock.b"))

        assert registry.get("mock.a").status == S.ONLINE
        assert registry.get("mock.b").status == S.ONLINE


# ===================================================================
# Supervision and shutdown
# ===================================================================

class TestSupervision:
    """Liveness checks and shutdown."""

    @pytest.mark.asyncio
    async def test_liveness_marks_dropped_device_offline(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager)
        await manager.connect_device("mock.dev-1")

        manager.get_driver("mock.dev-1").simulate_drop()
        await manager.check_liveness(reconnect=False)

        device = registry.get("mock.dev-1")
        assert device.status == S.OFFLINE
        assert device.last_error == "connection lost"

    @pytest.mark.asyncio
    async def test_liveness_reconnects(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager)
        await manager.connect_device("mock.dev-1")

        manager.get_driver("mock.dev-1").simulate_drop()
        await manager.check_liveness(reconnect=True)

        assert registry.get("mock.dev-1").status == S.ONLINE
        assert manager.get_driver("mock.dev-1").connect_calls == 2

    @pytest.mark.asyncio
    async def test_unresponsive_device_goes_offline(self, registry):
        manager = _manager(registry, DriverConfig(status_timeout=0.05))
        await _pair(manager)
        await manager.connect_device("mock.dev-1")
        driver = manager.get_driver("mock.dev-1")
        driver.ping_delay = 1.0

        await asyncio.wait_for(manager.check_liveness(reconnect=False), timeout=1.0)

        device = registry.get("mock.dev-1")
        assert device.status == S.OFFLINE
        assert device.last_error.startswith("no response")
        assert driver.ping_calls == 1
        assert driver.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_manual_disconnect_survives_reconnect(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager)
        await manager.connect_device("mock.dev-1")

        await manager.disconnect_device("mock.dev-1")
        await manager.check_liveness(reconnect=True)

        assert registry.get("mock.dev-1").status == S.OFFLINE
        assert manager.get_driver("mock.dev-1").connect_calls == 1
        assert manager.held_offline == {"mock.dev-1"}

        await manager.connect_device("mock.dev-1")
        assert registry.get("mock.dev-1").status == S.ONLINE
        assert manager.held_offline == frozenset()

    @pytest.mark.asyncio
    async def test_address_change_releases_old_driver(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager)
        await manager.connect_device("mock.dev-1")
        old = manager.get_driver("mock.dev-1")
        old.simulate_drop()
        await manager.check_liveness(reconnect=False)
        await registry.upsert(DevicePatch(id="mock.dev-1", host="10.0.0.9"))

        await manager.connect_device("mock.dev-1")

        new = manager.get_driver("mock.dev-1")
        assert new is not old
        assert new.context.host == "10.0.0.9"
        assert old.disconnect_calls == 2

    @pytest.mark.asyncio
    async def test_connect_paired_devices_is_independent(self, registry, driver_config):
        def factory(ctx):
            if ctx.device_id == "mock.bad":
                return MockDriver(ctx, connect_error=DriverConnectionError(ctx.device_id, "refused"))
            return MockDriver(ctx)

        manager = _manager(registry, driver_config, factory)
        await _pair(manager, "mock.good")
        await _pair(manager, "mock.bad")

        await manager.connect_paired_devices()

        assert registry.get("mock.good").status == S.ONLINE
        assert registry.get("mock.bad").status == S.ERROR

    @pytest.mark.asyncio
    async def test_shutdown_marks_online_devices_offline(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager, "mock.a")
        await _pair(manager, "mock.b")
        await manager.connect_device("mock.a")

        await manager.shutdown(timeout=0.2)

        assert registry.get("mock.a").status == S.OFFLINE
        assert registry.get("mock.b").status == S.PAIRED
        assert manager.connection_summary() == {}

    @pytest.mark.asyncio
    async def test_shutdown_bounds_slow_disconnect(self, registry, driver_config):
        class HangingDisconnect(MockDriver):
            async def disconnect(self):
                await asyncio.sleep(10)

        manager = _manager(registry, driver_config, HangingDisconnect)
        await _pair(manager)
        await manager.connect_device("mock.dev-1")

        await asyncio.wait_for(manager.shutdown(timeout=0.05), timeout=1.0)
        assert registry.get("mock.dev-1").status == S.OFFLINE

    @pytest.mark.asyncio
    async def test_connection_summary(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager, "mock.a")
        await _pair(manager, "mock.b")
        await manager.connect_device("mock.a")

        assert manager.connection_summary() == {"mock": {"drivers": 2, "connected": 1}}


# ===================================================================
# Entity commands
# ===================================================================

async def _online(manager: DriverManager, device_id: str = "mock.dev-1") -> MockDriver:
    await _pair(manager, device_id)
    await manager.connect_device(device_id)
    return manager.get_driver(device_id)


class TestCommands:
    """Validated, rate limited entity writes."""

    @pytest.mark.asyncio
    async def test_command_records_value(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        driver = await _online(manager)

        entity = await manager.send_command("mock.dev-1", "power", True)

        assert driver.commands == [("power", True)]
        assert entity.value is True
        assert registry.get_entity("mock.dev-1", "power").value is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key, value", [("power", "on"), ("level", 150), ("level", "bright")])
    async def test_invalid_value_never_reaches_driver(self, registry, driver_config, key, value):
        manager = _manager(registry, driver_config)
        driver = await _online(manager)

        with pytest.raises(InvalidCommand):
            await manager.send_command("mock.dev-1", key, value)
        assert driver.commands == []

    @pytest.mark.asyncio
    async def test_unknown_entity(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _online(manager)
        with pytest.raises(UnknownEntity):
            await manager.send_command("mock.dev-1", "fan", True)
        with pytest.raises(UnknownDevice):
            await manager.send_command("mock.nope", "power", True)

    @pytest.mark.asyncio
    async def test_offline_device_rejects(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        await _pair(manager)

        with pytest.raises(CommandError, match="paired"):
            await manager.send_command("mock.dev-1", "power", True)
        assert registry.get("mock.dev-1").status == S.PAIRED

    @pytest.mark.asyncio
    async def test_rate_limit_per_entity(self, registry):
        manager = _manager(registry, DriverConfig(command_rate_limit=2, command_rate_window=60))
        driver = await _online(manager)

        await manager.send_command("mock.dev-1", "power", True)
        await manager.send_command("mock.dev-1", "power", False)
        with pytest.raises(CommandRateLimited):
            await manager.send_command("mock.dev-1", "power", True)

        await manager.send_command("mock.dev-1", "level", 10)
        assert len(driver.commands) == 3

    @pytest.mark.asyncio
    async def test_brightness_commands_coalesce(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        driver = await _online(manager)
        driver.command_delay = 0.05

        results = await asyncio.gather(
            manager.send_command("mock.dev-1", "level", 10),
            manager.send_command("mock.dev-1", "level", 20),
            manager.send_command("mock.dev-1", "level", 30),
        )

        assert driver.commands == [("level", 10), ("level", 30)]
        assert [e.value for e in results] == [10, 30, 30]
        assert registry.get_entity("mock.dev-1", "level").value == 30

    @pytest.mark.asyncio
    async def test_on_off_commands_are_not_coalesced(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        driver = await _online(manager)
        driver.command_delay = 0.02

        await asyncio.gather(
            manager.send_command("mock.dev-1", "power", True),
            manager.send_command("mock.dev-1", "power", False),
            manager.send_command("mock.dev-1", "power", True),
        )

        assert driver.commands == [("power", True), ("power", False), ("power", True)]

    @pytest.mark.asyncio
    async def test_slow_command_marks_error(self, registry):
        manager = _manager(registry, DriverConfig(command_timeout=0.05))
        driver = await _online(manager)
        driver.command_delay = 1.0

        with pytest.raises(DriverTimeout):
            await manager.send_command("mock.dev-1", "power", True)

        assert registry.get("mock.dev-1").status == S.ERROR
        assert registry.get_entity("mock.dev-1", "power").value is False

    @pytest.mark.asyncio
    async def test_refused_command_keeps_device_online(self, registry, driver_config):
        manager = _manager(registry, driver_config)
        driver = await _online(manager)
        driver.command_error = CommandError("mock.dev-1", "power", "relay stuck")

        with pytest.raises(CommandError, match="relay stuck"):
            await manager.send_command("mock.dev-1", "power", True)
        assert registry.get("mock.dev-1").status == S.ONLINE
