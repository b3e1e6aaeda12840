"""
Driver manager: owns one driver instance per device.

Pairing, connect and disconnect for the same device id run one at a time;
different ids run concurrently. Every driver call is its own task, bounded
by a timeout and cancellable as a group. Driver failures degrade the
device's status and are re-raised to the caller.
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

from ..capabilities import CapabilityType, validate_command_value
from ..config import DriverConfig
from ..exceptions import (
    AlreadyConnected,
    AuthError,
    CommandError,
    CommandRateLimited,
    DriverConnectionError,
    DriverTimeout,
    HubError,
    InvalidCommand,
    InvalidTransition,
    PairingError,
    UnknownDevice,
    UnknownEntity,
    UnsupportedProtocol,
)
from ..registry import DeviceRegistry
from ..storage.exceptions import StorageError
from ..storage.models import Device, DevicePatch, DeviceStatus, Entity, utcnow
from .base import DriverContext, PairingResult, ProtocolDriver
from .registry import DriverRegistry

logger = logging.getLogger("cove.hub.drivers.manager")

T = TypeVar("T")

# Statuses in which a paired device should have a live session
RECONNECT_STATUSES = frozenset({
    DeviceStatus.PAIRED,
    DeviceStatus.ONLINE,
    DeviceStatus.OFFLINE,
    DeviceStatus.ERROR,
})

# Rapid updates to these collapse into the latest value
COALESCED_CAPABILITIES = frozenset({
    CapabilityType.BRIGHTNESS.value,
    CapabilityType.COLOR_TEMP.value,
    CapabilityType.RGB.value,
})


@dataclass
class _QueuedCommand:
    value: Any
    done: asyncio.Future


class PairingOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PairingTarget:
    """What to pair: an optional known id plus connection details and secrets."""

    device_id: Optional[str] = None
    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class PairingSession:
    """One pairing attempt. Lives in memory only."""

    device_id: str
    protocol: str
    credentials: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    outcome: PairingOutcome = PairingOutcome.PENDING
    reason: Optional[str] = None
    device: Optional[Device] = None

    def succeed(self, device: Device) -> None:
        self.outcome = PairingOutcome.SUCCEEDED
        self.device = device
        self.device_id = device.id
        self.finished_at = utcnow()

    def fail(self, reason: str) -> None:
        self.outcome = PairingOutcome.FAILED
        self.reason = reason
        self.finished_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "protocol": self.protocol,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "device": self.device.to_dict() if self.device else None,
        }


class DriverManager:
    """
    Supervises protocol drivers for all devices.

    Features:
    - Pairing sessions that persist nothing until the handshake succeeds
    - Per-device serialization of pairing, connect and disconnect
    - Time-bounded, cancellable driver calls
    - Liveness pings with optional reconnect
    - Validated, rate-limited entity commands
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        drivers: DriverRegistry,
        config: Optional[DriverConfig] = None,
        bus=None,
        session_history: int = 50,
    ):
        self._registry = registry
        self._driver_registry = drivers
        self._config = config or DriverConfig()
        self._bus = bus
        self._drivers: dict[str, ProtocolDriver] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: set[asyncio.Future] = set()
        self._sessions: deque[PairingSession] = deque(maxlen=session_history)
        # Devices the operator disconnected; reconnects leave them alone
        self._held_offline: set[str] = set()
        self._queued: dict[tuple[str, str], _QueuedCommand] = {}
        self._command_times: dict[tuple[str, str], deque[float]] = defaultdict(deque)

    @property
    def pairing_sessions(self) -> list[PairingSession]:
        """Recent pairing attempts, oldest first."""
        return list(self._sessions)

    def get_driver(self, device_id: str) -> Optional[ProtocolDriver]:
        return self._drivers.get(device_id)

    @property
    def held_offline(self) -> frozenset[str]:
        """Devices disconnected on request, skipped by reconnects."""
        return frozenset(self._held_offline)

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    async def _call(
        self,
        device_id: str,
        operation: str,
        func: Callable[[], Awaitable[T]],
        timeout: float,
    ) -> T:
        """Run one driver operation as a tracked task under a time bound."""
        task = asyncio.ensure_future(func())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            return await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Driver %s for %s timed out after %.2fs", operation, device_id, timeout)
            raise DriverTimeout(device_id, operation, timeout) from None

    async def _release(self, device_id: str, driver: ProtocolDriver, timeout: Optional[float] = None) -> bool:
        """Disconnect a driver within ``timeout``. Returns False if it failed or hung."""
        timeout = self._config.disconnect_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(driver.disconnect(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Disconnect of %s timed out after %.2fs", device_id, timeout)
            return False
        except (HubError, OSError) as e:
            logger.warning("Disconnect of %s failed: %s", device_id, e)
            return False
        return True

    async def _driver_for(self, device: Device) -> ProtocolDriver:
        driver = self._drivers.get(device.id)
        if driver is not None:
            stale = driver.context.host != device.host or driver.context.port != device.port
            if not stale or driver.is_connected:
                return driver
            logger.debug("Address of %s changed, rebuilding driver", device.id)
            await self._release(device.id, driver)

        context = DriverContext(
            device_id=device.id,
            host=device.host,
            port=device.port,
            credentials=dict(device.credentials),
            bus=self._bus,
        )
        driver = self._driver_registry.create(device.protocol, context)
        self._drivers[device.id] = driver
        return driver

    async def _mark_error(self, device_id: str, error: Exception) -> None:
        try:
            await self._registry.set_status(device_id, DeviceStatus.ERROR, error=str(error))
        except (InvalidTransition, UnknownDevice) as e:
            logger.warning("Could not mark %s as errored: %s", device_id, e)

    # -- Pairing ------------------------------------------------------------

    async def start_pairing(
        self,
        protocol: str,
        target: Optional[PairingTarget] = None,
    ) -> PairingSession:
        """
        Pair a device over ``protocol``.

        The device is written to the registry only once the driver's pairing
        handshake succeeds. When ``target.device_id`` is not given, a
        provisional id is used and the driver may supply the final one.
        A failed attempt disconnects the pairing driver before returning.

        Returns:
            The finished PairingSession (outcome succeeded)

        Raises:
            UnsupportedProtocol: no driver factory for the tag; nothing is written
            PairingError: the handshake or bookkeeping failed
            DriverTimeout: the handshake exceeded the pairing timeout
        """
        target = target or PairingTarget()
        if protocol not in self._driver_registry:
            raise UnsupportedProtocol(protocol)

        provisional = target.device_id or f"{protocol}.{uuid4().hex[:12]}"
        session = PairingSession(provisional, protocol, dict(target.credentials))
        self._sessions.append(session)
        logger.info("Pairing %s over %s", provisional, protocol)

        async with self._lock_for(provisional):
            existing = self._registry.get(provisional)
            if existing is not None:
                reason = None
                if existing.protocol != protocol:
                    reason = f"id is registered under protocol {existing.protocol}"
                elif existing.is_removed:
                    reason = "device was removed"
                elif existing.is_paired:
                    reason = "device is already paired"
                if reason:
                    session.fail(reason)
                    raise PairingError(reason, provisional)

            host = target.host or (existing.host if existing else None)
            port = target.port or (existing.port if existing else None)
            credentials = dict(target.credentials)

            marked = existing is not None and existing.status in (DeviceStatus.DISCOVERED, DeviceStatus.PAIRING)
            if marked:
                await self._registry.set_status(provisional, DeviceStatus.PAIRING)

            driver = self._driver_registry.create(
                protocol,
                DriverContext(provisional, host, port, credentials, self._bus),
            )

            async def abandon(reason: str) -> None:
                await self._release(provisional, driver)
                await self._pairing_failed(session, marked, reason)

            try:
                result: PairingResult = await self._call(
                    provisional,
                    "pair",
                    lambda: driver.pair(provisional, credentials),
                    self._config.pairing_timeout,
                )
            except asyncio.CancelledError:
                await abandon("cancelled")
                raise
            except (PairingError, DriverTimeout) as e:
                await abandon(getattr(e, "reason", str(e)))
                raise
            except Exception as e:
                reason = str(e) or type(e).__name__
                await abandon(reason)
                raise PairingError(reason, provisional) from e

            final_id = provisional if target.device_id else (result.device_id or provisional)
            driver.context.device_id = final_id
            patch = DevicePatch(
                id=final_id,
                protocol=protocol,
                name=result.name or target.name,
                status=DeviceStatus.PAIRED,
                host=host,
                port=port,
                credentials=dict(result.credentials),
                metadata=dict(result.metadata),
                paired_at=utcnow(),
            )
            try:
                if final_id != provisional:
                    async with self._lock_for(final_id):
                        device = await self._registry.upsert(patch, result.entities)
                else:
                    device = await self._registry.upsert(patch, result.entities)
            except InvalidTransition as e:
                await abandon(str(e))
                raise PairingError(str(e), final_id) from e
            except BaseException as e:
                await abandon(str(e) or type(e).__name__)
                raise

            self._drivers[final_id] = driver
            session.succeed(device)
            logger.info("Paired %s (%s)", final_id, protocol)

        if self._config.connect_after_pairing:
            try:
                session.device = await self.connect_device(final_id)
            except (DriverTimeout, DriverConnectionError, AuthError) as e:
                logger.warning("Paired %s but could not connect: %s", final_id, e)
                session.device = self._registry.get(final_id)
        return session

    async def _pairing_failed(self, session: PairingSession, marked: bool, reason: str) -> None:
        session.fail(reason)
        logger.warning("Pairing %s failed: %s", session.device_id, reason)
        if not marked:
            return
        try:
            await asyncio.shield(
                self._registry.set_status(session.device_id, DeviceStatus.DISCOVERED)
            )
        except (InvalidTransition, UnknownDevice) as e:
            logger.warning("Could not restore %s to discovered: %s", session.device_id, e)

    # -- Connections --------------------------------------------------------

    async def connect_device(self, device_id: str) -> Device:
        """
        Open the session for a paired device and mark it online.

        An explicit connect also lifts a hold left by disconnect_device().

        Raises:
            UnknownDevice: the id is not registered
            InvalidTransition: the device is not paired or was removed
            DriverTimeout: connect exceeded its bound (device goes to error)
            DriverConnectionError, AuthError: connect failed (device goes to error)
        """
        self._registry.require(device_id)

        async with self._lock_for(device_id):
            device = self._registry.require(device_id)
            if device.is_removed or not device.is_paired:
                raise InvalidTransition(device_id, device.status.value, DeviceStatus.ONLINE.value)
            self._held_offline.discard(device_id)

            driver = await self._driver_for(device)
            if not driver.is_connected:
                try:
                    await self._call(device_id, "connect", driver.connect, self._config.connect_timeout)
                except AlreadyConnected:
                    logger.debug("Driver for %s reported an existing session", device_id)
                except (DriverTimeout, DriverConnectionError, AuthError) as e:
                    await self._mark_error(device_id, e)
                    raise
                except Exception as e:
                    error = DriverConnectionError(device_id, f"driver failure: {e}")
                    await self._mark_error(device_id, error)
                    raise error from e

            device = await self._registry.set_status(device_id, DeviceStatus.ONLINE)
            await self._sync_entities(device_id, driver)
        return device

    async def _sync_entities(self, device_id: str, driver: ProtocolDriver) -> None:
        try:
            descriptors = await self._call(
                device_id, "list_entities", driver.list_entities, self._config.connect_timeout
            )
        except Exception as e:
            logger.warning("Could not list entities of %s: %s", device_id, e)
            return

        for descriptor in descriptors:
            try:
                await self._registry.upsert_entity(device_id, descriptor)
            except InvalidTransition as e:
                logger.warning("Skipping entity of %s: %s", device_id, e)

    async def disconnect_device(self, device_id: str) -> Device:
        """
        Close a device's session and mark it offline.

        Disconnect is best effort: a failing or slow driver is logged and
        dropped, and the device still ends up offline. The device stays
        offline through liveness reconnects until connect_device() is called.

        Raises:
            UnknownDevice: the id is not registered
        """
        self._registry.require(device_id)

        async with self._lock_for(device_id):
            self._held_offline.add(device_id)
            await self._close_driver(device_id)
            device = self._registry.require(device_id)
            if device.status in (DeviceStatus.ONLINE, DeviceStatus.PAIRED, DeviceStatus.ERROR):
                device = await self._registry.set_status(device_id, DeviceStatus.OFFLINE)
        logger.info("Disconnected %s on request", device_id)
        return device

    async def _close_driver(self, device_id: str) -> None:
        driver = self._drivers.get(device_id)
        if driver is None:
            return
        if not await self._release(device_id, driver):
            logger.warning("Dropping driver of %s", device_id)
            self._drivers.pop(device_id, None)

    async def remove_device(self, device_id: str) -> Device:
        """Disconnect a device and soft-delete it from the registry."""
        self._registry.require(device_id)
        async with self._lock_for(device_id):
            await self._close_driver(device_id)
            self._drivers.pop(device_id, None)
            self._held_offline.discard(device_id)
            for slot in [s for s in self._command_times if s[0] == device_id]:
                del self._command_times[slot]
            return await self._registry.remove(device_id)

    async def connect_paired_devices(self) -> None:
        """Try to bring every paired device online, independently."""
        device_ids = [
            d.id
            for d in self._registry.list_devices()
            if d.is_paired and d.status in RECONNECT_STATUSES
            and d.id not in self._held_offline
            and not (d.id in self._drivers and self._drivers[d.id].is_connected)
        ]
        if device_ids:
            logger.info("Connecting %d paired devices", len(device_ids))
            await asyncio.gather(*(self._try_connect(i) for i in device_ids))

    async def _try_connect(self, device_id: str) -> None:
        try:
            await self.connect_device(device_id)
        except HubError as e:
            logger.warning("Could not connect %s: %s", device_id, e)

    async def check_liveness(self, reconnect: bool = True) -> None:
        """
        Ping every online device and mark those that do not answer offline.

        Each ping is bounded by the status timeout and devices are pinged
        concurrently. A dead session is closed before any reconnect.
        """
        drivers = list(self._drivers.items())
        results = await asyncio.gather(
            *(self._ping(device_id, driver) for device_id, driver in drivers),
            return_exceptions=True,
        )
        for (device_id, _), result in zip(drivers, results):
            if isinstance(result, StorageError):
                raise result
            if isinstance(result, Exception):
                logger.warning("Liveness check of %s failed: %s", device_id, result)

        if reconnect:
            await self.connect_paired_devices()

    async def _ping(self, device_id: str, driver: ProtocolDriver) -> None:
        async with self._lock_for(device_id):
            if self._drivers.get(device_id) is not driver:
                return
            device = self._registry.get(device_id)
            if device is None or device.status != DeviceStatus.ONLINE:
                return
            try:
                await self._call(device_id, "ping", driver.ping, self._config.status_timeout)
            except (DriverTimeout, DriverConnectionError, OSError) as e:
                reason = "connection lost" if not driver.is_connected else f"no response: {e}"
                logger.info("Device %s lost its session (%s)", device_id, reason)
                await self._release(device_id, driver)
                await self._registry.set_status(device_id, DeviceStatus.OFFLINE, error=reason)

    # -- Commands -----------------------------------------------------------

    def _check_rate(self, device_id: str, key: str) -> None:
        limit = self._config.command_rate_limit
        window = self._config.command_rate_window
        now = asyncio.get_running_loop().time()
        times = self._command_times[(device_id, key)]
        while times and now - times[0] >= window:
            times.popleft()
        if len(times) >= limit:
            raise CommandRateLimited(device_id, key, limit, window)
        times.append(now)

    async def send_command(self, device_id: str, key: str, value: Any) -> Entity:
        """
        Set one entity of an online device to ``value``.

        The value is checked against the entity's capability before any
        driver call. Brightness, color temperature and rgb commands that
        arrive while an earlier one for the same entity is still waiting are
        coalesced: only the latest value is sent and every waiting caller
        gets its outcome.

        Returns:
            The entity with the value recorded

        Raises:
            UnknownDevice, UnknownEntity: no such device or entity
            InvalidCommand: the value does not fit the capability
            CommandRateLimited: too many commands for the entity
            CommandError: the device is not online or refused the command
            DriverTimeout, DriverConnectionError: the session failed (device goes to error)
        """
        self._registry.require(device_id)
        entity = self._registry.get_entity(device_id, key)
        if entity is None:
            raise UnknownEntity(device_id, key)
        try:
            value = validate_command_value(entity.capability, value)
        except ValueError as e:
            raise InvalidCommand(device_id, key, str(e)) from e

        slot = (device_id, key)
        coalesce = entity.capability.type in COALESCED_CAPABILITIES
        queued = self._queued.get(slot) if coalesce else None
        if queued is not None:
            logger.debug("Coalescing command for %s:%s", device_id, key)
            queued.value = value
            return await asyncio.shield(queued.done)

        self._check_rate(device_id, key)
        queued = _QueuedCommand(value, asyncio.get_running_loop().create_future())
        # Outcomes nobody else awaits must not be reported as unretrieved
        queued.done.add_done_callback(lambda f: f.cancelled() or f.exception())
        if coalesce:
            self._queued[slot] = queued

        try:
            async with self._lock_for(device_id):
                if self._queued.get(slot) is queued:
                    del self._queued[slot]
                result = await self._execute_command(device_id, key, queued.value)
        except BaseException as e:
            if self._queued.get(slot) is queued:
                del self._queued[slot]
            if not queued.done.done():
                if isinstance(e, asyncio.CancelledError):
                    queued.done.cancel()
                else:
                    queued.done.set_exception(e)
            raise
        queued.done.set_result(result)
        return result

    async def _execute_command(self, device_id: str, key: str, value: Any) -> Entity:
        device = self._registry.require(device_id)
        driver = self._drivers.get(device_id)
        if device.status != DeviceStatus.ONLINE or driver is None or not driver.is_connected:
            raise CommandError(device_id, key, f"device is {device.status.value}")

        try:
            await self._call(
                device_id,
                "command",
                lambda: driver.send_command(key, value),
                self._config.command_timeout,
            )
        except (DriverTimeout, DriverConnectionError, AuthError) as e:
            await self._release(device_id, driver)
            await self._mark_error(device_id, e)
            raise
        except HubError:
            raise
        except Exception as e:
            error = DriverConnectionError(device_id, f"driver failure: {e}")
            await self._release(device_id, driver)
            await self._mark_error(device_id, error)
            raise error from e

        logger.info("Set %s:%s to %r", device_id, key, value)
        return await self._registry.update_entity_value(device_id, key, value)

    # -- Shutdown -----------------------------------------------------------

    def cancel_all(self) -> int:
        """Cancel every in-flight driver call. Returns how many were cancelled."""
        tasks = [t for t in self._inflight if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Cancelled %d in-flight driver calls", len(tasks))
        return len(tasks)

    async def shutdown(self, timeout: float = 2.0) -> None:
        """Cancel pending work and disconnect every driver, each within ``timeout``."""
        self.cancel_all()
        if self._inflight:
            await asyncio.wait(list(self._inflight), timeout=timeout)

        async def close(device_id: str, driver: ProtocolDriver) -> None:
            await self._release(device_id, driver, timeout)
            device = self._registry.get(device_id)
            if device is not None and device.status == DeviceStatus.ONLINE:
                await self._registry.set_status(device_id, DeviceStatus.OFFLINE)

        drivers = list(self._drivers.items())
        self._drivers.clear()
        results = await asyncio.gather(*(close(i, d) for i, d in drivers), return_exceptions=True)
        for (device_id, _), result in zip(drivers, results):
            if isinstance(result, Exception):
                logger.warning("Shutdown of %s did not complete: %s", device_id, result)
        logger.info("Driver manager shut down (%d drivers)", len(drivers))

    def connection_summary(self) -> dict[str, dict[str, int]]:
        """Per-protocol count of driver instances and live sessions."""
        summary: dict[str, dict[str, int]] = {}
        for device_id, driver in self._drivers.items():
            device = self._registry.get(device_id)
            protocol = device.protocol if device else driver.protocol
            entry = summary.setdefault(protocol, {"drivers": 0, "connected": 0})
            entry["drivers"] += 1
            if driver.is_connected:
                entry["connected"] += 1
        return summary
