"""
Hub daemon: composes storage, registry, drivers, events and discovery.

Lifecycle: created -> initializing -> ready -> running -> stopping -> stopped,
with error reachable from initializing and running. The daemon owns every
component it builds; nothing here is a process-wide singleton.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable
from uuid import uuid4

from .config import HubSettings
from .discovery import BaseScanner, DiscoveryService
from .drivers import DriverManager, DriverRegistry, PairingTarget, default_driver_registry
from .events import DeviceFound, DeviceStatusChanged, EntityStateChanged, EventBus
from .exceptions import (
    AlreadyRunning,
    DaemonNotReady,
    HubError,
    InvalidTransition,
    UnknownDevice,
    UnknownEntity,
)
from .registry import DeviceRegistry
from .storage import Database, DevicePatch, DeviceRepository, DeviceStatus, Entity, StorageError
from .storage.models import utcnow

logger = logging.getLogger("cove.hub.daemon")


class DaemonState(str, Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@runtime_checkable
class TelemetrySink(Protocol):
    """External store that receives entity readings."""

    async def record(self, entity: Entity, value: Any, timestamp: datetime) -> None:
        ...


@dataclass
class DaemonStatus:
    """Point-in-time view of the daemon."""
    state: DaemonState
    hub_id: str
    device_count: int
    protocols: dict[str, dict[str, Any]] = field(default_factory=dict)
    drivers: list[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "hub_id": self.hub_id,
            "device_count": self.device_count,
            "protocols": self.protocols,
            "drivers": self.drivers,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_error": self.last_error,
        }


class HubDaemon:
    """
    The long-running hub process.

    Supports:
    - Explicit initialize/start/stop lifecycle
    - Forwarding driver and discovery events into the registry
    - Periodic liveness checks with reconnect
    """

    def __init__(
        self,
        settings: Optional[HubSettings] = None,
        driver_registry: Optional[DriverRegistry] = None,
        telemetry: Optional[TelemetrySink] = None,
        scanners: Optional[list[BaseScanner]] = None,
    ):
        self._settings = settings or HubSettings()
        self.hub_id = self._settings.hub_id or f"hub-{uuid4().hex[:12]}"
        self._driver_registry = driver_registry
        self._telemetry = telemetry
        self._scanners = scanners

        self._state = DaemonState.CREATED
        self._last_error: Optional[str] = None
        self._started_at: Optional[datetime] = None
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribers: list[Callable[[], None]] = []

        self.bus = EventBus(maxsize=self._settings.daemon.event_queue_size)
        self.db: Optional[Database] = None
        self._registry: Optional[DeviceRegistry] = None
        self._manager: Optional[DriverManager] = None
        self.drivers: Optional[DriverRegistry] = None
        self.discovery: Optional[DiscoveryService] = None

    @property
    def state(self) -> DaemonState:
        return self._state

    @property
    def settings(self) -> HubSettings:
        return self._settings

    @property
    def registry(self) -> DeviceRegistry:
        if self._registry is None:
            raise DaemonNotReady(self._state.value, "access the registry")
        return self._registry

    @property
    def manager(self) -> DriverManager:
        if self._manager is None or self._state not in (DaemonState.READY, DaemonState.RUNNING):
            raise DaemonNotReady(self._state.value, "manage drivers")
        return self._manager

    def _set_state(self, state: DaemonState) -> None:
        if state != self._state:
            logger.info("Hub daemon %s: %s -> %s", self.hub_id, self._state.value, state.value)
            self._state = state

    def _fail(self, error: BaseException) -> None:
        self._last_error = str(error) or type(error).__name__
        logger.error("Hub daemon entered error state: %s", self._last_error)
        self._set_state(DaemonState.ERROR)

    def _on_storage_fault(self, error: BaseException) -> None:
        # Writes during shutdown are best effort and logged by stop()
        if self._state in (DaemonState.READY, DaemonState.RUNNING):
            self._fail(error)

    # -- Lifecycle ----------------------------------------------------------

    async def initialize(self, config: Optional[HubSettings] = None) -> None:
        """
        Open storage, check its schema and load the registry.

        Raises:
            AlreadyRunning: the daemon is running
            StorageError: the store cannot be opened (daemon goes to error)
            SchemaMismatch: the store has an incompatible schema (daemon goes to error)
        """
        if self._state == DaemonState.RUNNING:
            raise AlreadyRunning()
        if self._state == DaemonState.READY:
            return
        if self._state in (DaemonState.INITIALIZING, DaemonState.STOPPING):
            raise DaemonNotReady(self._state.value, "initialize")

        if config is not None:
            self._settings = config
        self._set_state(DaemonState.INITIALIZING)
        self._last_error = None

        db = Database(self._settings.storage)
        try:
            await db.initialize()
            registry = DeviceRegistry(DeviceRepository(db), on_storage_error=self._on_storage_fault)
            await registry.load()
        except StorageError as e:
            await db.close()
            self._fail(e)
            raise

        self.db = db
        self._registry = registry
        self.drivers = self._driver_registry or default_driver_registry(self._settings)
        self._manager = DriverManager(registry, self.drivers, self._settings.driver, bus=self.bus)
        if self._settings.discovery.enabled:
            self.discovery = DiscoveryService(self.bus, self._settings.discovery, scanners=self._scanners)
        else:
            self.discovery = None

        logger.info(
            "Hub daemon initialized: %d devices, drivers=%s",
            registry.count(),
            ", ".join(self.drivers.protocols) or "none",
        )
        self._set_state(DaemonState.READY)

    async def start(self) -> None:
        """
        Start event processing, discovery and supervision.

        Initializes first when needed.

        Raises:
            AlreadyRunning: start() was called on a running daemon
            DaemonNotReady: the daemon is in error or mid-transition
        """
        if self._state == DaemonState.RUNNING:
            raise AlreadyRunning()
        if self._state in (DaemonState.CREATED, DaemonState.STOPPED):
            await self.initialize()
        elif self._state != DaemonState.READY:
            raise DaemonNotReady(self._state.value, "start")

        try:
            self._subscribe()
            await self.bus.start()
            if self.discovery is not None:
                await self.discovery.start()
        except Exception as e:
            self._fail(e)
            raise

        self._started_at = utcnow()
        self._set_state(DaemonState.RUNNING)

        if self._settings.daemon.liveness_interval_seconds > 0:
            self._spawn(self._liveness_loop())
        if self._settings.daemon.connect_on_start:
            self._spawn(self._guard(self._manager.connect_paired_devices()))

    async def stop(self) -> None:
        """
        Stop supervision, disconnect drivers and close storage.

        Safe to call in any state; a daemon that never started is left alone.
        """
        if self._state in (DaemonState.CREATED, DaemonState.STOPPED, DaemonState.STOPPING):
            return

        self._set_state(DaemonState.STOPPING)

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.discovery is not None:
            await self.discovery.stop()
        await self.bus.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self._manager is not None:
            try:
                await self._manager.shutdown(timeout=self._settings.daemon.stop_timeout)
            except StorageError as e:
                logger.error("Could not record device status during shutdown: %s", e)

        if self._registry is not None and self.db is not None and self.db.is_initialized:
            try:
                await self._registry.flush()
            except StorageError as e:
                logger.error("Could not flush registry: %s", e)
        if self.db is not None:
            await self.db.close()

        self._set_state(DaemonState.STOPPED)

    def get_status(self) -> DaemonStatus:
        """Aggregate daemon and per-protocol device status. Never mutates state."""
        counts: dict[str, Counter] = self._registry.status_counts() if self._registry else {}
        connections = self._manager.connection_summary() if self._manager else {}

        protocols = {}
        for protocol in sorted(set(counts) | set(connections)):
            statuses = counts.get(protocol, Counter())
            protocols[protocol] = {
                "devices": sum(statuses.values()),
                "connected": connections.get(protocol, {}).get("connected", 0),
                "statuses": dict(statuses),
            }

        return DaemonStatus(
            state=self._state,
            hub_id=self.hub_id,
            device_count=self._registry.count() if self._registry else 0,
            protocols=protocols,
            drivers=self.drivers.protocols if self.drivers else [],
            started_at=self._started_at,
            last_error=self._last_error,
        )

    # -- Background work ----------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except StorageError as e:
            self._fail(e)
        except HubError as e:
            logger.warning("Background operation failed: %s", e)

    async def _liveness_loop(self) -> None:
        interval = self._settings.daemon.liveness_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self._manager.check_liveness(reconnect=self._settings.daemon.auto_reconnect)
            except StorageError as e:
                self._fail(e)
                return
            except HubError as e:
                logger.warning("Liveness check failed: %s", e)

    # -- Event handlers -----------------------------------------------------

    def _subscribe(self) -> None:
        for event_type, handler in (
            (DeviceFound, self._on_device_found),
            (DeviceStatusChanged, self._on_status_changed),
            (EntityStateChanged, self._on_entity_state),
        ):
            self._unsubscribers.append(self.bus.subscribe(event_type, self._storage_guarded(handler)))

    def _storage_guarded(self, handler: Callable[[Any], Awaitable[None]]) -> Callable[[Any], Awaitable[None]]:
        async def wrapper(event: Any) -> None:
            try:
                await handler(event)
            except StorageError as e:
                self._fail(e)
        return wrapper

    async def _on_device_found(self, event: DeviceFound) -> None:
        registry = self.registry
        existing = registry.get(event.device_id)

        if existing is None:
            await registry.upsert(
                DevicePatch(
                    id=event.device_id,
                    protocol=event.protocol,
                    name=event.name,
                    status=DeviceStatus.DISCOVERED,
                    host=event.host,
                    port=event.port,
                    metadata=event.metadata,
                )
            )
            if event.protocol in self._settings.daemon.auto_pair_protocols:
                self._spawn(self._guard(self._manager.start_pairing(
                    event.protocol,
                    PairingTarget(device_id=event.device_id, host=event.host, port=event.port),
                )))
            return

        if existing.is_removed:
            logger.debug("Ignoring announcement from removed device %s", event.device_id)
            return
        if existing.protocol != event.protocol:
            logger.warning(
                "Ignoring %s announcement for %s registered as %s",
                event.protocol, event.device_id, existing.protocol,
            )
            return

        await registry.upsert(
            DevicePatch(id=event.device_id, host=event.host, port=event.port, metadata=event.metadata)
        )

    async def _on_status_changed(self, event: DeviceStatusChanged) -> None:
        try:
            await self.registry.set_status(event.device_id, event.status, error=event.error)
        except (InvalidTransition, UnknownDevice) as e:
            logger.warning("Dropping status report: %s", e)

    async def _on_entity_state(self, event: EntityStateChanged) -> None:
        try:
            entity = await self.registry.update_entity_value(event.device_id, event.key, event.value, event.unit)
        except (UnknownDevice, UnknownEntity, InvalidTransition) as e:
            logger.warning("Dropping entity update: %s", e)
            return

        if self._telemetry is not None:
            try:
                await self._telemetry.record(entity, event.value, event.ts)
            except Exception as e:
                logger.warning("Telemetry sink rejected %s: %s", entity.id, e)
