"""
In-process event bus.

Drivers and discovery publish events; the daemon subscribes handlers that
write them into the registry. Events are queued and dispatched by one
background task, so publishers never wait on handlers.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

from ..storage.models import DeviceStatus, utcnow

logger = logging.getLogger("cove.hub.events.bus")


@dataclass(frozen=True)
class DeviceFound:
    """A device announced itself on the network."""
    protocol: str
    device_id: str
    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ts: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DeviceStatusChanged:
    """A driver observed a change in its device's reachability."""
    device_id: str
    status: DeviceStatus
    error: Optional[str] = None
    ts: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class EntityStateChanged:
    """A driver reported a new value for an entity."""
    device_id: str
    key: str
    value: Any
    unit: Optional[str] = None
    ts: datetime = field(default_factory=utcnow)


HubEvent = Union[DeviceFound, DeviceStatusChanged, EntityStateChanged]
Handler = Callable[[Any], Any]


class EventBus:
    """
    Queue-backed publish/subscribe channel.

    Events published while the bus is stopped are dropped.
    """

    def __init__(self, maxsize: int = 1000):
        self._maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._handlers: dict[type, list[Handler]] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """
        Register a handler (sync or async) for one event type.

        Returns:
            A callable that removes the handler
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: HubEvent) -> bool:
        """Queue an event for dispatch. Returns False when it was dropped."""
        if not self._running or self._queue is None:
            logger.debug("Event bus not running, dropping %s", type(event).__name__)
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full, dropping %s", type(event).__name__)
            return False
        return True

    async def start(self) -> None:
        if self._running:
            return
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Event bus started")

    async def stop(self, drain_timeout: float = 1.0) -> None:
        """Stop accepting events, give queued ones a moment to finish, then stop."""
        if not self._running:
            return
        self._running = False
        if self._queue is not None and not self._queue.empty():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Dropped %d undelivered events", self._queue.qsize())
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._queue = None
        logger.info("Event bus stopped")

    async def drain(self) -> None:
        """Wait until every queued event has been dispatched."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self) -> None:
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                await self._dispatch(event)
            finally:
                queue.task_done()

    async def _dispatch(self, event: Any) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Handler %r failed for %s: %s", handler, type(event).__name__, e)
