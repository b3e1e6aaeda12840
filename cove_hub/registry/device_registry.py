"""
Device registry: authoritative device and entity records.

Keeps every record in memory and mirrors each change to sqlite before the
in-memory copy is replaced. Operations on one device id are serialized;
different ids proceed independently.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import replace
from typing import Any, Callable, Iterable, Optional

from ..capabilities import EntityDescriptor
from ..exceptions import InvalidTransition, UnknownDevice, UnknownEntity
from ..storage.exceptions import StorageError
from ..storage.models import Device, DevicePatch, DeviceStatus, Entity, utcnow
from ..storage.repositories import DeviceRepository
from .transitions import INITIAL_STATUSES, PAIRED_STATUSES, can_transition

logger = logging.getLogger("cove.hub.registry")


def _copy_device(device: Device) -> Device:
    return replace(device, credentials=dict(device.credentials), metadata=dict(device.metadata))


class DeviceRegistry:
    """
    Registry of devices and their entities.

    Supports:
    - Idempotent merge-by-id upserts
    - Status changes validated against the device state machine
    - Soft removal (records are never deleted)
    """

    def __init__(
        self,
        repository: DeviceRepository,
        on_storage_error: Optional[Callable[[StorageError], None]] = None,
    ):
        self._repo = repository
        # Called for every failed write, whoever issued it
        self.on_storage_error = on_storage_error
        self._devices: dict[str, Device] = {}
        self._entities: dict[str, dict[str, Entity]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def load(self) -> None:
        """Populate the in-memory view from storage."""
        devices = await self._repo.load_devices()
        entities = await self._repo.load_entities()
        self._devices = {d.id: d for d in devices}
        self._entities = {}
        for entity in entities:
            self._entities.setdefault(entity.device_id, {})[entity.key] = entity
        logger.info("Loaded %d devices and %d entities", len(devices), len(entities))

    async def flush(self) -> None:
        await self._repo.flush()

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    async def _persist(self, device: Optional[Device], entities: list[Entity]) -> None:
        """
        Write to storage, then publish to memory.

        The write runs in its own task so that cancelling the caller cannot
        leave a committed row without its in-memory copy.
        """

        async def commit() -> None:
            if device is not None:
                await self._repo.save(device, entities)
                self._devices[device.id] = device
            else:
                for entity in entities:
                    await self._repo.save_entity(entity)
            for entity in entities:
                self._entities.setdefault(entity.device_id, {})[entity.key] = entity

        task = asyncio.ensure_future(commit())
        try:
            await asyncio.shield(task)
        except StorageError as e:
            logger.error("Registry write failed: %s", e)
            if self.on_storage_error is not None:
                self.on_storage_error(e)
            raise
        except asyncio.CancelledError:
            # Hold the device lock until the write settles
            if not task.done():
                await asyncio.wait([task])
            raise

    # -- Queries ------------------------------------------------------------

    def get(self, device_id: str) -> Optional[Device]:
        """Get a device by id, including removed devices."""
        device = self._devices.get(device_id)
        return _copy_device(device) if device else None

    def require(self, device_id: str) -> Device:
        device = self.get(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        return device

    def list_devices(
        self,
        protocol: Optional[str] = None,
        status: Optional[DeviceStatus] = None,
        include_removed: bool = False,
    ) -> list[Device]:
        """List devices, hiding removed ones unless asked."""
        result = []
        for device in self._devices.values():
            if protocol is not None and device.protocol != protocol:
                continue
            if status is not None and device.status != status:
                continue
            if device.is_removed and not include_removed and status != DeviceStatus.REMOVED:
                continue
            result.append(_copy_device(device))
        return result

    def count(self, include_removed: bool = False) -> int:
        return sum(1 for d in self._devices.values() if include_removed or not d.is_removed)

    def status_counts(self) -> dict[str, Counter]:
        """Per-protocol counts of device statuses (removed devices excluded)."""
        counts: dict[str, Counter] = {}
        for device in self._devices.values():
            if device.is_removed:
                continue
            counts.setdefault(device.protocol, Counter())[device.status.value] += 1
        return counts

    # -- Device mutations ---------------------------------------------------

    async def upsert(
        self,
        patch: DevicePatch,
        entities: Iterable[EntityDescriptor] = (),
    ) -> Device:
        """
        Insert a device or merge a partial record into an existing one.

        Fields of ``patch`` left as None keep their stored values. Entities
        given here are written in the same transaction as the device.

        Raises:
            InvalidTransition: protocol change, illegal status change, update
                of a removed device, or an entity changing capability type
            ValueError: a new device without a protocol
            StorageError: the write failed; nothing was changed
        """
        async with self._lock_for(patch.id):
            current = self._devices.get(patch.id)
            device = self._merge(current, patch)
            new_entities = self._build_entities(device.id, entities)
            await self._persist(device, new_entities)

        if current is None:
            logger.info("Registered device %s (%s, %s)", device.id, device.protocol, device.status.value)
        elif current.status != device.status:
            logger.info("Device %s: %s -> %s", device.id, current.status.value, device.status.value)
        return _copy_device(device)

    def _merge(self, current: Optional[Device], patch: DevicePatch) -> Device:
        now = utcnow()

        if current is None:
            if not patch.protocol:
                raise ValueError(f"protocol is required to create device {patch.id}")
            status = patch.status or DeviceStatus.DISCOVERED
            if status not in INITIAL_STATUSES:
                raise InvalidTransition(patch.id, "absent", status.value)
            paired_at = patch.paired_at
            if status == DeviceStatus.PAIRED and paired_at is None:
                paired_at = now
            return Device(
                id=patch.id,
                protocol=patch.protocol,
                name=patch.name or patch.id,
                status=status,
                host=patch.host,
                port=patch.port,
                credentials=dict(patch.credentials or {}),
                metadata=dict(patch.metadata or {}),
                paired_at=paired_at,
                last_seen=now,
                created_at=now,
            )

        if current.is_removed:
            raise InvalidTransition(current.id, DeviceStatus.REMOVED.value, (patch.status or current.status).value)
        if patch.protocol and patch.protocol != current.protocol:
            raise InvalidTransition(current.id, f"protocol {current.protocol}", f"protocol {patch.protocol}")

        status = current.status
        if patch.status is not None and patch.status != current.status:
            self._check_transition(current, patch.status)
            status = patch.status

        paired_at = patch.paired_at or current.paired_at
        if status == DeviceStatus.PAIRED and paired_at is None:
            paired_at = now

        metadata = dict(current.metadata)
        if patch.metadata:
            metadata.update(patch.metadata)

        return replace(
            current,
            name=patch.name if patch.name is not None else current.name,
            status=status,
            host=patch.host if patch.host is not None else current.host,
            port=patch.port if patch.port is not None else current.port,
            credentials=dict(patch.credentials) if patch.credentials is not None else dict(current.credentials),
            metadata=metadata,
            paired_at=paired_at,
            last_seen=now,
        )

    def _check_transition(self, device: Device, target: DeviceStatus) -> None:
        if not can_transition(device.status, target):
            raise InvalidTransition(device.id, device.status.value, target.value)
        if target in PAIRED_STATUSES and target != DeviceStatus.PAIRED and not device.is_paired:
            raise InvalidTransition(device.id, device.status.value, target.value)

    async def set_status(
        self,
        device_id: str,
        status: DeviceStatus,
        error: Optional[str] = None,
    ) -> Device:
        """
        Move a device to a new status.

        Re-applying the current status refreshes last_seen. ``error`` is kept
        as the device's last error; reaching online clears it.

        Raises:
            UnknownDevice: the id is not registered
            InvalidTransition: the move is not allowed; nothing changes
        """
        async with self._lock_for(device_id):
            current = self._devices.get(device_id)
            if current is None:
                raise UnknownDevice(device_id)
            if current.is_removed and status == DeviceStatus.REMOVED:
                return _copy_device(current)
            self._check_transition(current, status)

            if error is not None:
                last_error = error
            elif status == DeviceStatus.ONLINE:
                last_error = None
            else:
                last_error = current.last_error

            device = replace(current, status=status, last_error=last_error, last_seen=utcnow())
            await self._persist(device, [])

        if current.status != status:
            logger.info("Device %s: %s -> %s", device_id, current.status.value, status.value)
        return _copy_device(device)

    async def remove(self, device_id: str) -> Device:
        """Soft-delete a device. Its entities stay readable."""
        return await self.set_status(device_id, DeviceStatus.REMOVED)

    # -- Entities -----------------------------------------------------------

    def _build_entities(self, device_id: str, descriptors: Iterable[EntityDescriptor]) -> list[Entity]:
        now = utcnow()
        existing = self._entities.get(device_id, {})
        result = []
        for desc in descriptors:
            old = existing.get(desc.key)
            if old is not None and old.capability.type != desc.capability.type:
                raise InvalidTransition(f"{device_id}:{desc.key}", old.capability.type, desc.capability.type)
            result.append(
                Entity(
                    device_id=device_id,
                    key=desc.key,
                    capability=desc.capability,
                    name=desc.name or (old.name if old else None),
                    value=desc.value if desc.value is not None else (old.value if old else None),
                    unit=desc.unit or (old.unit if old else None),
                    updated_at=now,
                )
            )
        return result

    async def upsert_entity(self, device_id: str, descriptor: EntityDescriptor) -> Entity:
        """Add or refresh one entity of a registered device."""
        async with self._lock_for(device_id):
            device = self._devices.get(device_id)
            if device is None:
                raise UnknownDevice(device_id)
            if device.is_removed:
                raise InvalidTransition(device_id, DeviceStatus.REMOVED.value, "entity update")
            entities = self._build_entities(device_id, [descriptor])
            await self._persist(None, entities)
        return replace(entities[0])

    async def update_entity_value(
        self,
        device_id: str,
        key: str,
        value: Any,
        unit: Optional[str] = None,
    ) -> Entity:
        """Record the latest value reported for an entity."""
        async with self._lock_for(device_id):
            device = self._devices.get(device_id)
            if device is None:
                raise UnknownDevice(device_id)
            if device.is_removed:
                raise InvalidTransition(device_id, DeviceStatus.REMOVED.value, "entity update")
            current = self._entities.get(device_id, {}).get(key)
            if current is None:
                raise UnknownEntity(device_id, key)
            entity = replace(current, value=value, unit=unit or current.unit, updated_at=utcnow())
            await self._persist(None, [entity])
        return replace(entity)

    def get_entity(self, device_id: str, key: str) -> Optional[Entity]:
        entity = self._entities.get(device_id, {}).get(key)
        return replace(entity) if entity else None

    def list_entities(self, device_id: Optional[str] = None, include_removed: bool = False) -> list[Entity]:
        """List entities, skipping those of removed devices unless asked."""
        if device_id is not None:
            owners = [device_id]
        else:
            owners = list(self._entities)
        result = []
        for owner in owners:
            device = self._devices.get(owner)
            if device is None or (device.is_removed and not include_removed):
                continue
            result.extend(replace(e) for e in self._entities.get(owner, {}).values())
        return result
