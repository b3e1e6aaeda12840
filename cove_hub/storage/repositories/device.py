"""
Device repository for the hub store.

Provides persistence for the devices and entities tables. Every write goes
through one transaction so a device and its entities land together.
"""

import json
import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from ...capabilities import dump_capability, parse_capability
from ..database import Database
from ..models import Device, DeviceStatus, Entity

logger = logging.getLogger("cove.hub.storage.device")


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DeviceRepository:
    """
    Repository for devices and their entities.

    Unlike a cache, failures propagate: the registry relies on them to keep
    memory and disk in step.
    """

    def __init__(self, db: Database):
        self._db = db

    async def save(self, device: Device, entities: Iterable[Entity] = ()) -> None:
        """Insert or replace a device row and the given entity rows atomically."""
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO devices (
                    id, protocol, name, status, host, port, credentials,
                    metadata, last_error, paired_at, last_seen, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    status = excluded.status,
                    host = excluded.host,
                    port = excluded.port,
                    credentials = excluded.credentials,
                    metadata = excluded.metadata,
                    last_error = excluded.last_error,
                    paired_at = excluded.paired_at,
                    last_seen = excluded.last_seen
                """,
                (
                    device.id,
                    device.protocol,
                    device.name,
                    device.status.value,
                    device.host,
                    device.port,
                    json.dumps(device.credentials),
                    json.dumps(device.metadata),
                    device.last_error,
                    _ts(device.paired_at),
                    _ts(device.last_seen),
                    _ts(device.created_at),
                ),
            )
            for entity in entities:
                await self._write_entity(conn, entity)

    async def save_entity(self, entity: Entity) -> None:
        async with self._db.transaction() as conn:
            await self._write_entity(conn, entity)

    async def _write_entity(self, conn, entity: Entity) -> None:
        await conn.execute(
            """
            INSERT INTO entities (
                device_id, key, name, capability_type, capability, value, unit, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (device_id, key) DO UPDATE SET
                name = excluded.name,
                capability = excluded.capability,
                value = excluded.value,
                unit = excluded.unit,
                updated_at = excluded.updated_at
            """,
            (
                entity.device_id,
                entity.key,
                entity.name,
                entity.capability.type,
                json.dumps(dump_capability(entity.capability)),
                json.dumps(entity.value),
                entity.unit,
                _ts(entity.updated_at),
            ),
        )

    async def load_devices(self) -> list[Device]:
        rows = await self._db.fetch("SELECT * FROM devices ORDER BY created_at")
        return [self._row_to_device(row) for row in rows]

    async def load_entities(self) -> list[Entity]:
        rows = await self._db.fetch("SELECT * FROM entities ORDER BY device_id, key")
        return [self._row_to_entity(row) for row in rows]

    async def get_device(self, device_id: str) -> Optional[Device]:
        row = await self._db.fetchrow("SELECT * FROM devices WHERE id = ?", device_id)
        return self._row_to_device(row) if row else None

    async def flush(self) -> None:
        """Make all committed writes durable in the main database file."""
        await self._db.checkpoint()

    def _row_to_device(self, row: Any) -> Device:
        """Convert a database row to a Device."""
        return Device(
            id=row["id"],
            protocol=row["protocol"],
            name=row["name"],
            status=DeviceStatus(row["status"]),
            host=row["host"],
            port=row["port"],
            credentials=json.loads(row["credentials"] or "{}"),
            metadata=json.loads(row["metadata"] or "{}"),
            last_error=row["last_error"],
            paired_at=_parse_ts(row["paired_at"]),
            last_seen=_parse_ts(row["last_seen"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def _row_to_entity(self, row: Any) -> Entity:
        """Convert a database row to an Entity."""
        return Entity(
            device_id=row["device_id"],
            key=row["key"],
            name=row["name"],
            capability=parse_capability(row["capability"]),
            value=json.loads(row["value"]) if row["value"] is not None else None,
            unit=row["unit"],
            updated_at=_parse_ts(row["updated_at"]),
        )
