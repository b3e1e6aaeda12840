"""
Device management endpoints.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..daemon import HubDaemon
from ..drivers import PairingTarget
from ..exceptions import HubError
from ..storage import DeviceStatus, StorageError
from .dependencies import get_daemon, to_http_error

logger = logging.getLogger("cove.hub.api.devices")

router = APIRouter(prefix="/devices", tags=["Devices"])


# --- Request Models ---


class PairRequest(BaseModel):
    """Request to pair a device over a protocol."""
    protocol: str
    device_id: Optional[str] = None
    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    credentials: dict[str, Any] = {}


class CommandRequest(BaseModel):
    """New value for one entity."""
    value: Any


# --- Endpoints ---


@router.get("/")
async def list_devices(
    protocol: Optional[str] = None,
    status: Optional[DeviceStatus] = None,
    include_removed: bool = False,
    daemon: HubDaemon = Depends(get_daemon),
):
    """
    List registered devices.

    Removed devices are hidden unless include_removed is set or
    status=removed is requested.
    """
    try:
        devices = daemon.registry.list_devices(protocol, status, include_removed)
    except HubError as e:
        raise to_http_error(e)
    return [d.to_dict() for d in devices]


@router.get("/pairing/sessions")
async def pairing_sessions(daemon: HubDaemon = Depends(get_daemon)):
    """Recent pairing attempts, newest first."""
    try:
        sessions = daemon.manager.pairing_sessions
    except HubError as e:
        raise to_http_error(e)
    return [s.to_dict() for s in reversed(sessions)]


@router.post("/pair")
async def pair_device(body: PairRequest, daemon: HubDaemon = Depends(get_daemon)):
    """Pair a device. Nothing is registered unless pairing succeeds."""
    target = PairingTarget(
        device_id=body.device_id,
        name=body.name,
        host=body.host,
        port=body.port,
        credentials=dict(body.credentials),
    )
    try:
        session = await daemon.manager.start_pairing(body.protocol, target)
    except (HubError, StorageError) as e:
        logger.warning("Pairing over %s failed: %s", body.protocol, e)
        raise to_http_error(e)
    return session.to_dict()


@router.get("/{device_id}")
async def get_device(device_id: str, daemon: HubDaemon = Depends(get_daemon)):
    """Get one device, removed devices included."""
    try:
        device = daemon.registry.require(device_id)
    except HubError as e:
        raise to_http_error(e)
    return device.to_dict()


@router.get("/{device_id}/entities")
async def list_entities(device_id: str, daemon: HubDaemon = Depends(get_daemon)):
    """List a device's entities."""
    try:
        daemon.registry.require(device_id)
        entities = daemon.registry.list_entities(device_id, include_removed=True)
    except HubError as e:
        raise to_http_error(e)
    return [e.to_dict() for e in entities]


@router.post("/{device_id}/entities/{key}")
async def command_entity(
    device_id: str,
    key: str,
    body: CommandRequest,
    daemon: HubDaemon = Depends(get_daemon),
):
    """
    Set an entity's value on the device.

    The value is checked against the entity's capability before anything
    is sent. Returns the entity with its recorded value.
    """
    try:
        entity = await daemon.manager.send_command(device_id, key, body.value)
    except (HubError, StorageError) as e:
        logger.info("Command for %s:%s rejected: %s", device_id, key, e)
        raise to_http_error(e)
    return entity.to_dict()


@router.post("/{device_id}/connect")
async def connect_device(device_id: str, daemon: HubDaemon = Depends(get_daemon)):
    """Open a session with a paired device."""
    try:
        device = await daemon.manager.connect_device(device_id)
    except (HubError, StorageError) as e:
        raise to_http_error(e)
    return device.to_dict()


@router.post("/{device_id}/disconnect")
async def disconnect_device(device_id: str, daemon: HubDaemon = Depends(get_daemon)):
    """Close a device's session."""
    try:
        device = await daemon.manager.disconnect_device(device_id)
    except (HubError, StorageError) as e:
        raise to_http_error(e)
    return device.to_dict()


@router.delete("/{device_id}")
async def remove_device(device_id: str, daemon: HubDaemon = Depends(get_daemon)):
    """Soft-delete a device. It stays readable with status removed."""
    try:
        device = await daemon.manager.remove_device(device_id)
    except (HubError, StorageError) as e:
        raise to_http_error(e)
    return device.to_dict()
