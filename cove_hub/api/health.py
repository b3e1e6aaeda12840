"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends

from ..daemon import HubDaemon
from .dependencies import get_daemon

router = APIRouter(tags=["Health"])


@router.get("/ping")
async def ping():
    """Simple endpoint to verify server is running."""
    return {"status": "ok", "message": "pong"}


@router.get("/status")
async def hub_status(daemon: HubDaemon = Depends(get_daemon)):
    """Daemon state with per-protocol device and connection counts."""
    return daemon.get_status().to_dict()
