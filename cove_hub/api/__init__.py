"""
API routers for the hub daemon.
"""

from fastapi import APIRouter

from .devices import router as devices_router
from .health import router as health_router

# Main router that aggregates all sub-routers
router = APIRouter()

router.include_router(health_router)
router.include_router(devices_router)
