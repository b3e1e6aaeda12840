"""
Cove Hub - smart-home hub daemon

The FastAPI application entry point.
"""

# Load .env file FIRST, before any other imports
from pathlib import Path
from dotenv import load_dotenv
_env_root = Path(__file__).parent.parent
load_dotenv(_env_root / ".env")

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .api import router as api_router
from .config import HubSettings, settings
from .daemon import HubDaemon

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("cove.hub.main")


def create_app(daemon: Optional[HubDaemon] = None, hub_settings: Optional[HubSettings] = None) -> FastAPI:
    """
    Build the HTTP application around a hub daemon.

    The daemon is started on application startup and stopped on shutdown.
    """
    daemon = daemon or HubDaemon(hub_settings or settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- Startup ---
        logger.info("Cove Hub starting up...")
        app.state.daemon = daemon
        await daemon.start()
        logger.info("Cove Hub %s running", daemon.hub_id)

        yield

        # --- Shutdown ---
        logger.info("Cove Hub shutting down...")
        await daemon.stop()
        logger.info("Cove Hub shutdown complete")

    app = FastAPI(
        title="Cove Hub",
        description="Local smart-home hub daemon.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.daemon = daemon

    # Include API routers with /api/v1 prefix
    app.include_router(api_router, prefix="/api/v1")
    return app


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        create_app(),
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
