"""ASGI app factory and the ``camhub`` console command."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from camhub import __version__
from camhub.api import api_router
from camhub.config import get_settings
from camhub.services.hub import CameraHub

settings = get_settings()
logger = logging.getLogger(__name__)


def create_app(hub: Optional[CameraHub] = None, start_hub: bool = True) -> FastAPI:
    """Build the application around a CameraHub.

    The companion gateway's ``/discover`` and ``/ws`` routes are served
    from the same app as the REST API.
    """
    hub = hub or CameraHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Hub runs for the lifetime of the server process."""
        if start_hub:
            try:
                await hub.start(wait=False)
            except Exception as e:
                logger.warning(f"Camera hub failed to start cleanly: {e}")

        yield

        try:
            await hub.stop()
        except Exception:
            logger.exception("Error stopping camera hub")

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        lifespan=lifespan,
    )
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)
    app.include_router(hub.companion.router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Service name, version and where to look next."""
        return {
            "name": settings.app_name,
            "version": __version__,
            "docs": "/docs",
            "health": f"{settings.api_prefix}/health",
        }

    return app


def run() -> None:
    """Console entry point: ``camhub``."""
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    uvicorn.run(
        "camhub.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
