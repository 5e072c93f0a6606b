"""Health check endpoint."""

from fastapi import APIRouter, Depends

from camhub import __version__
from camhub.api.deps import get_hub
from camhub.services.hub import CameraHub

router = APIRouter()


@router.get("/health")
async def health_check(hub: CameraHub = Depends(get_hub)) -> dict:
    """Service liveness and a few headline counters."""
    return {
        "status": "healthy",
        "version": __version__,
        "cameras": len(hub.registry.get_cameras()),
        "discovering": hub.registry.is_discovering,
        "active_streams": len(hub.streams.get_active_streams()),
        "active_recordings": len(hub.recorder.get_active_recordings()),
    }
