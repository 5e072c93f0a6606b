"""Live stream and recording status endpoints."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status

from camhub.api.deps import get_hub, http_error
from camhub.exceptions import CamHubError
from camhub.schemas import RecordingConfig
from camhub.services.hub import CameraHub

router = APIRouter(tags=["streams"])


@router.get("/streams")
async def list_streams(hub: CameraHub = Depends(get_hub)) -> list[dict]:
    """Get status of all active streams."""
    return hub.streams.get_all_status()


@router.get("/streams/{camera_id}")
async def get_stream(camera_id: str, hub: CameraHub = Depends(get_hub)) -> dict:
    stream_status = hub.streams.get_status(camera_id)
    if stream_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active stream for camera {camera_id}",
        )
    return stream_status


@router.get("/recordings")
async def list_recordings(hub: CameraHub = Depends(get_hub)) -> list[dict]:
    """Get status of all active recordings."""
    return hub.recorder.get_all_status()


@router.post("/recordings/start-all")
async def start_all_recordings(
    config: Optional[RecordingConfig] = Body(None),
    hub: CameraHub = Depends(get_hub),
) -> dict[str, bool]:
    """Start recording every camera; returns per-camera success."""
    return await hub.start_recording_all(config)


@router.post("/recordings/stop-all", status_code=status.HTTP_204_NO_CONTENT)
async def stop_all_recordings(hub: CameraHub = Depends(get_hub)) -> None:
    await hub.stop_recording_all()


@router.get("/recordings/{camera_id}")
async def get_recording(camera_id: str, hub: CameraHub = Depends(get_hub)) -> dict:
    session = hub.recorder.get_recording(camera_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No recording for camera {camera_id}",
        )
    return session.get_status()


@router.post("/recordings/{camera_id}/pause")
async def pause_recording(camera_id: str, hub: CameraHub = Depends(get_hub)) -> dict:
    try:
        session = await hub.recorder.pause_recording(camera_id)
    except CamHubError as e:
        raise http_error(e) from e
    return session.get_status()


@router.post("/recordings/{camera_id}/resume")
async def resume_recording(camera_id: str, hub: CameraHub = Depends(get_hub)) -> dict:
    try:
        session = await hub.recorder.resume_recording(camera_id)
    except CamHubError as e:
        raise http_error(e) from e
    return session.get_status()
