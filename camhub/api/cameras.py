"""Camera registry, discovery and command API endpoints."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse

from camhub.api.deps import get_hub, http_error
from camhub.exceptions import CamHubError, DeviceNotFoundError
from camhub.models.device import TransportType
from camhub.schemas import (
    CameraCommand,
    CameraListResponse,
    CameraResponse,
    CameraTestResult,
    CommandRequest,
    CommandResult,
    DiscoveryOptions,
    ManualCameraRequest,
)
from camhub.services.hub import CameraHub

router = APIRouter(prefix="/cameras", tags=["cameras"])


def _camera_list(devices) -> CameraListResponse:
    return CameraListResponse(
        cameras=[CameraResponse.from_device(d) for d in devices],
        total=len(devices),
    )


@router.get("", response_model=CameraListResponse)
async def list_cameras(
    transport: Optional[TransportType] = None,
    hub: CameraHub = Depends(get_hub),
) -> CameraListResponse:
    """Get all cameras, optionally filtered by transport."""
    if transport is not None:
        devices = hub.registry.get_cameras_by_transport(transport)
    else:
        devices = hub.registry.get_cameras()
    return _camera_list(devices)


@router.get("/statistics")
async def get_statistics(hub: CameraHub = Depends(get_hub)) -> dict:
    """Aggregate camera, stream and recording counters."""
    return hub.get_statistics()


@router.get("/alerts")
async def list_alerts(
    unresolved: bool = False,
    hub: CameraHub = Depends(get_hub),
) -> list[dict]:
    return [a.to_dict() for a in hub.get_alerts(unresolved=unresolved)]


@router.post("/alerts/{alert_id}/resolve", status_code=status.HTTP_204_NO_CONTENT)
async def resolve_alert(alert_id: str, hub: CameraHub = Depends(get_hub)) -> None:
    if not hub.resolve_alert(alert_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Alert {alert_id} not found",
        )


@router.get("/history")
async def get_history(
    camera_id: Optional[str] = None,
    hub: CameraHub = Depends(get_hub),
) -> list[dict]:
    return [e.to_dict() for e in hub.get_event_history(camera_id)]


@router.post("/discover", response_model=CameraListResponse)
async def discover_cameras(
    options: Optional[DiscoveryOptions] = Body(None),
    hub: CameraHub = Depends(get_hub),
) -> CameraListResponse:
    """Run a discovery pass and return every registered camera."""
    try:
        devices = await hub.registry.start_discovery(options)
    except CamHubError as e:
        raise http_error(e) from e
    return _camera_list(devices)


@router.post("/manual", response_model=CameraListResponse, status_code=status.HTTP_201_CREATED)
async def add_manual_camera(
    request: ManualCameraRequest,
    hub: CameraHub = Depends(get_hub),
) -> CameraListResponse:
    """Add an RTSP or ONVIF camera by hand.

    The password is kept in the credential store and never returned.
    """
    try:
        devices = await hub.registry.add_manual_camera(
            name=request.name,
            transport=request.transport,
            url=request.url,
            address=request.address,
            port=request.port,
            username=request.username,
            password=request.password,
        )
    except CamHubError as e:
        raise http_error(e) from e

    if not devices:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Camera did not respond",
        )
    return _camera_list(devices)


@router.get("/{camera_id}", response_model=CameraResponse)
async def get_camera(camera_id: str, hub: CameraHub = Depends(get_hub)) -> CameraResponse:
    """Get a specific camera by ID."""
    device = hub.registry.get_camera(camera_id)
    if device is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Camera {camera_id} not found",
        )
    return CameraResponse.from_device(device)


@router.post("/{camera_id}/test", response_model=CameraTestResult)
async def test_camera(camera_id: str, hub: CameraHub = Depends(get_hub)) -> CameraTestResult:
    """Test connectivity with the camera's own transport."""
    if hub.registry.get_camera(camera_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Camera {camera_id} not found",
        )
    success = await hub.registry.test_connection(camera_id)
    return CameraTestResult(
        camera_id=camera_id,
        success=success,
        message="Connection successful" if success else "Connection failed",
    )


@router.post("/{camera_id}/commands", response_model=CommandResult)
async def execute_command(
    camera_id: str,
    request: CommandRequest,
    hub: CameraHub = Depends(get_hub),
) -> CommandResult:
    """Execute a camera command (stream, record, snapshot, restart, quality)."""
    command = CameraCommand(type=request.type, camera_id=camera_id, params=request.params)
    try:
        return await hub.execute(command)
    except CamHubError as e:
        raise http_error(e) from e


@router.get("/{camera_id}/snapshot")
async def get_snapshot(camera_id: str, hub: CameraHub = Depends(get_hub)) -> Response:
    """Capture a JPEG. Companion devices answer 202 and deliver asynchronously."""
    device = hub.registry.get_camera(camera_id)
    try:
        if device is None:
            raise DeviceNotFoundError(f"Camera {camera_id} not found")
        snapshot = await hub.snapshots.take_snapshot(device)
    except CamHubError as e:
        raise http_error(e) from e

    if snapshot.image is not None:
        return Response(content=snapshot.image, media_type=snapshot.content_type)
    if snapshot.pending:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"camera_id": camera_id, "pending": True},
        )
    raise HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail="Snapshot capture failed",
    )
