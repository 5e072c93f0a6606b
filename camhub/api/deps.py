"""Shared API dependencies and error mapping."""

from fastapi import HTTPException, Request, status

from camhub.exceptions import (
    AlreadyRecordingError,
    CamHubError,
    ConfigurationError,
    DeviceNotFoundError,
    DiscoveryInProgressError,
    InsufficientStorageError,
    RecordingCapacityError,
    RecordingNotFoundError,
    StreamAlreadyActiveError,
    StreamStartError,
    UnsupportedTransportError,
)
from camhub.services.hub import CameraHub

ERROR_STATUS: dict[type[CamHubError], int] = {
    DeviceNotFoundError: status.HTTP_404_NOT_FOUND,
    RecordingNotFoundError: status.HTTP_404_NOT_FOUND,
    StreamAlreadyActiveError: status.HTTP_409_CONFLICT,
    AlreadyRecordingError: status.HTTP_409_CONFLICT,
    DiscoveryInProgressError: status.HTTP_409_CONFLICT,
    RecordingCapacityError: status.HTTP_503_SERVICE_UNAVAILABLE,
    InsufficientStorageError: status.HTTP_507_INSUFFICIENT_STORAGE,
    UnsupportedTransportError: status.HTTP_400_BAD_REQUEST,
    ConfigurationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    StreamStartError: status.HTTP_502_BAD_GATEWAY,
}


def get_hub(request: Request) -> CameraHub:
    """The CameraHub attached to the running application."""
    return request.app.state.hub


def http_error(exc: CamHubError) -> HTTPException:
    """Map a service error to the HTTP response it should produce."""
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(exc),
    )
