"""Pydantic schemas for configuration, API and wire messages."""

from camhub.schemas.base import FrozenConfig, UTCBaseModel, merge_config
from camhub.schemas.camera import (
    CameraCommand,
    CameraListResponse,
    CameraResponse,
    CameraTestResult,
    CommandRequest,
    CommandResult,
    CommandType,
    DiscoveryOptions,
    ManualCameraRequest,
    NetworkScanOptions,
    RecordingConfig,
    RecordingFormat,
    ResolutionSpec,
    ScanProtocol,
    StorageConfig,
    StreamConfig,
    StreamQuality,
)

__all__ = [
    "FrozenConfig",
    "UTCBaseModel",
    "merge_config",
    "CameraCommand",
    "CameraListResponse",
    "CameraResponse",
    "CameraTestResult",
    "CommandRequest",
    "CommandResult",
    "CommandType",
    "DiscoveryOptions",
    "ManualCameraRequest",
    "NetworkScanOptions",
    "RecordingConfig",
    "RecordingFormat",
    "ResolutionSpec",
    "ScanProtocol",
    "StorageConfig",
    "StreamConfig",
    "StreamQuality",
]
