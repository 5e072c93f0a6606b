"""Camera, stream, recording and command schemas."""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from camhub.models.device import Device, DeviceStatus, Resolution, TransportType
from camhub.schemas.base import FrozenConfig, UTCBaseModel
from camhub.services.encryption import redact_url


class StreamQuality(str, Enum):
    """Requested stream quality."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ULTRA = "ultra"


# Preferred resolution label per quality, with the fallback index into a
# device's resolution list when the label is not supported.
QUALITY_RESOLUTIONS: dict[StreamQuality, tuple[str, int]] = {
    StreamQuality.LOW: ("480p", -1),
    StreamQuality.MEDIUM: ("720p", 1),
    StreamQuality.HIGH: ("1080p", 0),
    StreamQuality.ULTRA: ("4K", 0),
}


class ResolutionSpec(FrozenConfig):
    """Frame size requested for a stream."""

    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    label: str = ""

    @classmethod
    def from_resolution(cls, resolution: Resolution) -> "ResolutionSpec":
        return cls(width=resolution.width, height=resolution.height, label=resolution.label)


class StreamConfig(FrozenConfig):
    """Live stream parameters."""

    quality: StreamQuality = StreamQuality.MEDIUM
    resolution: Optional[ResolutionSpec] = None
    frame_rate: float = Field(30.0, gt=0)
    enable_audio: bool = False
    bitrate: Optional[int] = Field(None, gt=0, description="Target bitrate in kbit/s")
    codec: Optional[str] = None


class RecordingFormat(str, Enum):
    """Container format of recording files."""

    MP4 = "mp4"
    WEBM = "webm"
    MKV = "mkv"
    AVI = "avi"


class RecordingConfig(FrozenConfig):
    """Recording parameters."""

    format: RecordingFormat = RecordingFormat.MP4
    quality: StreamQuality = StreamQuality.MEDIUM
    frame_rate: float = Field(30.0, gt=0)
    enable_audio: bool = False
    max_file_size: Optional[int] = Field(
        None, gt=0, description="Rotate after this many bytes"
    )
    segment_duration: Optional[float] = Field(
        None, gt=0, description="Rotate after this many seconds"
    )
    max_duration: Optional[float] = Field(
        None, gt=0, description="Stop recording after this many seconds"
    )


class StorageConfig(FrozenConfig):
    """Storage policy for recordings."""

    primary_path: Path
    min_free_space_gb: float = Field(5.0, ge=0)
    recycle_oldest: bool = True
    max_storage_gb: Optional[float] = Field(None, gt=0)
    retention_days: Optional[int] = Field(None, gt=0)


class ScanProtocol(str, Enum):
    """Protocols probed by the network scanner."""

    RTSP = "rtsp"
    HTTP = "http"


class NetworkScanOptions(FrozenConfig):
    """Options for a network sweep."""

    ip_range: Optional[str] = Field(
        None, description="CIDR, start-end range or single address"
    )
    ports: tuple[int, ...] = (554, 8554)
    protocols: tuple[ScanProtocol, ...] = (ScanProtocol.RTSP,)
    timeout_ms: int = Field(2000, gt=0)
    concurrency: int = Field(10, ge=1)


class DiscoveryOptions(FrozenConfig):
    """Options for a registry discovery pass."""

    continuous: bool = False
    interval: float = Field(30.0, gt=0, description="Refresh interval in seconds")
    network: Optional[NetworkScanOptions] = None
    onvif_timeout_ms: int = Field(5000, gt=0)
    include_local: bool = True
    include_network: bool = True
    include_onvif: bool = True
    include_companion: bool = True
    companion_port: Optional[int] = None


class CommandType(str, Enum):
    """Commands accepted by the camera hub."""

    START_STREAM = "start_stream"
    STOP_STREAM = "stop_stream"
    START_RECORDING = "start_recording"
    STOP_RECORDING = "stop_recording"
    SNAPSHOT = "snapshot"
    RESTART = "restart"
    SET_QUALITY = "set_quality"


class CameraCommand(FrozenConfig):
    """A command addressed to one camera."""

    type: CommandType
    camera_id: str
    params: dict[str, Any] = Field(default_factory=dict)


class CommandRequest(BaseModel):
    """Command body posted to ``/cameras/{id}/commands``."""

    type: CommandType
    params: dict[str, Any] = Field(default_factory=dict)


class CommandResult(BaseModel):
    """Outcome of an executed command."""

    camera_id: str
    command: CommandType
    success: bool = True
    detail: dict[str, Any] = Field(default_factory=dict)


class ManualCameraRequest(BaseModel):
    """Manually add an RTSP or ONVIF camera."""

    name: str = Field(..., min_length=1, max_length=100)
    transport: TransportType
    url: Optional[str] = Field(None, description="RTSP URL for network-rtsp cameras")
    address: Optional[str] = Field(None, description="Host for ONVIF cameras")
    port: Optional[int] = Field(None, ge=1, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None


class ResolutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    width: int
    height: int
    label: str


class CapabilitiesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    resolutions: list[ResolutionResponse]
    frame_rates: list[float]
    has_audio: bool
    has_ptz: bool
    has_night_vision: bool
    has_motion_detection: bool
    has_ir: bool
    supported_codecs: list[str]
    supported_protocols: list[str]


class ConnectionResponse(BaseModel):
    """Connection details with credentials removed."""

    address: Optional[str] = None
    port: Optional[int] = None
    path: Optional[str] = None
    stream_url: Optional[str] = None
    onvif_url: Optional[str] = None
    device_path: Optional[str] = None
    username: Optional[str] = None
    has_credentials: bool = False


class MetadataResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    manufacturer: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    firmware_version: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None


class CameraResponse(UTCBaseModel):
    """Camera descriptor as returned by the API."""

    id: str
    name: str
    transport: TransportType
    status: DeviceStatus
    capabilities: CapabilitiesResponse
    connection: ConnectionResponse
    last_seen: datetime
    provisionally_stale: bool = False
    metadata: Optional[MetadataResponse] = None

    @classmethod
    def from_device(cls, device: Device) -> "CameraResponse":
        conn = device.connection
        return cls(
            id=device.id,
            name=device.name,
            transport=device.transport,
            status=device.status,
            capabilities=CapabilitiesResponse.model_validate(
                device.capabilities, from_attributes=True
            ),
            connection=ConnectionResponse(
                address=conn.address,
                port=conn.port,
                path=conn.path,
                stream_url=redact_url(conn.stream_url) if conn.stream_url else None,
                onvif_url=conn.onvif_url,
                device_path=conn.device_path,
                username=conn.username,
                has_credentials=conn.has_credentials,
            ),
            last_seen=device.last_seen,
            provisionally_stale=device.provisionally_stale,
            metadata=(
                MetadataResponse.model_validate(device.metadata, from_attributes=True)
                if device.metadata
                else None
            ),
        )


class CameraListResponse(BaseModel):
    cameras: list[CameraResponse]
    total: int


class CameraTestResult(BaseModel):
    camera_id: str
    success: bool
    message: str
