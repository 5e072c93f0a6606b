"""Domain records for CamHub."""

from camhub.models.device import (
    Capabilities,
    Connection,
    Device,
    DeviceMetadata,
    DeviceStatus,
    Resolution,
    TransportType,
    make_device_id,
)
from camhub.models.recording import (
    RecordingFile,
    RecordingSession,
    RecordingState,
    RecordingStats,
)
from camhub.models.stream import StreamState, StreamStatistics

__all__ = [
    "Capabilities",
    "Connection",
    "Device",
    "DeviceMetadata",
    "DeviceStatus",
    "Resolution",
    "TransportType",
    "make_device_id",
    "RecordingFile",
    "RecordingSession",
    "RecordingState",
    "RecordingStats",
    "StreamState",
    "StreamStatistics",
]
