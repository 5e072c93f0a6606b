"""Stream session state and statistics."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from camhub.utils import utc_now


class StreamState(str, Enum):
    """Stream state."""
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class StreamStatistics:
    """Rolling statistics for a live stream."""

    fps: float = 0.0
    bitrate: float = 0.0  # bits per second
    packets_received: int = 0
    packets_lost: int = 0
    bytes_received: int = 0
    buffer_level: int = 0  # bytes held in the ring buffer
    timestamp: datetime = field(default_factory=utc_now)
