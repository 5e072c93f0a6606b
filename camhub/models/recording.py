"""Recording session, file and statistics records."""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from camhub.utils import to_utc_isoformat, utc_now

if TYPE_CHECKING:
    from camhub.schemas.camera import RecordingConfig


class RecordingState(str, Enum):
    """Recording session state."""
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class RecordingFile:
    """One file written by a recording session."""

    path: Path
    size: int = 0
    duration: float = 0.0  # seconds
    start_time: datetime = field(default_factory=utc_now)
    end_time: datetime = field(default_factory=utc_now)
    has_audio: bool = False


@dataclass
class RecordingStats:
    """Aggregate statistics for a recording session."""

    total_frames: int = 0
    dropped_frames: int = 0
    total_bytes: int = 0
    average_fps: float = 0.0
    average_bitrate: float = 0.0  # bits per second


@dataclass
class RecordingSession:
    """A device's recording in progress (or just finished)."""

    id: str
    device_id: str
    config: "RecordingConfig"
    state: RecordingState = RecordingState.RECORDING
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    files: list[RecordingFile] = field(default_factory=list)
    statistics: RecordingStats = field(default_factory=RecordingStats)
    error_message: Optional[str] = None

    @property
    def current_file(self) -> Optional[RecordingFile]:
        return self.files[-1] if self.files else None

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)

    def snapshot(self) -> "RecordingSession":
        """Return a detached copy safe to hand to callers."""
        return copy.deepcopy(self)

    def get_status(self) -> dict:
        """Get recording status."""
        return {
            "id": self.id,
            "device_id": self.device_id,
            "state": self.state.value,
            "format": self.config.format.value,
            "start_time": to_utc_isoformat(self.start_time),
            "end_time": to_utc_isoformat(self.end_time) if self.end_time else None,
            "error_message": self.error_message,
            "files": [
                {
                    "path": str(f.path),
                    "size": f.size,
                    "duration": round(f.duration, 3),
                    "start_time": to_utc_isoformat(f.start_time),
                    "end_time": to_utc_isoformat(f.end_time),
                    "has_audio": f.has_audio,
                }
                for f in self.files
            ],
            "statistics": {
                "total_frames": self.statistics.total_frames,
                "dropped_frames": self.statistics.dropped_frames,
                "total_bytes": self.statistics.total_bytes,
                "average_fps": round(self.statistics.average_fps, 2),
                "average_bitrate": round(self.statistics.average_bitrate, 2),
            },
        }
