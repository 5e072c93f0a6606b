"""Device descriptor shared by all probes and coordinators."""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from camhub.utils import utc_now


class TransportType(str, Enum):
    """How a camera is reached."""

    LOCAL = "local"
    NETWORK_RTSP = "network-rtsp"
    NETWORK_HTTP = "network-http"
    ONVIF = "onvif"
    COMPANION = "companion"


class DeviceStatus(str, Enum):
    """Connection status of a device."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STREAMING = "streaming"
    RECORDING = "recording"
    ERROR = "error"


ID_PREFIXES: dict[TransportType, str] = {
    TransportType.LOCAL: "usb",
    TransportType.NETWORK_RTSP: "rtsp",
    TransportType.NETWORK_HTTP: "http",
    TransportType.ONVIF: "onvif",
    TransportType.COMPANION: "mobile",
}

NETWORK_TRANSPORTS = frozenset({
    TransportType.NETWORK_RTSP,
    TransportType.NETWORK_HTTP,
    TransportType.ONVIF,
})


def make_device_id(transport: TransportType, *parts: object) -> str:
    """Build a transport-prefixed device id, e.g. ``rtsp_192.168.1.10_554``."""
    return "_".join([ID_PREFIXES[transport], *(str(p) for p in parts)])


@dataclass(frozen=True)
class Resolution:
    """A frame size with a human readable label."""

    width: int
    height: int
    label: str

    @classmethod
    def from_size(cls, width: int, height: int) -> "Resolution":
        for res in STANDARD_RESOLUTIONS:
            if res.width == width and res.height == height:
                return res
        return cls(width, height, f"{width}x{height}")


STANDARD_RESOLUTIONS: tuple[Resolution, ...] = (
    Resolution(3840, 2160, "4K"),
    Resolution(1920, 1080, "1080p"),
    Resolution(1280, 720, "720p"),
    Resolution(640, 480, "480p"),
    Resolution(320, 240, "240p"),
)

DEFAULT_RESOLUTIONS: tuple[Resolution, ...] = STANDARD_RESOLUTIONS[1:4]


@dataclass
class Capabilities:
    """What a camera can do."""

    resolutions: list[Resolution] = field(default_factory=list)
    frame_rates: list[float] = field(default_factory=list)
    has_audio: bool = False
    has_ptz: bool = False
    has_night_vision: bool = False
    has_motion_detection: bool = False
    has_ir: bool = False
    supported_codecs: list[str] = field(default_factory=list)
    supported_protocols: list[str] = field(default_factory=list)


@dataclass
class Connection:
    """Where and how to reach a camera.

    Passwords are never stored here. ``credential_ref`` is a handle into
    the secret store and is resolved only when a pipeline or handshake
    needs the password.
    """

    address: Optional[str] = None
    port: Optional[int] = None
    path: Optional[str] = None
    stream_url: Optional[str] = None
    onvif_url: Optional[str] = None
    device_path: Optional[str] = None
    username: Optional[str] = None
    credential_ref: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) or self.credential_ref is not None


@dataclass
class DeviceMetadata:
    """Descriptive information reported by the device."""

    manufacturer: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    firmware_version: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None


@dataclass
class Device:
    """A camera known to the registry."""

    id: str
    name: str
    transport: TransportType
    status: DeviceStatus = DeviceStatus.DISCONNECTED
    capabilities: Capabilities = field(default_factory=Capabilities)
    connection: Connection = field(default_factory=Connection)
    last_seen: datetime = field(default_factory=utc_now)
    provisionally_stale: bool = False
    metadata: Optional[DeviceMetadata] = None
    # Name given by the user; discovery refreshes keep it
    custom_name: bool = False

    @property
    def is_network(self) -> bool:
        """Network devices are subject to staleness pruning."""
        return self.transport in NETWORK_TRANSPORTS

    def touch(self) -> None:
        """Mark the device as seen now."""
        self.last_seen = utc_now()
        self.provisionally_stale = False

    def copy(self) -> "Device":
        """Return a detached deep copy."""
        return copy.deepcopy(self)


def native_id(device_id: str, transport: TransportType) -> str:
    """Strip the transport prefix from a device id."""
    prefix = f"{ID_PREFIXES[transport]}_"
    return device_id[len(prefix):] if device_id.startswith(prefix) else device_id
