"""Media1/devicemgmt calls against a single ONVIF device.

Credentials given to the client become a WS-Security ``UsernameToken`` on
each SOAP request. Without them requests are sent anonymously, which many
cameras still answer for GetCapabilities and GetDeviceInformation.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import onvif
from onvif import ONVIFCamera

from camhub.models.device import Resolution
from camhub.services.encryption import redact_url

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_WIDTH = 1920
DEFAULT_VIDEO_HEIGHT = 1080
DEFAULT_VIDEO_FPS = 30.0
DEFAULT_VIDEO_BITRATE = 4096  # kbit/s
DEFAULT_VIDEO_ENCODING = "H264"
DEFAULT_AUDIO_ENCODING = "G711"
DEFAULT_AUDIO_BITRATE = 64  # kbit/s
DEFAULT_AUDIO_SAMPLE_RATE = 8000


@dataclass
class VideoEncoderInfo:
    resolution: Resolution
    frame_rate: float = DEFAULT_VIDEO_FPS
    bitrate: int = DEFAULT_VIDEO_BITRATE
    encoding: str = DEFAULT_VIDEO_ENCODING


@dataclass
class AudioEncoderInfo:
    encoding: str = DEFAULT_AUDIO_ENCODING
    bitrate: int = DEFAULT_AUDIO_BITRATE
    sample_rate: int = DEFAULT_AUDIO_SAMPLE_RATE


@dataclass
class MediaProfile:
    """A Media1 profile token with its encoder settings."""

    token: str
    name: str
    video_encoder: Optional[VideoEncoderInfo] = None
    audio_encoder: Optional[AudioEncoderInfo] = None


@dataclass
class ONVIFCapabilities:
    """Service areas advertised by GetCapabilities."""

    analytics: bool = False
    device: bool = False
    events: bool = False
    imaging: bool = False
    media: bool = False
    ptz: bool = False
    recording: bool = False
    extra: dict = field(default_factory=dict)

    @classmethod
    def conservative_default(cls) -> "ONVIFCapabilities":
        """Assumed when the device does not answer GetCapabilities."""
        return cls(device=True, media=True)


def _attr(obj: Any, *path: str, default: Any = None) -> Any:
    """Walk a chain of attributes on a zeep object, returning default on a gap."""
    for name in path:
        if obj is None:
            return default
        obj = getattr(obj, name, None)
    return default if obj is None else obj


def map_profile(raw: Any) -> MediaProfile:
    """Map a Media1 ``Profile`` onto a MediaProfile with ONVIF defaults."""
    token = str(_attr(raw, "token", default=""))
    name = str(_attr(raw, "Name", default=token))

    video = None
    vec = _attr(raw, "VideoEncoderConfiguration")
    if vec is not None:
        width = int(_attr(vec, "Resolution", "Width", default=DEFAULT_VIDEO_WIDTH))
        height = int(_attr(vec, "Resolution", "Height", default=DEFAULT_VIDEO_HEIGHT))
        video = VideoEncoderInfo(
            resolution=Resolution.from_size(width, height),
            frame_rate=float(_attr(vec, "RateControl", "FrameRateLimit", default=DEFAULT_VIDEO_FPS)),
            bitrate=int(_attr(vec, "RateControl", "BitrateLimit", default=DEFAULT_VIDEO_BITRATE)),
            encoding=str(_attr(vec, "Encoding", default=DEFAULT_VIDEO_ENCODING)),
        )

    audio = None
    aec = _attr(raw, "AudioEncoderConfiguration")
    if aec is not None:
        audio = AudioEncoderInfo(
            encoding=str(_attr(aec, "Encoding", default=DEFAULT_AUDIO_ENCODING)),
            bitrate=int(_attr(aec, "Bitrate", default=DEFAULT_AUDIO_BITRATE)),
            sample_rate=int(_attr(aec, "SampleRate", default=DEFAULT_AUDIO_SAMPLE_RATE)),
        )

    return MediaProfile(token=token, name=name, video_encoder=video, audio_encoder=audio)


class ONVIFClient:
    """One session against ``host:port``.

    Query methods return empty results (or the conservative capability
    set) until ``connect`` has succeeded. ``get_device_info`` is the
    exception: discovery uses it as a credential probe, so it raises.

        async with ONVIFClient("10.0.0.9", 8080, "admin", secret) as client:
            profiles = await client.get_profiles()
    """

    def __init__(
        self,
        host: str,
        port: int = 80,
        username: Optional[str] = None,
        password: Optional[str] = None,
        wsdl_dir: Optional[Path] = None,
    ):
        self.host = host
        self.port = port
        self.username = username or ""
        self.password = password or ""
        self.wsdl_dir = wsdl_dir
        self._camera = None
        self._media_service = None
        self._connected = False

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    async def __aenter__(self) -> "ONVIFClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    async def connect(self, timeout: float = 10.0) -> bool:
        """Resolve the device's service addresses. False on any failure."""
        # WSDL files ship inside the onvif package, not where it looks by default
        wsdl_dir = self.wsdl_dir or Path(onvif.__file__).parent / "wsdl"
        try:
            camera = ONVIFCamera(
                host=self.host,
                port=self.port,
                user=self.username,
                passwd=self.password,
                wsdl_dir=str(wsdl_dir),
            )
            await asyncio.wait_for(camera.update_xaddrs(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No ONVIF answer from {self.address} within {timeout}s")
            return False
        except Exception as e:
            logger.warning(f"ONVIF session to {self.address} not established: {e}")
            return False

        self._camera = camera
        self._connected = True
        logger.info(f"ONVIF session open: {self.address}")
        return True

    async def _media(self) -> Any:
        if self._media_service is None:
            self._media_service = await self._camera.create_media_service()
        return self._media_service

    async def get_profiles(self) -> list[MediaProfile]:
        """Media1 profiles (Profile S). Malformed entries are skipped."""
        if not self._camera or not self._connected:
            return []

        try:
            media = await self._media()
            raw_profiles = await media.GetProfiles()
        except Exception as e:
            logger.error(f"GetProfiles on {self.address} failed: {e}")
            return []

        profiles = []
        for raw in raw_profiles or []:
            try:
                profiles.append(map_profile(raw))
            except (TypeError, ValueError) as e:
                logger.debug(f"Ignoring profile from {self.address}: {e}")
        return profiles

    async def get_stream_uri(self, profile_token: str) -> Optional[str]:
        """Resolve the RTSP URI of a profile, with any credentials removed."""
        if not self._camera or not self._connected:
            return None

        try:
            media = await self._media()
            response = await media.GetStreamUri(
                {
                    "StreamSetup": {
                        "Stream": "RTP-Unicast",
                        "Transport": {"Protocol": "RTSP"},
                    },
                    "ProfileToken": profile_token,
                }
            )
        except Exception as e:
            logger.debug(f"GetStreamUri({profile_token}) on {self.address} failed: {e}")
            return None

        uri = _attr(response, "Uri")
        return redact_url(str(uri)) if uri else None

    async def get_device_info(self) -> dict:
        """GetDeviceInformation as a plain dict.

        Raises:
            RuntimeError: If the client is not connected.
        """
        if not self._camera or not self._connected:
            raise RuntimeError(f"ONVIF client for {self.host} is not connected")

        devicemgmt = await self._camera.create_devicemgmt_service()
        info = await devicemgmt.GetDeviceInformation()
        return {
            "manufacturer": getattr(info, "Manufacturer", ""),
            "model": getattr(info, "Model", ""),
            "firmware": getattr(info, "FirmwareVersion", ""),
            "serial": getattr(info, "SerialNumber", ""),
            "hardware_id": getattr(info, "HardwareId", ""),
        }

    async def get_capabilities(self) -> ONVIFCapabilities:
        """Service areas from GetCapabilities.

        Missing or malformed responses degrade to device + media only.
        """
        if not self._camera or not self._connected:
            return ONVIFCapabilities.conservative_default()

        try:
            devicemgmt = await self._camera.create_devicemgmt_service()
            caps = await devicemgmt.GetCapabilities({"Category": "All"})
        except Exception as e:
            logger.debug(f"GetCapabilities on {self.address} failed: {e}")
            return ONVIFCapabilities.conservative_default()

        if caps is None:
            return ONVIFCapabilities.conservative_default()

        return ONVIFCapabilities(
            analytics=_attr(caps, "Analytics") is not None,
            device=_attr(caps, "Device") is not None,
            events=_attr(caps, "Events") is not None,
            imaging=_attr(caps, "Imaging") is not None,
            media=_attr(caps, "Media") is not None,
            ptz=_attr(caps, "PTZ") is not None,
            recording=_attr(caps, "Extension", "Recording") is not None,
        )

    async def disconnect(self) -> None:
        """Close the SOAP transport. Safe to call more than once."""
        if self._camera:
            try:
                await self._camera.close()
            except Exception:
                logger.debug(f"ONVIF transport for {self.address} did not close cleanly")
        self._camera = None
        self._media_service = None
        self._connected = False
        logger.debug(f"ONVIF session closed: {self.address}")

    @property
    def is_connected(self) -> bool:
        return self._connected
