"""Still image capture for every transport."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import cv2
import httpx

from camhub.config import get_settings
from camhub.exceptions import UnsupportedTransportError
from camhub.models.device import Device, TransportType, native_id
from camhub.services.companion import CompanionGateway
from camhub.services.encryption import SecretStore, compose_url, redact_url, secret_store
from camhub.services.pipelines import resolve_ffmpeg

logger = logging.getLogger(__name__)

JPEG_CONTENT_TYPE = "image/jpeg"


@dataclass
class Snapshot:
    """Result of a snapshot request.

    Companion devices deliver their image asynchronously, so ``image`` is
    None and ``pending`` is True once the request has been sent.
    """

    device_id: str
    image: Optional[bytes] = None
    content_type: str = JPEG_CONTENT_TYPE
    pending: bool = False

    @property
    def ok(self) -> bool:
        return self.image is not None or self.pending


def grab_frame(capture_factory: Callable, device_path: str) -> Optional[bytes]:
    """Read one frame from a capture device and encode it as JPEG."""
    cap = capture_factory(device_path)
    try:
        if not cap.isOpened():
            return None
        ok, frame = cap.read()
        if not ok or frame is None:
            return None
        encoded, buffer = cv2.imencode(".jpg", frame)
        return buffer.tobytes() if encoded else None
    finally:
        cap.release()


class SnapshotService:
    """Grabs a single JPEG frame from a camera."""

    def __init__(
        self,
        companion_gateway: Optional[CompanionGateway] = None,
        secrets: Optional[SecretStore] = None,
        ffmpeg_path: Optional[str] = None,
        capture_factory: Callable = cv2.VideoCapture,
        timeout: float = 10.0,
    ):
        self.ffmpeg_path = ffmpeg_path or get_settings().ffmpeg_path
        self.timeout = timeout
        self._gateway = companion_gateway
        self._secrets = secrets or secret_store
        self._capture_factory = capture_factory

    async def take_snapshot(self, device: Device) -> Snapshot:
        """Capture a snapshot.

        Raises:
            UnsupportedTransportError: If the transport has no snapshot path.
        """
        transport = device.transport
        if transport == TransportType.LOCAL:
            image = await self._local(device)
        elif transport in (TransportType.NETWORK_RTSP, TransportType.ONVIF):
            image = await self._ffmpeg_frame(device)
        elif transport == TransportType.NETWORK_HTTP:
            image = await self._http(device)
        elif transport == TransportType.COMPANION:
            return await self._companion(device)
        else:
            raise UnsupportedTransportError(
                f"Snapshots not supported for transport {transport.value}"
            )

        if image is None:
            logger.warning(f"Snapshot failed for '{device.name}'")
        return Snapshot(device_id=device.id, image=image)

    async def _local(self, device: Device) -> Optional[bytes]:
        device_path = device.connection.device_path
        if not device_path:
            return None
        return await asyncio.to_thread(grab_frame, self._capture_factory, device_path)

    def _source_url(self, device: Device) -> Optional[str]:
        conn = device.connection
        if not conn.stream_url:
            return None
        return compose_url(conn.stream_url, conn.username, self._secrets.get(conn.credential_ref))

    async def _ffmpeg_frame(self, device: Device) -> Optional[bytes]:
        url = self._source_url(device)
        if url is None:
            return None

        cmd = [resolve_ffmpeg(self.ffmpeg_path), "-hide_banner", "-loglevel", "error"]
        if url.startswith("rtsp"):
            cmd += ["-rtsp_transport", "tcp"]
        cmd += [
            "-i", url,
            "-frames:v", "1",
            "-q:v", "2",
            "-f", "image2",
            "-c:v", "mjpeg",
            "pipe:1",
        ]

        logger.debug(f"Snapshot from {redact_url(device.connection.stream_url)}")
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"Snapshot timed out for '{device.name}'")
            return None

        if proc.returncode != 0 or not stdout:
            logger.warning(
                f"FFmpeg snapshot failed for '{device.name}': "
                f"{stderr.decode(errors='replace').strip()[:500]}"
            )
            return None
        return stdout

    async def _http(self, device: Device) -> Optional[bytes]:
        url = self._source_url(device)
        if url is None:
            return None
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream("GET", url) as response:
                    content_type = response.headers.get("content-type", "")
                    if response.status_code == 200 and content_type.startswith("image/"):
                        return await response.aread()
        except httpx.HTTPError as e:
            logger.warning(f"HTTP snapshot failed for '{device.name}': {e}")
            return None
        # MJPEG and other streams: take one frame through ffmpeg
        return await self._ffmpeg_frame(device)

    async def _companion(self, device: Device) -> Snapshot:
        if self._gateway is None:
            return Snapshot(device_id=device.id)
        requested = await self._gateway.request_snapshot(
            native_id(device.id, TransportType.COMPANION)
        )
        return Snapshot(device_id=device.id, pending=requested)
