"""
Live stream coordination across all transports.

One stream session per device:
- Local capture devices: FFmpeg captures the device node and the encoded
  output is forwarded in 1-second chunks
- RTSP / ONVIF / HTTP cameras: a supervised FFmpeg process pulls the URL
  and stdout is forwarded as it arrives
- Companion devices: no local process; chunks arrive through the
  companion gateway's stream-data events

Every forwarded chunk lands in a bounded ring buffer and is republished
as a stream-data event for recorders and other consumers.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Optional

from camhub.config import get_settings
from camhub.events import (
    Event,
    EventChannel,
    EventType,
    StreamDataEvent,
    StreamErrorEvent,
    StreamStartedEvent,
)
from camhub.exceptions import (
    CamHubError,
    StreamAlreadyActiveError,
    StreamStartError,
    UnsupportedTransportError,
)
from camhub.models.device import Device, Resolution, TransportType, native_id
from camhub.models.stream import StreamState, StreamStatistics
from camhub.schemas.base import merge_config
from camhub.schemas.camera import (
    QUALITY_RESOLUTIONS,
    ResolutionSpec,
    StreamConfig,
    StreamQuality,
)
from camhub.services.companion import CompanionGateway
from camhub.services.encryption import SecretStore, compose_url, redact_url, secret_store
from camhub.services.pipelines import (
    LocalCapturePipeline,
    ProcessPipeline,
    RestartPolicy,
    build_local_command,
    build_network_command,
    resolve_ffmpeg,
)
from camhub.utils import to_utc_isoformat, utc_now

logger = logging.getLogger(__name__)

LOCAL_CHUNK_SECONDS = 1.0
STATS_WINDOW_SECONDS = 1.0

PROCESS_TRANSPORTS = frozenset({
    TransportType.NETWORK_RTSP,
    TransportType.NETWORK_HTTP,
    TransportType.ONVIF,
})


def resolve_resolution(device: Device, quality: StreamQuality) -> Optional[Resolution]:
    """Pick the device resolution matching a quality level.

    Falls back to a position in the device's resolution list when the
    preferred label is not supported.
    """
    resolutions = device.capabilities.resolutions
    if not resolutions:
        return None
    label, fallback = QUALITY_RESOLUTIONS[quality]
    for res in resolutions:
        if res.label == label:
            return res
    index = min(fallback, len(resolutions) - 1) if fallback >= 0 else fallback
    return resolutions[index]


class RingBuffer:
    """Most recent chunks up to a byte ceiling, evicting oldest first."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self._chunks: deque[bytes] = deque()
        self._size = 0

    def append(self, chunk: bytes) -> None:
        self._chunks.append(chunk)
        self._size += len(chunk)
        while self._size > self.max_bytes and self._chunks:
            self._size -= len(self._chunks.popleft())

    @property
    def size(self) -> int:
        return self._size

    def chunks(self) -> list[bytes]:
        return list(self._chunks)

    def clear(self) -> None:
        self._chunks.clear()
        self._size = 0

    def __len__(self) -> int:
        return len(self._chunks)


@dataclass
class StreamSession:
    """A device's live stream."""

    device_id: str
    device_name: str
    transport: TransportType
    config: StreamConfig
    buffer: RingBuffer
    state: StreamState = StreamState.STARTING
    statistics: StreamStatistics = field(default_factory=StreamStatistics)
    pipeline: Optional[ProcessPipeline] = None
    start_time: Optional[datetime] = None
    error_message: Optional[str] = None
    # Sampling window for bitrate / fps derived from forwarded data
    window_start: float = field(default_factory=time.monotonic)
    window_bytes: int = 0
    window_packets: int = 0
    process_stats: bool = False

    def get_status(self) -> dict:
        """Get stream status."""
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "transport": self.transport.value,
            "state": self.state.value,
            "quality": self.config.quality.value,
            "start_time": to_utc_isoformat(self.start_time) if self.start_time else None,
            "error_message": self.error_message,
            "statistics": {
                "fps": round(self.statistics.fps, 2),
                "bitrate": round(self.statistics.bitrate, 2),
                "packets_received": self.statistics.packets_received,
                "packets_lost": self.statistics.packets_lost,
                "bytes_received": self.statistics.bytes_received,
                "buffer_level": self.statistics.buffer_level,
            },
            "restart_attempts": self.pipeline.restart_attempts if self.pipeline else 0,
            "ffmpeg_output": self.pipeline.last_output if self.pipeline else [],
        }


class StreamCoordinator:
    """Starts, stops and pauses live streams for any device."""

    def __init__(
        self,
        companion_gateway: Optional[CompanionGateway] = None,
        secrets: Optional[SecretStore] = None,
        storage_root: Optional[Path] = None,
        buffer_max_bytes: Optional[int] = None,
        restart_policy: Optional[RestartPolicy] = None,
        ffmpeg_path: Optional[str] = None,
    ):
        settings = get_settings()
        self.storage_root = Path(storage_root or settings.storage_root)
        self.buffer_max_bytes = buffer_max_bytes or settings.stream_buffer_max_bytes
        self.restart_policy = restart_policy or RestartPolicy.from_settings()
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.events = EventChannel("streams")

        self._gateway = companion_gateway
        self._secrets = secrets or secret_store
        self._sessions: dict[str, StreamSession] = {}
        self._last_configs: dict[str, StreamConfig] = {}
        self._companion_ids: dict[str, str] = {}  # gateway device id -> our id
        self._lock = asyncio.Lock()

        self._subscription = None
        if companion_gateway is not None:
            self._subscription = companion_gateway.events.subscribe(
                self._on_companion_data, EventType.STREAM_DATA
            )

    @property
    def log_directory(self) -> Path:
        return self.storage_root / ".logs"

    async def start(self, device: Device, config: Optional[StreamConfig] = None) -> None:
        """Start a live stream for ``device``.

        Raises:
            StreamAlreadyActiveError: If the device already has a session.
            UnsupportedTransportError: If the transport cannot stream.
            StreamStartError: If the pipeline could not be started.
        """
        config = config or self._last_configs.get(device.id) or StreamConfig()
        if config.resolution is None and device.transport == TransportType.LOCAL:
            # Capture devices need an explicit frame size; network streams are copied
            resolution = resolve_resolution(device, config.quality)
            if resolution is not None:
                config = merge_config(
                    config, resolution=ResolutionSpec.from_resolution(resolution)
                )

        async with self._lock:
            if device.id in self._sessions:
                raise StreamAlreadyActiveError(f"Stream already active for camera {device.id}")
            session = StreamSession(
                device_id=device.id,
                device_name=device.name,
                transport=device.transport,
                config=config,
                buffer=RingBuffer(self.buffer_max_bytes),
            )
            self._sessions[device.id] = session
        self._last_configs[device.id] = config

        logger.info(f"Starting stream for '{device.name}' ({device.transport.value})")
        try:
            if device.transport == TransportType.LOCAL:
                session.pipeline = self._local_pipeline(device, session)
                await session.pipeline.start()
            elif device.transport in PROCESS_TRANSPORTS:
                session.pipeline = self._network_pipeline(device, session)
                await session.pipeline.start()
            elif device.transport == TransportType.COMPANION:
                await self._start_companion(device, config)
            else:
                raise UnsupportedTransportError(
                    f"Streaming not supported for transport {device.transport.value}"
                )
        except Exception as e:
            self._sessions.pop(device.id, None)
            if session.pipeline is not None:
                await session.pipeline.stop()
            logger.error(f"Failed to start stream for '{device.name}': {e}")
            if isinstance(e, CamHubError):
                raise
            raise StreamStartError(f"Failed to start stream for {device.id}: {e}") from e

        session.state = StreamState.ACTIVE
        session.start_time = utc_now()
        await self.events.publish(StreamStartedEvent(
            type=EventType.STREAM_STARTED,
            device_id=device.id,
            config=config,
        ))

    def _source_url(self, device: Device) -> str:
        conn = device.connection
        if not conn.stream_url:
            raise StreamStartError(f"No stream URL for camera {device.id}")
        password = self._secrets.get(conn.credential_ref)
        return compose_url(conn.stream_url, conn.username, password)

    def _network_pipeline(self, device: Device, session: StreamSession) -> ProcessPipeline:
        ffmpeg = resolve_ffmpeg(self.ffmpeg_path)
        logger.info(f"Stream URL: {redact_url(device.connection.stream_url or '')}")

        def command() -> list[str]:
            # Credentials are resolved per spawn and never stored
            return build_network_command(ffmpeg, self._source_url(device), session.config)

        return ProcessPipeline(
            name=device.id,
            command_factory=command,
            on_data=lambda chunk: self._handle_chunk(session, chunk),
            on_error=lambda message: self._handle_pipeline_error(session, message),
            on_stats=lambda fps, bitrate: self._handle_process_stats(session, fps, bitrate),
            restart_policy=self.restart_policy,
            log_directory=self.log_directory,
        )

    def _local_pipeline(self, device: Device, session: StreamSession) -> ProcessPipeline:
        ffmpeg = resolve_ffmpeg(self.ffmpeg_path)
        device_path = device.connection.device_path
        if not device_path:
            raise StreamStartError(f"No device path for camera {device.id}")

        return LocalCapturePipeline(
            name=device.id,
            command_factory=lambda: build_local_command(ffmpeg, device_path, session.config),
            on_data=lambda chunk: self._handle_chunk(session, chunk),
            on_error=lambda message: self._handle_pipeline_error(session, message),
            on_stats=lambda fps, bitrate: self._handle_process_stats(session, fps, bitrate),
            restart_policy=self.restart_policy,
            log_directory=self.log_directory,
            chunk_interval=LOCAL_CHUNK_SECONDS,
        )

    async def _start_companion(self, device: Device, config: StreamConfig) -> None:
        companion_id = native_id(device.id, TransportType.COMPANION)
        self._companion_ids[companion_id] = device.id
        if self._gateway is None:
            logger.warning(f"No companion gateway; waiting for data from {device.id}")
            return
        if not await self._gateway.request_stream(companion_id, config.model_dump(mode="json")):
            logger.warning(f"Companion {companion_id} did not accept the stream request")

    async def _on_companion_data(self, event: Event) -> None:
        device_id = self._companion_ids.get(event.device_id or "")
        session = self._sessions.get(device_id) if device_id else None
        if session is None:
            return
        await self._handle_chunk(session, event.data)

    async def _handle_chunk(self, session: StreamSession, chunk: bytes) -> None:
        if session.state not in (StreamState.ACTIVE, StreamState.STARTING):
            return

        stats = session.statistics
        stats.packets_received += 1
        stats.bytes_received += len(chunk)
        session.window_bytes += len(chunk)
        session.window_packets += 1

        now = time.monotonic()
        elapsed = now - session.window_start
        if elapsed >= STATS_WINDOW_SECONDS:
            stats.bitrate = session.window_bytes * 8 / elapsed
            if not session.process_stats:
                stats.fps = session.window_packets / elapsed
            session.window_start = now
            session.window_bytes = 0
            session.window_packets = 0
        stats.timestamp = utc_now()

        session.buffer.append(chunk)
        stats.buffer_level = session.buffer.size

        await self.events.publish(StreamDataEvent(
            type=EventType.STREAM_DATA,
            device_id=session.device_id,
            data=chunk,
            frame_number=stats.packets_received,
        ))

    def _handle_process_stats(
        self,
        session: StreamSession,
        fps: Optional[float],
        bitrate: Optional[float],
    ) -> None:
        session.process_stats = True
        if fps is not None:
            session.statistics.fps = fps
        if bitrate is not None:
            session.statistics.bitrate = bitrate

    async def _handle_pipeline_error(self, session: StreamSession, message: str) -> None:
        """Restart policy exhausted: error, then tear down to idle."""
        session.state = StreamState.ERROR
        session.error_message = message
        async with self._lock:
            if self._sessions.get(session.device_id) is session:
                del self._sessions[session.device_id]

        logger.error(f"Stream error for '{session.device_name}': {message}")
        await self.events.publish(StreamErrorEvent(
            type=EventType.STREAM_ERROR,
            device_id=session.device_id,
            error=message,
        ))
        session.state = StreamState.IDLE

    async def stop(self, device_id: str) -> None:
        """Stop a stream. No-op if none is active."""
        async with self._lock:
            session = self._sessions.pop(device_id, None)
        if session is None:
            return

        logger.info(f"Stopping stream for '{session.device_name}'")
        if session.pipeline is not None:
            await session.pipeline.stop()
        if session.transport == TransportType.COMPANION and self._gateway is not None:
            for companion_id, mapped in list(self._companion_ids.items()):
                if mapped == device_id:
                    await self._gateway.stop_stream(companion_id)
                    del self._companion_ids[companion_id]

        session.state = StreamState.STOPPED
        session.buffer.clear()
        await self.events.publish(Event(type=EventType.STREAM_STOPPED, device_id=device_id))

    async def pause(self, device_id: str) -> bool:
        session = self._sessions.get(device_id)
        if session is None or session.state != StreamState.ACTIVE:
            return False
        session.state = StreamState.PAUSED
        if session.pipeline is not None:
            session.pipeline.pause()
        await self.events.publish(Event(type=EventType.STREAM_PAUSED, device_id=device_id))
        return True

    async def resume(self, device_id: str) -> bool:
        session = self._sessions.get(device_id)
        if session is None or session.state != StreamState.PAUSED:
            return False
        if session.pipeline is not None:
            session.pipeline.resume()
        session.state = StreamState.ACTIVE
        await self.events.publish(Event(type=EventType.STREAM_RESUMED, device_id=device_id))
        return True

    async def restart_stream(self, device: Device) -> None:
        """Stop then start with the last known configuration."""
        session = self._sessions.get(device.id)
        config = session.config if session else self._last_configs.get(device.id)
        await self.stop(device.id)
        await self.start(device, config)

    async def update_config(self, device: Device, **changes) -> StreamConfig:
        """Apply config changes, restarting the stream if it is active.

        Raises:
            ConfigurationError: If a change is unknown or invalid.
        """
        base = self._last_configs.get(device.id) or StreamConfig()
        session = self._sessions.get(device.id)
        if session is not None:
            base = session.config
        if "quality" in changes and "resolution" not in changes:
            resolution = resolve_resolution(device, StreamQuality(changes["quality"]))
            changes["resolution"] = (
                ResolutionSpec.from_resolution(resolution) if resolution else None
            )
        config = merge_config(base, **changes)
        self._last_configs[device.id] = config

        if session is not None:
            await self.stop(device.id)
            await self.start(device, config)
        return config

    def is_active(self, device_id: str) -> bool:
        return device_id in self._sessions

    def get_state(self, device_id: str) -> StreamState:
        session = self._sessions.get(device_id)
        return session.state if session else StreamState.IDLE

    def get_session(self, device_id: str) -> Optional[StreamSession]:
        return self._sessions.get(device_id)

    def get_statistics(self, device_id: str) -> Optional[StreamStatistics]:
        session = self._sessions.get(device_id)
        return replace(session.statistics) if session else None

    def get_buffer(self, device_id: str) -> list[bytes]:
        session = self._sessions.get(device_id)
        return session.buffer.chunks() if session else []

    def get_active_streams(self) -> list[str]:
        return list(self._sessions)

    def get_status(self, device_id: str) -> Optional[dict]:
        session = self._sessions.get(device_id)
        return session.get_status() if session else None

    def get_all_status(self) -> list[dict]:
        return [s.get_status() for s in self._sessions.values()]

    async def stop_all(self) -> None:
        """Stop all streams."""
        for device_id in list(self._sessions):
            await self.stop(device_id)

    async def dispose(self) -> None:
        await self.stop_all()
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
