"""Recording of live streams to size- and time-rotated files."""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiofiles

from camhub.config import get_settings
from camhub.events import (
    Event,
    EventChannel,
    EventType,
    RecordingErrorEvent,
    RecordingEvent,
    RecordingStatsEvent,
)
from camhub.exceptions import (
    AlreadyRecordingError,
    RecordingCapacityError,
    RecordingNotFoundError,
)
from camhub.models.device import Device
from camhub.models.recording import (
    RecordingFile,
    RecordingSession,
    RecordingState,
    RecordingStats,
)
from camhub.schemas.camera import RecordingConfig, RecordingFormat, StreamConfig
from camhub.services.camera_stream import StreamCoordinator
from camhub.services.retention import StorageService
from camhub.utils import to_utc_isoformat, utc_now

logger = logging.getLogger(__name__)

STATS_INTERVAL_SECONDS = 1.0

DeviceLookup = Callable[[str], Awaitable[Optional[Device]]]


def recording_config_from_settings() -> RecordingConfig:
    settings = get_settings()
    max_file_size = (
        settings.max_file_size_mb * 1024 * 1024 if settings.max_file_size_mb else None
    )
    return RecordingConfig(
        format=RecordingFormat(settings.recording_format),
        max_file_size=max_file_size,
        segment_duration=settings.segment_duration_seconds,
    )


def recording_filename(session: RecordingSession, segment_index: int) -> str:
    """``{deviceId}_{timestamp}[_{segmentIndex}].{format}``"""
    safe_id = "".join(
        c if c.isalnum() or c in ("-", "_", ".") else "_"
        for c in session.device_id
    )
    timestamp = (
        to_utc_isoformat(session.start_time, timespec="milliseconds")
        .replace(":", "-")
        .replace(".", "-")
    )
    suffix = f"_{segment_index}" if segment_index else ""
    return f"{safe_id}_{timestamp}{suffix}.{session.config.format.value}"


class _SegmentWriter:
    """Async append-only writer for one recording file."""

    def __init__(self, path: Path):
        self.path = path
        self.bytes_written = 0
        self._file = None

    async def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = await aiofiles.open(self.path, "wb")

    async def write(self, data: bytes) -> None:
        await self._file.write(data)
        self.bytes_written += len(data)

    async def close(self) -> None:
        if self._file is None:
            return
        try:
            await self._file.flush()
        finally:
            await self._file.close()
            self._file = None

    @property
    def is_open(self) -> bool:
        return self._file is not None


@dataclass
class _ActiveRecording:
    session: RecordingSession
    device: Device
    owns_stream: bool = False
    writer: Optional[_SegmentWriter] = None
    segment_index: int = 0
    file_started: float = field(default_factory=time.monotonic)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: list[asyncio.Task] = field(default_factory=list)
    recovery_task: Optional[asyncio.Task] = None
    stopping: bool = False
    # Last statistics sample
    sample_time: float = field(default_factory=time.monotonic)
    sample_frames: int = 0
    sample_bytes: int = 0


class RecordingCoordinator:
    """Writes stream data for recording devices to disk."""

    def __init__(
        self,
        stream_coordinator: StreamCoordinator,
        storage: Optional[StorageService] = None,
        device_lookup: Optional[DeviceLookup] = None,
        max_concurrent: Optional[int] = None,
        recovery_delay: Optional[float] = None,
    ):
        settings = get_settings()
        self.streams = stream_coordinator
        self.storage = storage or StorageService()
        self.max_concurrent = max_concurrent or settings.max_concurrent_recordings
        self.recovery_delay = (
            settings.recovery_delay_seconds if recovery_delay is None else recovery_delay
        )
        self.events = EventChannel("recordings")

        self._device_lookup = device_lookup
        self._sessions: dict[str, _ActiveRecording] = {}
        self._pending: set[str] = set()
        self._lock = asyncio.Lock()

        self._subscriptions = [
            stream_coordinator.events.subscribe(self._on_stream_data, EventType.STREAM_DATA),
            stream_coordinator.events.subscribe(self._on_stream_error, EventType.STREAM_ERROR),
        ]

    @property
    def storage_root(self) -> Path:
        return self.storage.root

    async def start_recording(
        self,
        device: Device,
        config: Optional[RecordingConfig] = None,
    ) -> RecordingSession:
        """Start recording ``device``.

        The device's stream is started if it is not already live; a stream
        started here is stopped again with the recording.

        Raises:
            RecordingCapacityError: If the concurrent recording cap is reached.
            AlreadyRecordingError: If the device is already recording.
            InsufficientStorageError: If the free space floor cannot be met.
        """
        config = config or recording_config_from_settings()

        async with self._lock:
            if len(self._sessions) + len(self._pending) >= self.max_concurrent:
                raise RecordingCapacityError(
                    f"Maximum concurrent recordings ({self.max_concurrent}) reached"
                )
            if device.id in self._sessions or device.id in self._pending:
                raise AlreadyRecordingError(f"Camera {device.id} is already recording")
            self._pending.add(device.id)

        active: Optional[_ActiveRecording] = None
        try:
            await asyncio.to_thread(self.storage.ensure_free_space, self.protected_paths())

            session = RecordingSession(
                id=uuid.uuid4().hex,
                device_id=device.id,
                config=config,
            )
            active = _ActiveRecording(session=session, device=device)
            await self._open_file(active)

            async with self._lock:
                self._pending.discard(device.id)
                self._sessions[device.id] = active

            if not self.streams.is_active(device.id):
                await self.streams.start(device, StreamConfig(
                    quality=config.quality,
                    frame_rate=config.frame_rate,
                    enable_audio=config.enable_audio,
                ))
                active.owns_stream = True
        except Exception as e:
            logger.error(f"Failed to start recording for '{device.name}': {e}")
            async with self._lock:
                self._pending.discard(device.id)
                if active is not None and self._sessions.get(device.id) is active:
                    del self._sessions[device.id]
            if active is not None:
                await self._discard_files(active)
            raise

        self._start_timers(active)
        logger.info(f"Recording started for '{device.name}': {active.writer.path}")
        await self.events.publish(RecordingEvent(
            type=EventType.RECORDING_STARTED,
            device_id=device.id,
            session=session.snapshot(),
        ))
        return session.snapshot()

    def _start_timers(self, active: _ActiveRecording) -> None:
        config = active.session.config
        active.tasks.append(asyncio.create_task(self._stats_loop(active)))
        if config.segment_duration:
            active.tasks.append(asyncio.create_task(self._segment_loop(active)))
        if config.max_duration:
            active.tasks.append(asyncio.create_task(self._duration_limit(active)))

    async def _open_file(self, active: _ActiveRecording) -> None:
        path = self.storage.ensure_root() / recording_filename(
            active.session, active.segment_index
        )
        writer = _SegmentWriter(path)
        await writer.open()
        active.writer = writer
        active.file_started = time.monotonic()
        active.session.files.append(RecordingFile(
            path=path,
            has_audio=active.session.config.enable_audio,
        ))

    async def _close_file(self, active: _ActiveRecording) -> None:
        writer = active.writer
        if writer is None:
            return
        await writer.close()
        current = active.session.current_file
        if current is not None and current.path == writer.path:
            current.size = writer.bytes_written
            current.end_time = utc_now()
            current.duration = time.monotonic() - active.file_started
        active.writer = None

    async def _discard_files(self, active: _ActiveRecording) -> None:
        await self._close_file(active)
        for f in active.session.files:
            if f.size == 0:
                f.path.unlink(missing_ok=True)

    async def _rotate(self, active: _ActiveRecording) -> None:
        """Close the current file and open the next segment."""
        await self._close_file(active)
        active.segment_index += 1
        await self._open_file(active)
        logger.debug(f"Rotated recording for {active.session.device_id}: {active.writer.path}")

    async def _on_stream_data(self, event: Event) -> None:
        active = self._sessions.get(event.device_id or "")
        if active is None or active.session.state != RecordingState.RECORDING:
            return
        async with active.lock:
            if active.writer is None:
                return
            await self._write_chunk(active, event.data)

    async def _write_chunk(self, active: _ActiveRecording, chunk: bytes) -> None:
        """Append a chunk, splitting it so no file exceeds max_file_size."""
        max_size = active.session.config.max_file_size
        stats = active.session.statistics
        data = memoryview(chunk)

        while data:
            piece = data
            if max_size:
                room = max_size - active.writer.bytes_written
                if room <= 0:
                    await self._rotate(active)
                    continue
                piece = data[:room]
            await active.writer.write(bytes(piece))
            stats.total_bytes += len(piece)
            data = data[len(piece):]

        active.session.current_file.size = active.writer.bytes_written
        stats.total_frames += 1

    async def _segment_loop(self, active: _ActiveRecording) -> None:
        interval = active.session.config.segment_duration
        while True:
            await asyncio.sleep(interval)
            async with active.lock:
                # Only rotate a file that holds data
                if active.writer is not None and active.writer.bytes_written > 0:
                    await self._rotate(active)

    async def _stats_loop(self, active: _ActiveRecording) -> None:
        session = active.session
        while True:
            await asyncio.sleep(STATS_INTERVAL_SECONDS)
            if session.state != RecordingState.RECORDING:
                continue

            now = time.monotonic()
            elapsed = now - active.sample_time
            stats = session.statistics
            if elapsed > 0:
                stats.average_fps = (stats.total_frames - active.sample_frames) / elapsed
                stats.average_bitrate = (stats.total_bytes - active.sample_bytes) * 8 / elapsed
            active.sample_time = now
            active.sample_frames = stats.total_frames
            active.sample_bytes = stats.total_bytes

            await self.events.publish(RecordingStatsEvent(
                type=EventType.RECORDING_STATS,
                device_id=session.device_id,
                stats=replace(stats),
            ))

    async def _duration_limit(self, active: _ActiveRecording) -> None:
        await asyncio.sleep(active.session.config.max_duration)
        logger.info(f"Maximum duration reached for {active.session.device_id}")
        await self.stop_recording(active.session.device_id)

    async def _on_stream_error(self, event: Event) -> None:
        active = self._sessions.get(event.device_id or "")
        if active is None or active.stopping:
            return
        if active.session.state not in (RecordingState.RECORDING, RecordingState.PAUSED):
            return
        active.recovery_task = asyncio.create_task(self._recover(active, event.error))

    async def _recover(self, active: _ActiveRecording, error: str) -> None:
        """One recovery attempt after the stream failed mid-recording."""
        session = active.session
        device_id = session.device_id
        session.state = RecordingState.ERROR
        session.error_message = error
        logger.error(f"Recording error for {device_id}: {error}")
        await self.events.publish(RecordingErrorEvent(
            type=EventType.RECORDING_ERROR,
            device_id=device_id,
            session=session.snapshot(),
            error=error,
        ))

        async with active.lock:
            await self._close_file(active)

        await asyncio.sleep(self.recovery_delay)
        if self._sessions.get(device_id) is not active or active.stopping:
            return

        device = active.device
        if self._device_lookup is not None:
            device = await self._device_lookup(device_id) or device

        try:
            await self.streams.restart_stream(device)
            async with active.lock:
                active.segment_index += 1
                await self._open_file(active)
        except Exception as e:
            session.error_message = f"Recovery failed: {e}"
            logger.error(f"Recording recovery failed for {device_id}: {e}")
            return

        session.state = RecordingState.RECORDING
        session.error_message = None
        logger.info(f"Recording recovered for {device_id}")
        await self.events.publish(RecordingEvent(
            type=EventType.RECORDING_RECOVERED,
            device_id=device_id,
            session=session.snapshot(),
        ))

    async def stop_recording(self, device_id: str) -> Optional[RecordingSession]:
        """Stop recording and close the current file. No-op if not recording.

        The session keeps receiving data until an owned stream has stopped,
        so output the pipeline flushes on shutdown reaches the file.
        """
        async with self._lock:
            active = self._sessions.get(device_id)
            if active is None or active.stopping:
                return None
            active.stopping = True

        current = asyncio.current_task()
        for task in [*active.tasks, active.recovery_task]:
            if task is not None and task is not current and not task.done():
                task.cancel()

        if active.owns_stream:
            await self.streams.stop(device_id)

        async with active.lock:
            async with self._lock:
                if self._sessions.get(device_id) is active:
                    del self._sessions[device_id]
            await self._close_file(active)

        session = active.session
        session.state = RecordingState.STOPPED
        session.end_time = utc_now()
        logger.info(
            f"Recording stopped for {device_id}: {len(session.files)} file(s), "
            f"{session.total_size} bytes"
        )
        await self.events.publish(RecordingEvent(
            type=EventType.RECORDING_STOPPED,
            device_id=device_id,
            session=session.snapshot(),
        ))
        return session.snapshot()

    async def pause_recording(self, device_id: str) -> RecordingSession:
        """Suspend writing; incoming stream data is discarded while paused.

        Raises:
            RecordingNotFoundError: If the device is not recording.
        """
        active = self._get_active(device_id)
        if active.session.state == RecordingState.RECORDING:
            active.session.state = RecordingState.PAUSED
            await self.events.publish(RecordingEvent(
                type=EventType.RECORDING_PAUSED,
                device_id=device_id,
                session=active.session.snapshot(),
            ))
        return active.session.snapshot()

    async def resume_recording(self, device_id: str) -> RecordingSession:
        """Resume a paused recording.

        Raises:
            RecordingNotFoundError: If the device is not recording.
        """
        active = self._get_active(device_id)
        if active.session.state == RecordingState.PAUSED:
            active.session.state = RecordingState.RECORDING
            await self.events.publish(RecordingEvent(
                type=EventType.RECORDING_RESUMED,
                device_id=device_id,
                session=active.session.snapshot(),
            ))
        return active.session.snapshot()

    def _get_active(self, device_id: str) -> _ActiveRecording:
        active = self._sessions.get(device_id)
        if active is None:
            raise RecordingNotFoundError(f"No recording for camera {device_id}")
        return active

    async def stop_all_recordings(self) -> None:
        """Stop all recordings."""
        for device_id in list(self._sessions):
            await self.stop_recording(device_id)

    def is_recording(self, device_id: str) -> bool:
        return device_id in self._sessions

    def get_active_recordings(self) -> list[RecordingSession]:
        return [a.session.snapshot() for a in self._sessions.values()]

    def get_recording(self, device_id: str) -> Optional[RecordingSession]:
        active = self._sessions.get(device_id)
        return active.session.snapshot() if active else None

    def get_recording_stats(self, device_id: str) -> Optional[RecordingStats]:
        active = self._sessions.get(device_id)
        return replace(active.session.statistics) if active else None

    def get_all_status(self) -> list[dict]:
        return [a.session.get_status() for a in self._sessions.values()]

    def protected_paths(self) -> list[Path]:
        """Files currently being written, excluded from cleanup."""
        return [
            a.writer.path for a in self._sessions.values() if a.writer is not None
        ]

    async def dispose(self) -> None:
        await self.stop_all_recordings()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
