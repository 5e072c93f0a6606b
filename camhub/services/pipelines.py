"""Supervised FFmpeg pipelines feeding live stream sessions.

Each pipeline owns one FFmpeg child process whose stdout is the data
channel (MPEG-TS) and whose stderr is logged to a per-device file and
parsed for progress figures. When the process exits unexpectedly it is
respawned according to a ``RestartPolicy``; once the policy is exhausted
the owner is told through ``on_error``.
"""

import asyncio
import logging
import re
import shutil
import signal
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from camhub.config import get_settings
from camhub.schemas.camera import StreamConfig
from camhub.services.encryption import redact_url

logger = logging.getLogger(__name__)

FPS_PATTERN = re.compile(r"fps=\s*([\d.]+)")
BITRATE_PATTERN = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
LINE_SPLIT = re.compile(r"[\r\n]")

STDERR_KEYWORDS = (
    "error", "failed", "refused", "timeout", "invalid",
    "unauthorized", "401", "403", "404", "connection",
)

DataCallback = Callable[[bytes], Awaitable[None]]
StatsCallback = Callable[[Optional[float], Optional[float]], None]
ErrorCallback = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class RestartPolicy:
    """How often and how fast a crashed pipeline is respawned."""

    max_attempts: int = 3
    delay: float = 2.0
    backoff: float = 2.0
    max_delay: float = 60.0

    @classmethod
    def from_settings(cls) -> "RestartPolicy":
        settings = get_settings()
        return cls(
            max_attempts=settings.stream_restart_attempts,
            delay=settings.stream_restart_delay_seconds,
            backoff=settings.stream_restart_backoff,
        )

    def allows(self, attempt: int) -> bool:
        return attempt <= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Delay before the given (1-based) attempt."""
        return min(self.delay * (self.backoff ** max(attempt - 1, 0)), self.max_delay)


def parse_progress(line: str) -> tuple[Optional[float], Optional[float]]:
    """Extract (fps, bits per second) from an FFmpeg progress line."""
    fps = None
    bitrate = None
    fps_match = FPS_PATTERN.search(line)
    if fps_match:
        fps = float(fps_match.group(1))
    bitrate_match = BITRATE_PATTERN.search(line)
    if bitrate_match:
        bitrate = float(bitrate_match.group(1)) * 1000
    return fps, bitrate


def resolve_ffmpeg(ffmpeg_path: Optional[str] = None) -> str:
    """Locate the FFmpeg binary.

    Raises:
        RuntimeError: If FFmpeg is not installed.
    """
    candidate = ffmpeg_path or get_settings().ffmpeg_path
    found = shutil.which(candidate)
    if not found:
        raise RuntimeError("FFmpeg not found in PATH")
    return found


def build_network_command(ffmpeg: str, url: str, config: StreamConfig) -> list[str]:
    """FFmpeg command pulling a network stream and writing MPEG-TS to stdout."""
    cmd = [ffmpeg, "-hide_banner", "-loglevel", "info", "-stats"]

    if url.startswith("rtsp"):
        cmd.extend(["-rtsp_transport", "tcp"])
    cmd.extend([
        "-fflags", "+genpts+discardcorrupt",
        "-flags", "low_delay",
        "-i", url,
    ])

    if config.resolution is not None:
        # Scaling needs a re-encode; otherwise the camera's stream is copied
        cmd.extend([
            "-vf", f"scale={config.resolution.width}:{config.resolution.height}",
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-tune", "zerolatency",
        ])
        if config.bitrate:
            cmd.extend(["-b:v", f"{config.bitrate}k"])
    else:
        cmd.extend(["-c:v", "copy"])

    if config.enable_audio:
        cmd.extend(["-c:a", "aac"])
    else:
        cmd.append("-an")

    cmd.extend(["-f", "mpegts", "pipe:1"])
    return cmd


def build_local_command(
    ffmpeg: str,
    device_path: str,
    config: StreamConfig,
    platform: str = sys.platform,
) -> list[str]:
    """FFmpeg command capturing a local device and encoding to MPEG-TS."""
    cmd = [ffmpeg, "-hide_banner", "-loglevel", "info", "-stats"]

    if platform.startswith("linux"):
        cmd.extend(["-f", "v4l2"])
        source = device_path
    elif platform == "darwin":
        cmd.extend(["-f", "avfoundation"])
        source = device_path
    elif platform == "win32":
        cmd.extend(["-f", "dshow"])
        source = f"video={device_path}"
    else:
        source = device_path

    cmd.extend(["-framerate", f"{config.frame_rate:g}"])
    if config.resolution is not None:
        cmd.extend(["-video_size", f"{config.resolution.width}x{config.resolution.height}"])
    cmd.extend(["-i", source])

    cmd.extend([
        "-c:v", config.codec or "libx264",
        "-preset", "veryfast",
        "-tune", "zerolatency",
    ])
    if config.bitrate:
        cmd.extend(["-b:v", f"{config.bitrate}k"])
    cmd.extend(["-an", "-f", "mpegts", "pipe:1"])
    return cmd


class ProcessPipeline:
    """One supervised FFmpeg process.

    Args:
        name: Label used in logs and the stderr log file name
        command_factory: Builds the command line for each (re)spawn
        on_data: Awaited for every chunk forwarded from stdout
        on_stats: Called with (fps, bits/s) parsed from stderr
        on_error: Awaited once when the restart policy is exhausted
        log_directory: Where the per-device FFmpeg log is appended
        chunk_interval: If set, stdout is accumulated and forwarded in
            chunks of this many seconds instead of as it arrives
    """

    read_size = 64 * 1024

    def __init__(
        self,
        name: str,
        command_factory: Callable[[], list[str]],
        on_data: DataCallback,
        on_error: ErrorCallback,
        on_stats: Optional[StatsCallback] = None,
        restart_policy: Optional[RestartPolicy] = None,
        log_directory: Optional[Path] = None,
        chunk_interval: Optional[float] = None,
    ):
        self.name = name
        self.restart_policy = restart_policy or RestartPolicy.from_settings()
        self.log_directory = log_directory or Path(get_settings().storage_root) / ".logs"
        self.chunk_interval = chunk_interval

        self._command_factory = command_factory
        self._on_data = on_data
        self._on_error = on_error
        self._on_stats = on_stats

        self._process: Optional[asyncio.subprocess.Process] = None
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._supervisor_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._paused = False
        self._attempts = 0
        self._last_stderr_lines: list[str] = []
        self.failed = False

    @property
    def safe_name(self) -> str:
        """Filesystem-safe pipeline name."""
        return "".join(c if c.isalnum() or c in ("-", "_") else "_" for c in self.name)

    @property
    def log_path(self) -> Path:
        return self.log_directory / f"{self.safe_name}_ffmpeg.log"

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def restart_attempts(self) -> int:
        return self._attempts

    @property
    def last_output(self) -> list[str]:
        return list(self._last_stderr_lines[-10:])

    async def start(self) -> None:
        """Spawn the process and start supervising it.

        Raises:
            RuntimeError: If the command cannot be built.
            OSError: If the process cannot be spawned.
        """
        self._stopping = False
        self.failed = False
        await self._spawn()
        self._supervisor_task = asyncio.create_task(self._supervise())

    async def _spawn(self) -> None:
        cmd = self._command_factory()
        logger.info(f"Starting pipeline for '{self.name}'")
        logger.debug(f"FFmpeg command: {' '.join(redact_url(part) for part in cmd)}")

        self._last_stderr_lines = []
        self._process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._stdout_task = asyncio.create_task(self._read_stdout(self._process))
        self._stderr_task = asyncio.create_task(self._read_stderr(self._process))

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        """Forward stdout to ``on_data``, chunked if configured."""
        if process.stdout is None:
            return

        pending = bytearray()
        window_start = time.monotonic()

        while True:
            data = await process.stdout.read(self.read_size)
            if not data:
                break
            # Data flowing means the last respawn worked
            self._attempts = 0

            if self._paused:
                continue

            if self.chunk_interval is None:
                await self._forward(data)
                continue

            pending.extend(data)
            if time.monotonic() - window_start >= self.chunk_interval:
                await self._forward(bytes(pending))
                pending.clear()
                window_start = time.monotonic()

        if pending and not self._paused:
            await self._forward(bytes(pending))

    async def _forward(self, chunk: bytes) -> None:
        try:
            await self._on_data(chunk)
        except Exception:
            logger.exception(f"Data handler failed for '{self.name}'")

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        """Read FFmpeg stderr, logging to file and parsing progress."""
        if process.stderr is None:
            return

        self.log_directory.mkdir(parents=True, exist_ok=True)
        log_file = None

        try:
            log_file = open(self.log_path, "a")
            log_file.write(f"\n{'='*60}\n")
            log_file.write(f"FFmpeg started at {datetime.now().isoformat()}\n")
            log_file.write(f"Pipeline: {self.name}\n")
            log_file.write(f"{'='*60}\n")
            log_file.flush()

            # Progress lines end in a bare carriage return, so read raw
            # blocks and split on either line terminator
            pending = ""
            while True:
                data = await process.stderr.read(4096)
                if not data:
                    break
                pending += data.decode(errors="replace")
                *lines, pending = LINE_SPLIT.split(pending)
                for decoded in lines:
                    decoded = decoded.strip()
                    if decoded:
                        self._handle_stderr_line(decoded, log_file)
            if pending.strip():
                self._handle_stderr_line(pending.strip(), log_file)

            log_file.write(
                f"\n[{datetime.now().strftime('%H:%M:%S')}] "
                f"FFmpeg exited with code: {process.returncode}\n"
            )
            log_file.flush()

        except asyncio.CancelledError:
            if log_file:
                log_file.write(f"\n[{datetime.now().strftime('%H:%M:%S')}] Pipeline stopped\n")
            raise
        except Exception as e:
            logger.debug(f"Stderr reader ended for '{self.name}': {e}")
        finally:
            if log_file:
                log_file.close()

    def _handle_stderr_line(self, decoded: str, log_file) -> None:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        log_file.write(f"[{timestamp}] {decoded}\n")
        log_file.flush()

        fps, bitrate = parse_progress(decoded)
        if fps is not None or bitrate is not None:
            if self._on_stats is not None:
                self._on_stats(fps, bitrate)
            return

        self._last_stderr_lines.append(decoded)
        if len(self._last_stderr_lines) > 20:
            self._last_stderr_lines.pop(0)

        if any(kw in decoded.lower() for kw in STDERR_KEYWORDS):
            logger.warning(f"FFmpeg [{self.name}]: {decoded}")
        else:
            logger.debug(f"FFmpeg [{self.name}]: {decoded}")

    async def _join_readers(self) -> None:
        for task in (self._stdout_task, self._stderr_task):
            if task is None:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Reader for '{self.name}' ended with error: {e}")
        self._stdout_task = None
        self._stderr_task = None

    async def _supervise(self) -> None:
        """Wait for exits and respawn within the restart policy."""
        while True:
            process = self._process
            if process is None:
                return
            returncode = await process.wait()
            await self._join_readers()
            if self._stopping:
                return

            reason = (
                "\n".join(self._last_stderr_lines[-5:])
                if self._last_stderr_lines
                else f"Exit code {returncode}"
            )
            logger.warning(f"FFmpeg stopped for '{self.name}' (exit={returncode}): {reason}")

            if not await self._respawn(reason):
                return

    async def _respawn(self, reason: str) -> bool:
        while True:
            self._attempts += 1
            if not self.restart_policy.allows(self._attempts):
                logger.error(f"Max restart attempts reached for '{self.name}'")
                self.failed = True
                self._process = None
                await self._on_error(f"Pipeline failed: {reason}")
                return False

            delay = self.restart_policy.delay_for(self._attempts)
            logger.info(
                f"Restarting '{self.name}' in {delay:.1f}s "
                f"(attempt {self._attempts}/{self.restart_policy.max_attempts})"
            )
            await asyncio.sleep(delay)
            if self._stopping:
                return False

            try:
                await self._spawn()
                return True
            except (OSError, RuntimeError) as e:
                logger.error(f"Restart failed for '{self.name}': {e}")
                reason = str(e)

    def pause(self) -> None:
        """Stop forwarding data; the process keeps running."""
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    async def stop(self) -> None:
        """Stop the process and wait for buffered output to be forwarded."""
        self._stopping = True

        supervisor = self._supervisor_task
        self._supervisor_task = None
        if supervisor is not None and supervisor is not asyncio.current_task():
            if not supervisor.done():
                supervisor.cancel()
            try:
                await supervisor
            except asyncio.CancelledError:
                pass

        process = self._process
        if process is not None and process.returncode is None:
            logger.info(f"Stopping pipeline for '{self.name}'")
            try:
                process.send_signal(signal.SIGINT)
                try:
                    await asyncio.wait_for(process.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                pass

        await self._join_readers()
        self._process = None


class LocalCapturePipeline(ProcessPipeline):
    """Capture pipeline whose pause suspends the capture process itself."""

    def pause(self) -> None:
        super().pause()
        if self.is_running and hasattr(signal, "SIGSTOP"):
            try:
                self._process.send_signal(signal.SIGSTOP)
            except ProcessLookupError:
                pass

    def resume(self) -> None:
        if self.is_running and hasattr(signal, "SIGCONT"):
            try:
                self._process.send_signal(signal.SIGCONT)
            except ProcessLookupError:
                pass
        super().resume()

    async def stop(self) -> None:
        # A stopped process cannot handle SIGINT
        if self._paused:
            self.resume()
        await super().stop()
