"""Tests for FFmpeg command building and pipeline supervision."""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from camhub.schemas import ResolutionSpec, StreamConfig
from camhub.services.pipelines import (
    ProcessPipeline,
    RestartPolicy,
    build_local_command,
    build_network_command,
    parse_progress,
    resolve_ffmpeg,
)


class TestParseProgress:
    def test_progress_line(self) -> None:
        line = "frame=  250 fps= 25.0 q=-1.0 size=    1024kB time=00:00:10.00 bitrate= 838.9kbits/s speed=1x"
        fps, bitrate = parse_progress(line)
        assert fps == 25.0
        assert bitrate == pytest.approx(838900.0)

    def test_other_line(self) -> None:
        assert parse_progress("Input #0, rtsp, from 'rtsp://cam/live':") == (None, None)


class TestRestartPolicy:
    def test_exponential_backoff_capped(self) -> None:
        policy = RestartPolicy(max_attempts=5, delay=2.0, backoff=2.0, max_delay=10.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [2.0, 4.0, 8.0, 10.0]

    def test_allows(self) -> None:
        policy = RestartPolicy(max_attempts=2)
        assert policy.allows(1) and policy.allows(2)
        assert not policy.allows(3)


class TestCommands:
    """Tests for FFmpeg argument construction."""

    def test_network_copy_by_default(self) -> None:
        cmd = build_network_command("ffmpeg", "rtsp://10.0.0.5/live", StreamConfig())

        assert cmd[cmd.index("-rtsp_transport") + 1] == "tcp"
        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert "-an" in cmd
        assert cmd[-3:] == ["-f", "mpegts", "pipe:1"]

    def test_network_scaling_reencodes(self) -> None:
        config = StreamConfig(
            resolution=ResolutionSpec(width=1280, height=720),
            bitrate=2000,
            enable_audio=True,
        )
        cmd = build_network_command("ffmpeg", "http://10.0.0.5/video.mjpeg", config)

        assert "-rtsp_transport" not in cmd
        assert cmd[cmd.index("-vf") + 1] == "scale=1280:720"
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-b:v") + 1] == "2000k"
        assert cmd[cmd.index("-c:a") + 1] == "aac"

    @pytest.mark.parametrize(
        "platform, fmt, source",
        [
            ("linux", "v4l2", "/dev/video0"),
            ("darwin", "avfoundation", "/dev/video0"),
            ("win32", "dshow", "video=/dev/video0"),
        ],
    )
    def test_local_capture_formats(self, platform: str, fmt: str, source: str) -> None:
        config = StreamConfig(resolution=ResolutionSpec(width=640, height=480), frame_rate=15)
        cmd = build_local_command("ffmpeg", "/dev/video0", config, platform=platform)

        assert cmd[cmd.index("-f") + 1] == fmt
        assert cmd[cmd.index("-i") + 1] == source
        assert cmd[cmd.index("-framerate") + 1] == "15"
        assert cmd[cmd.index("-video_size") + 1] == "640x480"

    def test_resolve_missing_ffmpeg(self) -> None:
        with patch("camhub.services.pipelines.shutil.which", return_value=None):
            with pytest.raises(RuntimeError, match="FFmpeg not found"):
                resolve_ffmpeg("ffmpeg")


def python_command(script: str) -> list[str]:
    return [sys.executable, "-c", script]


class TestProcessPipeline:
    """Tests for the supervised child process."""

    async def test_forwards_stdout_and_parses_stats(self, tmp_path: Path) -> None:
        """Stdout reaches on_data and progress lines reach on_stats."""
        chunks: list[bytes] = []
        stats: list[tuple] = []
        on_error = AsyncMock()
        script = (
            "import sys, time; sys.stdout.buffer.write(b'data'); sys.stdout.flush(); "
            "sys.stderr.write('frame=1 fps=12.5 bitrate=100.0kbits/s\\r'); sys.stderr.flush(); "
            "time.sleep(30)"
        )

        async def on_data(chunk: bytes) -> None:
            chunks.append(chunk)

        pipeline = ProcessPipeline(
            name="rtsp_10.0.0.5_554",
            command_factory=lambda: python_command(script),
            on_data=on_data,
            on_error=on_error,
            on_stats=lambda fps, bitrate: stats.append((fps, bitrate)),
            restart_policy=RestartPolicy(max_attempts=0),
            log_directory=tmp_path,
        )

        await pipeline.start()
        for _ in range(100):
            if chunks and stats:
                break
            await asyncio.sleep(0.05)
        await pipeline.stop()

        assert b"".join(chunks) == b"data"
        assert (12.5, 100000.0) in stats
        on_error.assert_not_awaited()
        assert pipeline.log_path.exists()

    async def test_respawns_then_reports_error(self, tmp_path: Path) -> None:
        """A crashing process is respawned per policy, then on_error fires once."""
        spawns: list[int] = []
        on_error = AsyncMock()

        def command() -> list[str]:
            spawns.append(1)
            return python_command("import sys; sys.stderr.write('Connection refused\\n'); sys.exit(1)")

        pipeline = ProcessPipeline(
            name="rtsp_10.0.0.5_554",
            command_factory=command,
            on_data=AsyncMock(),
            on_error=on_error,
            restart_policy=RestartPolicy(max_attempts=2, delay=0.01),
            log_directory=tmp_path,
        )

        await pipeline.start()
        for _ in range(100):
            if on_error.await_count:
                break
            await asyncio.sleep(0.05)
        await pipeline.stop()

        assert len(spawns) == 3
        on_error.assert_awaited_once()
        assert "Connection refused" in on_error.await_args.args[0]
        assert pipeline.failed
        assert "Connection refused" in pipeline.log_path.read_text()

    async def test_stop_terminates_running_process(self, tmp_path: Path) -> None:
        on_error = AsyncMock()

        async def on_data(chunk: bytes) -> None:
            pass

        pipeline = ProcessPipeline(
            name="usb_video0",
            command_factory=lambda: python_command("import time; time.sleep(30)"),
            on_data=on_data,
            on_error=on_error,
            restart_policy=RestartPolicy(max_attempts=0),
            log_directory=tmp_path,
        )

        await pipeline.start()
        assert pipeline.is_running
        await pipeline.stop()

        assert not pipeline.is_running
        on_error.assert_not_awaited()

    async def test_paused_pipeline_drops_data(self, tmp_path: Path) -> None:
        chunks: list[bytes] = []

        async def on_data(chunk: bytes) -> None:
            chunks.append(chunk)

        pipeline = ProcessPipeline(
            name="cam",
            command_factory=lambda: python_command("import sys; sys.stdout.write('x')"),
            on_data=on_data,
            on_error=AsyncMock(),
            restart_policy=RestartPolicy(max_attempts=0),
            log_directory=tmp_path,
        )
        pipeline.pause()

        await pipeline.start()
        await asyncio.sleep(0.5)
        await pipeline.stop()

        assert chunks == []

    def test_safe_name(self, tmp_path: Path) -> None:
        pipeline = ProcessPipeline(
            name="onvif_10.0.0.9_Profile 1",
            command_factory=list,
            on_data=AsyncMock(),
            on_error=AsyncMock(),
            log_directory=tmp_path,
        )
        assert pipeline.log_path == tmp_path / "onvif_10_0_0_9_Profile_1_ffmpeg.log"
