"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator, Iterator
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from camhub.config import get_settings
from camhub.events import EventChannel
from camhub.models.device import (
    Capabilities,
    Connection,
    DEFAULT_RESOLUTIONS,
    Device,
    DeviceStatus,
    Resolution,
    TransportType,
    make_device_id,
)
from camhub.schemas import StorageConfig
from camhub.services.camera_stream import StreamCoordinator
from camhub.services.companion import CompanionGateway
from camhub.services.encryption import SecretStore
from camhub.services.hub import CameraHub
from camhub.services.onvif import MediaProfile, ONVIFCapabilities, VideoEncoderInfo
from camhub.services.recorder import RecordingCoordinator
from camhub.services.registry import DeviceRegistry
from camhub.services.retention import StorageService
from camhub.services.snapshot import Snapshot


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Point storage at a temp directory and reset cached settings."""
    monkeypatch.setenv("CAMHUB_STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("CAMHUB_RETENTION_DAYS", "30")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def secrets() -> SecretStore:
    """A fresh credential store."""
    return SecretStore()


def make_device(
    transport: TransportType = TransportType.NETWORK_RTSP,
    address: str = "192.168.1.10",
    port: int = 554,
    status: DeviceStatus = DeviceStatus.CONNECTED,
    stream_url: Optional[str] = None,
    name: Optional[str] = None,
) -> Device:
    """Build a Device for tests."""
    if transport == TransportType.LOCAL:
        device_id = make_device_id(transport, "video0")
        connection = Connection(device_path="/dev/video0")
    elif transport == TransportType.COMPANION:
        device_id = make_device_id(transport, "phone-1")
        connection = Connection(address=address)
    else:
        device_id = make_device_id(transport, address, port)
        connection = Connection(
            address=address,
            port=port,
            stream_url=stream_url or f"rtsp://{address}:{port}/stream",
        )
    return Device(
        id=device_id,
        name=name or f"Test Camera ({device_id})",
        transport=transport,
        status=status,
        capabilities=Capabilities(
            resolutions=list(DEFAULT_RESOLUTIONS),
            frame_rates=[30.0],
        ),
        connection=connection,
    )


@pytest.fixture
def device_factory():
    """Factory building Devices for any transport."""
    return make_device


@pytest.fixture
def rtsp_device() -> Device:
    return make_device()


@pytest.fixture
def local_device() -> Device:
    return make_device(TransportType.LOCAL)


@pytest.fixture
async def client(hub) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against an app wrapping ``hub`` (lifespan not run)."""
    from camhub.main import create_app

    app = create_app(hub=hub, start_hub=False)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def local_probe() -> MagicMock:
    """Local capture probe with no attached devices."""
    probe = MagicMock()
    probe.events = EventChannel("local-capture")
    probe.detect = AsyncMock(return_value=[])
    probe.stop_monitoring = AsyncMock()
    probe.test_camera = AsyncMock(return_value=True)
    return probe


@pytest.fixture
def scanner() -> MagicMock:
    """Network scanner that finds nothing."""
    scanner = MagicMock()
    scanner.scan = AsyncMock(return_value=[])
    scanner.add_rtsp_camera = AsyncMock()
    scanner.test_rtsp = AsyncMock(return_value=True)
    scanner.test_snapshot = AsyncMock(return_value=True)
    return scanner


@pytest.fixture
def onvif() -> MagicMock:
    """ONVIF discovery whose devices expose a main and a sub profile."""
    onvif = MagicMock()
    onvif.discover = AsyncMock(return_value=[])
    onvif.get_device_capabilities = AsyncMock(
        return_value=ONVIFCapabilities(device=True, media=True, ptz=True)
    )
    onvif.get_profiles = AsyncMock(return_value=[
        MediaProfile(
            token="main",
            name="MainStream",
            video_encoder=VideoEncoderInfo(
                resolution=Resolution(1920, 1080, "1080p"), frame_rate=25.0
            ),
        ),
        MediaProfile(token="sub", name="SubStream"),
    ])
    onvif.get_device_info = AsyncMock(
        return_value={"manufacturer": "Acme", "model": "IPC-1", "serial": "S1"}
    )
    onvif.get_stream_uri = AsyncMock(
        side_effect=lambda device, token: f"rtsp://{device.address}:554/{token}"
    )
    onvif.test_connection = AsyncMock(return_value=True)
    return onvif


@pytest.fixture
def gateway() -> CompanionGateway:
    """Companion gateway that never binds its own port."""
    gateway = CompanionGateway(port=18765, ping_timeout=0.1)
    gateway.start_listening = AsyncMock()
    gateway.stop_listening = AsyncMock()
    return gateway


@pytest.fixture
async def hub(
    tmp_path: Path,
    secrets: SecretStore,
    local_probe: MagicMock,
    scanner: MagicMock,
    onvif: MagicMock,
    gateway: CompanionGateway,
) -> AsyncGenerator[CameraHub, None]:
    """A CameraHub over mocked probes.

    FFmpeg points at a missing binary, so process-backed streams fail to
    start while companion streams work without a child process.
    """
    storage = StorageService(StorageConfig(
        primary_path=tmp_path / "recordings",
        min_free_space_gb=1.0,
    ))
    storage.free_space_gb = MagicMock(return_value=100.0)
    registry = DeviceRegistry(
        local_probe=local_probe,
        network_scanner=scanner,
        onvif_discovery=onvif,
        companion_gateway=gateway,
        secrets=secrets,
        stale_cutoff_seconds=60,
    )
    streams = StreamCoordinator(
        companion_gateway=gateway,
        secrets=secrets,
        storage_root=tmp_path,
        ffmpeg_path="/nonexistent/ffmpeg",
    )
    recorder = RecordingCoordinator(
        streams, storage, device_lookup=registry.lookup, recovery_delay=0
    )
    snapshots = MagicMock()
    snapshots.take_snapshot = AsyncMock(
        side_effect=lambda device: Snapshot(device_id=device.id, image=b"\xff\xd8jpeg")
    )
    hub = CameraHub(
        registry=registry,
        streams=streams,
        recorder=recorder,
        storage=storage,
        snapshots=snapshots,
        companion=gateway,
        secrets=secrets,
    )
    yield hub
    await hub.stop()
