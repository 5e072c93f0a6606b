"""Tests for the network camera scanner."""

import asyncio
from typing import Optional
from unittest.mock import patch

import httpx
import pytest

from camhub.events import EventType
from camhub.exceptions import DiscoveryInProgressError
from camhub.models.device import Device, TransportType
from camhub.schemas import NetworkScanOptions, ScanProtocol
from camhub.services.network_scanner import (
    NetworkScanner,
    create_rtsp_device,
    expand_ip_range,
)


class TestExpandIpRange:
    """Tests for IP range parsing."""

    def test_cidr_hosts_only(self) -> None:
        hosts = expand_ip_range("192.168.1.0/24")
        assert len(hosts) == 254
        assert hosts[0] == "192.168.1.1"
        assert hosts[-1] == "192.168.1.254"

    def test_short_range(self) -> None:
        assert expand_ip_range("10.0.0.5-7") == ["10.0.0.5", "10.0.0.6", "10.0.0.7"]

    def test_full_range(self) -> None:
        assert expand_ip_range("10.0.0.254-10.0.1.1") == [
            "10.0.0.254",
            "10.0.0.255",
            "10.0.1.0",
            "10.0.1.1",
        ]

    def test_single_address(self) -> None:
        assert expand_ip_range(" 10.0.0.9 ") == ["10.0.0.9"]

    @pytest.mark.parametrize("bad", ["not-an-ip", "10.0.0.9-3", "300.1.1.1"])
    def test_invalid(self, bad: str) -> None:
        with pytest.raises(ValueError):
            expand_ip_range(bad)


class TestScan:
    """Tests for NetworkScanner.scan batching and concurrency."""

    async def test_every_address_visited_once_with_bounded_concurrency(self) -> None:
        """A /24 probes 254 hosts, never more than `concurrency` at a time."""
        scanner = NetworkScanner()
        visited: list[str] = []
        in_flight = 0
        peak = 0

        async def fake_scan(ip: str, options, client) -> Optional[Device]:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            visited.append(ip)
            await asyncio.sleep(0)
            in_flight -= 1
            if ip == "192.168.1.20":
                return create_rtsp_device(ip, 554, f"rtsp://{ip}:554")
            return None

        with patch.object(scanner, "_scan_address", side_effect=fake_scan):
            cameras = await scanner.scan(NetworkScanOptions(ip_range="192.168.1.0/24", concurrency=10))

        assert len(visited) == 254
        assert len(set(visited)) == 254
        assert peak <= 10
        assert [c.id for c in cameras] == ["rtsp_192.168.1.20_554"]
        assert not scanner.is_scanning

    async def test_found_cameras_are_published(self) -> None:
        scanner = NetworkScanner()
        found = []
        scanner.events.subscribe(found.append, EventType.CAMERA_FOUND)

        async def fake_scan(ip: str, options, client) -> Optional[Device]:
            return create_rtsp_device(ip, 554, f"rtsp://{ip}:554")

        with patch.object(scanner, "_scan_address", side_effect=fake_scan):
            await scanner.scan(NetworkScanOptions(ip_range="10.0.0.1-2"))

        assert [e.device_id for e in found] == ["rtsp_10.0.0.1_554", "rtsp_10.0.0.2_554"]

    async def test_probe_exceptions_are_skipped(self) -> None:
        scanner = NetworkScanner()

        async def fake_scan(ip: str, options, client) -> Optional[Device]:
            raise OSError("unreachable")

        with patch.object(scanner, "_scan_address", side_effect=fake_scan):
            assert await scanner.scan(NetworkScanOptions(ip_range="10.0.0.1")) == []

    async def test_concurrent_scan_rejected(self) -> None:
        """A second scan while one runs raises DiscoveryInProgressError."""
        scanner = NetworkScanner()
        release = asyncio.Event()

        async def slow_scan(ip: str, options, client) -> Optional[Device]:
            await release.wait()
            return None

        with patch.object(scanner, "_scan_address", side_effect=slow_scan):
            first = asyncio.create_task(scanner.scan(NetworkScanOptions(ip_range="10.0.0.1")))
            await asyncio.sleep(0.01)
            assert scanner.is_scanning
            with pytest.raises(DiscoveryInProgressError):
                await scanner.scan(NetworkScanOptions(ip_range="10.0.0.2"))
            release.set()
            await first

    async def test_stop_scan_aborts_remaining_batches(self) -> None:
        scanner = NetworkScanner()
        visited: list[str] = []

        async def fake_scan(ip: str, options, client) -> Optional[Device]:
            visited.append(ip)
            scanner.stop_scan()
            return None

        with patch.object(scanner, "_scan_address", side_effect=fake_scan):
            await scanner.scan(NetworkScanOptions(ip_range="10.0.0.1-20", concurrency=5))

        assert len(visited) == 5


@pytest.fixture
async def rtsp_server():
    """A local TCP server answering like an RTSP endpoint."""
    requests: list[bytes] = []

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        requests.append(await reader.read(1024))
        writer.write(b"RTSP/1.0 200 OK\r\nCSeq: 1\r\n\r\n")
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield port, requests
    server.close()
    await server.wait_closed()


class TestRtspHandshake:
    """Tests for the RTSP OPTIONS probe."""

    async def test_handshake_succeeds(self, rtsp_server) -> None:
        port, requests = rtsp_server
        scanner = NetworkScanner()

        assert await scanner.test_rtsp(f"rtsp://user:pw@127.0.0.1:{port}/live") is True
        assert requests[0].startswith(b"OPTIONS rtsp://127.0.0.1:")
        assert b"pw" not in requests[0]

    async def test_closed_port_fails(self) -> None:
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        assert await NetworkScanner().test_rtsp(f"rtsp://127.0.0.1:{port}", timeout=0.5) is False

    async def test_invalid_url(self) -> None:
        assert await NetworkScanner().test_rtsp("not a url") is False

    async def test_add_rtsp_camera(self, rtsp_server) -> None:
        """Manual add returns a credential-free device."""
        port, _ = rtsp_server
        device = await NetworkScanner().add_rtsp_camera(
            "Porch", f"rtsp://admin:pw@127.0.0.1:{port}/h264"
        )

        assert device.name == "Porch"
        assert device.id == f"rtsp_127.0.0.1_{port}"
        assert device.connection.stream_url == f"rtsp://127.0.0.1:{port}/h264"
        assert device.connection.path == "/h264"

    async def test_add_unreachable_camera(self) -> None:
        with patch.object(NetworkScanner, "test_rtsp", return_value=False):
            assert await NetworkScanner().add_rtsp_camera("x", "rtsp://10.0.0.1/") is None


class TestHttpIdentification:
    """Tests for snapshot endpoint detection."""

    async def test_identifies_image_endpoint(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/snapshot.jpg":
                return httpx.Response(200, headers={"content-type": "image/jpeg"}, content=b"\xff\xd8")
            return httpx.Response(404)

        scanner = NetworkScanner()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            device = await scanner._identify_http_camera(client, "10.0.0.8", 80)

        assert device.transport == TransportType.NETWORK_HTTP
        assert device.id == "http_10.0.0.8_80"
        assert device.connection.path == "/snapshot.jpg"

    async def test_scan_address_http(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/image.jpg":
                return httpx.Response(200, headers={"content-type": "image/jpeg"})
            return httpx.Response(200, headers={"content-type": "text/html"})

        scanner = NetworkScanner()
        options = NetworkScanOptions(ports=(8080,), protocols=(ScanProtocol.HTTP,))
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            device = await scanner._scan_address("10.0.0.8", options, client)

        assert device.connection.stream_url == "http://10.0.0.8:8080/image.jpg"

    async def test_no_image_endpoint(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"content-type": "text/html"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await NetworkScanner()._identify_http_camera(client, "10.0.0.8", 80) is None

    async def test_content_type_decides_regardless_of_status(self) -> None:
        """An auth-protected snapshot endpoint still identifies a camera."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, headers={"content-type": "image/jpeg"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            device = await NetworkScanner()._identify_http_camera(client, "10.0.0.8", 80)

        assert device is not None
        assert device.id == "http_10.0.0.8_80"
