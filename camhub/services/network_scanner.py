"""Network sweep for RTSP and HTTP snapshot cameras."""

import asyncio
import ipaddress
import logging
import socket
from typing import Optional
from urllib.parse import urlparse

import httpx
import psutil

from camhub.events import CameraEvent, EventChannel, EventType
from camhub.exceptions import DiscoveryInProgressError
from camhub.models.device import (
    DEFAULT_RESOLUTIONS,
    Capabilities,
    Connection,
    Device,
    DeviceStatus,
    TransportType,
    make_device_id,
)
from camhub.schemas.camera import NetworkScanOptions, ScanProtocol
from camhub.services.encryption import redact_url

logger = logging.getLogger(__name__)

RTSP_DEFAULT_PORT = 554
DEFAULT_IP_RANGE = "192.168.1.0/24"

SNAPSHOT_ENDPOINTS = (
    "/cgi-bin/snapshot.cgi",
    "/snapshot.jpg",
    "/image.jpg",
    "/mjpeg",
    "/video.mjpeg",
)


def expand_ip_range(ip_range: str) -> list[str]:
    """Expand a CIDR block, ``a.b.c.x-y`` range or single address.

    CIDR blocks expand to host addresses only, so a /24 yields 254.

    Raises:
        ValueError: If the range cannot be parsed.
    """
    ip_range = ip_range.strip()

    if "/" in ip_range:
        network = ipaddress.ip_network(ip_range, strict=False)
        hosts = [str(h) for h in network.hosts()]
        return hosts or [str(network.network_address)]

    if "-" in ip_range:
        start_text, end_text = (part.strip() for part in ip_range.split("-", 1))
        start = ipaddress.ip_address(start_text)
        if "." in end_text or ":" in end_text:
            end = ipaddress.ip_address(end_text)
        else:
            prefix = start_text.rsplit(".", 1)[0]
            end = ipaddress.ip_address(f"{prefix}.{end_text}")
        if int(end) < int(start):
            raise ValueError(f"Range end precedes start: {ip_range}")
        return [
            str(ipaddress.ip_address(i))
            for i in range(int(start), int(end) + 1)
        ]

    return [str(ipaddress.ip_address(ip_range))]


def local_subnets() -> list[str]:
    """/24 networks of every non-loopback IPv4 interface."""
    subnets: list[str] = []
    for addresses in psutil.net_if_addrs().values():
        for addr in addresses:
            if addr.family != socket.AF_INET:
                continue
            ip = ipaddress.ip_address(addr.address)
            if ip.is_loopback or ip.is_link_local:
                continue
            subnet = str(ipaddress.ip_network(f"{ip}/24", strict=False))
            if subnet not in subnets:
                subnets.append(subnet)
    return subnets


def create_rtsp_device(ip: str, port: int, url: str) -> Device:
    return Device(
        id=make_device_id(TransportType.NETWORK_RTSP, ip, port),
        name=f"RTSP Camera ({ip})",
        transport=TransportType.NETWORK_RTSP,
        status=DeviceStatus.CONNECTED,
        capabilities=Capabilities(
            resolutions=list(DEFAULT_RESOLUTIONS),
            frame_rates=[15.0, 25.0, 30.0],
            has_audio=True,
            supported_codecs=["h264", "h265"],
            supported_protocols=["rtsp"],
        ),
        connection=Connection(address=ip, port=port, stream_url=redact_url(url)),
    )


def create_http_device(ip: str, port: int, url: str) -> Device:
    return Device(
        id=make_device_id(TransportType.NETWORK_HTTP, ip, port),
        name=f"HTTP Camera ({ip})",
        transport=TransportType.NETWORK_HTTP,
        status=DeviceStatus.CONNECTED,
        capabilities=Capabilities(
            resolutions=list(DEFAULT_RESOLUTIONS),
            frame_rates=[15.0, 25.0, 30.0],
            supported_codecs=["mjpeg", "jpeg"],
            supported_protocols=["http"],
        ),
        connection=Connection(
            address=ip,
            port=port,
            path=urlparse(url).path,
            stream_url=redact_url(url),
        ),
    )


class NetworkScanner:
    """Sweeps an address range for RTSP and HTTP cameras."""

    def __init__(self) -> None:
        self.events = EventChannel("network-scanner")
        self._scanning = False
        self._stop_requested = False

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    async def scan(self, options: Optional[NetworkScanOptions] = None) -> list[Device]:
        """Scan the configured range and return the cameras found.

        Raises:
            DiscoveryInProgressError: If a scan is already running.
            ValueError: If the IP range cannot be parsed.
        """
        if self._scanning:
            raise DiscoveryInProgressError("Network scan already in progress")

        options = options or NetworkScanOptions()
        addresses = expand_ip_range(options.ip_range or DEFAULT_IP_RANGE)
        timeout = options.timeout_ms / 1000

        self._scanning = True
        self._stop_requested = False
        cameras: list[Device] = []
        logger.info(
            f"Scanning {len(addresses)} addresses on ports {list(options.ports)} "
            f"({', '.join(p.value for p in options.protocols)})"
        )

        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as client:
                for i in range(0, len(addresses), options.concurrency):
                    if self._stop_requested:
                        logger.info("Network scan aborted")
                        break

                    batch = addresses[i:i + options.concurrency]
                    results = await asyncio.gather(
                        *(self._scan_address(ip, options, client) for ip in batch),
                        return_exceptions=True,
                    )

                    for ip, result in zip(batch, results):
                        if isinstance(result, BaseException):
                            logger.debug(f"Scan of {ip} failed: {result}")
                            continue
                        if result is None:
                            continue
                        cameras.append(result)
                        logger.info(f"Found camera: {result.name} ({result.id})")
                        await self.events.publish(CameraEvent(
                            type=EventType.CAMERA_FOUND,
                            device_id=result.id,
                            device=result.copy(),
                        ))
        finally:
            self._scanning = False

        logger.info(f"Network scan complete. Found {len(cameras)} cameras")
        return cameras

    def stop_scan(self) -> None:
        """Abort the running scan before its next batch."""
        if self._scanning:
            self._stop_requested = True

    async def _scan_address(
        self,
        ip: str,
        options: NetworkScanOptions,
        client: httpx.AsyncClient,
    ) -> Optional[Device]:
        """Probe one address; the first hit wins."""
        timeout = options.timeout_ms / 1000
        for port in options.ports:
            for protocol in options.protocols:
                try:
                    if protocol == ScanProtocol.RTSP:
                        url = f"rtsp://{ip}:{port}"
                        if await self.test_rtsp(url, timeout):
                            return create_rtsp_device(ip, port, url)
                    elif protocol == ScanProtocol.HTTP:
                        if await self._test_http(client, ip, port):
                            camera = await self._identify_http_camera(client, ip, port)
                            if camera:
                                return camera
                except (OSError, httpx.HTTPError) as e:
                    logger.debug(f"Probe {protocol.value}://{ip}:{port} failed: {e}")
        return None

    async def test_rtsp(self, url: str, timeout: float = 2.0) -> bool:
        """RTSP OPTIONS handshake.

        Succeeds iff the first response chunk contains ``RTSP/1.0``.
        """
        parsed = urlparse(url)
        host = parsed.hostname
        if not host:
            return False
        try:
            port = parsed.port or RTSP_DEFAULT_PORT
        except ValueError:
            return False

        request = f"OPTIONS {redact_url(url)} RTSP/1.0\r\nCSeq: 1\r\n\r\n".encode()
        writer: Optional[asyncio.StreamWriter] = None

        async def _handshake() -> bool:
            nonlocal writer
            reader, writer = await asyncio.open_connection(host, port)
            writer.write(request)
            await writer.drain()
            data = await reader.read(1024)
            return b"RTSP/1.0" in data

        try:
            return await asyncio.wait_for(_handshake(), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        finally:
            if writer is not None:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError:
                    pass

    async def _test_http(self, client: httpx.AsyncClient, ip: str, port: int) -> bool:
        """Bare GET: any response means something is listening."""
        try:
            async with client.stream("GET", f"http://{ip}:{port}/"):
                return True
        except httpx.HTTPError:
            return False

    async def _identify_http_camera(
        self,
        client: httpx.AsyncClient,
        ip: str,
        port: int,
    ) -> Optional[Device]:
        for endpoint in SNAPSHOT_ENDPOINTS:
            url = f"http://{ip}:{port}{endpoint}"
            try:
                # Only headers are inspected; MJPEG endpoints never finish
                async with client.stream("GET", url) as response:
                    content_type = response.headers.get("content-type", "")
                    if "image" in content_type:
                        return create_http_device(ip, port, url)
            except httpx.HTTPError:
                continue
        return None

    async def test_snapshot(self, url: str, timeout: float = 2.0) -> bool:
        """GET a snapshot URL and check it returns an image."""
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                async with client.stream("GET", url) as response:
                    content_type = response.headers.get("content-type", "")
                    return "image" in content_type
        except httpx.HTTPError:
            return False

    async def add_rtsp_camera(self, name: str, url: str) -> Optional[Device]:
        """Validate an RTSP URL with a handshake and build its Device."""
        if not await self.test_rtsp(url):
            logger.warning(f"RTSP camera not reachable: {redact_url(url)}")
            return None

        parsed = urlparse(url)
        ip = parsed.hostname or ""
        port = parsed.port or RTSP_DEFAULT_PORT
        device = create_rtsp_device(ip, port, url)
        device.name = name
        device.connection.path = parsed.path or None
        return device
