"""WS-Discovery of ONVIF cameras and per-device SOAP introspection."""

import asyncio
import logging
import socket
import uuid
import xml.etree.ElementTree as ET
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional
from urllib.parse import urlparse

from camhub.config import get_settings
from camhub.events import EventChannel, EventType, ONVIFDeviceEvent
from camhub.exceptions import DiscoveryInProgressError
from camhub.services.encryption import SecretStore, compose_url, secret_store
from camhub.services.onvif.client import MediaProfile, ONVIFCapabilities, ONVIFClient

logger = logging.getLogger(__name__)

MULTICAST_ADDRESS = ("239.255.255.250", 3702)

NAMESPACES = {
    "d": "http://schemas.xmlsoap.org/ws/2005/04/discovery",
    "a": "http://schemas.xmlsoap.org/ws/2004/08/addressing",
}


@dataclass
class ONVIFDevice:
    """An ONVIF device found by WS-Discovery or added manually."""

    address: str
    port: int = 80
    xaddr: Optional[str] = None
    scopes: list[str] = field(default_factory=list)
    endpoint: Optional[str] = None
    username: Optional[str] = None
    credential_ref: Optional[str] = None
    capabilities: Optional[ONVIFCapabilities] = None

    @property
    def service_url(self) -> str:
        return self.xaddr or f"http://{self.address}:{self.port}/onvif/device_service"

    @property
    def hardware(self) -> Optional[str]:
        for scope in self.scopes:
            if scope.startswith("onvif://www.onvif.org/hardware/"):
                return scope.rsplit("/", 1)[-1]
        return None

    @property
    def scope_name(self) -> Optional[str]:
        for scope in self.scopes:
            if scope.startswith("onvif://www.onvif.org/name/"):
                return scope.rsplit("/", 1)[-1].replace("%20", " ")
        return None


def build_probe_message(message_id: Optional[str] = None) -> bytes:
    """WS-Discovery Probe for NetworkVideoTransmitter devices."""
    message_id = message_id or f"uuid:{uuid.uuid4()}"
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<e:Envelope xmlns:e="http://www.w3.org/2003/05/soap-envelope"
            xmlns:w="http://schemas.xmlsoap.org/ws/2004/08/addressing"
            xmlns:d="http://schemas.xmlsoap.org/ws/2005/04/discovery"
            xmlns:dn="http://www.onvif.org/ver10/network/wsdl">
  <e:Header>
    <w:MessageID>{message_id}</w:MessageID>
    <w:To>urn:schemas-xmlsoap-org:ws:2005:04:discovery</w:To>
    <w:Action>http://schemas.xmlsoap.org/ws/2005/04/discovery/Probe</w:Action>
  </e:Header>
  <e:Body>
    <d:Probe>
      <d:Types>dn:NetworkVideoTransmitter</d:Types>
    </d:Probe>
  </e:Body>
</e:Envelope>
""".encode("utf-8")


def select_xaddr(xaddrs: str) -> Optional[str]:
    """First URL containing 'onvif', falling back to the first URL."""
    urls = xaddrs.split()
    if not urls:
        return None
    for url in urls:
        if "onvif" in url.lower():
            return url
    return urls[0]


def parse_probe_match(payload: bytes, address: str) -> Optional[ONVIFDevice]:
    """Parse a ProbeMatches response into a device record."""
    try:
        root = ET.fromstring(payload.decode("utf-8", errors="ignore"))
    except ET.ParseError:
        return None

    match = root.find(".//d:ProbeMatch", NAMESPACES)
    if match is None:
        return None

    xaddrs_el = match.find("d:XAddrs", NAMESPACES)
    scopes_el = match.find("d:Scopes", NAMESPACES)
    endpoint_el = match.find("a:EndpointReference/a:Address", NAMESPACES)

    xaddr = select_xaddr(xaddrs_el.text or "") if xaddrs_el is not None else None
    if not xaddr:
        return None

    parsed = urlparse(xaddr)
    try:
        port = parsed.port or 80
    except ValueError:
        return None

    return ONVIFDevice(
        address=parsed.hostname or address,
        port=port,
        xaddr=xaddr,
        scopes=(scopes_el.text or "").split() if scopes_el is not None else [],
        endpoint=endpoint_el.text.strip() if endpoint_el is not None and endpoint_el.text else None,
    )


class _ProbeProtocol(asyncio.DatagramProtocol):
    def __init__(self, on_response: Callable[[bytes, str], None]):
        self._on_response = on_response

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self._on_response(data, addr[0])

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"ONVIF discovery socket error: {exc}")


ClientFactory = Callable[..., ONVIFClient]


class ONVIFDiscovery:
    """Finds ONVIF cameras and introspects them over SOAP."""

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        secrets: Optional[SecretStore] = None,
        connect_timeout: float = 10.0,
    ):
        self._client_factory = client_factory or ONVIFClient
        self._secrets = secrets or secret_store
        self.connect_timeout = connect_timeout
        self.events = EventChannel("onvif")

        self._discovering = False
        self._stop_event: Optional[asyncio.Event] = None
        self._transport: Optional[asyncio.DatagramTransport] = None

    @property
    def is_discovering(self) -> bool:
        return self._discovering

    async def discover(self, timeout_ms: Optional[int] = None) -> list[ONVIFDevice]:
        """Multicast a Probe and collect responses until the deadline.

        Resolves at the deadline (or on ``stop_discovery``) with every
        distinct responding device, including when nobody answers. Socket
        errors are logged, not raised.

        Raises:
            DiscoveryInProgressError: If discovery is already running.
        """
        if self._discovering:
            raise DiscoveryInProgressError("ONVIF discovery already in progress")

        if timeout_ms is None:
            timeout_ms = get_settings().onvif_discovery_timeout_ms
        self._discovering = True
        self._stop_event = asyncio.Event()
        found: dict[str, ONVIFDevice] = {}

        def on_response(data: bytes, address: str) -> None:
            device = parse_probe_match(data, address)
            if device is None:
                logger.debug(f"Ignoring unparsable discovery response from {address}")
                return
            if device.address not in found:
                found[device.address] = device
                logger.info(f"ONVIF device responded: {device.address}:{device.port}")

        loop = asyncio.get_running_loop()
        try:
            try:
                self._transport, _ = await loop.create_datagram_endpoint(
                    lambda: _ProbeProtocol(on_response),
                    local_addr=("0.0.0.0", 0),
                    family=socket.AF_INET,
                )
                sock = self._transport.get_extra_info("socket")
                if sock is not None:
                    sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
                self._transport.sendto(build_probe_message(), MULTICAST_ADDRESS)
                logger.info(f"ONVIF discovery probe sent (window: {timeout_ms}ms)")
            except OSError as e:
                logger.error(f"ONVIF discovery socket error: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                pass
        finally:
            if self._transport is not None:
                self._transport.close()
                self._transport = None
            self._stop_event = None
            self._discovering = False

        devices = list(found.values())
        for device in devices:
            await self.events.publish(ONVIFDeviceEvent(
                type=EventType.DEVICE_FOUND,
                device_id=device.address,
                onvif_device=device,
            ))
        logger.info(f"ONVIF discovery complete. Found {len(devices)} devices")
        return devices

    def stop_discovery(self) -> None:
        """Close the socket and end the collection window early."""
        if self._stop_event is not None:
            self._stop_event.set()

    @asynccontextmanager
    async def _session(self, device: ONVIFDevice) -> AsyncIterator[Optional[ONVIFClient]]:
        """Connected client for ``device``, or None if it cannot connect."""
        client = self._client_factory(
            device.address,
            device.port,
            device.username,
            self._secrets.get(device.credential_ref),
        )
        connected = await client.connect(timeout=self.connect_timeout)
        try:
            yield client if connected else None
        finally:
            await client.disconnect()

    async def get_device_capabilities(self, device: ONVIFDevice) -> ONVIFCapabilities:
        """GetCapabilities, degrading to device + media on any failure."""
        async with self._session(device) as client:
            if client is None:
                return ONVIFCapabilities.conservative_default()
            caps = await client.get_capabilities()
        device.capabilities = caps
        return caps

    async def get_profiles(self, device: ONVIFDevice) -> list[MediaProfile]:
        async with self._session(device) as client:
            if client is None:
                return []
            return await client.get_profiles()

    async def get_stream_uri(
        self,
        device: ONVIFDevice,
        profile_token: str,
        embed_credentials: bool = False,
    ) -> Optional[str]:
        """GetStreamUri for a profile.

        The URI is returned credential-free unless ``embed_credentials``
        is set, in which case the device's credentials are injected for
        immediate use.
        """
        async with self._session(device) as client:
            if client is None:
                return None
            uri = await client.get_stream_uri(profile_token)

        if uri and embed_credentials and device.username:
            return compose_url(uri, device.username, self._secrets.get(device.credential_ref))
        return uri

    async def get_device_info(self, device: ONVIFDevice) -> dict:
        async with self._session(device) as client:
            if client is None:
                return {}
            try:
                return await client.get_device_info()
            except Exception as e:
                logger.debug(f"GetDeviceInformation failed for {device.address}: {e}")
                return {}

    async def test_connection(self, device: ONVIFDevice) -> bool:
        """True iff GetDeviceInformation succeeds."""
        try:
            async with self._session(device) as client:
                if client is None:
                    return False
                await client.get_device_info()
                return True
        except Exception as e:
            logger.debug(f"ONVIF connection test failed for {device.address}: {e}")
            return False
