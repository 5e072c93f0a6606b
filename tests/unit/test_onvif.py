"""Tests for ONVIF discovery parsing and SOAP introspection."""

import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from camhub.exceptions import DiscoveryInProgressError
from camhub.services.onvif import MediaProfile, ONVIFCapabilities, ONVIFDevice, ONVIFDiscovery
from camhub.services.onvif.client import ONVIFClient, map_profile
from camhub.services.onvif.discovery import (
    build_probe_message,
    parse_probe_match,
    select_xaddr,
)

PROBE_MATCH = b"""<?xml version="1.0" encoding="UTF-8"?>
<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://www.w3.org/2003/05/soap-envelope"
    xmlns:wsa="http://schemas.xmlsoap.org/ws/2004/08/addressing"
    xmlns:d="http://schemas.xmlsoap.org/ws/2005/04/discovery">
  <SOAP-ENV:Body>
    <d:ProbeMatches>
      <d:ProbeMatch>
        <wsa:EndpointReference>
          <wsa:Address>urn:uuid:1234-5678</wsa:Address>
        </wsa:EndpointReference>
        <d:Scopes>onvif://www.onvif.org/name/Front%20Door onvif://www.onvif.org/hardware/IPC-123</d:Scopes>
        <d:XAddrs>http://192.168.1.50/other http://192.168.1.50:8080/onvif/device_service</d:XAddrs>
      </d:ProbeMatch>
    </d:ProbeMatches>
  </SOAP-ENV:Body>
</SOAP-ENV:Envelope>
"""


class TestProbeParsing:
    """Tests for WS-Discovery message handling."""

    def test_probe_message_targets_video_transmitters(self) -> None:
        message = build_probe_message("uuid:test")
        assert b"uuid:test" in message
        assert b"dn:NetworkVideoTransmitter" in message

    def test_select_xaddr_prefers_onvif(self) -> None:
        assert select_xaddr("http://a/x http://a/onvif/device") == "http://a/onvif/device"
        assert select_xaddr("http://a/x http://a/y") == "http://a/x"
        assert select_xaddr("   ") is None

    def test_parse_probe_match(self) -> None:
        """Address, port, scopes and endpoint are extracted."""
        device = parse_probe_match(PROBE_MATCH, "192.168.1.50")

        assert device.address == "192.168.1.50"
        assert device.port == 8080
        assert device.xaddr == "http://192.168.1.50:8080/onvif/device_service"
        assert device.endpoint == "urn:uuid:1234-5678"
        assert device.scope_name == "Front Door"
        assert device.hardware == "IPC-123"

    @pytest.mark.parametrize("payload", [b"garbage", b"<a><b/></a>"])
    def test_parse_invalid(self, payload: bytes) -> None:
        assert parse_probe_match(payload, "10.0.0.1") is None


class TestDiscover:
    """Tests for the multicast collection window."""

    async def test_no_responders_resolves_at_deadline(self) -> None:
        """Discovery returns an empty list once the window closes."""
        discovery = ONVIFDiscovery()
        started = time.monotonic()

        devices = await discovery.discover(timeout_ms=200)

        assert devices == []
        assert time.monotonic() - started < 2.0
        assert not discovery.is_discovering

    async def test_zero_window_is_not_the_default(self) -> None:
        """An explicit zero window closes immediately instead of using the configured one."""
        discovery = ONVIFDiscovery()
        started = time.monotonic()

        assert await discovery.discover(timeout_ms=0) == []
        assert time.monotonic() - started < 1.0

    async def test_concurrent_discovery_rejected(self) -> None:
        import asyncio

        discovery = ONVIFDiscovery()
        first = asyncio.create_task(discovery.discover(timeout_ms=5000))
        await asyncio.sleep(0.05)

        with pytest.raises(DiscoveryInProgressError):
            await discovery.discover(timeout_ms=100)

        discovery.stop_discovery()
        assert await asyncio.wait_for(first, timeout=1.0) == []


class TestMapProfile:
    def test_full_profile(self) -> None:
        raw = SimpleNamespace(
            token="main",
            Name="MainStream",
            VideoEncoderConfiguration=SimpleNamespace(
                Resolution=SimpleNamespace(Width=1280, Height=720),
                RateControl=SimpleNamespace(FrameRateLimit=25, BitrateLimit=2048),
                Encoding="H264",
            ),
            AudioEncoderConfiguration=None,
        )

        profile = map_profile(raw)

        assert profile.token == "main"
        assert profile.video_encoder.resolution.label == "720p"
        assert profile.video_encoder.frame_rate == 25.0
        assert profile.audio_encoder is None

    def test_missing_fields_use_defaults(self) -> None:
        raw = SimpleNamespace(
            token="sub",
            Name=None,
            VideoEncoderConfiguration=SimpleNamespace(),
            AudioEncoderConfiguration=SimpleNamespace(),
        )

        profile = map_profile(raw)

        assert profile.name == "sub"
        assert profile.video_encoder.resolution.label == "1080p"
        assert profile.video_encoder.frame_rate == 30.0
        assert profile.audio_encoder.encoding == "G711"


class TestONVIFClient:
    async def test_not_connected(self) -> None:
        client = ONVIFClient("10.0.0.1")
        assert await client.get_profiles() == []
        assert await client.get_stream_uri("main") is None
        assert await client.get_capabilities() == ONVIFCapabilities.conservative_default()
        with pytest.raises(RuntimeError):
            await client.get_device_info()

    async def test_stream_uri_is_redacted(self) -> None:
        client = ONVIFClient("10.0.0.1")
        media = MagicMock()
        media.GetStreamUri = AsyncMock(
            return_value=SimpleNamespace(Uri="rtsp://admin:pw@10.0.0.1:554/main")
        )
        client._camera = MagicMock()
        client._media_service = media
        client._connected = True

        assert await client.get_stream_uri("main") == "rtsp://10.0.0.1:554/main"

    async def test_context_manager_connects_and_closes(self) -> None:
        camera = MagicMock()
        camera.update_xaddrs = AsyncMock()
        camera.close = AsyncMock()

        with patch("camhub.services.onvif.client.ONVIFCamera", return_value=camera) as ctor:
            async with ONVIFClient("10.0.0.9", 8080, "admin", "pw") as client:
                assert client.is_connected

        assert ctor.call_args.kwargs["user"] == "admin"
        assert ctor.call_args.kwargs["port"] == 8080
        camera.close.assert_awaited_once()
        assert not client.is_connected

    async def test_connect_failure_returns_false(self) -> None:
        camera = MagicMock()
        camera.update_xaddrs = AsyncMock(side_effect=ConnectionRefusedError("refused"))

        with patch("camhub.services.onvif.client.ONVIFCamera", return_value=camera):
            client = ONVIFClient("10.0.0.9")
            assert await client.connect() is False

        assert not client.is_connected
        assert await client.get_profiles() == []


def mock_client_factory(connected: bool = True, **methods):
    """Factory returning a mocked ONVIFClient and recording its arguments."""
    client = MagicMock()
    client.connect = AsyncMock(return_value=connected)
    client.disconnect = AsyncMock()
    for name, value in methods.items():
        setattr(client, name, AsyncMock(**value))
    factory = MagicMock(return_value=client)
    return factory, client


class TestIntrospection:
    """Tests for ONVIFDiscovery SOAP helpers."""

    async def test_credentials_resolved_at_connect(self, secrets) -> None:
        """The password is fetched from the store only when connecting."""
        factory, client = mock_client_factory(
            get_profiles={"return_value": [MediaProfile(token="main", name="Main")]}
        )
        discovery = ONVIFDiscovery(client_factory=factory, secrets=secrets)
        device = ONVIFDevice(address="10.0.0.9", username="admin", credential_ref=secrets.put("pw"))

        profiles = await discovery.get_profiles(device)

        assert [p.token for p in profiles] == ["main"]
        factory.assert_called_once_with("10.0.0.9", 80, "admin", "pw")
        client.disconnect.assert_awaited_once()

    async def test_capabilities_default_when_unreachable(self, secrets) -> None:
        factory, client = mock_client_factory(connected=False)
        discovery = ONVIFDiscovery(client_factory=factory, secrets=secrets)

        caps = await discovery.get_device_capabilities(ONVIFDevice(address="10.0.0.9"))

        assert caps.device and caps.media
        assert not caps.ptz
        client.disconnect.assert_awaited_once()

    async def test_stream_uri_embeds_credentials_on_request(self, secrets) -> None:
        factory, _ = mock_client_factory(
            get_stream_uri={"return_value": "rtsp://10.0.0.9:554/main"}
        )
        discovery = ONVIFDiscovery(client_factory=factory, secrets=secrets)
        device = ONVIFDevice(address="10.0.0.9", username="admin", credential_ref=secrets.put("pw"))

        assert await discovery.get_stream_uri(device, "main") == "rtsp://10.0.0.9:554/main"
        assert (
            await discovery.get_stream_uri(device, "main", embed_credentials=True)
            == "rtsp://admin:pw@10.0.0.9:554/main"
        )

    async def test_connection_test(self, secrets) -> None:
        factory, _ = mock_client_factory(get_device_info={"return_value": {"model": "X"}})
        assert await ONVIFDiscovery(client_factory=factory, secrets=secrets).test_connection(
            ONVIFDevice(address="10.0.0.9")
        ) is True

        factory, _ = mock_client_factory(get_device_info={"side_effect": RuntimeError("401")})
        assert await ONVIFDiscovery(client_factory=factory, secrets=secrets).test_connection(
            ONVIFDevice(address="10.0.0.9")
        ) is False
