"""
Device registry.

Runs the four probes (local capture, network sweep, ONVIF, companion
gateway), merges what they find into one table keyed by transport-prefixed
device id and is the only place callers ask "which cameras exist".
Callers always receive copies of the stored devices.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from camhub.config import get_settings
from camhub.events import (
    CameraEvent,
    CameraStatusEvent,
    DiscoveryCompleteEvent,
    Event,
    EventChannel,
    EventType,
)
from camhub.exceptions import ConfigurationError, UnsupportedTransportError
from camhub.models.device import (
    Capabilities,
    Connection,
    Device,
    DeviceMetadata,
    DeviceStatus,
    Resolution,
    STANDARD_RESOLUTIONS,
    TransportType,
    make_device_id,
    native_id,
)
from camhub.schemas.base import merge_config
from camhub.schemas.camera import DiscoveryOptions, NetworkScanOptions, ScanProtocol
from camhub.services.companion import CompanionDeviceInfo, CompanionGateway
from camhub.services.encryption import (
    SecretStore,
    compose_url,
    redact_url,
    secret_store,
    split_credentials,
)
from camhub.services.local_capture import LocalCaptureProbe
from camhub.services.network_scanner import NetworkScanner, local_subnets
from camhub.services.onvif import ONVIFDevice, ONVIFDiscovery
from camhub.utils import utc_now

logger = logging.getLogger(__name__)

ONVIF_DEFAULT_PORT = 80


def network_options_from_settings() -> NetworkScanOptions:
    settings = get_settings()
    return NetworkScanOptions(
        ports=tuple(settings.scan_port_list),
        protocols=tuple(ScanProtocol(p) for p in settings.scan_protocol_list),
        timeout_ms=settings.scan_timeout_ms,
        concurrency=settings.scan_concurrency,
    )


def _parse_resolution(value: Any) -> Optional[Resolution]:
    if isinstance(value, dict):
        try:
            return Resolution.from_size(int(value["width"]), int(value["height"]))
        except (KeyError, TypeError, ValueError):
            return None
    if isinstance(value, str):
        for res in STANDARD_RESOLUTIONS:
            if res.label.lower() == value.lower():
                return res
        width, sep, height = value.lower().partition("x")
        if sep and width.isdigit() and height.isdigit():
            return Resolution.from_size(int(width), int(height))
    return None


def companion_device(info: CompanionDeviceInfo) -> Device:
    """Build the registry Device for a registered companion."""
    caps = info.capabilities
    resolution = _parse_resolution(caps.get("maxResolution"))
    return Device(
        id=make_device_id(TransportType.COMPANION, info.device_id),
        name=info.device_name,
        transport=TransportType.COMPANION,
        status=DeviceStatus.CONNECTED,
        capabilities=Capabilities(
            resolutions=[resolution] if resolution else [],
            frame_rates=[30.0, 60.0],
            has_audio=True,
            has_motion_detection=True,
            supported_codecs=list(caps.get("supportedCodecs") or []),
            supported_protocols=["websocket"],
        ),
        connection=Connection(address=info.address),
        metadata=DeviceMetadata(
            manufacturer="Apple" if info.platform.lower() == "ios" else "Android",
            model=info.device_name,
            firmware_version=info.app_version,
        ),
    )


class DeviceRegistry:
    """The device table and the discovery orchestration that fills it."""

    def __init__(
        self,
        local_probe: Optional[LocalCaptureProbe] = None,
        network_scanner: Optional[NetworkScanner] = None,
        onvif_discovery: Optional[ONVIFDiscovery] = None,
        companion_gateway: Optional[CompanionGateway] = None,
        secrets: Optional[SecretStore] = None,
        stale_cutoff_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.local_probe = local_probe or LocalCaptureProbe()
        self.network_scanner = network_scanner or NetworkScanner()
        self.onvif = onvif_discovery or ONVIFDiscovery(secrets=secrets)
        self.companion = companion_gateway
        self.stale_cutoff = timedelta(
            seconds=stale_cutoff_seconds or settings.discovery_stale_cutoff_seconds
        )
        self.events = EventChannel("registry")

        self._secrets = secrets or secret_store
        self._devices: dict[str, Device] = {}
        self._onvif_devices: dict[str, ONVIFDevice] = {}
        self._lock = asyncio.Lock()
        self._discovering = False
        self._options: Optional[DiscoveryOptions] = None
        self._refresh_task: Optional[asyncio.Task] = None

        self._subscriptions = [
            self.local_probe.events.subscribe(
                self._on_local_event,
                EventType.CAMERA_CONNECTED,
                EventType.CAMERA_DISCONNECTED,
            ),
        ]
        if companion_gateway is not None:
            self._subscriptions.append(companion_gateway.events.subscribe(
                self._on_companion_event,
                EventType.DEVICE_CONNECTED,
                EventType.DEVICE_DISCONNECTED,
                EventType.CAPABILITIES_UPDATED,
            ))

    @property
    def is_discovering(self) -> bool:
        return self._discovering

    # Device table

    async def add_device(self, device: Device) -> Device:
        """Insert or refresh a device.

        Refreshing an existing id replaces the descriptor but keeps its
        status, stored credentials and user-given name, and clears the
        stale flag. A refresh that only knows the bare endpoint keeps the
        stream path already on record.
        """
        async with self._lock:
            existing = self._devices.get(device.id)
            stored = device.copy()
            stored.touch()
            if existing is not None:
                stored.status = existing.status
                if stored.connection.credential_ref is None:
                    stored.connection.username = existing.connection.username
                    stored.connection.credential_ref = existing.connection.credential_ref
                if existing.custom_name and not stored.custom_name:
                    stored.name = existing.name
                    stored.custom_name = True
                if stored.connection.path is None and existing.connection.path:
                    stored.connection.path = existing.connection.path
                    stored.connection.stream_url = existing.connection.stream_url
            self._devices[device.id] = stored
            result = stored.copy()

        if existing is None:
            logger.info(f"Camera added: {result.name} ({result.id})")
            await self.events.publish(CameraEvent(
                type=EventType.CAMERA_ADDED,
                device_id=result.id,
                device=result.copy(),
            ))
        return result

    async def remove_device(self, device_id: str) -> bool:
        async with self._lock:
            device = self._devices.pop(device_id, None)
            self._onvif_devices.pop(device_id, None)
        if device is None:
            return False

        logger.info(f"Camera removed: {device.name} ({device_id})")
        await self.events.publish(CameraEvent(
            type=EventType.CAMERA_REMOVED,
            device_id=device_id,
            device=device,
        ))
        return True

    async def update_status(self, device_id: str, status: DeviceStatus) -> bool:
        """Set a device's status. Emits only when the status changes."""
        async with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                return False
            previous = device.status
            if previous == status:
                return True
            device.status = status
            device.last_seen = utc_now()

        logger.debug(f"Camera {device_id} status: {previous.value} -> {status.value}")
        await self.events.publish(CameraStatusEvent(
            type=EventType.CAMERA_STATUS_CHANGED,
            device_id=device_id,
            status=status,
            previous=previous,
        ))
        return True

    def get_cameras(self) -> list[Device]:
        return [d.copy() for d in self._devices.values()]

    def get_camera(self, device_id: str) -> Optional[Device]:
        device = self._devices.get(device_id)
        return device.copy() if device else None

    async def lookup(self, device_id: str) -> Optional[Device]:
        async with self._lock:
            return self.get_camera(device_id)

    def get_cameras_by_transport(self, transport: TransportType) -> list[Device]:
        return [d.copy() for d in self._devices.values() if d.transport == transport]

    # Discovery

    async def start_discovery(self, options: Optional[DiscoveryOptions] = None) -> list[Device]:
        """Run every enabled probe once, then keep watching.

        Starts hot-plug monitoring and the companion listener, and with
        ``continuous`` set schedules periodic refreshes.
        """
        if self._discovering:
            logger.warning("Discovery already in progress")
            return self.get_cameras()

        options = options or DiscoveryOptions()
        self._options = options
        logger.info("Starting camera discovery")
        await self._run_probes(options)

        if options.include_local:
            self.local_probe.start_monitoring()
        if options.include_companion and self.companion is not None:
            try:
                await self.companion.start_listening(options.companion_port)
            except Exception as e:
                logger.error(f"Failed to start companion listener: {e}")
        if options.continuous and self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop(options.interval))

        devices = self.get_cameras()
        logger.info(f"Discovery complete. {len(devices)} camera(s) registered")
        await self.events.publish(DiscoveryCompleteEvent(
            type=EventType.DISCOVERY_COMPLETE,
            devices=devices,
        ))
        return devices

    async def _run_probes(self, options: DiscoveryOptions) -> None:
        """Run the enabled probes concurrently; one failing does not stop the rest."""
        self._discovering = True
        try:
            probes = {}
            if options.include_local:
                probes["local"] = self._discover_local()
            if options.include_network:
                probes["network"] = self._discover_network(options.network)
            if options.include_onvif:
                probes["onvif"] = self._discover_onvif(options.onvif_timeout_ms)

            results = await asyncio.gather(*probes.values(), return_exceptions=True)
            for name, result in zip(probes, results):
                if isinstance(result, BaseException):
                    logger.error(f"{name} discovery failed: {result}")
        finally:
            self._discovering = False

    async def _discover_local(self) -> None:
        for device in await self.local_probe.detect():
            await self.add_device(device)

    async def _discover_network(self, options: Optional[NetworkScanOptions]) -> None:
        options = options or network_options_from_settings()
        ranges = [options.ip_range] if options.ip_range else local_subnets()
        if not ranges:
            logger.warning("No IPv4 interfaces to scan")
            return

        for ip_range in ranges:
            found = await self.network_scanner.scan(merge_config(options, ip_range=ip_range))
            for device in found:
                await self.add_device(device)

    async def _discover_onvif(self, timeout_ms: int) -> None:
        for onvif_device in await self.onvif.discover(timeout_ms):
            try:
                await self._add_onvif_device(onvif_device)
            except Exception as e:
                logger.error(f"Failed to add ONVIF device {onvif_device.address}: {e}")

    async def _add_onvif_device(self, onvif_device: ONVIFDevice) -> list[Device]:
        """One Device per media profile: ``onvif_{address}_{token}``."""
        caps = await self.onvif.get_device_capabilities(onvif_device)
        profiles = await self.onvif.get_profiles(onvif_device)
        if not profiles:
            logger.warning(f"ONVIF device {onvif_device.address} reported no media profiles")
            return []

        info = await self.onvif.get_device_info(onvif_device)
        metadata = DeviceMetadata(
            manufacturer=info.get("manufacturer") or None,
            model=info.get("model") or onvif_device.hardware,
            serial_number=info.get("serial") or None,
            firmware_version=info.get("firmware") or None,
        )
        base_name = onvif_device.scope_name or "ONVIF Camera"

        added = []
        for profile in profiles:
            stream_uri = await self.onvif.get_stream_uri(onvif_device, profile.token)
            video = profile.video_encoder
            device = Device(
                id=make_device_id(TransportType.ONVIF, onvif_device.address, profile.token),
                name=f"{base_name} - {profile.name}",
                transport=TransportType.ONVIF,
                status=DeviceStatus.CONNECTED,
                capabilities=Capabilities(
                    resolutions=[video.resolution] if video else [],
                    frame_rates=[video.frame_rate] if video else [],
                    has_audio=profile.audio_encoder is not None,
                    has_ptz=caps.ptz,
                    has_motion_detection=caps.analytics,
                    supported_codecs=[video.encoding] if video else [],
                    supported_protocols=["rtsp", "onvif"],
                ),
                connection=Connection(
                    address=onvif_device.address,
                    port=onvif_device.port,
                    stream_url=redact_url(stream_uri) if stream_uri else None,
                    onvif_url=onvif_device.service_url,
                    username=onvif_device.username,
                    credential_ref=onvif_device.credential_ref,
                ),
                metadata=metadata,
            )
            async with self._lock:
                self._onvif_devices[device.id] = onvif_device
            added.append(await self.add_device(device))
        return added

    async def refresh_discovery(self) -> None:
        """Re-probe and prune network devices that did not answer."""
        if self._discovering:
            logger.debug("Skipping refresh, discovery already running")
            return

        async with self._lock:
            for device in self._devices.values():
                if device.is_network:
                    device.provisionally_stale = True

        await self._run_probes(self._options or DiscoveryOptions())
        await self.prune_stale()
        await self.events.publish(DiscoveryCompleteEvent(
            type=EventType.DISCOVERY_COMPLETE,
            devices=self.get_cameras(),
        ))

    async def prune_stale(self, now: Optional[datetime] = None) -> list[str]:
        """Remove stale network devices last seen before the cutoff."""
        cutoff = (now or utc_now()) - self.stale_cutoff
        async with self._lock:
            stale_ids = [
                d.id for d in self._devices.values()
                if d.is_network and d.provisionally_stale and d.last_seen < cutoff
            ]
        for device_id in stale_ids:
            await self.remove_device(device_id)
        if stale_ids:
            logger.info(f"Pruned {len(stale_ids)} stale camera(s)")
        return stale_ids

    async def _refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh_discovery()
            except Exception:
                logger.exception("Error refreshing discovery")

    async def stop_discovery(self) -> None:
        """Stop refresh, hot-plug monitoring, in-flight probes and the listener."""
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

        self.network_scanner.stop_scan()
        self.onvif.stop_discovery()
        await self.local_probe.stop_monitoring()
        if self.companion is not None:
            await self.companion.stop_listening()
        logger.info("Discovery stopped")

    # Probe events

    async def _on_local_event(self, event: Event) -> None:
        if event.type == EventType.CAMERA_CONNECTED:
            await self.add_device(event.device)
        elif event.type == EventType.CAMERA_DISCONNECTED:
            await self.remove_device(event.device_id)

    async def _on_companion_event(self, event: Event) -> None:
        if event.device_id is None:
            return
        device_id = make_device_id(TransportType.COMPANION, event.device_id)

        if event.type in (EventType.DEVICE_CONNECTED, EventType.CAPABILITIES_UPDATED):
            await self.add_device(companion_device(event.info))
        elif event.type == EventType.DEVICE_DISCONNECTED:
            await self.remove_device(device_id)

    # Manual cameras and connection tests

    async def add_manual_camera(
        self,
        name: str,
        transport: TransportType,
        url: Optional[str] = None,
        address: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> list[Device]:
        """Add an RTSP or ONVIF camera by hand.

        Returns the registered devices; empty if the camera did not answer.

        Raises:
            UnsupportedTransportError: For transports other than RTSP and ONVIF.
            ConfigurationError: If the connection details are incomplete.
        """
        if transport == TransportType.NETWORK_RTSP:
            if not url:
                raise ConfigurationError("An RTSP URL is required")
            clean_url, url_user, url_password = split_credentials(url)
            username = username or url_user
            password = password or url_password

            device = await self.network_scanner.add_rtsp_camera(
                name, compose_url(clean_url, username, password)
            )
            if device is None:
                return []
            device.custom_name = True
            device.connection.username = username
            if password:
                device.connection.credential_ref = self._secrets.put(password)
            return [await self.add_device(device)]

        if transport == TransportType.ONVIF:
            if not address:
                raise ConfigurationError("An address is required for ONVIF cameras")
            onvif_device = ONVIFDevice(
                address=address,
                port=port or ONVIF_DEFAULT_PORT,
                username=username,
                credential_ref=self._secrets.put(password) if password else None,
            )
            added = await self._add_onvif_device(onvif_device)
            for device in added:
                async with self._lock:
                    stored = self._devices.get(device.id)
                    if stored is not None:
                        stored.name = f"{name} - {device.name.rsplit(' - ', 1)[-1]}"
                        stored.custom_name = True
            return [self.get_camera(d.id) for d in added if d.id in self._devices]

        raise UnsupportedTransportError(
            f"Manual addition not supported for transport {transport.value}"
        )

    async def test_connection(self, device_id: str) -> bool:
        """Check a device with its transport's own primitive. Never raises."""
        device = self.get_camera(device_id)
        if device is None:
            return False

        conn = device.connection
        try:
            if device.transport == TransportType.LOCAL:
                return await self.local_probe.test_camera(device)
            if device.transport == TransportType.NETWORK_RTSP:
                if not conn.stream_url:
                    return False
                url = compose_url(
                    conn.stream_url, conn.username, self._secrets.get(conn.credential_ref)
                )
                return await self.network_scanner.test_rtsp(url)
            if device.transport == TransportType.NETWORK_HTTP:
                if not conn.stream_url:
                    return False
                url = compose_url(
                    conn.stream_url, conn.username, self._secrets.get(conn.credential_ref)
                )
                return await self.network_scanner.test_snapshot(url)
            if device.transport == TransportType.ONVIF:
                onvif_device = self._onvif_devices.get(device_id) or ONVIFDevice(
                    address=conn.address or "",
                    port=conn.port or ONVIF_DEFAULT_PORT,
                    xaddr=conn.onvif_url,
                    username=conn.username,
                    credential_ref=conn.credential_ref,
                )
                return await self.onvif.test_connection(onvif_device)
            if device.transport == TransportType.COMPANION and self.companion is not None:
                return await self.companion.ping(native_id(device_id, TransportType.COMPANION))
        except Exception as e:
            logger.warning(f"Connection test failed for {device_id}: {e}")
        return False

    async def dispose(self) -> None:
        await self.stop_discovery()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        async with self._lock:
            self._devices.clear()
            self._onvif_devices.clear()
        self.events.clear()
