"""
Camera hub.

Wires the registry, stream and recording coordinators together, keeps each
device's status in line with what its stream and recording are doing, and
executes ``CameraCommand`` values. Also keeps a bounded event history and
connection / storage alerts.
"""

import asyncio
import base64
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from camhub.config import get_settings
from camhub.events import Event, EventType
from camhub.exceptions import ConfigurationError, DeviceNotFoundError, InsufficientStorageError
from camhub.models.device import Device, DeviceStatus, TransportType, make_device_id
from camhub.models.recording import RecordingSession
from camhub.schemas.base import merge_config
from camhub.schemas.camera import (
    CameraCommand,
    CommandResult,
    CommandType,
    DiscoveryOptions,
    RecordingConfig,
    StreamConfig,
)
from camhub.services.camera_stream import StreamCoordinator
from camhub.services.companion import CompanionGateway
from camhub.services.encryption import SecretStore, secret_store
from camhub.services.recorder import RecordingCoordinator, recording_config_from_settings
from camhub.services.registry import DeviceRegistry
from camhub.services.retention import RetentionMonitor, StorageService
from camhub.services.snapshot import SnapshotService
from camhub.utils import to_utc_isoformat, utc_now

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    CONNECTION = "connection"
    STORAGE = "storage"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class CameraAlert:
    id: str
    camera_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    resolved: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        data["timestamp"] = to_utc_isoformat(self.timestamp)
        return data


@dataclass
class HistoryEntry:
    type: str
    camera_id: str
    timestamp: datetime = field(default_factory=utc_now)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "camera_id": self.camera_id,
            "timestamp": to_utc_isoformat(self.timestamp),
            "data": self.data,
        }


class CameraHub:
    """Single entry point for discovery, streaming and recording."""

    def __init__(
        self,
        registry: Optional[DeviceRegistry] = None,
        streams: Optional[StreamCoordinator] = None,
        recorder: Optional[RecordingCoordinator] = None,
        storage: Optional[StorageService] = None,
        snapshots: Optional[SnapshotService] = None,
        companion: Optional[CompanionGateway] = None,
        retention_monitor: Optional[RetentionMonitor] = None,
        secrets: Optional[SecretStore] = None,
        max_history: int = 1000,
        max_alerts: int = 100,
    ):
        secrets = secrets or secret_store
        self.companion = companion or CompanionGateway()
        self.registry = registry or DeviceRegistry(
            companion_gateway=self.companion, secrets=secrets
        )
        self.streams = streams or StreamCoordinator(
            companion_gateway=self.companion, secrets=secrets
        )
        self.storage = storage or StorageService()
        self.recorder = recorder or RecordingCoordinator(
            self.streams, self.storage, device_lookup=self.registry.lookup
        )
        self.snapshots = snapshots or SnapshotService(
            companion_gateway=self.companion, secrets=secrets
        )
        self.retention_monitor = retention_monitor or RetentionMonitor(
            self.storage, protected=self.recorder.protected_paths
        )

        self._history: deque[HistoryEntry] = deque(maxlen=max_history)
        self._alerts: deque[CameraAlert] = deque(maxlen=max_alerts)
        self._started = False
        self._discovery_task: Optional[asyncio.Task] = None

        self._subscriptions = [
            self.registry.events.subscribe(
                self._on_registry_event,
                EventType.CAMERA_ADDED,
                EventType.CAMERA_REMOVED,
            ),
            self.streams.events.subscribe(
                self._on_stream_event,
                EventType.STREAM_STARTED,
                EventType.STREAM_STOPPED,
                EventType.STREAM_ERROR,
            ),
            self.recorder.events.subscribe(
                self._on_recording_event,
                EventType.RECORDING_STARTED,
                EventType.RECORDING_STOPPED,
                EventType.RECORDING_RECOVERED,
                EventType.RECORDING_ERROR,
            ),
            # The phone reports its own stream state; status still defers to the recorder
            self.companion.events.subscribe(
                self._on_companion_stream,
                EventType.STREAM_STARTED,
                EventType.STREAM_STOPPED,
            ),
        ]

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self, options: Optional[DiscoveryOptions] = None, wait: bool = True) -> None:
        """Start retention enforcement and continuous discovery.

        With ``wait`` False the first discovery pass runs in the background.
        """
        if self._started:
            return
        settings = get_settings()
        self._started = True
        await self.retention_monitor.start()
        options = options or DiscoveryOptions(
            continuous=True,
            interval=settings.discovery_interval_seconds,
            onvif_timeout_ms=settings.onvif_discovery_timeout_ms,
            companion_port=settings.companion_port,
        )
        if wait:
            await self.registry.start_discovery(options)
            logger.info(f"Camera hub started with {len(self.registry.get_cameras())} camera(s)")
        else:
            self._discovery_task = asyncio.create_task(self.registry.start_discovery(options))
            logger.info("Camera hub started, discovery running in background")

    async def stop(self) -> None:
        """Stop recordings, streams, discovery and retention."""
        if self._discovery_task is not None and not self._discovery_task.done():
            self._discovery_task.cancel()
            try:
                await self._discovery_task
            except asyncio.CancelledError:
                pass
        self._discovery_task = None
        await self.recorder.dispose()
        await self.streams.dispose()
        await self.registry.dispose()
        await self.retention_monitor.stop()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        self._started = False
        logger.info("Camera hub stopped")

    # Status bookkeeping

    def resolve_status(self, device_id: str, streaming: Optional[bool] = None) -> DeviceStatus:
        """Device status from recorder and stream state, recording first.

        ``streaming`` overrides the stream coordinator's view, for sources
        that report their own stream state.
        """
        if self.recorder.is_recording(device_id):
            return DeviceStatus.RECORDING
        if streaming is None:
            streaming = self.streams.is_active(device_id)
        return DeviceStatus.STREAMING if streaming else DeviceStatus.CONNECTED

    async def _sync_status(self, device_id: str, streaming: Optional[bool] = None) -> None:
        await self.registry.update_status(device_id, self.resolve_status(device_id, streaming))

    async def _on_companion_stream(self, event: Event) -> None:
        if event.device_id is None:
            return
        device_id = make_device_id(TransportType.COMPANION, event.device_id)
        await self._sync_status(device_id, streaming=event.type == EventType.STREAM_STARTED)

    async def _on_registry_event(self, event: Event) -> None:
        if event.type == EventType.CAMERA_ADDED:
            self._add_history("connected", event.device_id, {"name": event.device.name})
        elif event.type == EventType.CAMERA_REMOVED:
            await self.recorder.stop_recording(event.device_id)
            await self.streams.stop(event.device_id)
            self._add_history("disconnected", event.device_id)

    async def _on_stream_event(self, event: Event) -> None:
        if event.type == EventType.STREAM_ERROR:
            await self.registry.update_status(event.device_id, DeviceStatus.ERROR)
            self._add_alert(
                event.device_id,
                AlertType.CONNECTION,
                AlertSeverity.WARNING,
                f"Stream error: {event.error}",
            )
            return
        await self._sync_status(event.device_id)
        kind = "stream_start" if event.type == EventType.STREAM_STARTED else "stream_stop"
        self._add_history(kind, event.device_id)

    async def _on_recording_event(self, event: Event) -> None:
        if event.type == EventType.RECORDING_ERROR:
            self._add_alert(
                event.device_id,
                AlertType.STORAGE,
                AlertSeverity.ERROR,
                f"Recording error: {event.error}",
            )
            return
        await self._sync_status(event.device_id)
        kinds = {
            EventType.RECORDING_STARTED: "recording_start",
            EventType.RECORDING_STOPPED: "recording_stop",
            EventType.RECORDING_RECOVERED: "recording_recovered",
        }
        self._add_history(kinds[event.type], event.device_id, event.session.get_status())

    def _add_history(self, kind: str, camera_id: Optional[str], data: Optional[dict] = None) -> None:
        self._history.append(HistoryEntry(type=kind, camera_id=camera_id or "", data=data or {}))

    def _add_alert(
        self,
        camera_id: Optional[str],
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
    ) -> CameraAlert:
        alert = CameraAlert(
            id=f"alert_{uuid.uuid4().hex[:12]}",
            camera_id=camera_id or "",
            type=alert_type,
            severity=severity,
            message=message,
        )
        self._alerts.append(alert)
        logger.warning(f"Alert for {alert.camera_id}: {message}")
        return alert

    def get_alerts(self, unresolved: bool = False) -> list[CameraAlert]:
        if unresolved:
            return [a for a in self._alerts if not a.resolved]
        return list(self._alerts)

    def resolve_alert(self, alert_id: str) -> bool:
        for alert in self._alerts:
            if alert.id == alert_id:
                alert.resolved = True
                return True
        return False

    def get_event_history(self, camera_id: Optional[str] = None) -> list[HistoryEntry]:
        if camera_id:
            return [e for e in self._history if e.camera_id == camera_id]
        return list(self._history)

    # Commands

    def _require_camera(self, camera_id: str) -> Device:
        device = self.registry.get_camera(camera_id)
        if device is None:
            raise DeviceNotFoundError(f"Camera {camera_id} not found")
        return device

    async def execute(self, command: CameraCommand) -> CommandResult:
        """Run a command against one camera.

        Raises:
            DeviceNotFoundError: If the camera is unknown.
            CamHubError: Whatever the underlying operation raises.
        """
        device = self._require_camera(command.camera_id)
        params = dict(command.params)
        detail: dict[str, Any] = {}
        success = True

        if command.type == CommandType.START_STREAM:
            config = merge_config(StreamConfig(), **params) if params else None
            await self.streams.start(device, config)
            detail = self.streams.get_status(device.id) or {}

        elif command.type == CommandType.STOP_STREAM:
            await self.streams.stop(device.id)

        elif command.type == CommandType.START_RECORDING:
            config = (
                merge_config(recording_config_from_settings(), **params) if params else None
            )
            session = await self.start_recording(device, config)
            detail = session.get_status()

        elif command.type == CommandType.STOP_RECORDING:
            session = await self.recorder.stop_recording(device.id)
            detail = session.get_status() if session else {}

        elif command.type == CommandType.SNAPSHOT:
            snapshot = await self.snapshots.take_snapshot(device)
            success = snapshot.ok
            detail = {
                "content_type": snapshot.content_type,
                "pending": snapshot.pending,
                "size": len(snapshot.image) if snapshot.image else 0,
                "image": base64.b64encode(snapshot.image).decode() if snapshot.image else None,
            }

        elif command.type == CommandType.RESTART:
            await self.streams.restart_stream(device)
            detail = self.streams.get_status(device.id) or {}

        elif command.type == CommandType.SET_QUALITY:
            if "quality" not in params:
                raise ConfigurationError("set_quality requires a 'quality' parameter")
            config = await self.streams.update_config(device, quality=params["quality"])
            detail = config.model_dump(mode="json")

        logger.info(f"Command {command.type.value} on {device.id}: success={success}")
        self._add_history("command", device.id, {"command": command.type.value, "success": success})
        return CommandResult(
            camera_id=device.id,
            command=command.type,
            success=success,
            detail=detail,
        )

    async def start_recording(
        self,
        device: Device,
        config: Optional[RecordingConfig] = None,
    ) -> RecordingSession:
        try:
            return await self.recorder.start_recording(device, config)
        except InsufficientStorageError as e:
            self._add_alert(device.id, AlertType.STORAGE, AlertSeverity.CRITICAL, str(e))
            raise

    async def start_recording_all(self, config: Optional[RecordingConfig] = None) -> dict[str, bool]:
        """Start recording every registered camera not already recording."""
        devices = [
            d for d in self.registry.get_cameras()
            if not self.recorder.is_recording(d.id)
        ]
        results = await asyncio.gather(
            *(self.start_recording(d, config) for d in devices),
            return_exceptions=True,
        )
        outcome = {}
        for device, result in zip(devices, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to start recording for {device.id}: {result}")
                outcome[device.id] = False
            else:
                outcome[device.id] = True
        return outcome

    async def stop_recording_all(self) -> None:
        await self.recorder.stop_all_recordings()

    def get_statistics(self) -> dict:
        """Aggregate counters across the hub."""
        cameras = self.registry.get_cameras()
        by_transport = {t.value: 0 for t in TransportType}
        for camera in cameras:
            by_transport[camera.transport.value] += 1
        return {
            "total_cameras": len(cameras),
            "connected_cameras": sum(
                1 for c in cameras if c.status != DeviceStatus.DISCONNECTED
            ),
            "cameras_by_transport": by_transport,
            "active_streams": len(self.streams.get_active_streams()),
            "active_recordings": len(self.recorder.get_active_recordings()),
            "unresolved_alerts": len(self.get_alerts(unresolved=True)),
            "companion_devices": len(self.companion.get_connected_devices()),
        }
