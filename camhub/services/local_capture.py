"""Detection and hot-plug monitoring of directly attached capture devices.

Linux exposes capture hardware as ``/dev/videoN`` nodes with a friendly
name under ``/sys/class/video4linux/videoN/name``. Capability probing opens
each node with OpenCV in a worker thread.
"""

import asyncio
import logging
import re
import socket
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import cv2

from camhub.config import get_settings
from camhub.events import CameraEvent, Event, EventChannel, EventType
from camhub.models.device import (
    DEFAULT_RESOLUTIONS,
    STANDARD_RESOLUTIONS,
    Capabilities,
    Connection,
    Device,
    DeviceMetadata,
    DeviceStatus,
    Resolution,
    TransportType,
    make_device_id,
)

logger = logging.getLogger(__name__)

BUILT_IN_MARKERS = ("built-in", "integrated")
STANDARD_FRAME_RATES = (15.0, 24.0, 25.0, 30.0, 60.0)
DEFAULT_FRAME_RATES = [30.0]

KNOWN_MANUFACTURERS = (
    "Logitech",
    "Microsoft",
    "Razer",
    "Elgato",
    "AVerMedia",
    "Creative",
    "Sony",
    "Canon",
    "Anker",
    "Insta360",
)

_VIDEO_NODE = re.compile(r"^video(\d+)$")

NETLINK_KOBJECT_UEVENT = 15
UEVENT_KERNEL_GROUP = 1
UEVENT_SUBSYSTEM = b"SUBSYSTEM=video4linux"


@dataclass(frozen=True)
class CaptureDeviceInfo:
    """A capture node as reported by the OS."""

    device_id: str  # e.g. "video0"
    label: str
    path: str  # e.g. "/dev/video0"


def enumerate_v4l2_devices(
    dev_root: Path = Path("/dev"),
    sys_root: Path = Path("/sys/class/video4linux"),
) -> list[CaptureDeviceInfo]:
    """List V4L2 capture nodes.

    Nodes whose sysfs ``index`` is non-zero are metadata companions of a
    real capture node and are skipped.
    """
    devices: list[CaptureDeviceInfo] = []
    for node in sorted(dev_root.glob("video*")):
        if not _VIDEO_NODE.match(node.name):
            continue

        sys_dir = sys_root / node.name
        index_file = sys_dir / "index"
        try:
            if index_file.exists() and index_file.read_text().strip() != "0":
                continue
        except OSError:
            pass

        label = node.name
        name_file = sys_dir / "name"
        try:
            if name_file.exists():
                label = name_file.read_text().strip() or node.name
        except OSError:
            pass

        devices.append(CaptureDeviceInfo(device_id=node.name, label=label, path=str(node)))
    return devices


def is_built_in(label: str) -> bool:
    lowered = label.lower()
    return any(marker in lowered for marker in BUILT_IN_MARKERS)


def parse_label(label: str) -> DeviceMetadata:
    """Extract manufacturer and model from a device label."""
    # Strip USB id suffixes such as "(046d:085c)" and driver suffixes after ':'
    cleaned = re.sub(r"\s*\([0-9a-fA-F]{4}:[0-9a-fA-F]{4}\)", "", label)
    cleaned = cleaned.split(":")[0].strip()

    for manufacturer in KNOWN_MANUFACTURERS:
        if cleaned.lower().startswith(manufacturer.lower()):
            model = cleaned[len(manufacturer):].strip() or None
            return DeviceMetadata(manufacturer=manufacturer, model=model)

    return DeviceMetadata(model=cleaned or None)


def open_uevent_socket() -> Optional[socket.socket]:
    """Non-blocking subscription to kernel device uevents.

    Returns None where netlink is unavailable (non-Linux hosts, restricted
    containers); monitoring then relies on polling alone.
    """
    if not sys.platform.startswith("linux"):
        return None
    try:
        sock = socket.socket(socket.AF_NETLINK, socket.SOCK_DGRAM, NETLINK_KOBJECT_UEVENT)
    except (AttributeError, OSError) as e:
        logger.debug(f"Kernel uevents unavailable: {e}")
        return None
    try:
        sock.bind((0, UEVENT_KERNEL_GROUP))
        sock.setblocking(False)
    except OSError as e:
        logger.debug(f"Kernel uevents unavailable: {e}")
        sock.close()
        return None
    return sock


def is_capture_uevent(message: bytes) -> bool:
    """True for add/remove uevents of video4linux nodes."""
    fields = message.split(b"\0")
    return UEVENT_SUBSYSTEM in fields and (
        fields[0].startswith((b"add@", b"remove@"))
        or b"ACTION=add" in fields
        or b"ACTION=remove" in fields
    )


class LocalCaptureProbe:
    """Finds attached capture devices and watches for attach/detach."""

    def __init__(
        self,
        enumerator: Optional[Callable[[], list[CaptureDeviceInfo]]] = None,
        capture_factory: Optional[Callable[[str], Any]] = None,
        poll_interval: Optional[float] = None,
        uevent_source: Optional[Callable[[], Optional[socket.socket]]] = open_uevent_socket,
    ):
        settings = get_settings()
        self._enumerate = enumerator or enumerate_v4l2_devices
        self._uevent_source = uevent_source
        self._uevents: Optional[socket.socket] = None
        self._capture_factory = capture_factory or cv2.VideoCapture
        self.poll_interval = poll_interval or settings.local_poll_interval_seconds
        self.events = EventChannel("local-capture")

        self._known_ids: set[str] = set()
        self._monitor_task: Optional[asyncio.Task] = None
        self._change_event: Optional[asyncio.Event] = None

    @property
    def is_monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def detect(self) -> list[Device]:
        """Detect attached, non-built-in capture devices."""
        candidates = await self._enumerate_candidates()
        devices = []
        for info in candidates:
            devices.append(await self._create_device(info))
            self._known_ids.add(info.device_id)
        logger.info(f"Detected {len(devices)} local capture device(s)")
        return devices

    async def _enumerate_candidates(self) -> list[CaptureDeviceInfo]:
        try:
            found = await asyncio.to_thread(self._enumerate)
        except OSError as e:
            logger.error(f"Failed to enumerate capture devices: {e}")
            return []

        candidates = []
        for info in found:
            if is_built_in(info.label):
                logger.debug(f"Skipping built-in camera: {info.label}")
                continue
            candidates.append(info)
        return candidates

    async def _create_device(self, info: CaptureDeviceInfo) -> Device:
        resolutions, frame_rates = await self.probe_capabilities(info.path)
        return Device(
            id=make_device_id(TransportType.LOCAL, info.device_id),
            name=info.label or f"USB Camera {info.device_id}",
            transport=TransportType.LOCAL,
            status=DeviceStatus.CONNECTED,
            capabilities=Capabilities(
                resolutions=resolutions,
                frame_rates=frame_rates,
                has_audio=False,
                supported_codecs=["h264", "mjpeg"],
                supported_protocols=["v4l2"],
            ),
            connection=Connection(device_path=info.path),
            metadata=parse_label(info.label),
        )

    async def probe_capabilities(self, path: str) -> tuple[list[Resolution], list[float]]:
        """Probe supported resolutions and frame rates.

        Never raises; falls back to 1080p/720p/480p at 30fps.
        """
        try:
            return await asyncio.to_thread(self._probe_sync, path)
        except Exception as e:
            logger.debug(f"Capability probe failed for {path}: {e}")
            return list(DEFAULT_RESOLUTIONS), list(DEFAULT_FRAME_RATES)

    def _probe_sync(self, path: str) -> tuple[list[Resolution], list[float]]:
        cap = self._capture_factory(path)
        try:
            if not cap.isOpened():
                raise RuntimeError(f"Cannot open {path}")

            # Ask for the maximum; the driver clamps to what it supports
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, 3840)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, 2160)
            cap.set(cv2.CAP_PROP_FPS, 60)

            max_width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            max_height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
            max_fps = float(cap.get(cv2.CAP_PROP_FPS))
        finally:
            cap.release()

        if max_width <= 0 or max_height <= 0:
            raise RuntimeError(f"No frame size reported by {path}")

        resolutions = [
            r for r in STANDARD_RESOLUTIONS
            if r.width <= max_width and r.height <= max_height
        ]
        if not resolutions:
            resolutions = [Resolution.from_size(max_width, max_height)]

        frame_rates = [f for f in STANDARD_FRAME_RATES if f <= max_fps]
        if not frame_rates:
            frame_rates = list(DEFAULT_FRAME_RATES)

        return resolutions, frame_rates

    async def test_camera(self, device: Device) -> bool:
        """Open and release a capture handle. Never raises."""
        path = device.connection.device_path
        if not path:
            return False

        def _open() -> bool:
            cap = self._capture_factory(path)
            try:
                return bool(cap.isOpened())
            finally:
                cap.release()

        try:
            return await asyncio.to_thread(_open)
        except Exception as e:
            logger.debug(f"Camera test failed for {device.id}: {e}")
            return False

    def start_monitoring(self) -> None:
        """Watch for attach/detach.

        Kernel uevents for video4linux nodes trigger an immediate
        re-enumeration; the poll interval is the fallback when uevents
        are unavailable or missed.
        """
        if self.is_monitoring:
            return
        self._change_event = asyncio.Event()
        self._watch_uevents()
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        mode = "uevents + poll" if self._uevents is not None else "poll"
        logger.info(f"Local capture monitoring started ({mode}: {self.poll_interval}s)")

    def _watch_uevents(self) -> None:
        sock = self._uevent_source() if self._uevent_source else None
        if sock is None:
            return
        try:
            asyncio.get_running_loop().add_reader(sock.fileno(), self._read_uevents)
        except (NotImplementedError, OSError) as e:
            logger.debug(f"Cannot watch kernel uevents: {e}")
            sock.close()
            return
        self._uevents = sock

    def _read_uevents(self) -> None:
        while self._uevents is not None:
            try:
                message = self._uevents.recv(16384)
            except (BlockingIOError, InterruptedError):
                return
            except OSError as e:
                logger.warning(f"Kernel uevent socket failed, polling only: {e}")
                self._unwatch_uevents()
                return
            if not message:
                return
            if is_capture_uevent(message):
                header = message.partition(b"\0")[0].decode(errors="replace")
                logger.debug(f"Capture uevent: {header}")
                self.notify_change()

    def _unwatch_uevents(self) -> None:
        sock, self._uevents = self._uevents, None
        if sock is None:
            return
        try:
            asyncio.get_running_loop().remove_reader(sock.fileno())
        except (RuntimeError, ValueError, OSError):
            pass
        sock.close()

    def notify_change(self) -> None:
        """Trigger an immediate re-enumeration."""
        if self._change_event is not None:
            self._change_event.set()

    async def stop_monitoring(self) -> None:
        self._unwatch_uevents()
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
            logger.info("Local capture monitoring stopped")
        self._change_event = None

    async def _monitor_loop(self) -> None:
        """Main monitoring loop."""
        while True:
            try:
                await asyncio.wait_for(self._change_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._change_event.clear()

            try:
                await self.check_for_changes()
            except Exception:
                logger.exception("Error checking for capture device changes")

    async def check_for_changes(self) -> None:
        """Diff the current enumeration against the previous snapshot."""
        candidates = await self._enumerate_candidates()
        current = {info.device_id: info for info in candidates}

        for device_id, info in current.items():
            if device_id in self._known_ids:
                continue
            device = await self._create_device(info)
            self._known_ids.add(device_id)
            logger.info(f"Capture device attached: {info.label}")
            await self.events.publish(CameraEvent(
                type=EventType.CAMERA_CONNECTED,
                device_id=device.id,
                device=device,
            ))

        for device_id in sorted(self._known_ids - set(current)):
            self._known_ids.discard(device_id)
            logger.info(f"Capture device detached: {device_id}")
            await self.events.publish(Event(
                type=EventType.CAMERA_DISCONNECTED,
                device_id=make_device_id(TransportType.LOCAL, device_id),
            ))
