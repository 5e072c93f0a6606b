"""Typed event channels used by probes and coordinators.

Each component owns an ``EventChannel``. Subscribers register a handler
(sync or async) for one or more ``EventType`` values and get back a
``Subscription`` handle they can cancel. ``publish`` awaits handlers in
subscription order, so a slow consumer (for example a recording writer)
applies backpressure to the producer instead of building an unbounded
backlog.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from camhub.utils import utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted by CamHub components."""

    # Registry
    CAMERA_ADDED = "camera-added"
    CAMERA_REMOVED = "camera-removed"
    CAMERA_STATUS_CHANGED = "camera-status-changed"
    DISCOVERY_COMPLETE = "discovery-complete"

    # Probes
    CAMERA_FOUND = "camera-found"
    CAMERA_CONNECTED = "camera-connected"
    CAMERA_DISCONNECTED = "camera-disconnected"
    DEVICE_FOUND = "device-found"

    # Companion gateway
    DEVICE_CONNECTED = "device-connected"
    DEVICE_DISCONNECTED = "device-disconnected"
    CAPABILITIES_UPDATED = "capabilities-updated"
    STATUS_UPDATE = "status-update"

    # Streams
    STREAM_STARTED = "stream-started"
    STREAM_STOPPED = "stream-stopped"
    STREAM_PAUSED = "stream-paused"
    STREAM_RESUMED = "stream-resumed"
    STREAM_ERROR = "stream-error"
    STREAM_DATA = "stream-data"

    # Recordings
    RECORDING_STARTED = "recording-started"
    RECORDING_STOPPED = "recording-stopped"
    RECORDING_PAUSED = "recording-paused"
    RECORDING_RESUMED = "recording-resumed"
    RECORDING_RECOVERED = "recording-recovered"
    RECORDING_ERROR = "recording-error"
    RECORDING_STATS = "recording-stats"


@dataclass(frozen=True, kw_only=True)
class Event:
    """Base event. ``device_id`` is None for component-wide events."""

    type: EventType
    device_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, kw_only=True)
class CameraEvent(Event):
    """A device descriptor was added, removed, found or attached."""

    device: Any  # Device copy


@dataclass(frozen=True, kw_only=True)
class CameraStatusEvent(Event):
    status: Any  # DeviceStatus
    previous: Any


@dataclass(frozen=True, kw_only=True)
class DiscoveryCompleteEvent(Event):
    devices: list = field(default_factory=list)


@dataclass(frozen=True, kw_only=True)
class ONVIFDeviceEvent(Event):
    onvif_device: Any  # ONVIFDevice


@dataclass(frozen=True, kw_only=True)
class CompanionDeviceEvent(Event):
    info: Any  # CompanionDeviceInfo


@dataclass(frozen=True, kw_only=True)
class StreamStartedEvent(Event):
    config: Any = None


@dataclass(frozen=True, kw_only=True)
class StreamDataEvent(Event):
    data: bytes
    frame_number: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class StreamErrorEvent(Event):
    error: str


@dataclass(frozen=True, kw_only=True)
class RecordingEvent(Event):
    session: Any  # RecordingSession snapshot


@dataclass(frozen=True, kw_only=True)
class RecordingErrorEvent(Event):
    session: Any
    error: str


@dataclass(frozen=True, kw_only=True)
class RecordingStatsEvent(Event):
    stats: Any  # RecordingStats copy


Handler = Callable[[Event], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by ``EventChannel.subscribe``."""

    def __init__(
        self,
        channel: "EventChannel",
        handler: Handler,
        types: frozenset[EventType],
    ):
        self._channel = channel
        self.handler = handler
        self.types = types
        self.active = True

    def matches(self, event: Event) -> bool:
        return self.active and (not self.types or event.type in self.types)

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self.active:
            self.active = False
            self._channel._remove(self)


class EventChannel:
    """Publish/subscribe channel owned by a single component."""

    def __init__(self, name: str, max_stream_subscribers: int = 100):
        self.name = name
        self.max_stream_subscribers = max_stream_subscribers
        self._subscriptions: list[Subscription] = []
        self._queues: list[asyncio.Queue[Event]] = []
        self._lock = asyncio.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._queues)

    def subscribe(self, handler: Handler, *types: EventType) -> Subscription:
        """Register a handler for the given event types (all types if none)."""
        subscription = Subscription(self, handler, frozenset(types))
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def publish(self, event: Event) -> None:
        """Deliver an event to every matching subscriber.

        A failing handler is logged and does not prevent delivery to the
        remaining subscribers.
        """
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    f"[{self.name}] handler failed for {event.type.value}"
                )

        if self._queues:
            await self._fan_out(event)

    async def _fan_out(self, event: Event) -> None:
        async with self._lock:
            dead: list[asyncio.Queue[Event]] = []
            for queue in self._queues:
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    logger.warning(f"[{self.name}] subscriber queue full, dropping subscriber")
                    dead.append(queue)
            for queue in dead:
                self._queues.remove(queue)

    async def stream(self, *types: EventType) -> AsyncIterator[Event]:
        """Iterate over events as they occur.

        Yields:
            Events matching ``types`` (all events if none given)
        """
        if len(self._queues) >= self.max_stream_subscribers:
            logger.warning(f"[{self.name}] max subscribers reached, rejecting new subscription")
            return

        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=100)
        async with self._lock:
            self._queues.append(queue)

        try:
            while True:
                event = await queue.get()
                if not types or event.type in types:
                    yield event
        finally:
            async with self._lock:
                if queue in self._queues:
                    self._queues.remove(queue)

    def clear(self) -> None:
        """Drop all subscribers."""
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()
        self._queues.clear()
