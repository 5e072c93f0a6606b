"""Gateway for companion mobile devices acting as cameras.

Companion apps find the gateway through ``GET /discover`` and then hold a
WebSocket open on ``/ws``. Every inbound frame is decoded into a typed
message (see ``camhub.schemas.companion``); the gateway keeps one
``CompanionConnection`` per socket and republishes what happens on it as
events.
"""

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

import uvicorn
from fastapi import APIRouter, FastAPI, WebSocket, WebSocketDisconnect

from camhub.config import get_settings
from camhub.events import (
    CompanionDeviceEvent,
    Event,
    EventChannel,
    EventType,
    StreamDataEvent,
    StreamStartedEvent,
)
from camhub.schemas.companion import (
    CapabilitiesMessage,
    InboundMessage,
    PingMessage,
    PongMessage,
    RegisterMessage,
    StatusMessage,
    StreamDataMessage,
    StreamStartMessage,
    StreamStopMessage,
    UnrecognizedMessage,
    decode_message,
)
from camhub.utils import epoch_millis, utc_now

logger = logging.getLogger(__name__)

GATEWAY_CAPABILITIES = ["streaming", "recording", "control"]


@dataclass
class CompanionDeviceInfo:
    """What a companion device told us about itself."""

    device_id: str
    device_name: str
    platform: str
    app_version: str
    connection_type: str
    capabilities: dict[str, Any] = field(default_factory=dict)
    address: Optional[str] = None
    last_ping: datetime = field(default_factory=utc_now)


class CompanionConnection:
    """One companion socket. Lifetime is bound to the socket."""

    def __init__(
        self,
        send_text: Callable[[str], Awaitable[None]],
        address: str = "unknown",
        close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.address = address
        self.device_id: Optional[str] = None
        self.device_info: Optional[CompanionDeviceInfo] = None
        self.streaming = False
        self.stream_config: Optional[dict[str, Any]] = None
        self._send_text = send_text
        self._close = close
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def send(self, payload: dict[str, Any]) -> bool:
        """Send a JSON message. Returns False if the socket is gone."""
        if not self._open:
            return False
        try:
            await self._send_text(json.dumps(payload))
            return True
        except Exception as e:
            logger.debug(f"Send to companion {self.device_id or self.address} failed: {e}")
            self._open = False
            return False

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        if self._close is not None:
            try:
                await self._close()
            except Exception as e:
                logger.debug(f"Error closing companion socket: {e}")

    def mark_closed(self) -> None:
        self._open = False


def _now_ms() -> int:
    return epoch_millis(utc_now())


class CompanionGateway:
    """HTTP discovery endpoint and WebSocket hub for companion devices."""

    def __init__(
        self,
        service_name: Optional[str] = None,
        version: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        ping_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.service_name = service_name or settings.companion_service_name
        self.version = version or settings.companion_protocol_version
        self.host = host or settings.companion_host
        self.port = port or settings.companion_port
        self.ping_timeout = ping_timeout or settings.companion_ping_timeout_seconds
        self.events = EventChannel("companion")

        self._connections: dict[str, CompanionConnection] = {}
        self._anonymous: set[CompanionConnection] = set()
        self._pending_pings: dict[str, list[asyncio.Future]] = {}
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task] = None

        self.router = self._build_router()

    @property
    def is_listening(self) -> bool:
        return self._server_task is not None and not self._server_task.done()

    def discovery_info(self) -> dict[str, Any]:
        return {
            "service": self.service_name,
            "version": self.version,
            "port": self.port,
            "capabilities": list(GATEWAY_CAPABILITIES),
        }

    def _build_router(self) -> APIRouter:
        router = APIRouter(tags=["companion"])

        @router.get("/discover")
        async def discover() -> dict[str, Any]:
            """Service discovery for companion apps."""
            return self.discovery_info()

        @router.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket) -> None:
            await self.serve(websocket)

        return router

    async def serve(self, websocket: WebSocket) -> None:
        """Run one companion WebSocket until it closes."""
        await websocket.accept()
        address = websocket.client.host if websocket.client else "unknown"
        connection = CompanionConnection(websocket.send_text, address, websocket.close)
        await self.handle_connect(connection)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is not None:
                    await self.handle_message(connection, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self.handle_disconnect(connection)

    async def handle_connect(self, connection: CompanionConnection) -> None:
        logger.info(f"Companion device connected from {connection.address}")
        self._anonymous.add(connection)
        await connection.send({"type": "handshake", "timestamp": _now_ms()})

    async def handle_message(
        self,
        connection: CompanionConnection,
        raw: Union[str, bytes],
    ) -> None:
        """Decode and dispatch one inbound frame."""
        message = decode_message(raw)

        if isinstance(message, UnrecognizedMessage):
            logger.debug(
                f"Ignoring companion message (type={message.raw_type}): {message.reason}"
            )
        elif isinstance(message, RegisterMessage):
            await self._on_register(connection, message)
        elif isinstance(message, PingMessage):
            await connection.send({"type": "pong", "timestamp": _now_ms()})
        elif connection.device_id is None:
            logger.debug(f"Ignoring {message.type} from unregistered companion {connection.address}")
        elif isinstance(message, CapabilitiesMessage):
            await self._on_capabilities(connection, message)
        elif isinstance(message, StreamStartMessage):
            await self._on_stream_start(connection, message)
        elif isinstance(message, StreamDataMessage):
            await self._on_stream_data(connection, message)
        elif isinstance(message, StreamStopMessage):
            await self._on_stream_stop(connection)
        elif isinstance(message, PongMessage):
            self._resolve_pings(connection.device_id, True)
            if connection.device_info:
                connection.device_info.last_ping = utc_now()
        elif isinstance(message, StatusMessage):
            if connection.device_info:
                connection.device_info.last_ping = utc_now()
            await self.events.publish(Event(
                type=EventType.STATUS_UPDATE,
                device_id=connection.device_id,
            ))

    async def _on_register(self, connection: CompanionConnection, message: RegisterMessage) -> None:
        info = CompanionDeviceInfo(
            device_id=message.device_id,
            device_name=message.device_name,
            platform=message.platform,
            app_version=message.app_version,
            connection_type=message.connection_type,
            capabilities=dict(message.capabilities),
            address=connection.address,
        )

        previous = self._connections.get(message.device_id)
        if previous is not None and previous is not connection:
            logger.info(f"Companion {message.device_id} re-registered, replacing old connection")
            previous.mark_closed()

        connection.device_id = message.device_id
        connection.device_info = info
        self._anonymous.discard(connection)
        self._connections[message.device_id] = connection

        await connection.send({
            "type": "registered",
            "deviceId": message.device_id,
            "timestamp": _now_ms(),
        })
        logger.info(f"Companion device registered: {info.device_name} ({info.platform})")
        await self.events.publish(CompanionDeviceEvent(
            type=EventType.DEVICE_CONNECTED,
            device_id=message.device_id,
            info=info,
        ))

    async def _on_capabilities(
        self,
        connection: CompanionConnection,
        message: CapabilitiesMessage,
    ) -> None:
        if connection.device_info is None:
            return
        connection.device_info.capabilities = dict(message.capabilities)
        await self.events.publish(CompanionDeviceEvent(
            type=EventType.CAPABILITIES_UPDATED,
            device_id=connection.device_id,
            info=connection.device_info,
        ))

    async def _on_stream_start(
        self,
        connection: CompanionConnection,
        message: StreamStartMessage,
    ) -> None:
        connection.streaming = True
        connection.stream_config = dict(message.config)
        await connection.send({"type": "stream_started", "timestamp": _now_ms()})
        logger.info(f"Companion {connection.device_id} started streaming")
        await self.events.publish(StreamStartedEvent(
            type=EventType.STREAM_STARTED,
            device_id=connection.device_id,
            config=connection.stream_config,
        ))

    async def _on_stream_data(
        self,
        connection: CompanionConnection,
        message: StreamDataMessage,
    ) -> None:
        if not connection.streaming:
            return

        data = message.data
        if isinstance(data, str):
            try:
                data = base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError):
                logger.debug(f"Dropping undecodable stream data from {connection.device_id}")
                return

        await self.events.publish(StreamDataEvent(
            type=EventType.STREAM_DATA,
            device_id=connection.device_id,
            data=data,
            frame_number=message.frame_number,
        ))

    async def _on_stream_stop(self, connection: CompanionConnection) -> None:
        connection.streaming = False
        connection.stream_config = None
        await connection.send({"type": "stream_stopped", "timestamp": _now_ms()})
        logger.info(f"Companion {connection.device_id} stopped streaming")
        await self.events.publish(Event(
            type=EventType.STREAM_STOPPED,
            device_id=connection.device_id,
        ))

    async def handle_disconnect(self, connection: CompanionConnection) -> None:
        connection.mark_closed()
        self._anonymous.discard(connection)
        device_id = connection.device_id
        if device_id is None or self._connections.get(device_id) is not connection:
            return

        del self._connections[device_id]
        self._resolve_pings(device_id, False)
        logger.info(f"Companion device disconnected: {device_id}")
        await self.events.publish(Event(
            type=EventType.DEVICE_DISCONNECTED,
            device_id=device_id,
        ))

    def _resolve_pings(self, device_id: str, result: bool) -> None:
        for future in self._pending_pings.pop(device_id, []):
            if not future.done():
                future.set_result(result)

    async def send_command(self, device_id: str, payload: dict[str, Any]) -> bool:
        """Best-effort unicast. False if the device has no open connection."""
        connection = self._connections.get(device_id)
        if connection is None or not connection.is_open:
            return False
        return await connection.send(payload)

    async def request_stream(self, device_id: str, config: Optional[dict[str, Any]] = None) -> bool:
        return await self.send_command(device_id, {
            "type": "request_stream",
            "config": config or {},
            "timestamp": _now_ms(),
        })

    async def stop_stream(self, device_id: str) -> bool:
        return await self.send_command(device_id, {"type": "stop_stream", "timestamp": _now_ms()})

    async def request_snapshot(self, device_id: str) -> bool:
        return await self.send_command(device_id, {"type": "snapshot", "timestamp": _now_ms()})

    async def ping(self, device_id: str, timeout: Optional[float] = None) -> bool:
        """Send a ping and wait for the matching pong.

        Returns False on timeout or when the device is not connected.
        """
        timeout = timeout if timeout is not None else self.ping_timeout
        connection = self._connections.get(device_id)
        if connection is None or not connection.is_open:
            return False

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_pings.setdefault(device_id, []).append(future)
        try:
            if not await connection.send({"type": "ping", "timestamp": _now_ms()}):
                return False
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            pending = self._pending_pings.get(device_id)
            if pending and future in pending:
                pending.remove(future)
                if not pending:
                    del self._pending_pings[device_id]

    def get_connected_devices(self) -> list[CompanionDeviceInfo]:
        return [
            c.device_info for c in self._connections.values()
            if c.device_info is not None and c.is_open
        ]

    def is_streaming(self, device_id: str) -> bool:
        connection = self._connections.get(device_id)
        return connection is not None and connection.streaming

    async def start_listening(self, port: Optional[int] = None, host: Optional[str] = None) -> None:
        """Serve ``/discover`` and ``/ws`` on a dedicated port in the background."""
        if self.is_listening:
            return
        if port is not None:
            self.port = port
        if host is not None:
            self.host = host

        app = FastAPI(title=self.service_name, version=self.version)
        app.include_router(self.router)
        config = uvicorn.Config(app, host=self.host, port=self.port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())

        # Wait briefly for the socket to bind
        for _ in range(50):
            if self._server.started or self._server_task.done():
                break
            await asyncio.sleep(0.1)

        if self._server.started:
            logger.info(f"Companion gateway listening on {self.host}:{self.port}")
        else:
            logger.warning(f"Companion gateway did not start on {self.host}:{self.port}")

    async def stop_listening(self) -> None:
        """Close every companion connection and stop the server."""
        connections = list(self._connections.values()) + list(self._anonymous)
        for connection in connections:
            await connection.close()
            await self.handle_disconnect(connection)
        self._connections.clear()
        self._anonymous.clear()

        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            try:
                await asyncio.wait_for(self._server_task, timeout=5.0)
            except asyncio.TimeoutError:
                self._server_task.cancel()
            except Exception as e:
                logger.debug(f"Companion server exited with error: {e}")
            self._server_task = None
        self._server = None
        logger.info("Companion gateway stopped")
