"""Companion device WebSocket messages.

Inbound JSON frames are decoded once at the boundary into one of a closed
set of message models. Anything that does not decode (bad JSON, unknown
``type`` tag, invalid fields) becomes an ``UnrecognizedMessage``.
"""

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class _InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegisterMessage(_InboundMessage):
    type: Literal["register"]
    device_id: str = Field(..., alias="deviceId", min_length=1)
    device_name: str = Field("Companion Device", alias="deviceName")
    platform: str = "unknown"
    app_version: str = Field("", alias="appVersion")
    connection_type: str = Field("wifi", alias="connectionType")
    capabilities: dict[str, Any] = Field(default_factory=dict)


class CapabilitiesMessage(_InboundMessage):
    type: Literal["capabilities"]
    capabilities: dict[str, Any] = Field(default_factory=dict)


class StreamStartMessage(_InboundMessage):
    type: Literal["stream_start"]
    config: dict[str, Any] = Field(default_factory=dict)


class StreamDataMessage(_InboundMessage):
    type: Literal["stream_data"]
    data: Union[str, bytes]
    frame_number: Optional[int] = Field(None, alias="frameNumber")
    timestamp: Optional[float] = None


class StreamStopMessage(_InboundMessage):
    type: Literal["stream_stop"]


class PingMessage(_InboundMessage):
    type: Literal["ping"]
    timestamp: Optional[float] = None


class PongMessage(_InboundMessage):
    type: Literal["pong"]
    timestamp: Optional[float] = None


class StatusMessage(_InboundMessage):
    type: Literal["status"]
    status: Any = None


class UnrecognizedMessage(BaseModel):
    """A frame that could not be decoded into a known message."""

    type: Literal["unrecognized"] = "unrecognized"
    raw_type: Optional[str] = None
    reason: str = ""


CompanionMessage = Annotated[
    Union[
        RegisterMessage,
        CapabilitiesMessage,
        StreamStartMessage,
        StreamDataMessage,
        StreamStopMessage,
        PingMessage,
        PongMessage,
        StatusMessage,
    ],
    Field(discriminator="type"),
]

InboundMessage = Union[
    RegisterMessage,
    CapabilitiesMessage,
    StreamStartMessage,
    StreamDataMessage,
    StreamStopMessage,
    PingMessage,
    PongMessage,
    StatusMessage,
    UnrecognizedMessage,
]

_message_adapter: TypeAdapter[Any] = TypeAdapter(CompanionMessage)


def decode_message(raw: Union[str, bytes]) -> InboundMessage:
    """Decode a WebSocket frame into a companion message."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        return UnrecognizedMessage(reason=f"invalid JSON: {e}")

    if not isinstance(payload, dict):
        return UnrecognizedMessage(reason="payload is not an object")

    try:
        return _message_adapter.validate_python(payload)
    except ValidationError as e:
        raw_type = payload.get("type")
        return UnrecognizedMessage(
            raw_type=str(raw_type) if raw_type is not None else None,
            reason=f"{e.error_count()} validation error(s)",
        )
