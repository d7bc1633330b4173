"""Relay control message schemas.

Text frames on the relay socket carry one JSON object each, discriminated by
`type`. Field names on the wire are camelCase (`sessionId`, `streamKey`); the
models expose snake_case attributes and serialise back with aliases.
"""

import time
from enum import Enum
from typing import Any, Literal

import orjson
from pydantic import BaseModel, ConfigDict, Field


class RelayRole(str, Enum):
    HOST = "host"
    CLIENT = "client"

    def __str__(self) -> str:
        return self.value


class RelayErrorReason(str, Enum):
    """Values of the `error` field in server error events."""

    BAD_JSON = "bad_json"
    BAD_MESSAGE = "bad_message"
    UNAUTHORIZED = "unauthorized"
    NOT_JOINED = "not_joined"
    NO_DESTINATIONS = "no_destinations"
    TRANSCODER_SPAWN_FAILED = "transcoder_spawn_failed"
    RELAY_EXCEPTION = "relay_exception"

    def __str__(self) -> str:
        return self.value


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_text(self) -> str:
        return orjson.dumps(self.to_wire()).decode()


# ==================== CLIENT -> SERVER ====================


class JoinMessage(_Message):
    type: Literal["join"] = "join"
    role: RelayRole
    session_id: str = Field(alias="sessionId", min_length=1)
    token: str | None = None


class StartStreamMessage(_Message):
    type: Literal["start-stream"] = "start-stream"
    stream_key: str | None = Field(default=None, alias="streamKey")
    destinations: list[str] | None = None
    token: str | None = None


class StopStreamMessage(_Message):
    type: Literal["stop-stream"] = "stop-stream"


class PingMessage(_Message):
    type: Literal["ping"] = "ping"
    t: float | None = None


class SignalMessage(_Message):
    """WebRTC signaling payloads relayed verbatim to the rest of the session."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Literal["offer", "answer", "ice-candidate", "request-offer"]


ControlMessage = JoinMessage | StartStreamMessage | StopStreamMessage | PingMessage | SignalMessage

_CONTROL_TYPES: dict[str, type[_Message]] = {
    "join": JoinMessage,
    "start-stream": StartStreamMessage,
    "stop-stream": StopStreamMessage,
    "ping": PingMessage,
    "offer": SignalMessage,
    "answer": SignalMessage,
    "ice-candidate": SignalMessage,
    "request-offer": SignalMessage,
}


class MalformedMessageError(ValueError):
    """Raised when a text frame cannot be turned into a control message."""

    def __init__(self, reason: RelayErrorReason, detail: str):
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


def parse_control_message(text: str) -> ControlMessage | None:
    """Parse one text frame.

    Returns None for well-formed JSON with an unknown `type`.

    Raises:
        MalformedMessageError: invalid JSON, a non-object payload, or a known
            type whose fields fail validation
    """
    try:
        data = orjson.loads(text)
    except orjson.JSONDecodeError as e:
        raise MalformedMessageError(RelayErrorReason.BAD_JSON, str(e)) from e

    if not isinstance(data, dict):
        raise MalformedMessageError(RelayErrorReason.BAD_JSON, "control message must be an object")

    model = _CONTROL_TYPES.get(str(data.get("type", "")))
    if model is None:
        return None

    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValueError as e:
        raise MalformedMessageError(RelayErrorReason.BAD_MESSAGE, str(e)) from e


# ==================== SERVER -> CLIENT ====================


class RelayEventType(str, Enum):
    CONNECTED = "connected"
    STARTED = "started"
    STOPPED = "stopped"
    FFMPEG_CLOSED = "ffmpeg_closed"
    FFMPEG_ERROR = "ffmpeg_error"
    ERROR = "error"
    PEER_JOINED = "peer-joined"
    PEER_LEFT = "peer-left"
    PING = "ping"
    PONG = "pong"

    def __str__(self) -> str:
        return self.value


class ConnectedEvent(_Message):
    type: Literal["connected"] = "connected"
    role: RelayRole
    session_id: str = Field(alias="sessionId")


class StartedEvent(_Message):
    type: Literal["started"] = "started"


class StoppedEvent(_Message):
    type: Literal["stopped"] = "stopped"
    code: int | None = None
    reason: str | None = None


class FfmpegClosedEvent(_Message):
    type: Literal["ffmpeg_closed"] = "ffmpeg_closed"
    code: int | None = None


class FfmpegErrorEvent(_Message):
    type: Literal["ffmpeg_error"] = "ffmpeg_error"
    message: str


class ErrorEvent(_Message):
    type: Literal["error"] = "error"
    error: RelayErrorReason


class PeerJoinedEvent(_Message):
    type: Literal["peer-joined"] = "peer-joined"
    role: RelayRole


class PeerLeftEvent(_Message):
    type: Literal["peer-left"] = "peer-left"
    role: RelayRole | None = None


class PingEvent(_Message):
    type: Literal["ping"] = "ping"
    t: int = Field(default_factory=lambda: int(time.time() * 1000))


class PongEvent(_Message):
    type: Literal["pong"] = "pong"
    t: int = Field(default_factory=lambda: int(time.time() * 1000))
    echo: float | None = None
