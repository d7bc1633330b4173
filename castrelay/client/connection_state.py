"""Studio connection state machine.

Pure functions over frozen state: `transition(state, event)` returns the next
state and the side effects the orchestrator must run. Nothing here touches a
socket, so every path is unit-testable.

Cloud (discovery channel):

    IDLE → CONNECTING → ONLINE
     ↑         ↓
     └─ ROTATE_ROOM (unavailable-id)       CONNECTING → OFFLINE (reconnect exhausted)

Relay: OFFLINE ⇄ ONLINE, reconnect is unbounded.
Stream: NOT_LIVE ⇄ LIVE; any relay drop forces NOT_LIVE.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Literal

from pydantic import BaseModel

from castrelay.utils.app_errors import AppError, AppErrorCode, HttpStatusCode


class CloudState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ONLINE = "online"
    OFFLINE = "offline"

    def __str__(self) -> str:
        return self.value


class RelayLinkState(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"

    def __str__(self) -> str:
        return self.value


class StreamState(str, Enum):
    NOT_LIVE = "not_live"
    LIVE = "live"

    def __str__(self) -> str:
        return self.value


class ClientEvent(str, Enum):
    MOUNT = "mount"
    DISCOVERY_OPENED = "discovery_opened"
    DISCOVERY_UNAVAILABLE_ID = "discovery_unavailable_id"
    DISCOVERY_NETWORK_LOST = "discovery_network_lost"
    DISCOVERY_EXHAUSTED = "discovery_exhausted"
    RELAY_OPENED = "relay_opened"
    RELAY_CLOSED = "relay_closed"
    START_REQUESTED = "start_requested"
    STOP_REQUESTED = "stop_requested"
    TRANSCODER_EXITED = "transcoder_exited"
    TEARDOWN = "teardown"

    def __str__(self) -> str:
        return self.value


class ClientAction(str, Enum):
    OPEN_DISCOVERY = "open_discovery"
    ROTATE_ROOM = "rotate_room"
    SURFACE_ERROR = "surface_error"
    SCHEDULE_RELAY_RECONNECT = "schedule_relay_reconnect"
    SEND_JOIN = "send_join"
    SEND_START = "send_start"
    SEND_STOP = "send_stop"
    START_MEDIA = "start_media"
    STOP_MEDIA = "stop_media"
    CLOSE_ALL = "close_all"

    def __str__(self) -> str:
        return self.value


class StartPreconditionError(AppError):
    """Go-live rejected before anything was sent."""

    def __init__(self, errcode: AppErrorCode, errmesg: str):
        super().__init__(errcode=errcode, errmesg=errmesg, status_code=HttpStatusCode.CONFLICT)


class ClientConnectionStatus(BaseModel):
    cloud: Literal["online", "offline"]
    relay: Literal["online", "offline"]
    stream: Literal["idle", "live"]


@dataclass(frozen=True)
class ConnectionState:
    cloud: CloudState = CloudState.IDLE
    relay: RelayLinkState = RelayLinkState.OFFLINE
    stream: StreamState = StreamState.NOT_LIVE
    # Discovery socket dropped; registration is kept while reconnecting
    cloud_link_lost: bool = False
    # Consecutive unavailable-id rotations since the last successful open
    rotations: int = 0
    error: AppErrorCode | None = None
    closed: bool = False

    @property
    def is_live(self) -> bool:
        return self.stream is StreamState.LIVE

    @property
    def cloud_online(self) -> bool:
        return self.cloud is CloudState.ONLINE and not self.cloud_link_lost

    @property
    def relay_online(self) -> bool:
        return self.relay is RelayLinkState.ONLINE

    def status(self) -> ClientConnectionStatus:
        return ClientConnectionStatus(
            cloud="online" if self.cloud_online else "offline",
            relay="online" if self.relay_online else "offline",
            stream="live" if self.is_live else "idle",
        )


@dataclass(frozen=True)
class TransitionResult:
    state: ConnectionState
    actions: tuple[ClientAction, ...] = ()


class ConnectionStateMachine:
    def __init__(self, max_room_rotations: int = 3):
        self.max_room_rotations = max_room_rotations

    def transition(
        self,
        state: ConnectionState,
        event: ClientEvent,
        *,
        stream_key: str | None = None,
    ) -> TransitionResult:
        """Apply one event.

        Raises:
            StartPreconditionError: START_REQUESTED while the studio cannot go live
        """
        if event is ClientEvent.START_REQUESTED:
            return self._start(state, stream_key)
        if state.closed:
            return TransitionResult(state)

        handler = getattr(self, f"_on_{event.value}")
        return handler(state)

    # ==================== DISCOVERY ====================

    def _on_mount(self, state: ConnectionState) -> TransitionResult:
        if state.cloud is not CloudState.IDLE:
            return TransitionResult(state)
        return TransitionResult(
            replace(state, cloud=CloudState.CONNECTING, cloud_link_lost=False),
            (ClientAction.OPEN_DISCOVERY,),
        )

    def _on_discovery_opened(self, state: ConnectionState) -> TransitionResult:
        if state.cloud is CloudState.OFFLINE:
            return TransitionResult(state)
        return TransitionResult(
            replace(state, cloud=CloudState.ONLINE, cloud_link_lost=False, rotations=0, error=None)
        )

    def _on_discovery_unavailable_id(self, state: ConnectionState) -> TransitionResult:
        if state.rotations >= self.max_room_rotations:
            return TransitionResult(
                replace(
                    state,
                    cloud=CloudState.OFFLINE,
                    error=AppErrorCode.E_ROOM_ROTATION_EXHAUSTED,
                ),
                (ClientAction.SURFACE_ERROR,),
            )
        return TransitionResult(
            replace(state, cloud=CloudState.IDLE, cloud_link_lost=False, rotations=state.rotations + 1),
            (ClientAction.ROTATE_ROOM,),
        )

    def _on_discovery_network_lost(self, state: ConnectionState) -> TransitionResult:
        if state.cloud is CloudState.OFFLINE:
            return TransitionResult(state)
        return TransitionResult(replace(state, cloud=CloudState.CONNECTING, cloud_link_lost=True))

    def _on_discovery_exhausted(self, state: ConnectionState) -> TransitionResult:
        return TransitionResult(
            replace(state, cloud=CloudState.OFFLINE, error=AppErrorCode.E_CLOUD_OFFLINE),
            (ClientAction.SURFACE_ERROR,),
        )

    # ==================== RELAY ====================

    def _on_relay_opened(self, state: ConnectionState) -> TransitionResult:
        return TransitionResult(replace(state, relay=RelayLinkState.ONLINE), (ClientAction.SEND_JOIN,))

    def _on_relay_closed(self, state: ConnectionState) -> TransitionResult:
        actions = [ClientAction.SCHEDULE_RELAY_RECONNECT]
        if state.is_live:
            actions.append(ClientAction.STOP_MEDIA)
        return TransitionResult(
            replace(state, relay=RelayLinkState.OFFLINE, stream=StreamState.NOT_LIVE),
            tuple(actions),
        )

    # ==================== STREAM ====================

    def _start(self, state: ConnectionState, stream_key: str | None) -> TransitionResult:
        if state.closed:
            raise StartPreconditionError(AppErrorCode.E_STUDIO_CLOSED, "Studio is closed.")
        if state.is_live:
            return TransitionResult(state)
        if not state.cloud_online:
            raise StartPreconditionError(
                AppErrorCode.E_CLOUD_OFFLINE, "Cloud is offline. Wait for the studio to reconnect."
            )
        if not state.relay_online:
            raise StartPreconditionError(
                AppErrorCode.E_RELAY_OFFLINE, "Relay server is offline. Check the relay and try again."
            )
        if not (stream_key or "").strip():
            raise StartPreconditionError(
                AppErrorCode.E_MISSING_STREAM_KEY, "Enter a stream key before going live."
            )
        return TransitionResult(
            replace(state, stream=StreamState.LIVE),
            (ClientAction.SEND_START, ClientAction.START_MEDIA),
        )

    def _on_stop_requested(self, state: ConnectionState) -> TransitionResult:
        if not state.is_live:
            return TransitionResult(state)
        return TransitionResult(
            replace(state, stream=StreamState.NOT_LIVE),
            (ClientAction.SEND_STOP, ClientAction.STOP_MEDIA),
        )

    def _on_transcoder_exited(self, state: ConnectionState) -> TransitionResult:
        if not state.is_live:
            return TransitionResult(state)
        return TransitionResult(replace(state, stream=StreamState.NOT_LIVE), (ClientAction.STOP_MEDIA,))

    def _on_teardown(self, state: ConnectionState) -> TransitionResult:
        actions = []
        if state.is_live:
            actions += [ClientAction.SEND_STOP, ClientAction.STOP_MEDIA]
        actions.append(ClientAction.CLOSE_ALL)
        return TransitionResult(
            ConnectionState(
                cloud=CloudState.OFFLINE,
                relay=RelayLinkState.OFFLINE,
                stream=StreamState.NOT_LIVE,
                rotations=state.rotations,
                error=state.error,
                closed=True,
            ),
            tuple(actions),
        )
