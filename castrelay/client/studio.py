"""Studio session orchestrator.

Feeds socket events into `ConnectionStateMachine` and runs the actions it
returns. The discovery channel and the relay socket reconnect on their own
schedules; neither tears the other down.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from loguru import logger
from websockets.exceptions import WebSocketException

from castrelay.app_config import ClientEnvironConfig, get_client_environ_config
from castrelay.domain.room import derive_identity, generate_room_code
from castrelay.schemas import DiscoveryErrorKind, RelayRole
from castrelay.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

from .connection_state import (
    ClientAction,
    ClientConnectionStatus,
    ClientEvent,
    ConnectionState,
    ConnectionStateMachine,
    StartPreconditionError,
)
from .discovery import DiscoveryChannelPool, MediaStream, PeerDiscoveryChannel
from .media import MediaSource
from .reconnect import ReconnectPolicy
from .relay_client import RelayClient, StreamHealth
from .room_store import RoomCodeStore

_DISCOVERY_ERROR_EVENTS = {
    DiscoveryErrorKind.UNAVAILABLE_ID: ClientEvent.DISCOVERY_UNAVAILABLE_ID,
    DiscoveryErrorKind.NETWORK: ClientEvent.DISCOVERY_NETWORK_LOST,
    DiscoveryErrorKind.CLOUD_OFFLINE: ClientEvent.DISCOVERY_EXHAUSTED,
}


class StudioSession:
    def __init__(
        self,
        cfg: ClientEnvironConfig | None = None,
        *,
        media_source: MediaSource | None = None,
        room_store: RoomCodeStore | None = None,
        channel_pool: DiscoveryChannelPool | None = None,
        relay: RelayClient | None = None,
        health_interval: float = 1.0,
    ):
        self.cfg = cfg or get_client_environ_config()
        self.media_source = media_source
        self.room_store = room_store or RoomCodeStore(self.cfg.ROOM_CODE_STORE_PATH)
        self.channel_pool = channel_pool or DiscoveryChannelPool()
        self.machine = ConnectionStateMachine(self.cfg.MAX_ROOM_ROTATIONS)
        self.state = ConnectionState()
        self.health_interval = health_interval
        self.health = StreamHealth()
        self.last_error: AppError | None = None
        self.incoming_streams: list[MediaStream] = []

        self.room_code = self.room_store.load() or generate_room_code()
        self.room_store.save(self.room_code)

        self.relay = relay or RelayClient(
            self.cfg.RELAY_WS_URL,
            token=self.cfg.RELAY_TOKEN,
            max_buffered_bytes=self.cfg.RELAY_MAX_BUFFERED_BYTES,
            reconnect_delay=self.cfg.RELAY_RECONNECT_DELAY_SECONDS,
            ping_interval=self.cfg.RELAY_PING_INTERVAL_SECONDS,
        )
        self.relay.on_open = self._on_relay_open
        self.relay.on_close = self._on_relay_close
        self.relay.on_event = self._on_relay_event

        self.discovery: PeerDiscoveryChannel | None = None
        self._stream_key: str | None = None
        self._destinations: list[str] | None = None
        self._pending_stream: AsyncIterator[bytes] | None = None
        self._media_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None

    @property
    def identity(self) -> str:
        return derive_identity(self.room_code, RelayRole.HOST)

    def status(self) -> ClientConnectionStatus:
        return self.state.status()

    # ==================== LIFECYCLE ====================

    async def start(self) -> None:
        """Register on the discovery channel and open the relay socket."""
        await self.dispatch(ClientEvent.MOUNT)
        if self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop(), name="studio-health")
        try:
            await self.relay.connect()
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning(f"Relay unreachable at {self.cfg.RELAY_WS_URL}: {e}")
            await self.dispatch(ClientEvent.RELAY_CLOSED)

    async def teardown(self) -> None:
        await self.dispatch(ClientEvent.TEARDOWN)

    async def start_live(self, stream_key: str, destinations: list[str] | None = None) -> None:
        """Go live.

        Raises:
            StartPreconditionError: cloud or relay offline, no stream key, or
                no media to send; nothing is sent in that case
        """
        # Dry run: the transition is pure, so preconditions are checked before any side effect
        self.machine.transition(self.state, ClientEvent.START_REQUESTED, stream_key=stream_key)
        if self.state.is_live:
            return

        stream = self.media_source.get_mixed_media_stream() if self.media_source else None
        if stream is None:
            raise StartPreconditionError(
                AppErrorCode.E_NO_MEDIA_STREAM, "No program output to stream. Add a source first."
            )

        self._stream_key = stream_key.strip()
        self._destinations = destinations
        self._pending_stream = stream
        await self.dispatch(ClientEvent.START_REQUESTED, stream_key=stream_key)

    async def stop_live(self) -> None:
        await self.dispatch(ClientEvent.STOP_REQUESTED)

    # ==================== STATE MACHINE ====================

    async def dispatch(self, event: ClientEvent, **kwargs: Any) -> ConnectionState:
        result = self.machine.transition(self.state, event, **kwargs)
        if result.state != self.state:
            logger.debug(f"Studio {event}: {self.state} -> {result.state}")
        self.state = result.state
        for action in result.actions:
            await self._run(action)
        return self.state

    async def _run(self, action: ClientAction) -> None:
        if action is ClientAction.OPEN_DISCOVERY:
            await self._open_discovery()
        elif action is ClientAction.ROTATE_ROOM:
            await self._rotate_room()
        elif action is ClientAction.SURFACE_ERROR:
            self._surface_error()
        elif action is ClientAction.SCHEDULE_RELAY_RECONNECT:
            self.relay.schedule_reconnect()
        elif action is ClientAction.SEND_JOIN:
            await self.relay.send_join(self.room_code, RelayRole.HOST)
        elif action is ClientAction.SEND_START:
            await self.relay.send_start(self._stream_key or "", self._destinations)
        elif action is ClientAction.SEND_STOP:
            await self.relay.send_stop()
        elif action is ClientAction.START_MEDIA:
            self._start_media()
        elif action is ClientAction.STOP_MEDIA:
            await self._stop_media()
        elif action is ClientAction.CLOSE_ALL:
            await self._close_all()

    # ==================== ACTIONS ====================

    async def _open_discovery(self) -> None:
        self.discovery = self.channel_pool.acquire(
            self.identity,
            self.cfg.discovery_server(),
            reconnect_policy=ReconnectPolicy.bounded(
                f"discovery[{self.identity}]",
                attempts=self.cfg.DISCOVERY_RECONNECT_ATTEMPTS,
                delay=self.cfg.DISCOVERY_RECONNECT_DELAY_SECONDS,
            ),
            on_open=self._on_discovery_open,
            on_error=self._on_discovery_error,
            on_incoming_call=self._on_incoming_call,
        )
        if self.discovery.opened:
            await self.dispatch(ClientEvent.DISCOVERY_OPENED)
            return
        await self.discovery.open()

    async def _rotate_room(self) -> None:
        old_code, old_identity = self.room_code, self.identity
        await self.channel_pool.release(old_identity)
        self.room_code = generate_room_code(exclude=old_code)
        self.room_store.save(self.room_code)
        logger.warning(f"Room {old_code} is taken, switched to {self.room_code}")
        await self.dispatch(ClientEvent.MOUNT)

    def _surface_error(self) -> None:
        errcode = self.state.error or AppErrorCode.E_INTERNAL_ERROR
        messages = {
            AppErrorCode.E_ROOM_ROTATION_EXHAUSTED: "Could not find a free room code. Try again later.",
            AppErrorCode.E_CLOUD_OFFLINE: "Cloud connection lost. Phones cannot join until it is back.",
        }
        self.last_error = AppError(
            errcode=errcode,
            errmesg=messages.get(errcode, "Studio connection error."),
            status_code=HttpStatusCode.SERVICE_UNAVAILABLE,
        )
        logger.error(f"{self.last_error.errcode}: {self.last_error.errmesg}")

    def _start_media(self) -> None:
        stream, self._pending_stream = self._pending_stream, None
        if stream is None:
            return
        self._media_task = asyncio.create_task(self._pump(stream), name="studio-media")

    async def _stop_media(self) -> None:
        task, self._media_task = self._media_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Media pump failed")

    async def _close_all(self) -> None:
        try:
            await self._stop_media()
        finally:
            if self._health_task is not None:
                self._health_task.cancel()
                self._health_task = None
            try:
                await self.relay.close()
            finally:
                await self.channel_pool.close_all()
                self.discovery = None
                logger.info(f"Studio {self.room_code} closed")

    async def _pump(self, stream: AsyncIterator[bytes]) -> None:
        try:
            async for chunk in stream:
                self.relay.send_media(chunk)
            logger.info("Media source ended")
        except Exception as e:
            logger.exception(f"Media source failed: {e}")
        if self._media_task is asyncio.current_task():
            await self.dispatch(ClientEvent.STOP_REQUESTED)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_interval)
            self.health = self.relay.sample_health()

    # ==================== CALLBACKS ====================

    async def _on_discovery_open(self, identity: str) -> None:
        if identity == self.identity:
            await self.dispatch(ClientEvent.DISCOVERY_OPENED)

    async def _on_discovery_error(self, kind: DiscoveryErrorKind) -> None:
        event = _DISCOVERY_ERROR_EVENTS.get(kind)
        if event is None:
            logger.warning(f"Discovery error {kind} ignored")
            return
        await self.dispatch(event)

    async def _on_incoming_call(self, stream: MediaStream) -> None:
        logger.info(f"Camera {stream.peer} connected with {len(stream.tracks)} track(s)")
        self.incoming_streams.append(stream)

    async def _on_relay_open(self) -> None:
        await self.dispatch(ClientEvent.RELAY_OPENED)

    async def _on_relay_close(self) -> None:
        if self.state.is_live:
            logger.warning("Relay lost while live, stream interrupted")
        await self.dispatch(ClientEvent.RELAY_CLOSED)

    async def _on_relay_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "started":
            logger.info("Relay streaming")
        elif event_type == "ffmpeg_closed":
            logger.warning(f"Relay transcoder exited (code={event.get('code')})")
            await self.dispatch(ClientEvent.TRANSCODER_EXITED)
        elif event_type == "stopped" and event.get("reason") != "requested":
            await self.dispatch(ClientEvent.TRANSCODER_EXITED)
        elif event_type == "ffmpeg_error":
            logger.warning(f"Relay transcoder: {event.get('message')}")
        elif event_type == "error":
            logger.error(f"Relay error: {event.get('error')}")
            if event.get("error") in ("no_destinations", "transcoder_spawn_failed", "unauthorized"):
                await self.dispatch(ClientEvent.TRANSCODER_EXITED)
        elif event_type in ("peer-joined", "peer-left"):
            logger.info(f"Relay {event_type}: {event.get('role')}")
