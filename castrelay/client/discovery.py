"""Peer discovery channel.

Registers one identity with a PeerJS-compatible rendezvous server and uses it
to exchange WebRTC offers and answers (aiortc) with phones joining the room.

The rendezvous socket is independent of the relay socket. A dropped socket is
reported as a `network` error and reopened with the same identity and token,
which resumes the registration; an `unavailable-id` answer is final for the
identity.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import orjson
from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from loguru import logger
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from castrelay.domain.utils.idgen import new_call_id, new_peer_token
from castrelay.schemas import DiscoveryErrorKind, DiscoveryMessageType, DiscoveryServerConfig

from .reconnect import ReconnectExhausted, ReconnectPolicy

OpenHandler = Callable[[str], Awaitable[None]]
ErrorHandler = Callable[[DiscoveryErrorKind], Awaitable[None]]
CallHandler = Callable[["MediaStream"], Awaitable[None]]


class DiscoveryError(Exception):
    def __init__(self, kind: DiscoveryErrorKind, message: str = ""):
        super().__init__(message or str(kind))
        self.kind = kind


@dataclass
class MediaStream:
    """Remote tracks received on one call."""

    peer: str
    tracks: list[MediaStreamTrack] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(eq=False)
class MediaConnection:
    peer: str
    connection_id: str
    pc: RTCPeerConnection
    metadata: dict[str, Any] = field(default_factory=dict)

    async def close(self) -> None:
        await self.pc.close()


class PeerDiscoveryChannel:
    def __init__(
        self,
        identity: str,
        server: DiscoveryServerConfig,
        *,
        token: str | None = None,
        reconnect_policy: ReconnectPolicy | None = None,
        heartbeat_interval: float = 5.0,
        call_timeout: float = 15.0,
        peer_connection_factory: Callable[[], RTCPeerConnection] = RTCPeerConnection,
        on_open: OpenHandler | None = None,
        on_error: ErrorHandler | None = None,
        on_incoming_call: CallHandler | None = None,
    ):
        self.identity = identity
        self.server = server
        self.token = token or new_peer_token()
        self.reconnect_policy = reconnect_policy or ReconnectPolicy.bounded(
            f"discovery[{identity}]", attempts=5, delay=3.0
        )
        self.heartbeat_interval = heartbeat_interval
        self.call_timeout = call_timeout
        self.peer_connection_factory = peer_connection_factory
        self.on_open = on_open
        self.on_error = on_error
        self.on_incoming_call = on_incoming_call

        self._ws: ClientConnection | None = None
        self._tasks: set[asyncio.Task] = set()
        self._reconnect_task: asyncio.Task | None = None
        self._connections: dict[str, MediaConnection] = {}
        self._pending_answers: dict[str, asyncio.Future] = {}
        self.opened = False
        self.destroyed = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # ==================== REGISTRATION ====================

    async def open(self) -> bool:
        """Register the identity.

        Returns:
            True once the server confirmed the identity. False when it was
            rejected, or when the first attempt failed and reconnection has
            been scheduled.
        """
        if self.destroyed:
            raise DiscoveryError(DiscoveryErrorKind.SERVER_ERROR, "channel is closed")
        try:
            await self._register()
        except DiscoveryError as e:
            await self._emit_error(e.kind)
            if e.kind is DiscoveryErrorKind.NETWORK:
                self._schedule_reconnect()
            else:
                await self.close()
            return False
        return True

    async def _register(self) -> None:
        await self._open_socket()
        if self.on_open is not None:
            await self.on_open(self.identity)

    async def _open_socket(self) -> None:
        url = self.server.socket_url(self.identity, self.token)
        try:
            ws = await connect(url, max_size=None)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise DiscoveryError(DiscoveryErrorKind.NETWORK, str(e)) from e

        try:
            first = orjson.loads(await ws.recv())
        except (ConnectionClosed, orjson.JSONDecodeError) as e:
            await ws.close()
            raise DiscoveryError(DiscoveryErrorKind.NETWORK, str(e)) from e

        message_type = first.get("type") if isinstance(first, dict) else None
        if message_type == DiscoveryMessageType.ID_TAKEN.value:
            await ws.close()
            logger.warning(f"Discovery identity {self.identity} is taken")
            raise DiscoveryError(DiscoveryErrorKind.UNAVAILABLE_ID)
        if message_type != DiscoveryMessageType.OPEN.value:
            await ws.close()
            raise DiscoveryError(DiscoveryErrorKind.SERVER_ERROR, f"unexpected first message {first!r}")

        self._ws = ws
        self.opened = True
        logger.info(f"Discovery open as {self.identity}")
        self._spawn(self._read_loop(ws), "discovery-reader")
        self._spawn(self._heartbeat_loop(ws), "discovery-heartbeat")

    def _schedule_reconnect(self) -> None:
        if self.destroyed or (self._reconnect_task is not None and not self._reconnect_task.done()):
            return
        self._reconnect_task = asyncio.create_task(self._reconnect(), name="discovery-reconnect")

    async def _reconnect(self) -> None:
        try:
            await self.reconnect_policy.run(self._register_retrying, retry_on=(ConnectionError,))
        except ReconnectExhausted:
            await self._emit_error(DiscoveryErrorKind.CLOUD_OFFLINE)
            return
        except DiscoveryError as e:
            # Identity lost to someone else while we were away
            await self._emit_error(e.kind)
            await self.close()
            return
        # Released before on_open so a drop during it can schedule the next attempt
        self._reconnect_task = None
        if self.on_open is not None:
            await self.on_open(self.identity)

    async def _register_retrying(self) -> None:
        try:
            await self._open_socket()
        except DiscoveryError as e:
            if e.kind is DiscoveryErrorKind.NETWORK:
                raise ConnectionError(str(e)) from e
            raise

    async def close(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        self.opened = False
        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        for future in self._pending_answers.values():
            if not future.done():
                future.cancel()
        self._pending_answers.clear()
        for conn in list(self._connections.values()):
            await conn.close()
        self._connections.clear()
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        logger.info(f"Discovery channel {self.identity} closed")

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _emit_error(self, kind: DiscoveryErrorKind) -> None:
        logger.warning(f"Discovery {self.identity} error: {kind}")
        if self.on_error is not None:
            await self.on_error(kind)

    async def _send(self, message: dict[str, Any]) -> None:
        if self._ws is None:
            raise DiscoveryError(DiscoveryErrorKind.NETWORK, "discovery socket is not open")
        await self._ws.send(orjson.dumps(message).decode())

    async def _heartbeat_loop(self, ws: ClientConnection) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await ws.send(orjson.dumps({"type": DiscoveryMessageType.HEARTBEAT.value}).decode())
            except ConnectionClosed:
                return

    async def _read_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                try:
                    message = orjson.loads(raw)
                except orjson.JSONDecodeError:
                    logger.warning(f"Discovery server sent invalid JSON: {raw[:120]!r}")
                    continue
                if isinstance(message, dict):
                    await self._dispatch(message)
        except ConnectionClosed:
            pass
        finally:
            await self._socket_lost(ws)

    async def _socket_lost(self, ws: ClientConnection) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self.opened = False
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if self.destroyed:
            return
        await self._emit_error(DiscoveryErrorKind.NETWORK)
        self._schedule_reconnect()

    # ==================== SIGNALING ====================

    async def _dispatch(self, message: dict[str, Any]) -> None:
        message_type = message.get("type")
        src = message.get("src")
        payload = message.get("payload") or {}

        try:
            if message_type == DiscoveryMessageType.OFFER.value and src:
                await self._answer(src, payload)
            elif message_type == DiscoveryMessageType.ANSWER.value:
                future = self._pending_answers.get(payload.get("connectionId", ""))
                if future is not None and not future.done():
                    future.set_result(payload.get("sdp") or {})
            elif message_type == DiscoveryMessageType.CANDIDATE.value:
                await self._add_candidate(payload)
            elif message_type == DiscoveryMessageType.EXPIRE.value:
                self._fail_calls_to(src)
            elif message_type == DiscoveryMessageType.LEAVE.value and src:
                await self._drop_peer(src)
            elif message_type in (DiscoveryMessageType.ERROR.value, DiscoveryMessageType.INVALID_KEY.value):
                logger.error(f"Discovery server error: {payload}")
                await self._emit_error(DiscoveryErrorKind.SERVER_ERROR)
        except Exception as e:
            logger.exception(f"Discovery failed handling {message_type} from {src}: {e}")

    async def call(
        self,
        destination: str,
        tracks: list[MediaStreamTrack],
        metadata: dict[str, Any] | None = None,
    ) -> MediaConnection:
        """Offer our tracks to `destination` and wait for its answer.

        Raises:
            DiscoveryError: socket closed, destination not registered, or no
                answer within `call_timeout`
        """
        connection_id = new_call_id()
        pc = self.peer_connection_factory()
        for track in tracks:
            pc.addTrack(track)
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)

        conn = MediaConnection(destination, connection_id, pc, metadata or {})
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_answers[connection_id] = future
        self._connections[connection_id] = conn

        try:
            await self._send(
                {
                    "type": DiscoveryMessageType.OFFER.value,
                    "dst": destination,
                    "payload": {
                        "sdp": {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp},
                        "type": "media",
                        "connectionId": connection_id,
                        "metadata": metadata or {},
                    },
                }
            )
            answer = await asyncio.wait_for(future, timeout=self.call_timeout)
        except (asyncio.TimeoutError, ConnectionClosed) as e:
            await self._forget(connection_id)
            raise DiscoveryError(DiscoveryErrorKind.PEER_UNAVAILABLE, f"no answer from {destination}") from e
        except DiscoveryError:
            await self._forget(connection_id)
            raise
        finally:
            self._pending_answers.pop(connection_id, None)

        await pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer.get("type", "answer")))
        logger.info(f"Discovery call {connection_id} to {destination} connected")
        return conn

    async def _answer(self, src: str, payload: dict[str, Any]) -> None:
        connection_id = payload.get("connectionId") or new_call_id()
        offer = payload.get("sdp") or {}
        metadata = payload.get("metadata") or {}

        pc = self.peer_connection_factory()
        stream = MediaStream(peer=src, metadata=metadata)

        @pc.on("track")
        def on_track(track):
            stream.tracks.append(track)

        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer.get("type", "offer")))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)

        self._connections[connection_id] = MediaConnection(src, connection_id, pc, metadata)
        await self._send(
            {
                "type": DiscoveryMessageType.ANSWER.value,
                "dst": src,
                "payload": {
                    "sdp": {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp},
                    "type": "media",
                    "connectionId": connection_id,
                },
            }
        )
        logger.info(f"Discovery answered call {connection_id} from {src} ({len(stream.tracks)} track(s))")
        if self.on_incoming_call is not None:
            await self.on_incoming_call(stream)

    async def _add_candidate(self, payload: dict[str, Any]) -> None:
        conn = self._connections.get(payload.get("connectionId", ""))
        raw = payload.get("candidate") or {}
        if conn is None or not raw.get("candidate"):
            return
        candidate = candidate_from_sdp(raw["candidate"].split(":", 1)[-1])
        candidate.sdpMid = raw.get("sdpMid")
        candidate.sdpMLineIndex = raw.get("sdpMLineIndex")
        await conn.pc.addIceCandidate(candidate)

    def _fail_calls_to(self, peer: str | None) -> None:
        for connection_id, future in list(self._pending_answers.items()):
            conn = self._connections.get(connection_id)
            if conn is not None and conn.peer == peer and not future.done():
                future.set_exception(
                    DiscoveryError(DiscoveryErrorKind.PEER_UNAVAILABLE, f"{peer} is not registered")
                )

    async def _drop_peer(self, peer: str) -> None:
        for connection_id, conn in list(self._connections.items()):
            if conn.peer == peer:
                await self._forget(connection_id)

    async def _forget(self, connection_id: str) -> None:
        conn = self._connections.pop(connection_id, None)
        if conn is not None:
            await conn.close()


class DiscoveryChannelPool:
    """Keeps one live channel per identity so a re-render never registers twice."""

    def __init__(self) -> None:
        self._channels: dict[str, PeerDiscoveryChannel] = {}

    def acquire(self, identity: str, server: DiscoveryServerConfig, **kwargs) -> PeerDiscoveryChannel:
        channel = self._channels.get(identity)
        if channel is not None and not channel.destroyed:
            return channel
        channel = PeerDiscoveryChannel(identity, server, **kwargs)
        self._channels[identity] = channel
        return channel

    async def release(self, identity: str) -> None:
        channel = self._channels.pop(identity, None)
        if channel is not None:
            await channel.close()

    async def close_all(self) -> None:
        for identity in list(self._channels):
            await self.release(identity)
