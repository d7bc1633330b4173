"""Studio side of the relay socket.

One WebSocket carries JSON control messages and binary media chunks. Media goes
through a byte-bounded outbound queue: when the queue plus the socket's own
write buffer would exceed `max_buffered_bytes`, the new chunk is dropped and
counted rather than queued.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
import orjson
from loguru import logger
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from castrelay.schemas import RelayRole
from castrelay.schemas.relay_messages import (
    JoinMessage,
    PingMessage,
    StartStreamMessage,
    StopStreamMessage,
    _Message,
)

from .reconnect import ReconnectPolicy

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]
Notify = Callable[[], Awaitable[None]]


def _now_ms() -> float:
    return time.time() * 1000


def relay_http_base(ws_url: str) -> str:
    """ws://host:8080/ws -> http://host:8080, wss -> https."""
    base = ws_url.strip().rstrip("/")
    lowered = base.lower()
    if lowered.startswith("wss://"):
        base = "https://" + base[6:]
    elif lowered.startswith("ws://"):
        base = "http://" + base[5:]
    if base.endswith("/ws"):
        base = base[:-3]
    return base.rstrip("/")


async def check_relay_health(ws_url: str, timeout: float = 1.5) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(f"{relay_http_base(ws_url)}/health")
        response.raise_for_status()
        return response.json()


async def check_ffmpeg(ws_url: str, timeout: float = 2.0) -> str:
    """Ask the relay whether its transcoder binary runs.

    Returns:
        The ffmpeg version line

    Raises:
        httpx.HTTPError: relay unreachable or ffmpeg unavailable
    """
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(f"{relay_http_base(ws_url)}/ffmpeg")
        response.raise_for_status()
        return response.json().get("results", {}).get("version") or "available"


@dataclass
class StreamHealth:
    kbps: float = 0.0
    drops: int = 0
    queue_kb: float = 0.0
    rtt_ms: float | None = None


class RelayClient:
    def __init__(
        self,
        ws_url: str,
        *,
        token: str | None = None,
        max_buffered_bytes: int = 256 * 1024,
        reconnect_delay: float = 1.5,
        ping_interval: float = 5.0,
        on_open: Notify | None = None,
        on_close: Notify | None = None,
        on_event: EventHandler | None = None,
    ):
        self.ws_url = ws_url
        self.token = token
        self.max_buffered_bytes = max_buffered_bytes
        self.ping_interval = ping_interval
        self.on_open = on_open
        self.on_close = on_close
        self.on_event = on_event
        self.reconnect_policy = ReconnectPolicy.unbounded("relay", delay=reconnect_delay)

        self._ws: ClientConnection | None = None
        self._outbound: asyncio.Queue[bytes] = asyncio.Queue()
        self._queued_bytes = 0
        self._tasks: set[asyncio.Task] = set()
        self._reconnect_task: asyncio.Task | None = None
        self._closed = False

        self.bytes_sent = 0
        self.chunks_sent = 0
        self.chunks_dropped = 0
        self.rtt_ms: float | None = None
        self._last_sample_at = time.monotonic()
        self._last_sample_bytes = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def buffered_amount(self) -> int:
        """Bytes accepted for sending but not yet handed to the network."""
        transport_buffer = 0
        if self._ws is not None and self._ws.transport is not None:
            transport_buffer = self._ws.transport.get_write_buffer_size()
        return self._queued_bytes + transport_buffer

    # ==================== CONNECTION ====================

    async def connect(self) -> None:
        await self._open_socket()
        if self.on_open is not None:
            await self.on_open()

    async def _open_socket(self) -> None:
        if self._closed:
            raise RuntimeError("relay client is closed")
        ws = await connect(self.ws_url, max_size=None)
        self._ws = ws
        logger.info(f"Relay connected: {self.ws_url}")
        self._spawn(self._read_loop(ws), "relay-reader")
        self._spawn(self._send_loop(ws), "relay-sender")
        self._spawn(self._ping_loop(ws), "relay-ping")

    def schedule_reconnect(self) -> None:
        if self._closed or (self._reconnect_task is not None and not self._reconnect_task.done()):
            return
        self._reconnect_task = asyncio.create_task(self._reconnect(), name="relay-reconnect")

    async def _reconnect(self) -> None:
        await self.reconnect_policy.run(
            self._open_socket, retry_on=(OSError, asyncio.TimeoutError, WebSocketException)
        )
        # Released before on_open so a drop during it can schedule the next attempt
        self._reconnect_task = None
        if self.on_open is not None:
            await self.on_open()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
        for task in list(self._tasks):
            task.cancel()
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        self._drain_queue()
        logger.info("Relay client closed")

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _lost(self, ws: ClientConnection) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._drain_queue()
        self.rtt_ms = None
        logger.warning(f"Relay connection lost (code={ws.close_code})")
        if not self._closed and self.on_close is not None:
            await self.on_close()

    async def _read_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    event = orjson.loads(raw)
                except orjson.JSONDecodeError:
                    logger.warning(f"Relay sent invalid JSON: {raw[:120]!r}")
                    continue
                if not isinstance(event, dict):
                    continue
                if event.get("type") == "pong" and event.get("echo"):
                    self.rtt_ms = _now_ms() - float(event["echo"])
                    continue
                if self.on_event is not None:
                    await self.on_event(event)
        except ConnectionClosed:
            pass
        finally:
            await self._lost(ws)

    async def _send_loop(self, ws: ClientConnection) -> None:
        while True:
            chunk = await self._outbound.get()
            self._queued_bytes -= len(chunk)
            try:
                await ws.send(chunk)
            except ConnectionClosed:
                return
            self.bytes_sent += len(chunk)
            self.chunks_sent += 1

    async def _ping_loop(self, ws: ClientConnection) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await ws.send(PingMessage(t=_now_ms()).to_text())
            except ConnectionClosed:
                return

    def _drain_queue(self) -> None:
        while not self._outbound.empty():
            self._outbound.get_nowait()
        self._queued_bytes = 0

    # ==================== MESSAGES ====================

    async def send_control(self, message: _Message) -> bool:
        ws = self._ws
        if ws is None:
            logger.warning(f"Relay offline, not sending {message.to_wire().get('type')}")
            return False
        try:
            await ws.send(message.to_text())
        except (ConnectionClosed, WebSocketException) as e:
            logger.warning(f"Relay send failed: {e}")
            return False
        return True

    async def send_join(self, session_id: str, role: RelayRole = RelayRole.HOST) -> bool:
        return await self.send_control(JoinMessage(role=role, session_id=session_id, token=self.token))

    async def send_start(self, stream_key: str, destinations: list[str] | None = None) -> bool:
        return await self.send_control(
            StartStreamMessage(stream_key=stream_key, destinations=destinations or None, token=self.token)
        )

    async def send_stop(self) -> bool:
        return await self.send_control(StopStreamMessage())

    def send_media(self, chunk: bytes) -> bool:
        """Queue a media chunk. Returns False when it was dropped."""
        if self._ws is None or not chunk:
            self.chunks_dropped += 1
            return False
        if self.buffered_amount + len(chunk) > self.max_buffered_bytes:
            self.chunks_dropped += 1
            return False
        self._outbound.put_nowait(chunk)
        self._queued_bytes += len(chunk)
        return True

    def sample_health(self) -> StreamHealth:
        """Throughput since the previous sample plus current counters."""
        now = time.monotonic()
        elapsed = max(now - self._last_sample_at, 1e-6)
        kbps = (self.bytes_sent - self._last_sample_bytes) * 8 / 1000 / elapsed
        self._last_sample_at = now
        self._last_sample_bytes = self.bytes_sent
        return StreamHealth(
            kbps=round(kbps, 1),
            drops=self.chunks_dropped,
            queue_kb=round(self.buffered_amount / 1024, 1),
            rtt_ms=round(self.rtt_ms, 1) if self.rtt_ms is not None else None,
        )
