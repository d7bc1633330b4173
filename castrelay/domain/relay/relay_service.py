"""Relay message handling.

`RelayService` turns socket events (text frame, binary frame, close) into
registry and transcoder operations. A failure while handling one message is
reported to that socket only; other sessions are never touched.
"""

from __future__ import annotations

import asyncio
import hmac

from loguru import logger

from castrelay.domain.transcode import FeedResult, TranscodeSupervisor, TranscoderHandle
from castrelay.schemas import RelayErrorReason, RelayRole
from castrelay.schemas.relay_messages import (
    ConnectedEvent,
    ErrorEvent,
    FfmpegClosedEvent,
    FfmpegErrorEvent,
    JoinMessage,
    MalformedMessageError,
    PeerJoinedEvent,
    PeerLeftEvent,
    PingMessage,
    PongEvent,
    SignalMessage,
    StartedEvent,
    StartStreamMessage,
    StopStreamMessage,
    StoppedEvent,
    _Message,
    parse_control_message,
)
from castrelay.utils.app_errors import AppError

from .session_registry import RelayConnection, RelaySession, SessionRegistry

# RFC 6455 policy violation
CLOSE_POLICY_VIOLATION = 1008


class RelayService:
    def __init__(
        self,
        registry: SessionRegistry,
        supervisor: TranscodeSupervisor,
        *,
        token: str | None = None,
        bytes_log_interval: float = 2.0,
    ):
        self.registry = registry
        self.supervisor = supervisor
        self.token = token
        self.bytes_log_interval = bytes_log_interval
        self._bytes_log_task: asyncio.Task | None = None

    # ==================== SOCKET EVENTS ====================

    async def handle_text(self, conn: RelayConnection, text: str) -> None:
        try:
            message = parse_control_message(text)
        except MalformedMessageError as e:
            logger.warning(f"Relay {conn.connection_id} sent malformed message ({e.reason}): {e.detail}")
            await self._send(conn, ErrorEvent(error=e.reason))
            return

        if message is None:
            logger.debug(f"Relay {conn.connection_id} ignoring unknown message type")
            return

        try:
            if isinstance(message, JoinMessage):
                await self._on_join(conn, message)
            elif isinstance(message, StartStreamMessage):
                await self._on_start_stream(conn, message)
            elif isinstance(message, StopStreamMessage):
                await self._on_stop_stream(conn)
            elif isinstance(message, PingMessage):
                await self._send(conn, PongEvent(echo=message.t))
            elif isinstance(message, SignalMessage):
                await self._on_signal(conn, message)
        except Exception as e:
            logger.exception(f"Relay {conn.connection_id} failed handling {message.type}: {e}")
            await self._send(conn, ErrorEvent(error=RelayErrorReason.RELAY_EXCEPTION))

    def handle_binary(self, conn: RelayConnection, chunk: bytes) -> FeedResult:
        """Forward one media chunk to the session's transcoder.

        Only the socket that started the stream feeds the transcoder; chunks
        from any other socket, or while nothing runs, are dropped without a
        reply.
        """
        if conn.role is not RelayRole.HOST:
            return FeedResult.DROPPED
        session = self.registry.get(conn.session_id)
        if session is None:
            return FeedResult.DROPPED
        session.touch()
        if session.transcoder is None or session.streamer_id != conn.connection_id:
            return FeedResult.DROPPED
        return self.supervisor.feed(session, chunk)

    async def disconnect(self, conn: RelayConnection) -> None:
        session = self.registry.remove_connection(conn)
        if session is None:
            return

        if session.is_empty:
            handle = self.registry.destroy(session)
            if handle is not None:
                await handle.stop()
            return

        if session.streamer_id == conn.connection_id:
            async with session.lock:
                if session.streamer_id == conn.connection_id:
                    code = await self.supervisor.stop(session)
                    await self.broadcast(session, StoppedEvent(code=code, reason="host_disconnected"))

        await self.broadcast(session, PeerLeftEvent(role=conn.role))

    # ==================== CONTROL MESSAGES ====================

    async def _on_join(self, conn: RelayConnection, message: JoinMessage) -> None:
        if not self._authorized(message.token):
            await self._reject(conn)
            return

        if conn.joined and conn.session_id != message.session_id:
            await self.disconnect(conn)
            conn.session_id = None

        conn.role = message.role
        session, _ = self.registry.add_connection(message.session_id, conn)
        await self.broadcast(session, PeerJoinedEvent(role=message.role), exclude=conn)
        await self._send(conn, ConnectedEvent(role=message.role, session_id=message.session_id))

    async def _on_start_stream(self, conn: RelayConnection, message: StartStreamMessage) -> None:
        if not self._authorized(message.token):
            await self._reject(conn)
            return

        session = self.registry.get(conn.session_id)
        if session is None:
            await self._send(conn, ErrorEvent(error=RelayErrorReason.NOT_JOINED))
            return
        if conn.role is not RelayRole.HOST:
            logger.info(f"Session [{session.session_id}] ignoring start-stream from {conn.role}")
            return

        async with session.lock:
            if session.transcoder is not None:
                await self._send(conn, StartedEvent())
                return

            targets = self.supervisor.targets_for(message.stream_key, message.destinations)
            if targets.is_empty:
                logger.warning(f"Session [{session.session_id}] start-stream without destinations")
                await self._send(conn, ErrorEvent(error=RelayErrorReason.NO_DESTINATIONS))
                return

            try:
                started = await self.supervisor.start(
                    session,
                    targets,
                    on_exit=self._exit_callback(session),
                    on_error_line=self._error_line_callback(session),
                )
            except AppError as e:
                logger.error(f"Session [{session.session_id}] {e.errcode}: {e.errmesg}")
                await self._send(conn, ErrorEvent(error=RelayErrorReason.TRANSCODER_SPAWN_FAILED))
                return

            if started:
                session.streamer_id = conn.connection_id
                await self._send(conn, StartedEvent())

    async def _on_stop_stream(self, conn: RelayConnection) -> None:
        session = self.registry.get(conn.session_id)
        if session is None or conn.role is not RelayRole.HOST:
            return
        async with session.lock:
            code = await self.supervisor.stop(session)
        await self._send(conn, StoppedEvent(code=code, reason="requested"))

    async def _on_signal(self, conn: RelayConnection, message: SignalMessage) -> None:
        session = self.registry.get(conn.session_id)
        if session is None:
            await self._send(conn, ErrorEvent(error=RelayErrorReason.NOT_JOINED))
            return
        await self.broadcast(session, message, exclude=conn)

    # ==================== TRANSCODER CALLBACKS ====================

    def _exit_callback(self, session: RelaySession):
        async def on_exit(handle: TranscoderHandle, code: int | None) -> None:
            if handle.stop_requested or session.transcoder is not handle:
                return
            self.supervisor.detach(session)
            logger.warning(f"Session [{session.session_id}] transcoder exited on its own (code={code})")
            await self.broadcast(session, FfmpegClosedEvent(code=code))

        return on_exit

    def _error_line_callback(self, session: RelaySession):
        async def on_error_line(handle: TranscoderHandle, line: str) -> None:
            if session.transcoder is handle:
                await self.broadcast(session, FfmpegErrorEvent(message=line))

        return on_error_line

    # ==================== HELPERS ====================

    def _authorized(self, token: str | None) -> bool:
        if not self.token:
            return True
        return hmac.compare_digest((token or "").encode(), self.token.encode())

    async def _reject(self, conn: RelayConnection) -> None:
        logger.warning(f"Relay {conn.connection_id} unauthorized, closing")
        await self._send(conn, ErrorEvent(error=RelayErrorReason.UNAUTHORIZED))
        await conn.close(CLOSE_POLICY_VIOLATION, "unauthorized")

    async def _send(self, conn: RelayConnection, event: _Message) -> None:
        try:
            await conn.send_event(event)
        except Exception as e:
            logger.debug(f"Relay {conn.connection_id} send failed: {e}")

    async def broadcast(
        self,
        session: RelaySession,
        event: _Message,
        *,
        exclude: RelayConnection | None = None,
    ) -> None:
        for conn in session.others(exclude):
            await self._send(conn, event)

    # ==================== LIFECYCLE ====================

    def start_background_tasks(self) -> None:
        if self._bytes_log_task is None:
            self._bytes_log_task = asyncio.create_task(self._log_bytes(), name="relay-bytes-log")

    async def _log_bytes(self) -> None:
        while True:
            await asyncio.sleep(self.bytes_log_interval)
            for session in self.registry.sessions():
                if session.transcoder is None:
                    continue
                window = session.counters.take_window()
                logger.info(
                    f"Session [{session.session_id}] {window} bytes in last "
                    f"{self.bytes_log_interval:g}s (total={session.counters.bytes_in}, "
                    f"dropped={session.counters.chunks_dropped})"
                )

    async def shutdown(self) -> None:
        """Stop every running transcoder and cancel background tasks."""
        if self._bytes_log_task is not None:
            self._bytes_log_task.cancel()
            try:
                await self._bytes_log_task
            except asyncio.CancelledError:
                pass
            self._bytes_log_task = None

        handles = []
        for session in self.registry.sessions():
            handle = self.registry.destroy(session)
            if handle is not None:
                handles.append(handle.stop())
        if handles:
            logger.info(f"Stopping {len(handles)} transcoder(s) on shutdown")
            await asyncio.gather(*handles, return_exceptions=True)
