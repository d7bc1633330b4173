"""In-process registry of relay sessions.

One `SessionRegistry` is built per server process and handed to connection
handlers. Socket-set changes are synchronous so that a session is created and
destroyed atomically with respect to the event loop; transcoder registration
is serialised by the per-session lock.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from castrelay.domain.transcode.transcoder import TranscoderHandle
from castrelay.schemas import RelayRole, RelaySessionState
from castrelay.schemas.relay_messages import _Message

from .session_state_machine import RelaySessionStateMachine


class RelayConnection(ABC):
    """One relay socket as seen by the session layer."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.role: RelayRole | None = None
        self.session_id: str | None = None

    @property
    def joined(self) -> bool:
        return self.session_id is not None

    @abstractmethod
    async def send_event(self, event: _Message) -> None: ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.connection_id}, role={self.role}, session={self.session_id})"


@dataclass
class ByteCounters:
    bytes_in: int = 0
    window_bytes: int = 0
    chunks_forwarded: int = 0
    chunks_dropped: int = 0

    def record(self, size: int) -> None:
        self.bytes_in += size
        self.window_bytes += size
        self.chunks_forwarded += 1

    def reset_window(self) -> None:
        self.window_bytes = 0

    def take_window(self) -> int:
        window, self.window_bytes = self.window_bytes, 0
        return window


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class RelaySession:
    session_id: str
    connections: dict[str, RelayConnection] = field(default_factory=dict)
    transcoder: TranscoderHandle | None = None
    # Connection that issued the running start-stream
    streamer_id: str | None = None
    counters: ByteCounters = field(default_factory=ByteCounters)
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    state: RelaySessionState = RelaySessionState.NO_SESSION

    def transition_to(self, new: RelaySessionState) -> None:
        RelaySessionStateMachine.validate(self.state, new)
        self.state = new

    def touch(self) -> None:
        self.last_activity_at = _utcnow()

    @property
    def is_empty(self) -> bool:
        return not self.connections

    @property
    def is_destroyed(self) -> bool:
        return self.state is RelaySessionState.EMPTY

    def others(self, exclude: RelayConnection | None = None) -> list[RelayConnection]:
        return [c for c in self.connections.values() if c is not exclude]

    def snapshot(self) -> dict[str, Any]:
        handle = self.transcoder
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "connections": [
                {"connection_id": c.connection_id, "role": str(c.role) if c.role else None}
                for c in self.connections.values()
            ],
            "transcoder": {
                "pid": handle.pid,
                "running": handle.running,
            }
            if handle
            else None,
            "bytes_in": self.counters.bytes_in,
            "chunks_forwarded": self.counters.chunks_forwarded,
            "chunks_dropped": self.counters.chunks_dropped,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
        }


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[str, RelaySession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str | None) -> RelaySession | None:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def sessions(self) -> list[RelaySession]:
        return list(self._sessions.values())

    def get_or_create(self, session_id: str) -> tuple[RelaySession, bool]:
        session = self._sessions.get(session_id)
        if session is not None:
            return session, False
        session = RelaySession(session_id=session_id)
        self._sessions[session_id] = session
        logger.info(f"Session [{session_id}] created")
        return session, True

    def add_connection(self, session_id: str, conn: RelayConnection) -> tuple[RelaySession, bool]:
        """Add a joined socket, creating the session on first join.

        Returns:
            (session, created)
        """
        session, created = self.get_or_create(session_id)
        session.connections[conn.connection_id] = conn
        if session.state is RelaySessionState.NO_SESSION:
            session.transition_to(RelaySessionState.JOINED)
        session.touch()
        conn.session_id = session_id
        logger.info(
            f"Session [{session_id}] + {conn.role} {conn.connection_id} "
            f"({len(session.connections)} connected)"
        )
        return session, created

    def remove_connection(self, conn: RelayConnection) -> RelaySession | None:
        """Drop a socket from its session.

        The caller destroys the session when the returned session is empty.
        """
        session = self.get(conn.session_id)
        if session is None or session.connections.pop(conn.connection_id, None) is None:
            return None
        session.touch()
        logger.info(
            f"Session [{session.session_id}] - {conn.role} {conn.connection_id} "
            f"({len(session.connections)} connected)"
        )
        return session

    def destroy(self, session: RelaySession) -> TranscoderHandle | None:
        """Remove the entry and hand back any transcoder still attached.

        The caller owns stopping the returned handle.
        """
        handle, session.transcoder = session.transcoder, None
        session.streamer_id = None
        if not session.is_destroyed:
            session.transition_to(RelaySessionState.EMPTY)
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
        logger.info(f"Session [{session.session_id}] destroyed (bytes_in={session.counters.bytes_in})")
        return handle

    def snapshot(self) -> list[dict[str, Any]]:
        return [session.snapshot() for session in self._sessions.values()]
