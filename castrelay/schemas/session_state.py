"""Common enums used across schemas."""

from enum import Enum


class RelaySessionState(str, Enum):
    """Relay session lifecycle states.

    State Transition Flow:

    NO_SESSION → JOINED → STREAMING → JOINED → EMPTY
                   ↓          ↓
                 EMPTY      EMPTY

    State Descriptions:
    - NO_SESSION: No registry entry exists for the session id.
    - JOINED: At least one socket joined, no transcoder running.
    - STREAMING: A transcoder process is registered for the session.
    - EMPTY: Last socket left, entry destroyed. Terminal.
    """

    NO_SESSION = "no_session"
    JOINED = "joined"
    STREAMING = "streaming"
    EMPTY = "empty"

    def __str__(self) -> str:
        return self.value


__all__ = ["RelaySessionState"]
