from .relay_service import CLOSE_POLICY_VIOLATION, RelayService
from .session_registry import ByteCounters, RelayConnection, RelaySession, SessionRegistry
from .session_state_machine import RelaySessionStateMachine

__all__ = [
    "CLOSE_POLICY_VIOLATION",
    "ByteCounters",
    "RelayConnection",
    "RelayService",
    "RelaySession",
    "RelaySessionStateMachine",
    "SessionRegistry",
]
