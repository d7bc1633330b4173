"""Pydantic schemas and enums shared by the relay server and the studio client."""

from .discovery import (
    DiscoveryErrorKind,
    DiscoveryMessage,
    DiscoveryMessageType,
    DiscoveryServerConfig,
)
from .relay_messages import RelayErrorReason, RelayEventType, RelayRole
from .session_state import RelaySessionState

__all__ = [
    "DiscoveryErrorKind",
    "DiscoveryMessage",
    "DiscoveryMessageType",
    "DiscoveryServerConfig",
    "RelayErrorReason",
    "RelayEventType",
    "RelayRole",
    "RelaySessionState",
]
