"""Rendezvous (peer discovery) wire schemas."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class DiscoveryServerConfig(BaseModel):
    """Where the rendezvous service lives."""

    host: str
    port: int
    secure: bool = False
    path: str = "/peerjs"
    key: str = "peerjs"

    def socket_url(self, identity: str, token: str) -> str:
        scheme = "wss" if self.secure else "ws"
        base = self.path.rstrip("/")
        return f"{scheme}://{self.host}:{self.port}{base}/peerjs?key={self.key}&id={identity}&token={token}"


class DiscoveryMessageType(str, Enum):
    """Message types exchanged with the rendezvous server."""

    OPEN = "OPEN"
    ID_TAKEN = "ID-TAKEN"
    INVALID_KEY = "INVALID-KEY"
    ERROR = "ERROR"
    HEARTBEAT = "HEARTBEAT"
    OFFER = "OFFER"
    ANSWER = "ANSWER"
    CANDIDATE = "CANDIDATE"
    LEAVE = "LEAVE"
    EXPIRE = "EXPIRE"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def routed(cls) -> set["DiscoveryMessageType"]:
        """Types forwarded from one registered peer to another."""
        return {cls.OFFER, cls.ANSWER, cls.CANDIDATE, cls.LEAVE}


class DiscoveryErrorKind(str, Enum):
    """Error kinds surfaced by the client discovery channel."""

    UNAVAILABLE_ID = "unavailable-id"
    NETWORK = "network"
    CLOUD_OFFLINE = "cloud-offline"
    PEER_UNAVAILABLE = "peer-unavailable"
    SERVER_ERROR = "server-error"

    def __str__(self) -> str:
        return self.value


class DiscoveryMessage(BaseModel):
    """One frame on the rendezvous socket."""

    model_config = ConfigDict(extra="allow")

    type: str
    src: str | None = None
    dst: str | None = None
    payload: dict[str, Any] | None = None
