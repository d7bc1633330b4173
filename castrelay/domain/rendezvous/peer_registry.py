"""Self-hosted rendezvous registry.

Each identity is held by at most one socket. Reconnecting with the token that
registered the identity resumes the registration on the new socket; any other
token gets ID-TAKEN. Messages carrying `dst` are forwarded with `src` stamped.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import orjson
from loguru import logger

from castrelay.schemas import DiscoveryMessage, DiscoveryMessageType


class PeerSocket(ABC):
    @abstractmethod
    async def send_message(self, message: dict[str, Any]) -> None: ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class RegisterResult(str, Enum):
    OPEN = "open"
    RESUMED = "resumed"
    ID_TAKEN = "id_taken"

    def __str__(self) -> str:
        return self.value


@dataclass(eq=False)
class PeerRegistration:
    identity: str
    token: str
    socket: PeerSocket
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PeerRegistry:
    def __init__(self) -> None:
        self._peers: dict[str, PeerRegistration] = {}

    def __contains__(self, identity: object) -> bool:
        return identity in self._peers

    def __len__(self) -> int:
        return len(self._peers)

    def identities(self) -> list[str]:
        return sorted(self._peers)

    def get(self, identity: str) -> PeerRegistration | None:
        return self._peers.get(identity)

    async def register(self, identity: str, token: str, socket: PeerSocket) -> RegisterResult:
        """Claim `identity` for `socket` and tell the socket the outcome.

        The socket is closed when the identity is held under another token.
        """
        current = self._peers.get(identity)
        if current is not None and current.token != token:
            logger.info(f"Rendezvous identity {identity} already taken")
            await socket.send_message(
                {"type": DiscoveryMessageType.ID_TAKEN.value, "payload": {"msg": "ID is taken"}}
            )
            await socket.close(1000, "id-taken")
            return RegisterResult.ID_TAKEN

        self._peers[identity] = PeerRegistration(identity=identity, token=token, socket=socket)
        await socket.send_message({"type": DiscoveryMessageType.OPEN.value})

        if current is None:
            logger.info(f"Rendezvous + {identity} ({len(self._peers)} registered)")
            return RegisterResult.OPEN

        logger.info(f"Rendezvous {identity} resumed on a new socket")
        if current.socket is not socket:
            try:
                await current.socket.close(1000, "resumed")
            except Exception as e:
                logger.debug(f"Rendezvous closing replaced socket for {identity} failed: {e}")
        return RegisterResult.RESUMED

    def unregister(self, identity: str, socket: PeerSocket) -> bool:
        """Release `identity` if `socket` still holds it."""
        current = self._peers.get(identity)
        if current is None or current.socket is not socket:
            return False
        del self._peers[identity]
        logger.info(f"Rendezvous - {identity} ({len(self._peers)} registered)")
        return True

    async def handle_text(self, identity: str, socket: PeerSocket, text: str) -> None:
        current = self._peers.get(identity)
        if current is None or current.socket is not socket:
            return

        try:
            message = DiscoveryMessage.model_validate(orjson.loads(text))
        except ValueError as e:
            logger.warning(f"Rendezvous {identity} sent malformed message: {e}")
            await socket.send_message(
                {"type": DiscoveryMessageType.ERROR.value, "payload": {"msg": "Invalid message"}}
            )
            return

        if message.type == DiscoveryMessageType.HEARTBEAT.value:
            return

        try:
            message_type = DiscoveryMessageType(message.type)
        except ValueError:
            logger.debug(f"Rendezvous {identity} sent unknown type {message.type!r}")
            return

        if message_type in DiscoveryMessageType.routed() and message.dst:
            await self.forward(identity, message)

    async def forward(self, src: str, message: DiscoveryMessage) -> bool:
        """Deliver a routed message to `message.dst`.

        Returns:
            False when the destination is not registered; the sender then
            receives EXPIRE
        """
        assert message.dst is not None
        outbound = message.model_dump(exclude_none=True)
        outbound["src"] = src

        target = self._peers.get(message.dst)
        if target is not None:
            try:
                await target.socket.send_message(outbound)
                return True
            except Exception as e:
                logger.warning(f"Rendezvous delivery {src} -> {message.dst} failed: {e}")

        sender = self._peers.get(src)
        if sender is not None and message.type != DiscoveryMessageType.LEAVE.value:
            await sender.socket.send_message(
                {"type": DiscoveryMessageType.EXPIRE.value, "src": message.dst, "dst": src}
            )
        return False
