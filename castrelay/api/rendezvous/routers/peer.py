"""PeerJS-compatible rendezvous endpoints."""

from typing import Any

import orjson
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from loguru import logger

from castrelay.api.dependency import get_peer_registry
from castrelay.app_config import get_app_environ_config
from castrelay.domain.rendezvous import PeerRegistry, PeerSocket, RegisterResult
from castrelay.domain.utils.idgen import new_ulid
from castrelay.schemas import DiscoveryMessageType
from castrelay.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

router = APIRouter(prefix="/peerjs")


class WebSocketPeerSocket(PeerSocket):
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.closed = False

    async def send_message(self, message: dict[str, Any]) -> None:
        if not self.closed:
            await self.websocket.send_text(orjson.dumps(message).decode())

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            logger.debug(f"Rendezvous socket already closed: {e}")


@router.websocket("/peerjs")
async def peer_socket(
    websocket: WebSocket,
    id: str | None = Query(default=None),
    token: str | None = Query(default=None),
    registry: PeerRegistry = Depends(get_peer_registry),
):
    await websocket.accept()
    socket = WebSocketPeerSocket(websocket)

    if not id or not token:
        await socket.send_message(
            {"type": DiscoveryMessageType.ERROR.value, "payload": {"msg": "No id, token, or key supplied"}}
        )
        await socket.close(1008, "missing id or token")
        return

    if await registry.register(id, token, socket) is RegisterResult.ID_TAKEN:
        return

    try:
        while not socket.closed:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("text") is not None:
                await registry.handle_text(id, socket, message["text"])
    except WebSocketDisconnect:
        pass
    finally:
        socket.closed = True
        registry.unregister(id, socket)


@router.get("/id", response_class=PlainTextResponse)
async def new_peer_id():
    return new_ulid()


@router.get("/peers")
async def list_peers(registry: PeerRegistry = Depends(get_peer_registry)) -> list[str]:
    if not get_app_environ_config().PEER_ALLOW_DISCOVERY:
        raise AppError(
            errcode=AppErrorCode.E_INVALID_REQUEST,
            errmesg="Peer discovery is disabled",
            status_code=HttpStatusCode.UNAUTHORIZED,
        )
    return registry.identities()
