import asyncio

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from loguru import logger

from castrelay.api.dependency import get_relay_service
from castrelay.app_config import get_app_environ_config
from castrelay.domain.relay import RelayConnection, RelayService
from castrelay.domain.utils.idgen import new_connection_id
from castrelay.schemas.relay_messages import PingEvent, _Message

router = APIRouter()


class WebSocketRelayConnection(RelayConnection):
    def __init__(self, websocket: WebSocket):
        super().__init__(new_connection_id())
        self.websocket = websocket
        self.closed = False
        self._send_lock = asyncio.Lock()

    async def send_event(self, event: _Message) -> None:
        if self.closed:
            return
        async with self._send_lock:
            await self.websocket.send_text(event.to_text())

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            logger.debug(f"Relay {self.connection_id} already closed: {e}")


async def _keepalive(conn: WebSocketRelayConnection, interval: float) -> None:
    while not conn.closed:
        await asyncio.sleep(interval)
        try:
            await conn.send_event(PingEvent())
        except Exception as e:
            logger.debug(f"Relay {conn.connection_id} keepalive stopped: {e}")
            return


@router.websocket("/")
@router.websocket("/ws")
async def relay_socket(websocket: WebSocket, service: RelayService = Depends(get_relay_service)):
    await websocket.accept()
    conn = WebSocketRelayConnection(websocket)
    client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
    logger.info(f"Relay {conn.connection_id} connected from {client}")

    keepalive = asyncio.create_task(
        _keepalive(conn, get_app_environ_config().RELAY_PING_INTERVAL_SECONDS),
        name=f"relay-keepalive:{conn.connection_id}",
    )
    try:
        while not conn.closed:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                service.handle_binary(conn, message["bytes"])
            elif message.get("text") is not None:
                await service.handle_text(conn, message["text"])
    except WebSocketDisconnect:
        pass
    finally:
        conn.closed = True
        keepalive.cancel()
        await service.disconnect(conn)
        logger.info(f"Relay {conn.connection_id} disconnected ({conn.role}, session={conn.session_id})")
