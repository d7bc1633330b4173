"""Tests for RelayClient against an in-process WebSocket server."""

import asyncio
from contextlib import asynccontextmanager

import orjson
import pytest
from websockets.asyncio.server import serve

from castrelay.client.relay_client import RelayClient, relay_http_base


class FakeRelay:
    """Collects frames and answers pings the way the relay does."""

    def __init__(self):
        self.texts: list[dict] = []
        self.binaries: list[bytes] = []
        self.connections = []

    async def handler(self, ws):
        self.connections.append(ws)
        async for raw in ws:
            if isinstance(raw, bytes):
                self.binaries.append(raw)
                continue
            message = orjson.loads(raw)
            self.texts.append(message)
            if message["type"] == "ping":
                await ws.send(orjson.dumps({"type": "pong", "t": 0, "echo": message["t"]}).decode())
            elif message["type"] == "join":
                await ws.send(
                    orjson.dumps({"type": "connected", "role": "host", "sessionId": message["sessionId"]}).decode()
                )


@asynccontextmanager
async def relay_server(relay: FakeRelay):
    async with serve(relay.handler, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


async def _eventually(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.02)


@pytest.mark.parametrize(
    "ws_url, expected",
    [
        ("ws://localhost:8080", "http://localhost:8080"),
        ("ws://localhost:8080/ws", "http://localhost:8080"),
        ("wss://relay.example.com/ws/", "https://relay.example.com"),
        ("WSS://relay.example.com", "https://relay.example.com"),
    ],
)
def test_relay_http_base(ws_url, expected):
    assert relay_http_base(ws_url) == expected


class TestControl:
    async def test_join_carries_token(self):
        relay = FakeRelay()
        events = []

        async def on_event(event):
            events.append(event)

        async with relay_server(relay) as url:
            client = RelayClient(url, token="s3cret", on_event=on_event)
            await client.connect()

            assert await client.send_join("ab12") is True
            await _eventually(lambda: events)

            assert relay.texts[0] == {"type": "join", "role": "host", "sessionId": "ab12", "token": "s3cret"}
            assert events == [{"type": "connected", "role": "host", "sessionId": "ab12"}]
            await client.close()

    async def test_start_and_stop(self):
        relay = FakeRelay()
        async with relay_server(relay) as url:
            client = RelayClient(url)
            await client.connect()

            await client.send_start("XYZ", ["rtmp://other.test/app/k"])
            await client.send_stop()
            await _eventually(lambda: len(relay.texts) == 2)

            assert relay.texts == [
                {"type": "start-stream", "streamKey": "XYZ", "destinations": ["rtmp://other.test/app/k"]},
                {"type": "stop-stream"},
            ]
            await client.close()

    async def test_send_while_offline(self):
        client = RelayClient("ws://127.0.0.1:9")

        assert await client.send_stop() is False

    async def test_pong_sets_rtt(self):
        relay = FakeRelay()
        async with relay_server(relay) as url:
            client = RelayClient(url, ping_interval=0.05)
            await client.connect()

            await _eventually(lambda: client.rtt_ms is not None)

            assert client.sample_health().rtt_ms is not None
            await client.close()


class TestMedia:
    async def test_chunks_delivered_in_order(self):
        relay = FakeRelay()
        async with relay_server(relay) as url:
            client = RelayClient(url)
            await client.connect()
            chunks = [bytes([i]) * 50 for i in range(10)]

            for chunk in chunks:
                assert client.send_media(chunk) is True
            await _eventually(lambda: len(relay.binaries) == 10)

            assert relay.binaries == chunks
            assert client.bytes_sent == 500
            assert client.chunks_dropped == 0
            await client.close()

    async def test_dropped_when_offline(self):
        client = RelayClient("ws://127.0.0.1:9")

        assert client.send_media(b"chunk") is False
        assert client.chunks_dropped == 1

    async def test_dropped_over_buffer_limit(self):
        relay = FakeRelay()
        async with relay_server(relay) as url:
            client = RelayClient(url, max_buffered_bytes=10)
            await client.connect()

            assert client.send_media(b"12345678") is True
            assert client.send_media(b"12345678") is False

            assert client.chunks_dropped == 1
            await client.close()


class TestReconnect:
    async def test_close_reported_and_reconnected(self):
        relay = FakeRelay()
        opened, closed = [], []

        async with relay_server(relay) as url:
            client = RelayClient(url, reconnect_delay=0)

            async def on_open():
                opened.append(True)

            async def on_close():
                closed.append(True)
                client.schedule_reconnect()

            client.on_open = on_open
            client.on_close = on_close
            await client.connect()
            await _eventually(lambda: len(relay.connections) == 1)

            await relay.connections[0].close()
            await _eventually(lambda: len(opened) == 2)

            assert closed == [True]
            assert client.connected
            await client.close()

    async def test_close_is_idempotent(self):
        relay = FakeRelay()
        async with relay_server(relay) as url:
            client = RelayClient(url)
            await client.connect()

            await client.close()
            await client.close()

            assert not client.connected
            with pytest.raises(RuntimeError):
                await client.connect()

    async def test_reconnect_keeps_going_when_socket_drops_during_open(self):
        accepted = []

        async def handler(ws):
            accepted.append(ws)
            await ws.close()

        async with serve(handler, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            client = RelayClient(f"ws://127.0.0.1:{port}", reconnect_delay=0.01)

            async def on_open():
                await client.send_join("ab12")
                # Still inside on_open when the server's close arrives
                await asyncio.sleep(0.05)

            async def on_close():
                client.schedule_reconnect()

            client.on_open = on_open
            client.on_close = on_close
            await client.connect()

            await _eventually(lambda: len(accepted) >= 5)
            await client.close()
            # let an on_open still sleeping finish
            await asyncio.sleep(0.1)
