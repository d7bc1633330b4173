"""Tests for StudioSession orchestration with fake sockets."""

import asyncio
from urllib.parse import parse_qs, urlsplit

import orjson
import pytest
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from castrelay.app_config import ClientEnvironConfig
from castrelay.client.connection_state import StartPreconditionError
from castrelay.client.discovery import PeerDiscoveryChannel
from castrelay.client.relay_client import StreamHealth
from castrelay.client.room_store import RoomCodeStore
from castrelay.client.studio import StudioSession
from castrelay.domain.rendezvous import PeerRegistry, PeerSocket, RegisterResult
from castrelay.domain.room import derive_identity
from castrelay.schemas import DiscoveryErrorKind, RelayRole
from castrelay.utils.app_errors import AppErrorCode


class FakeChannel:
    def __init__(self, identity, taken, *, on_open, on_error, **_):
        self.identity = identity
        self.taken = taken
        self.on_open = on_open
        self.on_error = on_error
        self.opened = False
        self.destroyed = False

    async def open(self):
        if self.identity in self.taken or "*" in self.taken:
            await self.on_error(DiscoveryErrorKind.UNAVAILABLE_ID)
            return False
        self.opened = True
        await self.on_open(self.identity)
        return True

    async def close(self):
        self.destroyed = True


class FakeChannelPool:
    def __init__(self, taken=()):
        self.taken = set(taken)
        self.channels: dict[str, FakeChannel] = {}
        self.released: list[str] = []
        self.closed = False

    def acquire(self, identity, server, **kwargs):
        channel = self.channels.get(identity)
        if channel is None or channel.destroyed:
            channel = FakeChannel(identity, self.taken, **kwargs)
            self.channels[identity] = channel
        return channel

    async def release(self, identity):
        self.released.append(identity)
        channel = self.channels.pop(identity, None)
        if channel is not None:
            await channel.close()

    async def close_all(self):
        self.closed = True


class FakeRelayClient:
    def __init__(self, reachable=True):
        self.reachable = reachable
        self.on_open = self.on_close = self.on_event = None
        self.sent: list[tuple] = []
        self.media: list[bytes] = []
        self.reconnects = 0
        self.closed = False

    async def connect(self):
        if not self.reachable:
            raise OSError("connection refused")
        await self.on_open()

    def schedule_reconnect(self):
        self.reconnects += 1

    async def close(self):
        self.closed = True

    async def send_join(self, session_id, role=RelayRole.HOST):
        self.sent.append(("join", session_id))

    async def send_start(self, stream_key, destinations=None):
        self.sent.append(("start", stream_key, destinations))

    async def send_stop(self):
        self.sent.append(("stop",))

    def send_media(self, chunk):
        self.media.append(chunk)
        return True

    def sample_health(self):
        return StreamHealth()

    def kinds(self):
        return [entry[0] for entry in self.sent]


class ListMediaSource:
    def __init__(self, chunks=None):
        self.chunks = chunks

    def get_mixed_media_stream(self):
        if self.chunks is None:
            return None
        return self._stream()

    async def _stream(self):
        for chunk in self.chunks:
            yield chunk
            await asyncio.sleep(0)


class FailingMediaSource:
    """Yields one chunk, then the capture device disappears."""

    def get_mixed_media_stream(self):
        return self._stream()

    async def _stream(self):
        yield b"cluster-1"
        await asyncio.sleep(0)
        raise OSError("capture device gone")


CHUNKS = [b"\x1a\x45\xdf\xa3", b"cluster-1", b"cluster-2"]


@pytest.fixture
def store(tmp_path) -> RoomCodeStore:
    return RoomCodeStore(tmp_path / "studio.json")


@pytest.fixture
def make_studio(store):
    created = []

    def factory(*, pool=None, relay=None, media=CHUNKS, source=None, **cfg):
        studio = StudioSession(
            ClientEnvironConfig(ROOM_CODE_STORE_PATH=str(store.path), **cfg),
            media_source=source or ListMediaSource(media),
            room_store=store,
            channel_pool=pool or FakeChannelPool(),
            relay=relay or FakeRelayClient(),
            health_interval=0.05,
        )
        created.append(studio)
        return studio

    yield factory
    for studio in created:
        if studio._health_task is not None:
            studio._health_task.cancel()


async def _eventually(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestStartup:
    async def test_both_links_online(self, make_studio):
        relay = FakeRelayClient()
        studio = make_studio(relay=relay)

        await studio.start()

        assert studio.status().model_dump() == {"cloud": "online", "relay": "online", "stream": "idle"}
        assert relay.sent == [("join", studio.room_code)]
        await studio.teardown()

    async def test_stored_room_code_reused(self, make_studio, store):
        store.save("wxyz")

        studio = make_studio()

        assert studio.room_code == "wxyz"
        assert studio.identity == derive_identity("wxyz", RelayRole.HOST)

    async def test_relay_unreachable_keeps_cloud(self, make_studio):
        relay = FakeRelayClient(reachable=False)
        studio = make_studio(relay=relay)

        await studio.start()

        assert studio.status().cloud == "online"
        assert studio.status().relay == "offline"
        assert relay.reconnects == 1
        await studio.teardown()


class TestRoomRotation:
    async def test_taken_code_rotated_and_saved(self, make_studio, store):
        store.save("wxyz")
        pool = FakeChannelPool(taken={derive_identity("wxyz", RelayRole.HOST)})
        studio = make_studio(pool=pool)

        await studio.start()

        assert studio.room_code != "wxyz"
        assert store.load() == studio.room_code
        assert pool.released == [derive_identity("wxyz", RelayRole.HOST)]
        assert studio.status().cloud == "online"
        assert studio.state.rotations == 0
        await studio.teardown()

    async def test_rotation_gives_up(self, make_studio):
        pool = FakeChannelPool(taken={"*"})
        studio = make_studio(pool=pool, MAX_ROOM_ROTATIONS=3)

        await studio.start()

        assert len(pool.released) == 3
        assert studio.status().cloud == "offline"
        assert studio.last_error is not None
        assert studio.last_error.errcode == AppErrorCode.E_ROOM_ROTATION_EXHAUSTED
        await studio.teardown()


class TestGoLive:
    async def test_start_live_sends_start_and_media(self, make_studio):
        relay = FakeRelayClient()
        studio = make_studio(relay=relay)
        await studio.start()

        await studio.start_live(" XYZ ", ["rtmp://other.test/app/k"])

        assert studio.status().stream == "live"
        assert ("start", "XYZ", ["rtmp://other.test/app/k"]) in relay.sent
        await _eventually(lambda: relay.media == CHUNKS)
        await studio.teardown()

    async def test_relay_offline_rejected_without_sending(self, make_studio):
        relay = FakeRelayClient(reachable=False)
        studio = make_studio(relay=relay)
        await studio.start()

        with pytest.raises(StartPreconditionError) as exc_info:
            await studio.start_live("XYZ")

        assert exc_info.value.errcode == AppErrorCode.E_RELAY_OFFLINE
        assert relay.sent == []
        await studio.teardown()

    async def test_missing_stream_key(self, make_studio):
        relay = FakeRelayClient()
        studio = make_studio(relay=relay)
        await studio.start()

        with pytest.raises(StartPreconditionError) as exc_info:
            await studio.start_live("")

        assert exc_info.value.errcode == AppErrorCode.E_MISSING_STREAM_KEY
        assert relay.kinds() == ["join"]
        await studio.teardown()

    async def test_no_media_stream(self, make_studio):
        relay = FakeRelayClient()
        studio = make_studio(relay=relay, media=None)
        await studio.start()

        with pytest.raises(StartPreconditionError) as exc_info:
            await studio.start_live("XYZ")

        assert exc_info.value.errcode == AppErrorCode.E_NO_MEDIA_STREAM
        assert not studio.state.is_live
        assert relay.kinds() == ["join"]
        await studio.teardown()

    async def test_stop_live(self, make_studio):
        relay = FakeRelayClient()
        studio = make_studio(relay=relay)
        await studio.start()
        await studio.start_live("XYZ")

        await studio.stop_live()

        assert relay.kinds() == ["join", "start", "stop"]
        assert studio.status().stream == "idle"
        await studio.teardown()


class TestRelayEvents:
    async def test_relay_drop_ends_stream_without_resume(self, make_studio):
        relay = FakeRelayClient()
        studio = make_studio(relay=relay)
        await studio.start()
        await studio.start_live("XYZ")

        await relay.on_close()
        assert studio.status().model_dump() == {"cloud": "online", "relay": "offline", "stream": "idle"}
        assert relay.reconnects == 1

        await relay.on_open()
        assert relay.kinds() == ["join", "start", "join"]
        assert studio.status().stream == "idle"
        await studio.teardown()

    @pytest.mark.parametrize(
        "event",
        [
            {"type": "ffmpeg_closed", "code": 1},
            {"type": "stopped", "code": 0, "reason": "host_disconnected"},
            {"type": "error", "error": "no_destinations"},
        ],
    )
    async def test_transcoder_gone_ends_stream(self, make_studio, event):
        relay = FakeRelayClient()
        studio = make_studio(relay=relay)
        await studio.start()
        await studio.start_live("XYZ")

        await relay.on_event(event)

        assert studio.status().stream == "idle"
        assert studio.status().relay == "online"
        await studio.teardown()

    async def test_requested_stop_ack_ignored(self, make_studio):
        relay = FakeRelayClient()
        studio = make_studio(relay=relay)
        await studio.start()
        await studio.start_live("XYZ")

        await relay.on_event({"type": "stopped", "code": 0, "reason": "requested"})

        assert studio.status().stream == "live"
        await studio.teardown()


class TestMediaEnd:
    async def test_finite_source_ends_stream(self, make_studio):
        relay = FakeRelayClient()
        studio = make_studio(relay=relay)
        await studio.start()
        await studio.start_live("XYZ")

        await _eventually(lambda: not studio.state.is_live)

        assert relay.media == CHUNKS
        assert relay.kinds() == ["join", "start", "stop"]
        assert studio.status().model_dump() == {"cloud": "online", "relay": "online", "stream": "idle"}
        await studio.teardown()

    async def test_failing_source_ends_stream(self, make_studio):
        relay = FakeRelayClient()
        studio = make_studio(relay=relay, source=FailingMediaSource())
        await studio.start()
        await studio.start_live("XYZ")

        await _eventually(lambda: not studio.state.is_live)

        assert relay.media == [b"cluster-1"]
        assert relay.kinds() == ["join", "start", "stop"]
        await studio.teardown()


class TestTeardown:
    async def test_teardown_after_media_source_failed(self, make_studio):
        relay = FakeRelayClient()
        pool = FakeChannelPool()
        studio = make_studio(relay=relay, pool=pool, source=FailingMediaSource())
        await studio.start()
        await studio.start_live("XYZ")
        await _eventually(lambda: relay.media == [b"cluster-1"])

        await studio.teardown()

        assert relay.closed
        assert pool.closed
        assert studio.status().model_dump() == {"cloud": "offline", "relay": "offline", "stream": "idle"}

    async def test_pool_closed_when_relay_close_fails(self, make_studio):
        class BrokenCloseRelay(FakeRelayClient):
            async def close(self):
                raise OSError("socket already gone")

        pool = FakeChannelPool()
        studio = make_studio(relay=BrokenCloseRelay(), pool=pool)
        await studio.start()

        with pytest.raises(OSError):
            await studio.teardown()

        assert pool.closed
        assert studio._health_task is None

    async def test_teardown_while_live(self, make_studio):
        relay = FakeRelayClient()
        pool = FakeChannelPool()
        studio = make_studio(relay=relay, pool=pool)
        await studio.start()
        await studio.start_live("XYZ")

        await studio.teardown()

        assert relay.kinds()[-1] == "stop"
        assert relay.closed
        assert pool.closed
        assert studio.status().model_dump() == {"cloud": "offline", "relay": "offline", "stream": "idle"}

    async def test_start_after_teardown_rejected(self, make_studio):
        studio = make_studio()
        await studio.start()
        await studio.teardown()

        with pytest.raises(StartPreconditionError) as exc_info:
            await studio.start_live("XYZ")

        assert exc_info.value.errcode == AppErrorCode.E_STUDIO_CLOSED


class TestRelayReconnectEndToEnd:
    """A real relay client against a server that drops every connection."""

    async def test_reconnects_until_teardown(self, store):
        accepted = []

        async def handler(ws):
            accepted.append(ws)
            await ws.close()

        async with serve(handler, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            studio = StudioSession(
                ClientEnvironConfig(
                    ROOM_CODE_STORE_PATH=str(store.path),
                    RELAY_WS_URL=f"ws://127.0.0.1:{port}",
                    RELAY_RECONNECT_DELAY_SECONDS=0.05,
                ),
                media_source=ListMediaSource(CHUNKS),
                room_store=store,
                channel_pool=FakeChannelPool(),
                health_interval=0.05,
            )
            await studio.start()

            await _eventually(lambda: len(accepted) >= 5)

            await studio.teardown()
            await asyncio.sleep(0.1)
            seen = len(accepted)
            await asyncio.sleep(0.2)

            assert len(accepted) == seen
            assert studio.status().relay == "offline"


class TestRoomCollisionEndToEnd:
    """A real rendezvous registry already holding the studio's host identity."""

    async def test_taken_identity_changes_room_code(self, store):
        peers = PeerRegistry()

        class WsPeerSocket(PeerSocket):
            def __init__(self, ws):
                self.ws = ws

            async def send_message(self, message):
                await self.ws.send(orjson.dumps(message).decode())

            async def close(self, code=1000, reason=""):
                await self.ws.close(code, reason)

        async def handler(ws):
            query = parse_qs(urlsplit(ws.request.path).query)
            identity, token = query["id"][0], query["token"][0]
            sock = WsPeerSocket(ws)
            if await peers.register(identity, token, sock) is RegisterResult.ID_TAKEN:
                return
            try:
                async for raw in ws:
                    await peers.handle_text(identity, sock, raw)
            except ConnectionClosed:
                pass
            finally:
                peers.unregister(identity, sock)

        async with serve(handler, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            cfg = ClientEnvironConfig(
                ROOM_CODE_STORE_PATH=str(store.path),
                PEER_HOST="127.0.0.1",
                PEER_PORT=str(port),
                PEER_SECURE="false",
            )
            squatter = PeerDiscoveryChannel(derive_identity("ab12", RelayRole.HOST), cfg.discovery_server())
            assert await squatter.open() is True

            store.save("ab12")
            studio = StudioSession(
                cfg,
                media_source=ListMediaSource(CHUNKS),
                room_store=store,
                relay=FakeRelayClient(),
            )
            await studio.start()

            assert studio.room_code != "ab12"
            assert store.load() == studio.room_code
            assert studio.status().cloud == "online"
            assert studio.identity in peers
            assert peers.get("aether-studio-ab12-host").token == squatter.token

            await studio.teardown()
            await squatter.close()
