"""End-to-end tests for the relay WebSocket route."""

import time
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from castrelay.api.dependency import get_relay_service, get_session_registry
from castrelay.api.errors import app_error_handler
from castrelay.api.relay.routers.diagnostics import router as diagnostics_router
from castrelay.api.relay.routers.relay_ws import router as relay_router
from castrelay.domain.relay import RelayService, SessionRegistry
from castrelay.utils.app_errors import AppError, AppErrorCode, HttpStatusCode
from tests.fixtures.relay_fixtures import capture_stdin_script


def _build_app(service: RelayService) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await service.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.dependency_overrides[get_relay_service] = lambda: service
    app.dependency_overrides[get_session_registry] = lambda: service.registry
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.include_router(relay_router)
    app.include_router(diagnostics_router)
    return app


def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.02)


@pytest.fixture
def service(registry: SessionRegistry, supervisor) -> RelayService:
    return RelayService(registry, supervisor)


@pytest.fixture
def client(service: RelayService):
    with TestClient(_build_app(service)) as client:
        yield client


class TestRelaySocket:
    def test_join_then_start_targets_stream_key(self, client, argv_recorder):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "role": "host", "sessionId": "ab12"})
            assert ws.receive_json() == {"type": "connected", "role": "host", "sessionId": "ab12"}

            ws.send_json({"type": "start-stream", "streamKey": "XYZ"})
            assert ws.receive_json() == {"type": "started"}

        assert argv_recorder.calls[0].urls == ("rtmp://ingest.test/live2/XYZ",)

    def test_root_path_accepted(self, client):
        with client.websocket_connect("/") as ws:
            ws.send_json({"type": "join", "role": "client", "sessionId": "ab12"})
            assert ws.receive_json()["type"] == "connected"

    def test_chunks_reach_transcoder_in_order(self, client, argv_recorder, registry, tmp_path: Path):
        out = tmp_path / "stdin.bin"
        argv_recorder.script = capture_stdin_script(out)
        chunks = [bytes([i]) * (100 + i) for i in range(10)]

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "role": "host", "sessionId": "ab12"})
            ws.receive_json()
            ws.send_json({"type": "start-stream", "streamKey": "XYZ"})
            assert ws.receive_json() == {"type": "started"}
            for chunk in chunks:
                ws.send_bytes(chunk)
            # Round trip so every chunk above has been handled
            ws.send_json({"type": "ping", "t": 1})
            assert ws.receive_json()["type"] == "pong"

        _wait_until(lambda: len(registry) == 0 and out.exists())
        assert out.read_bytes() == b"".join(chunks)

    def test_phone_sees_host_leave(self, client):
        with client.websocket_connect("/ws") as phone:
            phone.send_json({"type": "join", "role": "client", "sessionId": "ab12"})
            phone.receive_json()

            with client.websocket_connect("/ws") as host:
                host.send_json({"type": "join", "role": "host", "sessionId": "ab12"})
                host.receive_json()
                assert phone.receive_json() == {"type": "peer-joined", "role": "host"}

            assert phone.receive_json() == {"type": "peer-left", "role": "host"}

    def test_bad_json_keeps_socket_open(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{oops")
            assert ws.receive_json() == {"type": "error", "error": "bad_json"}

            ws.send_json({"type": "join", "role": "host", "sessionId": "ab12"})
            assert ws.receive_json()["type"] == "connected"


class TestRelayToken:
    @pytest.fixture
    def service(self, registry, supervisor) -> RelayService:
        return RelayService(registry, supervisor, token="s3cret")

    def test_wrong_token_closes_with_policy_violation(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "role": "host", "sessionId": "ab12", "token": "wrong"})
            assert ws.receive_json() == {"type": "error", "error": "unauthorized"}
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 1008
        assert len(registry) == 0

    def test_right_token_joins(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "role": "host", "sessionId": "ab12", "token": "s3cret"})
            assert ws.receive_json()["type"] == "connected"


class TestDiagnostics:
    def test_sessions_listed(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "role": "host", "sessionId": "ab12"})
            ws.receive_json()

            r = client.get("/sessions")
            assert r.status_code == 200
            [session] = r.json()["results"]
            assert session["session_id"] == "ab12"
            assert session["state"] == "joined"

            r = client.get("/sessions/ab12")
            assert r.json()["results"]["connections"][0]["role"] == "host"

    def test_unknown_session_404(self, client):
        r = client.get("/sessions/zz99")

        assert r.status_code == 404
        data = r.json()
        assert data["success"] is False
        assert data["errcode"] == "E_SESSION_NOT_FOUND"

    def test_ffmpeg_probe_ok(self, client, monkeypatch):
        async def fake_probe(argv, timeout=2.0):
            return "ffmpeg version 7.0"

        monkeypatch.setattr("castrelay.api.relay.routers.diagnostics.probe_ffmpeg", fake_probe)

        r = client.get("/ffmpeg")

        assert r.status_code == 200
        assert r.json()["results"]["ok"] is True
        assert r.json()["results"]["version"] == "ffmpeg version 7.0"

    def test_ffmpeg_probe_unavailable(self, client, monkeypatch):

        async def fake_probe(argv, timeout=2.0):
            raise AppError(
                errcode=AppErrorCode.E_TRANSCODER_UNAVAILABLE,
                errmesg="ffmpeg not runnable",
                status_code=HttpStatusCode.SERVICE_UNAVAILABLE,
            )

        monkeypatch.setattr("castrelay.api.relay.routers.diagnostics.probe_ffmpeg", fake_probe)

        r = client.get("/ffmpeg")

        assert r.status_code == 503
        assert r.json()["errcode"] == "E_TRANSCODER_UNAVAILABLE"
