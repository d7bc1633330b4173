from fastapi.requests import HTTPConnection

from castrelay.domain.relay import RelayService, SessionRegistry
from castrelay.domain.rendezvous import PeerRegistry


def get_session_registry(conn: HTTPConnection) -> SessionRegistry:
    return conn.app.state.session_registry


def get_relay_service(conn: HTTPConnection) -> RelayService:
    return conn.app.state.relay_service


def get_peer_registry(conn: HTTPConnection) -> PeerRegistry:
    return conn.app.state.peer_registry
