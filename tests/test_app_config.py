"""Tests for rendezvous endpoint resolution in the client config."""

import pytest

from castrelay.app_config import ClientEnvironConfig


def _cfg(**values) -> ClientEnvironConfig:
    base = {"PEER_HOST": "", "PEER_PORT": "", "PEER_SECURE": "", "PEER_PATH": "/peerjs"}
    base.update(values)
    return ClientEnvironConfig(**base)


def test_local_default():
    server = _cfg().discovery_server()

    assert (server.host, server.port, server.secure, server.path) == ("0.peerjs.com", 9000, False, "/peerjs")


@pytest.mark.parametrize(
    "host, expected_host",
    [
        ("https://peer.example.com/", "peer.example.com"),
        ("http://peer.example.com", "peer.example.com"),
        ("peer.example.com", "peer.example.com"),
    ],
)
def test_host_stripped_to_hostname(host, expected_host):
    server = _cfg(PEER_HOST=host).discovery_server()

    assert server.host == expected_host
    assert server.secure is True
    assert server.port == 443


def test_insecure_host_uses_port_80():
    server = _cfg(PEER_HOST="peer.lan", PEER_SECURE="false").discovery_server()

    assert server.secure is False
    assert server.port == 80


def test_explicit_port_and_path():
    server = _cfg(PEER_HOST="peer.lan", PEER_PORT="9443", PEER_PATH="rendezvous").discovery_server()

    assert server.port == 9443
    assert server.path == "/rendezvous"


def test_socket_url():
    server = _cfg(PEER_HOST="peer.example.com").discovery_server()

    assert server.socket_url("aether-studio-ab12-host", "tok") == (
        "wss://peer.example.com:443/peerjs/peerjs?key=peerjs&id=aether-studio-ab12-host&token=tok"
    )
