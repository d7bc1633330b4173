from pydantic import BaseModel

from castrelay.schemas.discovery import DiscoveryServerConfig
from castrelay.shared.config import config


def _split_csv(raw: str | None) -> list[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


class AppEnvironConfig(BaseModel):
    DEBUG: bool = config.get_bool("DEBUG", False)

    API_HOST: str = config.get("API_HOST", "0.0.0.0").strip()  # type: ignore
    API_PORT: int = config.get_int("API_PORT", 8080)
    API_CORS_ORIGINS: list[str] = _split_csv(config.get("API_CORS_ORIGINS", "*"))
    # Comma separated router module suffixes to skip when loading routes
    API_DISABLED: list[str] = _split_csv(config.get("API_DISABLED", ""))

    # Relay configuration
    RELAY_TOKEN: str | None = (config.get("RELAY_TOKEN") or "").strip() or None
    RELAY_PING_INTERVAL_SECONDS: float = config.get_float("RELAY_PING_INTERVAL_SECONDS", 15.0)
    RELAY_BYTES_LOG_INTERVAL_SECONDS: float = config.get_float(
        "RELAY_BYTES_LOG_INTERVAL_SECONDS", 2.0
    )

    # Transcoder configuration
    FFMPEG_PATH: str = (config.get("FFMPEG_PATH") or "").strip() or "ffmpeg"
    RTMP_URL: str = config.get("RTMP_URL", "rtmp://a.rtmp.youtube.com/live2").strip()  # type: ignore
    TRANSCODER_INPUT_FORMAT: str = config.get("TRANSCODER_INPUT_FORMAT", "webm").strip()  # type: ignore
    TRANSCODER_VIDEO_BITRATE: str = config.get("TRANSCODER_VIDEO_BITRATE", "2500k").strip()  # type: ignore
    TRANSCODER_AUDIO_BITRATE: str = config.get("TRANSCODER_AUDIO_BITRATE", "128k").strip()  # type: ignore
    TRANSCODER_FRAMERATE: int = config.get_int("TRANSCODER_FRAMERATE", 30)
    TRANSCODER_KEYFRAME_INTERVAL: int = config.get_int("TRANSCODER_KEYFRAME_INTERVAL", 60)
    # Drop incoming chunks once this many bytes are waiting on the transcoder's stdin
    TRANSCODER_MAX_BUFFERED_BYTES: int = config.get_int(
        "TRANSCODER_MAX_BUFFERED_BYTES", 4 * 1024 * 1024
    )
    TRANSCODER_FLUSH_TIMEOUT_SECONDS: float = config.get_float(
        "TRANSCODER_FLUSH_TIMEOUT_SECONDS", 2.0
    )
    TRANSCODER_STOP_TIMEOUT_SECONDS: float = config.get_float(
        "TRANSCODER_STOP_TIMEOUT_SECONDS", 3.0
    )

    # Self-hosted rendezvous server
    PEER_SERVER_ENABLE: bool = config.get_bool("PEER_SERVER_ENABLE", True)
    PEER_ALLOW_DISCOVERY: bool = config.get_bool("PEER_ALLOW_DISCOVERY", True)

    # Observability
    LOGFIRE_ENABLE: bool = config.get_bool("LOGFIRE_ENABLE", False)
    LOGFIRE_TOKEN: str | None = (config.get("LOGFIRE_TOKEN") or "").strip() or None


class ClientEnvironConfig(BaseModel):
    RELAY_WS_URL: str = (config.get("RELAY_WS_URL") or "ws://localhost:8080").strip()
    RELAY_TOKEN: str | None = (config.get("RELAY_TOKEN") or "").strip() or None
    # Outbound media bytes allowed in flight before new chunks are dropped
    RELAY_MAX_BUFFERED_BYTES: int = config.get_int("RELAY_MAX_BUFFERED_BYTES", 256 * 1024)
    RELAY_RECONNECT_DELAY_SECONDS: float = config.get_float("RELAY_RECONNECT_DELAY_SECONDS", 1.5)
    RELAY_PING_INTERVAL_SECONDS: float = config.get_float("RELAY_PING_INTERVAL_SECONDS", 5.0)

    PEER_HOST: str = (config.get("PEER_HOST") or "").strip()
    PEER_PORT: str = (config.get("PEER_PORT") or "").strip()
    PEER_SECURE: str = (config.get("PEER_SECURE") or "").strip()
    PEER_PATH: str = (config.get("PEER_PATH") or "/peerjs").strip()
    PEER_KEY: str = (config.get("PEER_KEY") or "peerjs").strip()
    DISCOVERY_RECONNECT_ATTEMPTS: int = config.get_int("DISCOVERY_RECONNECT_ATTEMPTS", 5)
    DISCOVERY_RECONNECT_DELAY_SECONDS: float = config.get_float(
        "DISCOVERY_RECONNECT_DELAY_SECONDS", 3.0
    )

    MAX_ROOM_ROTATIONS: int = config.get_int("MAX_ROOM_ROTATIONS", 3)
    ROOM_CODE_STORE_PATH: str = (
        config.get("ROOM_CODE_STORE_PATH") or "~/.castrelay/studio.json"
    ).strip()

    def discovery_server(self) -> DiscoveryServerConfig:
        """Resolve the rendezvous endpoint from the raw PEER_* values.

        The host is reduced to a bare hostname, `secure` defaults to true whenever
        a host is configured, and the port follows the scheme (443/80) or the local
        development default 9000.
        """
        host = self.PEER_HOST
        for scheme in ("https://", "http://"):
            if host.lower().startswith(scheme):
                host = host[len(scheme):]
        host = host.rstrip("/").strip()

        secure_raw = self.PEER_SECURE.lower()
        if secure_raw in ("true", "false"):
            secure = secure_raw == "true"
        else:
            secure = bool(host)

        try:
            port = int(self.PEER_PORT)
        except ValueError:
            port = (443 if secure else 80) if host else 9000

        path = self.PEER_PATH or "/peerjs"
        if not path.startswith("/"):
            path = f"/{path}"

        return DiscoveryServerConfig(
            host=host or "0.peerjs.com",
            port=port,
            secure=secure,
            path=path,
            key=self.PEER_KEY,
        )


_app_environ_config = AppEnvironConfig()


def get_app_environ_config() -> AppEnvironConfig:
    return _app_environ_config


def get_client_environ_config() -> ClientEnvironConfig:
    return ClientEnvironConfig()
