"""Owns the transcoder lifecycle for relay sessions.

At most one handle is registered per session. Registration and removal happen
under the session lock; media feeding does not take the lock.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from loguru import logger

from castrelay.app_config import AppEnvironConfig
from castrelay.schemas import RelaySessionState

from .command import FfmpegCommandBuilder
from .targets import TranscodeTargetSet
from .transcoder import ErrorLineCallback, ExitCallback, FeedResult, TranscoderHandle

if TYPE_CHECKING:
    from castrelay.domain.relay.session_registry import RelaySession


class TranscodeSupervisor:
    def __init__(
        self,
        build_argv: Callable[[TranscodeTargetSet], list[str]],
        *,
        ingest_base: str = "rtmp://a.rtmp.youtube.com/live2",
        max_buffered_bytes: int = 4 * 1024 * 1024,
        flush_timeout: float = 2.0,
        stop_timeout: float = 3.0,
    ):
        self.build_argv = build_argv
        self.ingest_base = ingest_base
        self.max_buffered_bytes = max_buffered_bytes
        self.flush_timeout = flush_timeout
        self.stop_timeout = stop_timeout

    @classmethod
    def from_config(cls, cfg: AppEnvironConfig) -> "TranscodeSupervisor":
        return cls(
            FfmpegCommandBuilder.from_config(cfg).build,
            ingest_base=cfg.RTMP_URL,
            max_buffered_bytes=cfg.TRANSCODER_MAX_BUFFERED_BYTES,
            flush_timeout=cfg.TRANSCODER_FLUSH_TIMEOUT_SECONDS,
            stop_timeout=cfg.TRANSCODER_STOP_TIMEOUT_SECONDS,
        )

    def targets_for(self, stream_key: str | None, destinations: list[str] | None) -> TranscodeTargetSet:
        return TranscodeTargetSet.build(self.ingest_base, stream_key, destinations)

    async def start(
        self,
        session: RelaySession,
        targets: TranscodeTargetSet,
        *,
        on_exit: ExitCallback | None = None,
        on_error_line: ErrorLineCallback | None = None,
    ) -> bool:
        """Spawn and register a transcoder for the session.

        Must be called with `session.lock` held.

        Returns:
            False if the session already has a transcoder (nothing spawned)

        Raises:
            ValueError: empty target set
            AppError: spawn failure
        """
        if session.transcoder is not None:
            logger.info(f"Session [{session.session_id}] already streaming, ignoring start")
            return False
        if targets.is_empty:
            raise ValueError("no destinations")

        handle = TranscoderHandle(
            self.build_argv(targets),
            label=session.session_id,
            max_buffered_bytes=self.max_buffered_bytes,
            flush_timeout=self.flush_timeout,
            stop_timeout=self.stop_timeout,
            on_exit=on_exit,
            on_error_line=on_error_line,
        )
        await handle.start()

        if session.is_destroyed:
            # Last socket left while the process was spawning
            logger.info(f"Session [{session.session_id}] gone before transcoder registered, stopping it")
            await handle.stop()
            return False

        session.transcoder = handle
        session.counters.reset_window()
        session.transition_to(RelaySessionState.STREAMING)
        logger.info(
            f"Session [{session.session_id}] streaming to {len(targets)} target(s): {targets.redacted()}"
        )
        return True

    def feed(self, session: RelaySession, chunk: bytes) -> FeedResult:
        handle = session.transcoder
        if handle is None:
            session.counters.chunks_dropped += 1
            return FeedResult.DROPPED

        result = handle.feed(chunk)
        if result is FeedResult.OK:
            session.counters.record(len(chunk))
        else:
            session.counters.chunks_dropped += 1
        return result

    def detach(self, session: RelaySession) -> TranscoderHandle | None:
        """Deregister the session's transcoder without stopping it."""
        handle = session.transcoder
        if handle is None:
            return None
        session.transcoder = None
        session.streamer_id = None
        if session.state is RelaySessionState.STREAMING:
            session.transition_to(RelaySessionState.JOINED)
        return handle

    async def stop(self, session: RelaySession) -> int | None:
        """Deregister and stop the session's transcoder.

        Must be called with `session.lock` held.

        Returns:
            The exit code, or None when nothing was running
        """
        handle = self.detach(session)
        if handle is None:
            return None
        code = await handle.stop()
        logger.info(f"Session [{session.session_id}] transcoder stopped (code={code})")
        return code
