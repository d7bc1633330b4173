"""Owned handle around one external transcoder process.

The handle is the only way to touch the process: `start`, `feed`, `stop`, and
the `on_exit` callback. Media goes in through stdin; stderr is diagnostic only;
the exit code is the liveness signal.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from enum import Enum

from loguru import logger

from castrelay.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

ExitCallback = Callable[["TranscoderHandle", int | None], Awaitable[None]]
ErrorLineCallback = Callable[["TranscoderHandle", str], Awaitable[None]]

_ERROR_LINE = re.compile(r"error|failed|invalid|timed out|refused", re.IGNORECASE)


class FeedResult(str, Enum):
    OK = "ok"
    DROPPED = "dropped"

    def __str__(self) -> str:
        return self.value


class TranscoderHandle:
    """One spawned transcoder.

    Args:
        argv: command line, argv[0] is the executable
        label: name used in logs (the session id)
        max_buffered_bytes: once stdin holds this many unwritten bytes, new
            chunks are dropped instead of queued
        flush_timeout: seconds to wait for a clean exit after stdin is closed
        stop_timeout: seconds to wait after SIGTERM before SIGKILL
        on_exit: awaited once with the exit code when the process ends
        on_error_line: awaited with stderr lines that look like errors, at most
            once per `error_line_interval` seconds
    """

    def __init__(
        self,
        argv: list[str],
        *,
        label: str,
        max_buffered_bytes: int = 4 * 1024 * 1024,
        flush_timeout: float = 2.0,
        stop_timeout: float = 3.0,
        on_exit: ExitCallback | None = None,
        on_error_line: ErrorLineCallback | None = None,
        error_line_interval: float = 1.0,
    ):
        self.argv = list(argv)
        self.label = label
        self.max_buffered_bytes = max_buffered_bytes
        self.flush_timeout = flush_timeout
        self.stop_timeout = stop_timeout
        self._on_exit = on_exit
        self._on_error_line = on_error_line
        self._error_line_interval = error_line_interval
        self._last_error_line_at = 0.0

        self._process: asyncio.subprocess.Process | None = None
        self._watch_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stop_requested = False
        self._exited = asyncio.Event()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and not self._exited.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def start(self) -> None:
        """Spawn the process.

        Raises:
            AppError: the executable could not be launched
        """
        if self._process is not None:
            raise RuntimeError(f"transcoder [{self.label}] already started")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._exited.set()
            raise AppError(
                errcode=AppErrorCode.E_TRANSCODER_SPAWN_FAILED,
                errmesg=f"Failed to launch transcoder {self.argv[0]!r}: {e}",
                status_code=HttpStatusCode.INTERNAL_SERVER_ERROR,
            ) from e

        logger.info(f"Transcoder [{self.label}] started (pid={self._process.pid})")
        self._stderr_task = asyncio.create_task(
            self._read_stderr(), name=f"transcoder-stderr:{self.label}"
        )
        self._watch_task = asyncio.create_task(
            self._watch(), name=f"transcoder-watch:{self.label}"
        )

    def feed(self, chunk: bytes) -> FeedResult:
        """Queue a chunk on stdin without blocking.

        Never raises; anything that prevents the write drops the chunk.
        """
        process = self._process
        if process is None or self._stop_requested or self._exited.is_set():
            return FeedResult.DROPPED

        stdin = process.stdin
        if stdin is None or stdin.is_closing():
            return FeedResult.DROPPED

        buffered = stdin.transport.get_write_buffer_size()
        if buffered and buffered + len(chunk) > self.max_buffered_bytes:
            logger.warning(
                f"Transcoder [{self.label}] stdin backlog {buffered} bytes, dropping chunk of {len(chunk)}"
            )
            return FeedResult.DROPPED

        try:
            stdin.write(chunk)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.warning(f"Transcoder [{self.label}] stdin write failed: {e}")
            return FeedResult.DROPPED

        return FeedResult.OK

    async def stop(self) -> int | None:
        """Close stdin so the encoder can flush, then terminate.

        Safe to call more than once and after the process already exited.

        Returns:
            The exit code, or None if the process was never started
        """
        self._stop_requested = True
        process = self._process
        if process is None:
            return None

        if process.returncode is None:
            logger.info(f"Stopping transcoder [{self.label}] (pid={process.pid})")
            self._close_stdin()
            try:
                await asyncio.wait_for(self._exited.wait(), timeout=self.flush_timeout)
            except asyncio.TimeoutError:
                self._signal(process, "terminate")
                try:
                    await asyncio.wait_for(self._exited.wait(), timeout=self.stop_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Transcoder [{self.label}] ignored SIGTERM, killing")
                    self._signal(process, "kill")

        if self._watch_task is not None:
            await asyncio.shield(self._watch_task)
        return process.returncode

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self.returncode

    def _close_stdin(self) -> None:
        stdin = self._process.stdin if self._process else None
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    def _signal(self, process: asyncio.subprocess.Process, action: str) -> None:
        try:
            getattr(process, action)()
        except ProcessLookupError:
            pass

    async def _watch(self) -> None:
        assert self._process is not None
        code = await self._process.wait()

        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(self._stderr_task, timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass

        self._close_stdin()
        self._exited.set()

        level = "INFO" if self._stop_requested else "WARNING"
        logger.log(level, f"Transcoder [{self.label}] exited with code {code}")

        if self._on_exit is not None:
            try:
                await self._on_exit(self, code)
            except Exception as e:
                logger.exception(f"Transcoder [{self.label}] exit callback failed: {e}")

    async def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        async for raw in self._process.stderr:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            if not _ERROR_LINE.search(line):
                logger.debug(f"ffmpeg [{self.label}] {line}")
                continue

            logger.warning(f"ffmpeg [{self.label}] {line}")
            now = time.monotonic()
            if self._on_error_line is None or now - self._last_error_line_at < self._error_line_interval:
                continue
            self._last_error_line_at = now
            try:
                await self._on_error_line(self, line[:220])
            except Exception as e:
                logger.warning(f"Transcoder [{self.label}] error-line callback failed: {e}")
