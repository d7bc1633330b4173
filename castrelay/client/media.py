"""Outbound media sources for the relay feed."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Protocol

import aiofiles


class MediaSource(Protocol):
    def get_mixed_media_stream(self) -> AsyncIterator[bytes] | None:
        """Encoded program chunks, or None when nothing is ready to stream."""
        ...


class FileMediaSource:
    """Replays a pre-encoded webm file in timesliced chunks.

    Args:
        path: media file
        chunk_size: bytes per chunk
        timeslice: seconds between chunks; 0 sends as fast as the reader pulls
        loop: start over at end of file
    """

    def __init__(self, path: str | Path, *, chunk_size: int = 64 * 1024, timeslice: float = 0.25, loop: bool = False):
        self.path = Path(path).expanduser()
        self.chunk_size = chunk_size
        self.timeslice = timeslice
        self.loop = loop

    def get_mixed_media_stream(self) -> AsyncIterator[bytes] | None:
        if not self.path.is_file():
            return None
        return self._read()

    async def _read(self) -> AsyncIterator[bytes]:
        while True:
            async with aiofiles.open(self.path, "rb") as f:
                while chunk := await f.read(self.chunk_size):
                    yield chunk
                    if self.timeslice:
                        await asyncio.sleep(self.timeslice)
            if not self.loop:
                return
