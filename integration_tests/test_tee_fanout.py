"""Fan-out through a real ffmpeg process.

Run with: pytest integration_tests -v
"""

import asyncio

import pytest

from castrelay.domain.transcode import FfmpegCommandBuilder, TranscodeTargetSet, TranscoderHandle


async def _make_webm(ffmpeg_path: str) -> bytes:
    process = await asyncio.create_subprocess_exec(
        ffmpeg_path,
        "-hide_banner", "-loglevel", "error",
        "-f", "lavfi", "-i", "testsrc=duration=2:size=320x240:rate=30",
        "-f", "lavfi", "-i", "sine=frequency=440:duration=2",
        "-c:v", "libvpx", "-deadline", "realtime",
        "-c:a", "libopus",
        "-f", "webm", "pipe:1",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    if process.returncode != 0 or not stdout:
        pytest.skip(f"ffmpeg cannot produce webm here: {stderr.decode(errors='replace')[:200]}")
    return stdout


class Sink:
    """TCP listener standing in for an RTMP ingest."""

    def __init__(self):
        self.data = bytearray()
        self.done = asyncio.Event()
        self.server: asyncio.Server | None = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while chunk := await reader.read(65536):
            self.data += chunk
        writer.close()
        self.done.set()

    async def start(self) -> str:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        port = self.server.sockets[0].getsockname()[1]
        return f"tcp://127.0.0.1:{port}"

    def close(self) -> None:
        if self.server is not None:
            self.server.close()


@pytest.mark.integration
async def test_one_encode_reaches_every_destination(ffmpeg_path):
    media = await _make_webm(ffmpeg_path)
    sinks = [Sink(), Sink()]
    urls = [await sink.start() for sink in sinks]

    # Ingest URL (stream key) on the first listener, explicit destination on the second
    targets = TranscodeTargetSet.build(urls[0], "XYZ", [urls[1]])
    assert targets.is_fan_out
    argv = FfmpegCommandBuilder(ffmpeg_path=ffmpeg_path).build(targets)
    handle = TranscoderHandle(argv, label="fanout", flush_timeout=10.0, stop_timeout=3.0)
    await handle.start()
    try:
        for offset in range(0, len(media), 16 * 1024):
            handle.feed(media[offset:offset + 16 * 1024])
            await asyncio.sleep(0.01)
        code = await handle.stop()
        await asyncio.wait_for(asyncio.gather(*(sink.done.wait() for sink in sinks)), timeout=5)
    finally:
        for sink in sinks:
            sink.close()

    assert code == 0
    for sink in sinks:
        assert bytes(sink.data[:3]) == b"FLV"
        assert len(sink.data) > 1024
