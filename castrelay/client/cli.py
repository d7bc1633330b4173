"""Headless studio: stream a pre-encoded file through the relay.

    castrelay-studio --stream-key KEY --file program.webm
    castrelay-studio --check
"""

import argparse
import asyncio

import httpx
from loguru import logger

from castrelay.app_config import get_client_environ_config
from castrelay.shared.api.utils import init_logger
from castrelay.utils.app_errors import AppError

from .media import FileMediaSource
from .relay_client import check_ffmpeg, check_relay_health
from .studio import StudioSession


async def run_checks(ws_url: str) -> bool:
    ok = True
    try:
        await check_relay_health(ws_url)
        print(f"✓ Relay OK ({ws_url})")
    except httpx.HTTPError as exc:
        print(f"✗ Relay check failed: {exc}")
        ok = False

    try:
        version = await check_ffmpeg(ws_url)
        print(f"✓ FFmpeg OK: {version}")
    except httpx.HTTPError as exc:
        print(f"✗ FFmpeg check failed: {exc}")
        ok = False
    return ok


async def wait_until_ready(studio: StudioSession, timeout: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        status = studio.status()
        if status.cloud == "online" and status.relay == "online":
            return True
        await asyncio.sleep(0.2)
    return False


async def stream(args: argparse.Namespace) -> int:
    studio = StudioSession(
        media_source=FileMediaSource(args.file, timeslice=args.timeslice, loop=args.loop),
    )
    print(f"Room code: {studio.room_code} (identity {studio.identity})")

    try:
        await studio.start()
        if not await wait_until_ready(studio, args.ready_timeout):
            print(f"✗ Not ready after {args.ready_timeout:g}s: {studio.status().model_dump()}")
            return 1

        await studio.start_live(args.stream_key, args.destination or None)
        print("● Live. Ctrl-C to stop.")

        while studio.state.is_live:
            await asyncio.sleep(args.health_interval)
            health = studio.health
            print(
                f"  {health.kbps:7.1f} kbps | drops {health.drops} | "
                f"queue {health.queue_kb:.1f} KB | rtt {health.rtt_ms if health.rtt_ms is not None else '-'} ms"
            )
        print("Stream ended.")
        return 0
    except AppError as exc:
        print(f"✗ {exc.errcode}: {exc.errmesg}")
        return 1
    finally:
        await studio.teardown()


async def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="castrelay headless studio")
    parser.add_argument("--check", action="store_true", help="Check relay and ffmpeg, then exit")
    parser.add_argument("--stream-key", help="RTMP stream key")
    parser.add_argument("--file", help="Pre-encoded webm file to stream")
    parser.add_argument(
        "--destination",
        action="append",
        help="Extra RTMP destination URL (repeatable)",
    )
    parser.add_argument("--timeslice", type=float, default=0.25, help="Seconds between chunks")
    parser.add_argument("--loop", action="store_true", help="Restart the file at end of stream")
    parser.add_argument("--ready-timeout", type=float, default=20.0, help="Seconds to wait for connections")
    parser.add_argument("--health-interval", type=float, default=1.0, help="Seconds between health lines")
    args = parser.parse_args(argv)

    init_logger()

    if args.check:
        return 0 if await run_checks(get_client_environ_config().RELAY_WS_URL) else 1

    if not args.stream_key or not args.file:
        parser.error("--stream-key and --file are required unless --check is given")

    return await stream(args)


def run() -> None:
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    run()
