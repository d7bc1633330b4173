import asyncio

from loguru import logger

from castrelay.utils.app_errors import AppError, AppErrorCode, HttpStatusCode


async def probe_ffmpeg(argv: list[str], timeout: float = 2.0) -> str:
    """Run `ffmpeg -version` and return its first output line.

    Raises:
        AppError: binary missing, non-zero exit, or no answer within `timeout`
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise AppError(
            errcode=AppErrorCode.E_TRANSCODER_UNAVAILABLE,
            errmesg=f"{argv[0]} not runnable: {e}",
            status_code=HttpStatusCode.SERVICE_UNAVAILABLE,
        ) from e

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise AppError(
            errcode=AppErrorCode.E_TRANSCODER_UNAVAILABLE,
            errmesg=f"{argv[0]} -version timed out after {timeout:g}s",
            status_code=HttpStatusCode.SERVICE_UNAVAILABLE,
        ) from e

    output = stdout.decode("utf-8", errors="replace").strip()
    if process.returncode != 0:
        raise AppError(
            errcode=AppErrorCode.E_TRANSCODER_UNAVAILABLE,
            errmesg=f"{argv[0]} exited with code {process.returncode}: {output[:200]}",
            status_code=HttpStatusCode.SERVICE_UNAVAILABLE,
        )

    version = output.splitlines()[0] if output else ""
    logger.debug(f"ffmpeg probe: {version}")
    return version
