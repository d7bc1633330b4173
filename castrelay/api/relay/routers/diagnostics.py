from fastapi import APIRouter, Depends

from castrelay.api.dependency import get_session_registry
from castrelay.app_config import get_app_environ_config
from castrelay.domain.relay import SessionRegistry
from castrelay.domain.transcode import FfmpegCommandBuilder, probe_ffmpeg
from castrelay.shared.api.utils import ApiSuccess
from castrelay.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

router = APIRouter()


@router.get("/ffmpeg", response_model=ApiSuccess)
async def ffmpeg_check():
    """Check that the transcoder binary runs (`ffmpeg -version`, 2 s timeout)."""
    builder = FfmpegCommandBuilder.from_config(get_app_environ_config())
    version = await probe_ffmpeg(builder.version_command(), timeout=2.0)
    return ApiSuccess(results={"ok": True, "path": builder.ffmpeg_path, "version": version})


@router.get("/sessions", response_model=ApiSuccess)
async def list_sessions(registry: SessionRegistry = Depends(get_session_registry)):
    return ApiSuccess(results=registry.snapshot())


@router.get("/sessions/{session_id}", response_model=ApiSuccess)
async def get_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    session = registry.get(session_id)
    if session is None:
        raise AppError(
            errcode=AppErrorCode.E_SESSION_NOT_FOUND,
            errmesg=f"Session {session_id} not found",
            status_code=HttpStatusCode.NOT_FOUND,
        )
    return ApiSuccess(results=session.snapshot())
