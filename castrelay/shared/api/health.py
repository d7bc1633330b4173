from datetime import datetime, timezone

from fastapi import APIRouter

from .utils import ApiSuccess

router = APIRouter()


@router.get("/health", response_model=ApiSuccess)
async def health():
    return ApiSuccess(
        results={"ok": True, "service": "castrelay", "ts": datetime.now(timezone.utc).isoformat()}
    )
