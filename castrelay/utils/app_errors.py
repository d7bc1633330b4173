"""Application error type and error codes."""

import inspect
from enum import Enum, IntEnum
from uuid import uuid4


class HttpStatusCode(IntEnum):
    OK = 200
    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    FORBIDDEN = 403
    NOT_FOUND = 404
    CONFLICT = 409
    INTERNAL_SERVER_ERROR = 500
    SERVICE_UNAVAILABLE = 503


class AppErrorCode(str, Enum):
    E_INTERNAL_ERROR = "E_INTERNAL_ERROR"
    E_INVALID_REQUEST = "E_INVALID_REQUEST"

    # Relay server
    E_SESSION_NOT_FOUND = "E_SESSION_NOT_FOUND"
    E_TRANSCODER_SPAWN_FAILED = "E_TRANSCODER_SPAWN_FAILED"
    E_TRANSCODER_UNAVAILABLE = "E_TRANSCODER_UNAVAILABLE"

    # Room identity
    E_INVALID_ROOM_CODE = "E_INVALID_ROOM_CODE"
    E_ROOM_ROTATION_EXHAUSTED = "E_ROOM_ROTATION_EXHAUSTED"

    # Studio client preconditions
    E_CLOUD_OFFLINE = "E_CLOUD_OFFLINE"
    E_RELAY_OFFLINE = "E_RELAY_OFFLINE"
    E_MISSING_STREAM_KEY = "E_MISSING_STREAM_KEY"
    E_NO_MEDIA_STREAM = "E_NO_MEDIA_STREAM"
    E_STUDIO_CLOSED = "E_STUDIO_CLOSED"

    def __str__(self) -> str:
        return self.value


class AppError(Exception):
    """Error carrying an API error code, a user-facing message and an HTTP status.

    The call site that raised the error is captured for logging.
    """

    def __init__(
        self,
        errcode: AppErrorCode | str = AppErrorCode.E_INTERNAL_ERROR,
        errmesg: str = "We are sorry, an error occurred.",
        status_code: HttpStatusCode | int = HttpStatusCode.BAD_REQUEST,
    ):
        super().__init__(errmesg)
        self.errcode = errcode.value if isinstance(errcode, AppErrorCode) else str(errcode)
        self.errmesg = errmesg
        self.status_code = int(status_code)
        self.erresid = uuid4().hex[:10]

        frame = inspect.currentframe()
        caller = frame.f_back if frame else None
        # Skip subclass __init__ frames
        while caller is not None and caller.f_code.co_name == "__init__":
            caller = caller.f_back
        if caller is not None:
            module_name = caller.f_globals.get("__name__", caller.f_code.co_filename)
            self.caller_info = f"{module_name}:{caller.f_code.co_name}:{caller.f_lineno}"
        else:
            self.caller_info = "unknown"

    def __repr__(self) -> str:
        return f"AppError(errcode={self.errcode!r}, errmesg={self.errmesg!r}, status_code={self.status_code})"
