"""Room codes and the peer identities derived from them.

A room code is what a person types on a phone to reach a studio, so it is short
and avoids look-alike characters. Uniqueness is not guaranteed here; a code that
is already taken shows up later as an identity collision on the discovery
channel and is resolved by issuing a new code.
"""

import re
import secrets

from castrelay.schemas import RelayRole
from castrelay.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

IDENTITY_PREFIX = "aether-studio"
ROOM_CODE_LENGTH = 4
# No 0/o/1/l/i
ROOM_CODE_ALPHABET = "abcdefghjkmnpqrstuvwxyz23456789"

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def normalize_room_code(room_code: str) -> str:
    """Strip everything but ASCII letters and digits, then lowercase.

    "Joshua's Room!" -> "joshuasroom"
    """
    return _NON_ALNUM.sub("", room_code or "").lower()


def validate_room_code(room_code: str) -> str:
    """Return the normalized code.

    Raises:
        AppError: if nothing is left after normalization
    """
    normalized = normalize_room_code(room_code)
    if not normalized:
        raise AppError(
            errcode=AppErrorCode.E_INVALID_ROOM_CODE,
            errmesg=f"Room code {room_code!r} has no letters or digits",
            status_code=HttpStatusCode.BAD_REQUEST,
        )
    return normalized


def derive_identity(
    room_code: str,
    role: RelayRole | str,
    disambiguator: str | None = None,
) -> str:
    """Build the discovery-channel identity for a role in a room.

    Host identities are fixed per room so that a second studio claiming the same
    code collides. Non-host roles may carry a disambiguator so that several
    cameras can join one room.
    """
    role_value = RelayRole(role).value
    identity = f"{IDENTITY_PREFIX}-{normalize_room_code(room_code)}-{role_value}"
    if disambiguator and role_value != RelayRole.HOST.value:
        identity = f"{identity}-{normalize_room_code(disambiguator)}"
    return identity


def generate_room_code(exclude: str | None = None) -> str:
    """Draw a fresh code uniformly from the room alphabet.

    Args:
        exclude: a code the result must differ from (after normalization)
    """
    excluded = normalize_room_code(exclude) if exclude else None
    while True:
        code = "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))
        if code != excluded:
            return code


def new_disambiguator() -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(6))
