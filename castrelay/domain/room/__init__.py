from .identity import (
    IDENTITY_PREFIX,
    ROOM_CODE_ALPHABET,
    ROOM_CODE_LENGTH,
    derive_identity,
    generate_room_code,
    new_disambiguator,
    normalize_room_code,
    validate_room_code,
)

__all__ = [
    "IDENTITY_PREFIX",
    "ROOM_CODE_ALPHABET",
    "ROOM_CODE_LENGTH",
    "derive_identity",
    "generate_room_code",
    "new_disambiguator",
    "normalize_room_code",
    "validate_room_code",
]
