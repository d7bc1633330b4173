from ulid import ULID


def new_ulid(prefix: str | None = None) -> str:
    value = str(ULID()).lower()
    return f"{prefix}{value}" if prefix else value


def new_connection_id() -> str:
    return new_ulid("cn_")


def new_call_id() -> str:
    return new_ulid("mc_")


def new_peer_token() -> str:
    return new_ulid()
