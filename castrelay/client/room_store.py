from pathlib import Path

import orjson
from loguru import logger

from castrelay.domain.room import normalize_room_code


class RoomCodeStore:
    """Persists the studio's room code between runs in a small JSON file."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def load(self) -> str | None:
        try:
            data = orjson.loads(self.path.read_bytes())
        except FileNotFoundError:
            return None
        except (OSError, orjson.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable room store {self.path}: {e}")
            return None

        code = normalize_room_code(data.get("room_code", "")) if isinstance(data, dict) else ""
        return code or None

    def save(self, room_code: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(orjson.dumps({"room_code": normalize_room_code(room_code)}))
        tmp.replace(self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
