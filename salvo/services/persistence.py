"""
Durable room records.

A record is the last state snapshot of a room together with its session
slots and recently applied action ids, which is everything needed to
resume the room after a process restart.
"""
import json
import os
from threading import Lock
from typing import Dict, Iterable, Optional

from salvo.schemas import RoomRecord


class RoomRepository:
    """key-value store of RoomRecord by room code"""

    def load(self, code: str) -> Optional[RoomRecord]:
        raise NotImplementedError

    def save(self, record: RoomRecord) -> None:
        raise NotImplementedError

    def delete(self, code: str) -> None:
        raise NotImplementedError

    def codes(self) -> Iterable[str]:
        raise NotImplementedError


class MemoryRepository(RoomRepository):

    def __init__(self) -> None:
        self._records: Dict[str, str] = {}
        self._lock = Lock()

    def load(self, code: str) -> Optional[RoomRecord]:
        with self._lock:
            raw = self._records.get(code)
        if raw is None:
            return None
        return RoomRecord.model_validate_json(raw)

    def save(self, record: RoomRecord) -> None:
        # stored serialized so later mutation of the caller's objects can't leak in
        raw = record.model_dump_json()
        with self._lock:
            self._records[record.code] = raw

    def delete(self, code: str) -> None:
        with self._lock:
            self._records.pop(code, None)

    def codes(self) -> Iterable[str]:
        with self._lock:
            return list(self._records.keys())


class JsonFileRepository(RoomRepository):
    """One <code>.json document per room under *base_dir*."""

    def __init__(self, base_dir: str) -> None:
        self.base_dir = base_dir
        os.makedirs(base_dir, exist_ok=True)

    def _path(self, code: str) -> str:
        return os.path.join(self.base_dir, f"{code}.json")

    def load(self, code: str) -> Optional[RoomRecord]:
        path = self._path(code)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return RoomRecord.model_validate(json.load(f))

    def save(self, record: RoomRecord) -> None:
        path = self._path(record.code)
        tmp = f"{path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(record.model_dump_json())
        os.replace(tmp, path)

    def delete(self, code: str) -> None:
        try:
            os.remove(self._path(code))
        except FileNotFoundError:
            pass

    def codes(self) -> Iterable[str]:
        return [name[:-5] for name in os.listdir(self.base_dir) if name.endswith(".json")]


def default_repository() -> RoomRepository:
    if os.getenv("SALVO_STORE", "file") == "memory":
        return MemoryRepository()
    base_dir = os.getenv("SALVO_DATA_DIR") or os.path.abspath(
        os.path.join(os.path.dirname(__file__), "..", "..", "data", "rooms")
    )
    return JsonFileRepository(base_dir)
