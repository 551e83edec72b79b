import json
import os
from datetime import datetime, timezone
from typing import Any, Dict

# Maintain per-room filename base so all writes go to the same timestamped file
_ROOM_FILE_BASE: Dict[str, str] = {}


def _enabled() -> bool:
    return os.getenv("SALVO_AUDIT", "1") != "0"


def _audit_dir() -> str:
    d = os.getenv("SALVO_AUDIT_DIR")
    if d:
        return d
    # ../../logs/rooms relative to this file
    return os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "logs", "rooms"))


def _file_base_for(room_code: str) -> str:
    """Return a stable '<timestamp>_<room_code>' base for this process."""
    if room_code in _ROOM_FILE_BASE:
        return _ROOM_FILE_BASE[room_code]
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    base = f"{ts}_{room_code}"
    _ROOM_FILE_BASE[room_code] = base
    return base


def audit_write(room_code: str, record: Dict[str, Any]) -> None:
    """Append a structured JSON line to the per-room audit log.

    Best-effort: a failure to write is ignored.
    """
    if not _enabled():
        return
    record = dict(record)
    record.setdefault("ts", datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"))
    record.setdefault("room", room_code)
    try:
        base_dir = _audit_dir()
        os.makedirs(base_dir, exist_ok=True)
        log_path = os.path.join(base_dir, f"{_file_base_for(room_code)}.log")
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")
    except (OSError, TypeError, ValueError):
        pass
