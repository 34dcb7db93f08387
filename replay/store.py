"""Best-effort local key-value cache for session and drawing state."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

import pandas as pd

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")

SESSION_KEY_PREFIX = "session"
DRAWINGS_KEY_PREFIX = "drawings"


def json_default(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat().replace("+00:00", "Z")
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat()
        except TypeError:
            return str(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    if hasattr(value, "item"):
        return value.item()
    return str(value)


def session_key(instrument: str) -> str:
    return f"{SESSION_KEY_PREFIX}:{instrument}"


def drawings_key(instrument: str) -> str:
    return f"{DRAWINGS_KEY_PREFIX}:{instrument}"


class SessionStore:
    """
    One JSON file per key under ``root``. Reads never raise: a missing or
    unreadable entry is reported as ``None`` so a session can always start
    fresh.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        safe = _UNSAFE_KEY_CHARS.sub("_", str(key)).strip("._") or "_"
        return self.root / f"{safe}.json"

    def get(self, key: str) -> dict[str, Any] | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, exc)
            return None
        if not isinstance(payload, dict):
            logger.warning("Ignoring cache entry %s: expected a JSON object", path)
            return None
        return payload

    def set(self, key: str, payload: dict[str, Any]) -> Path:
        path = self.path_for(key)
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, default=json_default), encoding="utf-8")
        tmp_path.replace(path)
        logger.debug("Saved cache entry %s", path)
        return path

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def keys(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(path.stem for path in self.root.glob("*.json"))
