from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .store import PersistenceError, atomic_write_text

logger = logging.getLogger("lark_pal_cursor")


class CursorTracker:
    """Persists the id of the last message already answered by a reply cycle."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._value: Optional[str] = None
        if self._path.exists():
            try:
                value = self._path.read_text(encoding="utf-8").strip()
            except OSError as exc:
                raise PersistenceError(f"failed to read cursor {self._path}: {exc}") from exc
            self._value = value or None

    def get(self) -> Optional[str]:
        return self._value

    def set(self, message_id: str) -> None:
        atomic_write_text(self._path, message_id, prefix="cursor_")
        self._value = message_id
        logger.debug("Cursor advanced to %s", message_id)
