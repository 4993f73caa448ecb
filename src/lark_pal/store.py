from __future__ import annotations

import json
import os
import logging
import tempfile
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import DEFAULT_IMAGE_TYPE, Message

logger = logging.getLogger("lark_pal_store")


class PersistenceError(RuntimeError):
    """Raised when the message log or cursor cannot be read or written."""


def atomic_write_text(path: Path, text: str, prefix: str) -> None:
    """Write ``text`` to a sibling temp file, then rename it over ``path``."""
    tmp_path = ""
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=str(path.parent),
            prefix=prefix,
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
            tmp_path = handle.name
        Path(tmp_path).replace(path)
    except OSError as exc:
        raise PersistenceError(f"failed to write {path}: {exc}") from exc
    finally:
        if tmp_path:
            try:
                Path(tmp_path).unlink(missing_ok=True)
            except OSError:
                pass


def _message_from_dict(raw: Dict[str, Any]) -> Message:
    text = raw.get("text")
    image = raw.get("image")
    return Message(
        id=str(raw["id"]),
        from_bot=bool(raw.get("from_bot", False)),
        sender=str(raw.get("sender", "") or ""),
        time=int(raw.get("time", 0) or 0),
        text=str(text) if text is not None else None,
        image=str(image) if image is not None else None,
        image_type=str(raw.get("image_type") or DEFAULT_IMAGE_TYPE),
    )


def now_ms() -> int:
    return int(time.time() * 1000)


class MessageStore:
    """Deduplicated, arrival-ordered message log for one room.

    Every successful ``append`` rewrites the whole log to disk before returning,
    so a message reported as appended is durable. The log is never pruned;
    ``recent_window`` filters by message time on read.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._messages: List[Message] = []
        self._ids: set[str] = set()
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        self._messages = []
        self._ids = set()
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            raw_messages = data.get("messages", []) if isinstance(data, dict) else []
            for raw in raw_messages:
                message = _message_from_dict(raw)
                if message.id in self._ids:
                    continue
                self._messages.append(message)
                self._ids.add(message.id)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise PersistenceError(f"failed to load message log {self._path}: {exc}") from exc
        logger.info("Loaded %d messages from %s", len(self._messages), self._path)

    def append(self, message: Message) -> bool:
        if message.id in self._ids:
            return False
        self._messages.append(message)
        self._ids.add(message.id)
        try:
            self._persist()
        except PersistenceError:
            self._messages.pop()
            self._ids.discard(message.id)
            raise
        return True

    def contains(self, message_id: str) -> bool:
        return message_id in self._ids

    def last_message(self) -> Optional[Message]:
        if not self._messages:
            return None
        return self._messages[-1]

    def latest_message_time(self, human_only: bool = False) -> int:
        times = [message.time for message in self._messages if not (human_only and message.from_bot)]
        return max(times) if times else 0

    def last_human_after(self, message_id: Optional[str]) -> Optional[Message]:
        """Newest human message stored after ``message_id`` in arrival order."""
        for message in reversed(self._messages):
            if message.id == message_id:
                return None
            if not message.from_bot:
                return message
        return None

    def recent_window(self, period_ms: int, now: Optional[int] = None) -> List[Message]:
        current = now_ms() if now is None else int(now)
        start = current - int(period_ms)
        return [message for message in self._messages if message.time >= start]

    def messages(self) -> List[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def _persist(self) -> None:
        payload = {"messages": [asdict(message) for message in self._messages]}
        atomic_write_text(self._path, json.dumps(payload, ensure_ascii=False), prefix="messages_")
