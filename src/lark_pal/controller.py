from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .config import AssistantConfig, LarkConfig, LLMConfig
from .cursor import CursorTracker
from .ingest import MessageNormalizer, NormalizedMessage, collect_history
from .interfaces import ChatSource, ModelBackend, OutboundSender
from .pipeline import ReplyPipeline
from .scheduler import TriggerScheduler
from .store import MessageStore, now_ms
from .time_utils import days_to_ms

logger = logging.getLogger("lark_pal_controller")


def _slug(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "._-" else "_" for ch in value.strip())
    return cleaned or "default"


class RoomController:
    """Per-room context: owns the store, cursor, scheduler and reply pipeline."""

    def __init__(
        self,
        room_id: str,
        state_dir: str,
        source: ChatSource,
        backend: ModelBackend,
        sender: OutboundSender,
        assistant: AssistantConfig | None = None,
        llm: LLMConfig | None = None,
        lark: LarkConfig | None = None,
        bot_id: str = "",
    ) -> None:
        self._room_id = room_id
        self._assistant = assistant or AssistantConfig()
        self._llm = llm or LLMConfig()
        self._lark = lark or LarkConfig()
        self._source = source
        base = Path(state_dir).expanduser() / _slug(room_id)
        self._store = MessageStore(base / "messages.json")
        self._cursor = CursorTracker(base / "cursor.txt")
        self._normalizer = MessageNormalizer(source, bot_name=self._lark.bot_name, bot_id=bot_id)
        self._pipeline = ReplyPipeline(
            room_id=room_id,
            store=self._store,
            cursor=self._cursor,
            backend=backend,
            sender=sender,
            assistant=self._assistant,
            llm=self._llm,
            bot_name=self._lark.bot_name,
        )
        self._scheduler = TriggerScheduler(
            store=self._store,
            cursor=self._cursor,
            on_fire=self._pipeline.run,
            idle_delay=self._assistant.idle_delay_seconds,
            instant_delay=self._assistant.instant_delay_seconds,
        )

    @property
    def room_id(self) -> str:
        return self._room_id

    @property
    def store(self) -> MessageStore:
        return self._store

    @property
    def cursor(self) -> CursorTracker:
        return self._cursor

    @property
    def scheduler(self) -> TriggerScheduler:
        return self._scheduler

    async def on_new_message(self, raw: Dict[str, Any]) -> Optional[NormalizedMessage]:
        if self._store.contains(str(raw.get("message_id") or "")):
            return None
        try:
            normalized = await asyncio.to_thread(self._normalizer.normalize, raw)
        except Exception as exc:
            logger.warning("Failed to normalize inbound message (%s): %s", exc.__class__.__name__, exc)
            return None
        if normalized is None:
            return None
        self.ingest(normalized)
        return normalized

    def ingest(self, normalized: NormalizedMessage) -> bool:
        message = normalized.message
        if not self._store.append(message):
            return False
        if not message.from_bot:
            self._scheduler.notify(want_instant=normalized.addressed)
        return True

    async def on_room_metadata_changed(self, raw: Dict[str, Any]) -> None:
        logger.info("Room %s metadata changed: %s", self._room_id, raw)

    async def sync_history(self, now: Optional[int] = None) -> int:
        """Fetch messages newer than the store's latest human message and append them in order."""
        end_ms = now_ms() if now is None else int(now)
        # Bot replies may carry a local timestamp; resume from the newest human message.
        latest = self._store.latest_message_time(human_only=True)
        start_ms = max(latest, end_ms - days_to_ms(self._lark.history_days))
        try:
            collected = await asyncio.to_thread(
                collect_history,
                self._source,
                self._normalizer,
                start_ms,
                end_ms,
                self._store.contains,
            )
        except Exception as exc:
            logger.warning("History sync failed (%s): %s", exc.__class__.__name__, exc)
            return 0
        appended = 0
        addressed = False
        for normalized in collected:
            if self._store.append(normalized.message):
                appended += 1
                addressed = addressed or normalized.addressed
        logger.info("History sync appended %d of %d messages", appended, len(collected))
        self._scheduler.notify(want_instant=addressed)
        return appended

    async def rescan_loop(self, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            return
        while True:
            await asyncio.sleep(interval_seconds)
            await self.sync_history()

    async def close(self) -> None:
        self._scheduler.cancel()
        await self._scheduler.join()
