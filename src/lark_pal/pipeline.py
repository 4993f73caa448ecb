from __future__ import annotations

import logging
from enum import Enum

from .composer import build_prompt
from .config import AssistantConfig, LLMConfig
from .cursor import CursorTracker
from .interfaces import ModelBackend, OutboundSender
from .models import DeliveryResult, Message
from .store import MessageStore, now_ms
from .time_utils import days_to_ms

logger = logging.getLogger("lark_pal_pipeline")


class ReplyOutcome(str, Enum):
    SENT = "sent"
    INTERNAL = "internal"
    FAILED = "failed"


class ReplyPipeline:
    def __init__(
        self,
        room_id: str,
        store: MessageStore,
        cursor: CursorTracker,
        backend: ModelBackend,
        sender: OutboundSender,
        assistant: AssistantConfig,
        llm: LLMConfig,
        bot_name: str = "",
    ) -> None:
        self._room_id = room_id
        self._store = store
        self._cursor = cursor
        self._backend = backend
        self._sender = sender
        self._assistant = assistant
        self._llm = llm
        self._bot_name = bot_name or "assistant"

    async def run(self, batch_last_id: str) -> ReplyOutcome:
        model = self._backend.resolve_model(self._llm.model)
        window = self._store.recent_window(days_to_ms(self._assistant.message_batch_period_days))
        turns = build_prompt(
            window,
            self._assistant.system_prompt,
            self._llm.max_prompt_tokens,
            self._backend.counter_for(model),
            display_tz=self._assistant.display_timezone,
            time_format=self._assistant.time_format,
        )
        if len(turns) <= 1:
            logger.debug("No history fits the prompt budget; sending the system turn alone")

        try:
            reply = await self._backend.chat_complete(turns, model, self._llm.max_completion_tokens)
        except Exception as exc:
            logger.warning("Model call failed (%s): %s", exc.__class__.__name__, exc)
            return ReplyOutcome.FAILED

        text = (reply.text or "").strip()
        if not text:
            logger.warning("Model %s returned an empty reply", reply.model)
            return ReplyOutcome.FAILED
        prefix = self._assistant.internal_prefix
        if prefix and text.startswith(prefix):
            logger.info("Internal-only reply, not posting: %s", text)
            return ReplyOutcome.INTERNAL

        outbound = self._format_reply(text, reply.model)
        try:
            result = await self._sender.send_text(self._room_id, outbound)
        except Exception as exc:
            logger.warning("Sending reply failed (%s): %s", exc.__class__.__name__, exc)
            return ReplyOutcome.FAILED
        if not result.ok:
            logger.warning("Sending reply failed: code=%s, msg=%s", result.code, result.msg)
            return ReplyOutcome.FAILED

        self._cursor.set(batch_last_id)
        if result.message_id:
            self._record_bot_message(result, outbound)
        logger.info("Reply sent for batch ending at %s", batch_last_id)
        return ReplyOutcome.SENT

    def _format_reply(self, text: str, model: str) -> str:
        footer = self._llm.reply_footer
        if not footer:
            return text
        return text + footer.format(model=model)

    def _record_bot_message(self, result: DeliveryResult, text: str) -> None:
        # Platform time keeps history resync aligned with the server clock.
        sent_at = result.create_time or now_ms()
        message = Message(id=result.message_id, from_bot=True, sender=self._bot_name, time=sent_at, text=text)
        self._store.append(message)
