from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol

from .models import DeliveryResult, ModelReply, Turn
from .tokens import TokenCounter


class ChatSource(Protocol):
    def list_messages_since(self, start_ms: int, end_ms: int) -> Iterable[Dict[str, Any]]:
        ...

    def fetch_one(self, message_id: str) -> Optional[Dict[str, Any]]:
        ...

    def resolve_sender_name(self, sender_id: str) -> str:
        ...

    def download_image(self, message_id: str, image_key: str) -> bytes:
        ...


class ModelBackend(Protocol):
    async def chat_complete(self, turns: List[Turn], model: str, max_output_tokens: int) -> ModelReply:
        ...

    def counter_for(self, model: str) -> TokenCounter:
        ...

    def resolve_model(self, model: str) -> str:
        ...


class OutboundSender(Protocol):
    async def send_text(self, room_id: str, text: str) -> DeliveryResult:
        ...
