from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .interfaces import ChatSource
from .models import DEFAULT_IMAGE_TYPE, Message
from .store import now_ms

logger = logging.getLogger("lark_pal_ingest")

BOT_SENDER_TYPES = {"app", "bot"}


class TextContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str = ""


class ImageContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image_key: str


class PostElement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tag: str
    text: str = ""
    image_key: str = ""
    user_name: str = ""


class PostContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = ""
    content: List[List[PostElement]] = Field(default_factory=list)


@dataclass
class Page:
    items: List[Dict[str, Any]]
    has_more: bool = False
    page_token: Optional[str] = None


class PagedSequence:
    """Restartable lazy sequence over a paginated listing.

    Each iteration starts again from the first page and follows ``page_token``
    until a page reports ``has_more`` as false.
    """

    def __init__(self, fetch_page: Callable[[Optional[str]], Page]) -> None:
        self._fetch_page = fetch_page

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        token: Optional[str] = None
        while True:
            page = self._fetch_page(token)
            yield from page.items
            if not page.has_more or not page.page_token:
                return
            token = page.page_token


@dataclass
class NormalizedMessage:
    message: Message
    addressed: bool = False
    image_keys: List[str] = field(default_factory=list)


class MessageNormalizer:
    """Turns raw platform message payloads into ``Message`` records.

    Sender names are resolved once per sender id and cached. Content that cannot
    be decoded leaves the message without text or image so one bad payload never
    aborts a batch.
    """

    def __init__(self, source: ChatSource, bot_name: str = "", bot_id: str = "") -> None:
        self._source = source
        self._bot_name = bot_name
        self._bot_id = bot_id
        self._names: Dict[str, str] = {}

    def normalize(self, raw: Dict[str, Any]) -> Optional[NormalizedMessage]:
        message_id = str(raw.get("message_id") or "")
        if not message_id:
            logger.warning("Dropping payload without message_id: %s", _preview(raw))
            return None
        sender = raw.get("sender") if isinstance(raw.get("sender"), dict) else {}
        sender_id = str(sender.get("id") or "")
        from_bot = str(sender.get("sender_type") or "") in BOT_SENDER_TYPES
        msg_type = str(raw.get("msg_type") or raw.get("message_type") or "")
        mentions = raw.get("mentions") if isinstance(raw.get("mentions"), list) else []

        text, image_keys = self._parse_content(message_id, msg_type, _content_of(raw))
        if text:
            text = _resolve_mentions(text, mentions)
        image, image_type = None, DEFAULT_IMAGE_TYPE
        if image_keys:
            image, image_type = self._fetch_image(message_id, image_keys[0])

        message = Message(
            id=message_id,
            from_bot=from_bot,
            sender=self._sender_name(sender_id, from_bot),
            time=_parse_time(raw.get("create_time")),
            text=text or None,
            image=image,
            image_type=image_type,
        )
        addressed = not from_bot and self._is_addressed(text or "", mentions)
        return NormalizedMessage(message=message, addressed=addressed, image_keys=image_keys)

    def _parse_content(self, message_id: str, msg_type: str, content: str) -> Tuple[str, List[str]]:
        if msg_type not in {"text", "image", "post"}:
            logger.debug("Message %s has unsupported type %s; storing without content", message_id, msg_type)
            return "", []
        try:
            data = json.loads(content) if content else {}
            if msg_type == "text":
                return TextContent.model_validate(data).text, []
            if msg_type == "image":
                return "", [ImageContent.model_validate(data).image_key]
            return _flatten_post(PostContent.model_validate(_unwrap_post(data)))
        except (ValueError, TypeError, ValidationError) as exc:
            logger.warning("Malformed %s content in message %s: %s", msg_type, message_id, exc)
            return "", []

    def _fetch_image(self, message_id: str, image_key: str) -> Tuple[Optional[str], str]:
        try:
            data = self._source.download_image(message_id, image_key)
        except Exception as exc:
            logger.warning("Image download failed for %s (%s): %s", message_id, exc.__class__.__name__, exc)
            return None, DEFAULT_IMAGE_TYPE
        if not data:
            return None, DEFAULT_IMAGE_TYPE
        return base64.b64encode(data).decode("ascii"), detect_image_type(data)

    def _sender_name(self, sender_id: str, from_bot: bool) -> str:
        if from_bot:
            return self._bot_name or "assistant"
        if not sender_id:
            return "unknown"
        cached = self._names.get(sender_id)
        if cached is not None:
            return cached
        try:
            name = self._source.resolve_sender_name(sender_id) or sender_id
        except Exception as exc:
            logger.warning("Sender lookup failed for %s (%s): %s", sender_id, exc.__class__.__name__, exc)
            return sender_id
        self._names[sender_id] = name
        return name

    def _is_addressed(self, text: str, mentions: List[Any]) -> bool:
        for mention in mentions:
            if not isinstance(mention, dict):
                continue
            if self._bot_id and _mention_id(mention) == self._bot_id:
                return True
            if self._bot_name and str(mention.get("name") or "") == self._bot_name:
                return True
        return bool(self._bot_name) and f"@{self._bot_name}" in text


def detect_image_type(data: bytes) -> str:
    """Detect the image MIME type from magic bytes."""
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:4] == b"\x89PNG":
        return "image/png"
    if data[:4] == b"GIF8":
        return "image/gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return DEFAULT_IMAGE_TYPE


def collect_history(
    source: ChatSource,
    normalizer: MessageNormalizer,
    start_ms: int,
    end_ms: int,
    skip: Callable[[str], bool] | None = None,
) -> List[NormalizedMessage]:
    """Drain the paginated listing fully and normalize every unseen message."""
    collected: List[NormalizedMessage] = []
    for raw in source.list_messages_since(start_ms, end_ms):
        message_id = str(raw.get("message_id") or "")
        if skip is not None and message_id and skip(message_id):
            continue
        normalized = normalizer.normalize(raw)
        if normalized is not None:
            collected.append(normalized)
    return collected


def _content_of(raw: Dict[str, Any]) -> str:
    body = raw.get("body")
    if isinstance(body, dict) and body.get("content") is not None:
        return str(body.get("content"))
    content = raw.get("content")
    return str(content) if content is not None else ""


def _unwrap_post(data: Any) -> Any:
    # Posts may arrive wrapped in a locale key, e.g. {"zh_cn": {"title": ..., "content": ...}}.
    if isinstance(data, dict) and "content" not in data:
        for value in data.values():
            if isinstance(value, dict) and "content" in value:
                return value
    return data


def _flatten_post(post: PostContent) -> Tuple[str, List[str]]:
    lines: List[str] = []
    image_keys: List[str] = []
    if post.title:
        lines.append(post.title)
    for paragraph in post.content:
        parts: List[str] = []
        for element in paragraph:
            if element.tag in {"text", "a"}:
                parts.append(element.text)
            elif element.tag == "at":
                parts.append(f"@{element.user_name}" if element.user_name else "")
            elif element.tag == "img" and element.image_key:
                image_keys.append(element.image_key)
        line = "".join(parts).strip()
        if line:
            lines.append(line)
    return "\n".join(lines), image_keys


def _resolve_mentions(text: str, mentions: List[Any]) -> str:
    for mention in mentions:
        if not isinstance(mention, dict):
            continue
        key = str(mention.get("key") or "")
        name = str(mention.get("name") or "")
        if key and name:
            text = text.replace(key, f"@{name}")
    return text


def _mention_id(mention: Dict[str, Any]) -> str:
    raw_id = mention.get("id")
    if isinstance(raw_id, dict):
        return str(raw_id.get("open_id") or "")
    return str(raw_id or "")


def _parse_time(value: Any) -> int:
    try:
        parsed = int(str(value))
    except (TypeError, ValueError):
        return now_ms()
    return parsed if parsed > 0 else now_ms()


def _preview(raw: Dict[str, Any], limit: int = 200) -> str:
    text = json.dumps(raw, ensure_ascii=False, default=str)
    return text if len(text) <= limit else text[: limit - 3] + "..."
