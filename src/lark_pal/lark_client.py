from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import threading
import time
from typing import Any, Callable, Coroutine, Dict, Iterable, Optional

import lark_oapi as lark
from lark_oapi.api.contact.v3 import GetUserRequest
from lark_oapi.api.im.v1 import (
    CreateMessageRequest,
    CreateMessageRequestBody,
    GetMessageRequest,
    GetMessageResourceRequest,
    ListMessageRequest,
    P2ImMessageReceiveV1,
)
from lark_oapi.core.http import HttpMethod
from lark_oapi.core.model.base_request import BaseRequest

from .config import LarkConfig
from .controller import RoomController
from .ingest import Page, PagedSequence
from .models import DeliveryResult
from .store import PersistenceError

logger = logging.getLogger("lark_pal_lark")


def _domain(config: LarkConfig) -> str:
    if config.domain.lower() == "lark":
        return lark.LARK_DOMAIN
    return lark.FEISHU_DOMAIN


def build_client(config: LarkConfig) -> "lark.Client":
    if not config.app_id or not config.app_secret:
        raise RuntimeError("lark app_id / app_secret not configured")
    return (
        lark.Client.builder()
        .app_id(config.app_id)
        .app_secret(config.app_secret)
        .domain(_domain(config))
        .log_level(lark.LogLevel.INFO)
        .build()
    )


def _to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    data = json.loads(lark.JSON.marshal(obj))
    return data if isinstance(data, dict) else {}


def _parse_ms(value: Any) -> int:
    try:
        return max(0, int(str(value)))
    except (TypeError, ValueError):
        return 0


def dispatch_to_loop(
    coro: Coroutine[Any, Any, Any],
    loop: asyncio.AbstractEventLoop,
    on_fatal: Optional[Callable[[BaseException], None]] = None,
) -> "concurrent.futures.Future":
    """Schedule ``coro`` on ``loop`` from another thread and report its failure.

    Errors are logged; a ``PersistenceError`` is also handed to ``on_fatal`` on
    the loop thread so the service can stop.
    """
    future = asyncio.run_coroutine_threadsafe(coro, loop)

    def _done(done: "concurrent.futures.Future") -> None:
        if done.cancelled():
            return
        exc = done.exception()
        if exc is None:
            return
        logger.error("Inbound event handling failed (%s): %s", exc.__class__.__name__, exc, exc_info=exc)
        if on_fatal is not None and isinstance(exc, PersistenceError):
            loop.call_soon_threadsafe(on_fatal, exc)

    future.add_done_callback(_done)
    return future


def fetch_bot_open_id(client: "lark.Client") -> str:
    request = BaseRequest()
    request.uri = "/open-apis/bot/v3/info"
    request.http_method = HttpMethod.GET
    request.token_types = {lark.AccessTokenType.TENANT}
    try:
        response = client.request(request)
    except Exception as exc:
        logger.warning("Failed to fetch bot open_id (%s): %s", exc.__class__.__name__, exc)
        return ""
    if response.code != 0 or not response.raw or not response.raw.content:
        logger.warning("Bot info API returned no open_id: code=%s, msg=%s", response.code, response.msg)
        return ""
    data = json.loads(response.raw.content)
    return str(data.get("bot", {}).get("open_id", "") or "")


class LarkChatSource:
    def __init__(self, client: "lark.Client", chat_id: str, page_size: int = 10) -> None:
        self._client = client
        self._chat_id = chat_id
        self._page_size = max(1, int(page_size))

    def list_messages_since(self, start_ms: int, end_ms: int) -> Iterable[Dict[str, Any]]:
        start_s = str(int(start_ms // 1000))
        end_s = str(int(end_ms // 1000))

        def fetch_page(page_token: Optional[str]) -> Page:
            builder = (
                ListMessageRequest.builder()
                .container_id_type("chat")
                .container_id(self._chat_id)
                .start_time(start_s)
                .end_time(end_s)
                .sort_type("ByCreateTimeAsc")
                .page_size(self._page_size)
            )
            if page_token:
                builder = builder.page_token(page_token)
            response = self._client.im.v1.message.list(builder.build())
            if not response.success():
                raise RuntimeError(f"list messages failed: code={response.code}, msg={response.msg}")
            data = response.data
            items = [_to_dict(item) for item in (data.items or [])] if data else []
            return Page(
                items=items,
                has_more=bool(data.has_more) if data else False,
                page_token=data.page_token if data else None,
            )

        return PagedSequence(fetch_page)

    def fetch_one(self, message_id: str) -> Optional[Dict[str, Any]]:
        request = GetMessageRequest.builder().message_id(message_id).build()
        response = self._client.im.v1.message.get(request)
        if not response.success():
            raise RuntimeError(f"get message failed: code={response.code}, msg={response.msg}")
        if not response.data or not response.data.items:
            return None
        return _to_dict(response.data.items[0])

    def resolve_sender_name(self, sender_id: str) -> str:
        request = GetUserRequest.builder().user_id(sender_id).user_id_type("open_id").build()
        response = self._client.contact.v3.user.get(request)
        if not response.success():
            raise RuntimeError(f"get user failed: code={response.code}, msg={response.msg}")
        user = response.data.user if response.data else None
        return str(getattr(user, "name", "") or sender_id)

    def download_image(self, message_id: str, image_key: str) -> bytes:
        request = (
            GetMessageResourceRequest.builder()
            .message_id(message_id)
            .file_key(image_key)
            .type("image")
            .build()
        )
        response = self._client.im.v1.message_resource.get(request)
        if not response.success():
            raise RuntimeError(f"image download failed: code={response.code}, msg={response.msg}")
        if not response.file:
            return b""
        return response.file.read()


class LarkSender:
    def __init__(self, client: "lark.Client") -> None:
        self._client = client

    async def send_text(self, room_id: str, text: str) -> DeliveryResult:
        return await asyncio.to_thread(self._send_text_sync, room_id, text)

    def _send_text_sync(self, room_id: str, text: str) -> DeliveryResult:
        request = (
            CreateMessageRequest.builder()
            .receive_id_type("chat_id")
            .request_body(
                CreateMessageRequestBody.builder()
                .receive_id(room_id)
                .msg_type("text")
                .content(json.dumps({"text": text}, ensure_ascii=False))
                .build()
            )
            .build()
        )
        response = self._client.im.v1.message.create(request)
        message_id = ""
        create_time = 0
        if response.success() and response.data is not None:
            message_id = str(response.data.message_id or "")
            create_time = _parse_ms(response.data.create_time)
        return DeliveryResult(
            code=int(response.code or 0),
            message_id=message_id,
            msg=str(response.msg or ""),
            create_time=create_time,
        )


def event_to_raw(data: P2ImMessageReceiveV1) -> Dict[str, Any]:
    """Flatten a receive event into the same shape as a message listing item."""
    event = data.event
    message = event.message
    sender = event.sender
    sender_id = sender.sender_id.open_id if sender and sender.sender_id else ""
    return {
        "message_id": message.message_id,
        "chat_id": message.chat_id,
        "msg_type": message.message_type,
        "create_time": message.create_time,
        "body": {"content": message.content},
        "sender": {"id": sender_id, "sender_type": sender.sender_type if sender else ""},
        "mentions": [_to_dict(mention) for mention in (message.mentions or [])],
    }


class LarkEventBridge:
    """Receives websocket events on the SDK thread and hands them to the room loop."""

    def __init__(
        self,
        config: LarkConfig,
        controller: RoomController,
        loop: asyncio.AbstractEventLoop,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self._config = config
        self._controller = controller
        self._loop = loop
        self._on_fatal = on_fatal
        self._running = False
        self._thread: threading.Thread | None = None
        self._handler = (
            lark.EventDispatcherHandler.builder("", "", lark.LogLevel.WARNING)
            .register_p2_im_message_receive_v1(self._on_message)
            .register_p2_im_chat_updated_v1(self._on_chat_updated)
            .build()
        )
        self._ws_client = lark.ws.Client(
            config.app_id,
            config.app_secret,
            event_handler=self._handler,
            log_level=lark.LogLevel.INFO,
            domain=_domain(config),
        )

    def start(self) -> None:
        self._running = True

        def _run_ws() -> None:
            while self._running:
                try:
                    self._ws_client.start()
                except Exception as exc:
                    logger.warning("Lark websocket error (%s): %s", exc.__class__.__name__, exc)
                if self._running:
                    time.sleep(5)

        self._thread = threading.Thread(target=_run_ws, daemon=True)
        self._thread.start()
        logger.info("Lark event bridge started for chat %s", self._config.chat_id)

    def stop(self) -> None:
        self._running = False

    def _on_message(self, data: P2ImMessageReceiveV1) -> None:
        raw = event_to_raw(data)
        if raw.get("chat_id") != self._config.chat_id:
            return
        dispatch_to_loop(self._controller.on_new_message(raw), self._loop, self._on_fatal)

    def _on_chat_updated(self, data: Any) -> None:
        raw = _to_dict(data.event)
        if raw.get("chat_id") != self._config.chat_id:
            return
        dispatch_to_loop(self._controller.on_room_metadata_changed(raw), self._loop, self._on_fatal)
