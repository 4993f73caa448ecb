import asyncio
import json

import pytest

from lark_pal.config import AssistantConfig, LarkConfig, LLMConfig
from lark_pal.controller import RoomController
from lark_pal.models import DeliveryResult, Message, ModelReply, Turn
from lark_pal.scheduler import TriggerState
from lark_pal.store import PersistenceError
from lark_pal.time_utils import days_to_ms

NOW = 1_700_000_000_000


class FakeSource:
    def __init__(self, items=None) -> None:
        self.items = items or []
        self.list_calls: list[tuple[int, int]] = []

    def list_messages_since(self, start_ms, end_ms):
        self.list_calls.append((start_ms, end_ms))
        return [item for item in self.items if start_ms <= int(item["create_time"]) <= end_ms]

    def fetch_one(self, message_id):
        return None

    def resolve_sender_name(self, sender_id):
        return sender_id.replace("ou_", "").title()

    def download_image(self, message_id, image_key):
        return b""


class WordCounter:
    def count_turn(self, turn: Turn) -> int:
        return len((turn.text or "").split())


class FakeBackend:
    def __init__(self) -> None:
        self.calls: list[list[Turn]] = []

    async def chat_complete(self, turns, model, max_output_tokens) -> ModelReply:
        self.calls.append(list(turns))
        return ModelReply(text="sure", model=model)

    def counter_for(self, model):
        return WordCounter()

    def resolve_model(self, model):
        return model


class MidCallBackend(FakeBackend):
    """Runs a hook while the first model call is still in flight."""

    def __init__(self, during_first_call) -> None:
        super().__init__()
        self._during_first_call = during_first_call

    async def chat_complete(self, turns, model, max_output_tokens) -> ModelReply:
        if not self.calls:
            await self._during_first_call()
        return await super().chat_complete(turns, model, max_output_tokens)


class FakeSender:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send_text(self, room_id, text) -> DeliveryResult:
        self.sent.append(text)
        return DeliveryResult(code=0, message_id=f"om_reply_{len(self.sent)}")


def _raw(message_id, text, create_time, sender_id="ou_alice", sender_type="user", mentions=None):
    return {
        "message_id": message_id,
        "msg_type": "text",
        "create_time": str(create_time),
        "sender": {"id": sender_id, "sender_type": sender_type},
        "body": {"content": json.dumps({"text": text})},
        "mentions": mentions or [],
    }


def _controller(tmp_path, source=None, idle=5.0, instant=0.01, backend=None):
    backend = backend or FakeBackend()
    sender = FakeSender()
    controller = RoomController(
        room_id="oc_room",
        state_dir=str(tmp_path),
        source=source or FakeSource(),
        backend=backend,
        sender=sender,
        assistant=AssistantConfig(
            idle_delay_seconds=idle,
            instant_delay_seconds=instant,
            message_batch_period_days=365 * 100,
            display_timezone="UTC",
        ),
        llm=LLMConfig(model="test-model", reply_footer=""),
        lark=LarkConfig(bot_name="Pal", history_days=30),
        bot_id="ou_bot",
    )
    return controller, backend, sender


def test_mention_triggers_instant_reply(tmp_path):
    controller, backend, sender = _controller(tmp_path)
    mention = [{"key": "@_user_1", "id": "ou_bot", "name": "Pal"}]

    async def run() -> None:
        await controller.on_new_message(_raw("m1", "@_user_1 hi", NOW, mentions=mention))
        assert controller.scheduler.instant
        await asyncio.wait_for(controller.scheduler.join(), timeout=1.0)

    asyncio.run(run())
    assert sender.sent == ["sure"]
    assert controller.cursor.get() == "m1"
    assert controller.store.last_message().id == "om_reply_1"
    assert controller.store.last_message().from_bot


def test_plain_message_waits_for_idle_delay(tmp_path):
    controller, backend, sender = _controller(tmp_path)

    async def run() -> None:
        await controller.on_new_message(_raw("m1", "hi all", NOW))
        assert controller.scheduler.state == TriggerState.COUNTING_DOWN
        assert not controller.scheduler.instant
        await controller.close()

    asyncio.run(run())
    assert sender.sent == []


def test_redelivered_and_bot_messages_do_not_notify(tmp_path):
    controller, backend, sender = _controller(tmp_path)

    async def run() -> None:
        await controller.on_new_message(_raw("b1", "hello from me", NOW, sender_id="cli_pal", sender_type="app"))
        assert controller.scheduler.state == TriggerState.IDLE
        await controller.on_new_message(_raw("m1", "hi", NOW + 1))
        assert controller.scheduler.state == TriggerState.COUNTING_DOWN
        assert await controller.on_new_message(_raw("m1", "hi", NOW + 1)) is None
        await controller.close()

    asyncio.run(run())
    assert len(controller.store) == 2
    assert controller.store.messages()[0].sender == "Pal"


def test_sync_history_resumes_from_latest_time(tmp_path):
    items = [
        _raw("m1", "old", NOW - days_to_ms(40)),
        _raw("m2", "recent", NOW - 1000),
        _raw("m3", "newest", NOW - 10),
    ]
    source = FakeSource(items=items)
    controller, backend, sender = _controller(tmp_path, source=source)

    async def run() -> None:
        appended = await controller.sync_history(now=NOW)
        assert appended == 2
        assert controller.scheduler.state == TriggerState.COUNTING_DOWN
        again = await controller.sync_history(now=NOW + 5)
        assert again == 0
        await controller.close()

    asyncio.run(run())
    assert [m.id for m in controller.store.messages()] == ["m2", "m3"]
    assert source.list_calls[0] == (NOW - days_to_ms(30), NOW)
    assert source.list_calls[1] == (NOW - 10, NOW + 5)
    assert controller.store.messages()[0].sender == "Alice"


def test_state_survives_restart(tmp_path):
    controller, backend, sender = _controller(tmp_path)
    mention = [{"key": "@_user_1", "id": "ou_bot", "name": "Pal"}]

    async def first_run() -> None:
        await controller.on_new_message(_raw("m1", "@_user_1 hi", NOW, mentions=mention))
        await asyncio.wait_for(controller.scheduler.join(), timeout=1.0)

    asyncio.run(first_run())

    restarted, backend2, sender2 = _controller(tmp_path)
    assert restarted.cursor.get() == "m1"
    assert len(restarted.store) == 2

    async def second_run() -> None:
        assert not restarted.scheduler.notify(want_instant=True)

    asyncio.run(second_run())
    assert sender2.sent == []


def test_message_arriving_during_reply_gets_its_own_cycle(tmp_path):
    box: dict = {}

    async def second_message() -> None:
        await box["controller"].on_new_message(_raw("m2", "and another thing", NOW + 1))

    controller, backend, sender = _controller(tmp_path, idle=0.02, backend=MidCallBackend(second_message))
    box["controller"] = controller
    mention = [{"key": "@_user_1", "id": "ou_bot", "name": "Pal"}]

    async def run() -> None:
        await controller.on_new_message(_raw("m1", "@_user_1 hi", NOW, mentions=mention))
        await asyncio.wait_for(controller.scheduler.join(), timeout=1.0)

    asyncio.run(run())
    assert len(backend.calls) == 2
    assert sender.sent == ["sure", "sure"]
    assert controller.cursor.get() == "m2"
    assert [m.id for m in controller.store.messages()] == ["m1", "m2", "om_reply_1", "om_reply_2"]


def test_inbound_persistence_failure_propagates(tmp_path):
    controller, backend, sender = _controller(tmp_path)
    (tmp_path / "oc_room" / "messages.json").mkdir()

    async def run() -> None:
        with pytest.raises(PersistenceError):
            await controller.on_new_message(_raw("m1", "hi", NOW))
        assert controller.scheduler.state == TriggerState.IDLE

    asyncio.run(run())
    assert len(controller.store) == 0


def test_sync_history_ignores_bot_reply_timestamps(tmp_path):
    source = FakeSource()
    controller, backend, sender = _controller(tmp_path, source=source)
    controller.store.append(Message(id="m1", from_bot=False, sender="Alice", time=NOW - 100, text="hi"))
    controller.store.append(Message(id="r1", from_bot=True, sender="Pal", time=NOW + 50, text="hello"))

    async def run() -> None:
        await controller.sync_history(now=NOW + 100)
        await controller.close()

    asyncio.run(run())
    assert source.list_calls == [(NOW - 100, NOW + 100)]
