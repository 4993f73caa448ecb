from lark_pal.composer import build_prompt, message_to_turn
from lark_pal.models import Message, Role, Turn
from lark_pal.time_utils import format_local_time


class WordCounter:
    """Counts one token per whitespace-separated word, plus a fixed image cost."""

    def __init__(self, image_tokens: int = 10) -> None:
        self.image_tokens = image_tokens

    def count_turn(self, turn: Turn) -> int:
        count = len((turn.text or "").split())
        if turn.image:
            count += self.image_tokens
        return count


class FixedCounter:
    def __init__(self, costs: dict) -> None:
        self._costs = costs

    def count_turn(self, turn: Turn) -> int:
        if turn.role == Role.SYSTEM:
            return self._costs.get("system", 0)
        for key, cost in self._costs.items():
            if key != "system" and key in (turn.text or ""):
                return cost
        return 1


def _msg(message_id: str, time: int, text=None, from_bot=False, image=None, sender="Alice") -> Message:
    return Message(id=message_id, from_bot=from_bot, sender=sender, time=time, text=text, image=image)


def test_empty_input_yields_system_only():
    turns = build_prompt([], "sys", 100, WordCounter())
    assert len(turns) == 1
    assert turns[0].role == Role.SYSTEM
    assert turns[0].text == "sys"


def test_packs_newest_in_chronological_order():
    messages = [_msg("m1", 1, "one"), _msg("m2", 2, "two"), _msg("m3", 3, "three")]
    counter = FixedCounter({"system": 1, "one": 5, "two": 5, "three": 5})
    turns = build_prompt(messages, "sys", 11, counter)
    assert [t.role for t in turns] == [Role.SYSTEM, Role.USER, Role.USER]
    assert turns[1].text.endswith("Alice: two")
    assert turns[2].text.endswith("Alice: three")


def test_walk_stops_at_first_overflow():
    # The oldest message is cheap and would fit, but the walk must not skip past "big".
    messages = [_msg("m1", 1, "tiny"), _msg("m2", 2, "big"), _msg("m3", 3, "last")]
    counter = FixedCounter({"system": 1, "tiny": 1, "big": 50, "last": 2})
    turns = build_prompt(messages, "sys", 10, counter)
    assert len(turns) == 2
    assert turns[1].text.endswith("Alice: last")


def test_single_oversized_message_excluded_entirely():
    turns = build_prompt([_msg("m1", 1, "huge")], "sys", 10, FixedCounter({"system": 1, "huge": 20}))
    assert len(turns) == 1


def test_budget_boundary_is_inclusive():
    messages = [_msg("m1", 1, "exact")]
    turns = build_prompt(messages, "sys", 10, FixedCounter({"system": 4, "exact": 6}))
    assert len(turns) == 2


def test_oversized_system_prompt_still_returned():
    turns = build_prompt([_msg("m1", 1, "hello")], "a b c d e", 3, WordCounter())
    assert len(turns) == 1
    assert turns[0].text == "a b c d e"


def test_human_text_prefixed_with_time_and_sender():
    turn = message_to_turn(_msg("m1", 1_700_000_000_000, "hello", sender="Bob"), "UTC", "%H:%M")
    assert turn.role == Role.USER
    assert turn.text == f"{format_local_time(1_700_000_000_000, 'UTC', '%H:%M')} Bob: hello"


def test_bot_text_not_prefixed():
    turn = message_to_turn(_msg("m1", 1, "I am the bot", from_bot=True))
    assert turn.role == Role.ASSISTANT
    assert turn.text == "I am the bot"


def test_image_only_and_empty_messages():
    image_only = message_to_turn(_msg("m1", 1, image="aW1n"))
    assert image_only.text is None
    assert image_only.image == "aW1n"
    payload = image_only.to_payload()
    assert payload["content"] == [
        {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,aW1n", "detail": "low"}}
    ]
    assert message_to_turn(_msg("m2", 2)) is None


def test_text_and_image_turn_carries_both_parts():
    turn = message_to_turn(_msg("m1", 1, "look", image="aW1n"), "UTC")
    kinds = [part["type"] for part in turn.to_payload()["content"]]
    assert kinds == ["text", "image_url"]


def test_skipped_messages_cost_nothing():
    messages = [_msg("m1", 1, "keep"), _msg("m2", 2), _msg("m3", 3, image="aW1n")]
    turns = build_prompt(messages, "sys", 100, WordCounter(image_tokens=10))
    assert len(turns) == 3
    assert turns[1].text.endswith("Alice: keep")
    assert turns[2].image == "aW1n"


def test_image_cost_counts_against_budget():
    messages = [_msg("m1", 1, "words here"), _msg("m2", 2, image="aW1n")]
    turns = build_prompt(messages, "sys", 10, WordCounter(image_tokens=10))
    assert len(turns) == 1


def test_image_turn_keeps_detected_type():
    message = Message(id="m1", from_bot=False, sender="Alice", time=1, image="aW1n", image_type="image/png")
    part = message_to_turn(message).to_payload()["content"][0]
    assert part["image_url"]["url"] == "data:image/png;base64,aW1n"
