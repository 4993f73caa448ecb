from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .models import Message, Role, Turn
from .time_utils import DEFAULT_TIME_FORMAT, DEFAULT_TIMEZONE, format_local_time
from .tokens import TokenCounter

logger = logging.getLogger("lark_pal_composer")


def message_to_turn(
    message: Message,
    display_tz: str = DEFAULT_TIMEZONE,
    time_format: str = DEFAULT_TIME_FORMAT,
) -> Optional[Turn]:
    """Map a stored message to a model turn, or ``None`` when it carries nothing to send."""
    if not message.has_content():
        return None
    role = Role.ASSISTANT if message.from_bot else Role.USER
    text = message.text or None
    if text and not message.from_bot:
        label = format_local_time(message.time, display_tz, time_format)
        text = f"{label} {message.sender}: {text}"
    return Turn(role=role, text=text, image=message.image or None, image_type=message.image_type)


def build_prompt(
    messages: Sequence[Message],
    system_prompt: str,
    token_budget: int,
    counter: TokenCounter,
    display_tz: str = DEFAULT_TIMEZONE,
    time_format: str = DEFAULT_TIME_FORMAT,
) -> List[Turn]:
    """Pack the newest messages that fit ``token_budget`` behind a system turn.

    Messages are walked newest first and the walk stops at the first one that
    would overflow the budget, so the selection is always a contiguous suffix of
    ``messages``. Each accepted turn is inserted right after the system turn,
    which leaves the result in chronological order.
    """
    system_turn = Turn(role=Role.SYSTEM, text=system_prompt)
    result: List[Turn] = [system_turn]
    logger.debug("System turn: %s", system_prompt)

    prompt_tokens = counter.count_turn(system_turn)
    for message in reversed(messages):
        turn = message_to_turn(message, display_tz, time_format)
        if turn is None:
            continue
        tokens = counter.count_turn(turn)
        if prompt_tokens + tokens > token_budget:
            logger.debug(
                "Prompt token limit reached: %d + %d > %d, stop at message %s",
                prompt_tokens,
                tokens,
                token_budget,
                message.id,
            )
            break
        prompt_tokens += tokens
        result.insert(1, turn)
    return result
