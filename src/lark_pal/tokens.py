from __future__ import annotations

from typing import Protocol

import tiktoken

from .models import Turn

DEFAULT_ENCODING = "cl100k_base"
# Images are embedded at a bounded square size, so each costs a fixed amount.
DEFAULT_IMAGE_TOKENS = 255


class TokenCounter(Protocol):
    def count_turn(self, turn: Turn) -> int:
        ...


class TiktokenCounter:
    def __init__(self, encoding: str = DEFAULT_ENCODING, image_tokens: int = DEFAULT_IMAGE_TOKENS) -> None:
        self._encoding_name = encoding
        self._image_tokens = int(image_tokens)
        self._encoder = None

    @property
    def image_tokens(self) -> int:
        return self._image_tokens

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return len(self._get_encoder().encode(text, disallowed_special=()))

    def count_turn(self, turn: Turn) -> int:
        count = self.count_text(turn.text or "")
        if turn.image:
            count += self._image_tokens
        return count

    def _get_encoder(self):
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding(self._encoding_name)
        return self._encoder
