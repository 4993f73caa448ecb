from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


DEFAULT_IMAGE_TYPE = "image/jpeg"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    id: str
    from_bot: bool
    sender: str
    time: int
    text: Optional[str] = None
    image: Optional[str] = None
    image_type: str = DEFAULT_IMAGE_TYPE

    def has_content(self) -> bool:
        return bool(self.text) or bool(self.image)


@dataclass
class Turn:
    role: Role
    text: Optional[str] = None
    image: Optional[str] = None
    image_type: str = DEFAULT_IMAGE_TYPE

    def to_payload(self) -> Dict[str, Any]:
        if self.role == Role.SYSTEM:
            return {"role": self.role.value, "content": self.text or ""}
        parts: List[Dict[str, Any]] = []
        if self.text:
            parts.append({"type": "text", "text": self.text})
        if self.image:
            # Low detail keeps every image at a fixed token cost regardless of its size.
            url = f"data:{self.image_type};base64,{self.image}"
            parts.append({"type": "image_url", "image_url": {"url": url, "detail": "low"}})
        return {"role": self.role.value, "content": parts}


@dataclass
class ModelReply:
    text: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)
    cost: Optional[float] = None


@dataclass
class DeliveryResult:
    code: int
    message_id: str = ""
    msg: str = ""
    create_time: int = 0

    @property
    def ok(self) -> bool:
        return self.code == 0
