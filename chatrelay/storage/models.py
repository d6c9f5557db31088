from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

DEFAULT_CONVERSATION_TITLE = "New Conversation"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    USER = "USER"
    ASSISTANT = "ASSISTANT"


@dataclass
class User:
    id: str
    username: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Conversation:
    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    title: str = DEFAULT_CONVERSATION_TITLE


@dataclass
class Message:
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    seq: int
    created_at: datetime
    model: Optional[str] = None
    image_url: Optional[str] = None
