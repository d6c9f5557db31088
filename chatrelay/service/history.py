"""Conversation history as sent upstream.

The turn being answered is left out here; ``build_chat_request`` in
:mod:`chatrelay.service.completion` appends it as the final user message.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from chatrelay.storage.models import Message


class MessageSource(Protocol):
    def list_messages(
        self, conversation_id: str, *, offset: int = 0, limit: Optional[int] = None
    ) -> List[Message]: ...


@dataclass(frozen=True)
class HistoryEntry:
    role: str
    content: str

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class HistoryBuilder:
    """Project stored messages into the role/content pairs sent upstream.

    Reads the store on every call; nothing is cached between sessions.
    """

    def __init__(self, store: MessageSource) -> None:
        self.store = store

    def build(
        self, conversation_id: str, *, exclude_message_id: Optional[str] = None
    ) -> List[HistoryEntry]:
        return [
            HistoryEntry(role=msg.role.value.lower(), content=msg.content)
            for msg in self.store.list_messages(conversation_id)
            if msg.id != exclude_message_id
        ]
