from __future__ import annotations

import threading
import time
import uuid
from typing import Dict, List, Optional, Tuple

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    Message,
    MessageRole,
    User,
    utcnow,
)

logger = get_logger(__name__)


class MemoryStore:
    """In-process conversation store used for tests and local development.

    All reads and writes go through one re-entrant lock so the store can be
    shared between the event loop and worker threads.
    """

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self.passwords: Dict[str, Tuple[str, str]] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self._data_lock = threading.RLock()

    # users
    def create_user(self, username: str) -> User:
        with self._data_lock:
            if self.get_user_by_username(username):
                raise ConstraintViolation("username already exists", {"username": username})
            user = User(id=str(uuid.uuid4()), username=username)
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return user
        return None

    def save_password(self, user_id: str, password_hash: str, algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user missing", {"user_id": user_id})
            self.passwords[user_id] = (password_hash, algo)

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        return self.passwords.get(user_id)

    # conversations
    def create_conversation(
        self, user_id: str, title: str = DEFAULT_CONVERSATION_TITLE
    ) -> Conversation:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "conversation owner missing", {"user_id": user_id}
                )
            now = utcnow()
            conv = Conversation(
                id=str(uuid.uuid4()),
                user_id=user_id,
                created_at=now,
                updated_at=now,
                title=title,
            )
            self.conversations[conv.id] = conv
            self.messages[conv.id] = []
            return conv

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        conv = self.conversations.get(conversation_id)
        if not conv:
            return None
        if user_id and conv.user_id != user_id:
            return None
        return conv

    def list_conversations(
        self, user_id: str, *, offset: int = 0, limit: int = 20
    ) -> List[Conversation]:
        with self._data_lock:
            owned = [c for c in self.conversations.values() if c.user_id == user_id]
        owned.sort(key=lambda c: c.updated_at, reverse=True)
        return owned[offset : offset + limit]

    def count_conversations(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.conversations.values() if c.user_id == user_id)

    def update_conversation_title(
        self, conversation_id: str, title: str
    ) -> Optional[Conversation]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                return None
            conv.title = title
            conv.updated_at = utcnow()
            return conv

    def delete_conversation(self, conversation_id: str, *, user_id: str) -> bool:
        with self._data_lock:
            conv = self.get_conversation(conversation_id, user_id=user_id)
            if not conv:
                return False
            self.conversations.pop(conversation_id, None)
            self.messages.pop(conversation_id, None)
            return True

    # messages
    def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        *,
        model: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Message:
        with self._data_lock:
            if conversation_id not in self.conversations:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            history = self.messages.setdefault(conversation_id, [])
            msg = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                role=MessageRole(role),
                content=content,
                seq=len(history),
                created_at=utcnow(),
                model=model,
                image_url=image_url,
            )
            history.append(msg)
            self.conversations[conversation_id].updated_at = msg.created_at
            return msg

    def list_messages(
        self,
        conversation_id: str,
        *,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Message]:
        with self._data_lock:
            ordered = sorted(
                self.messages.get(conversation_id, []),
                key=lambda m: (m.seq, m.created_at),
            )
        end = None if limit is None else offset + limit
        return ordered[offset:end]

    def count_messages(self, conversation_id: str) -> int:
        with self._data_lock:
            return len(self.messages.get(conversation_id, []))


class InMemoryWindowStore:
    """Sorted-window store mirroring the Redis ZSET operations.

    Only safe within a single process; used when Redis is not configured and
    a local fallback is allowed.
    """

    def __init__(self) -> None:
        self._windows: Dict[str, Dict[str, float]] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _expire_locked(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._windows.pop(key, None)
            self._expiry.pop(key, None)

    async def count_window(self, key: str, start: float, end: float) -> int:
        with self._lock:
            self._expire_locked(key)
            window = self._windows.get(key, {})
            return sum(1 for score in window.values() if start <= score <= end)

    async def record_in_window(
        self,
        key: str,
        member: str,
        score: float,
        *,
        ttl_seconds: int,
        prune_before: float,
    ) -> None:
        with self._lock:
            self._expire_locked(key)
            window = self._windows.setdefault(key, {})
            for stale in [m for m, s in window.items() if s < prune_before]:
                del window[stale]
            window[member] = score
            self._expiry[key] = time.monotonic() + ttl_seconds
