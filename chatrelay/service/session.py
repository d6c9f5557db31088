"""Chat session orchestration.

A session resolves the conversation, persists the user turn, loads history,
produces the assistant reply (synthetic or from the upstream model) and
persists it. :class:`StreamSession` additionally relays the reply as ordered
``init``/``content``/``error``/``complete`` events.

Policy on failures after streaming has started: partial assistant text is
discarded and nothing is persisted for the assistant; the user turn stays.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, List, Optional, Protocol, TypeVar

from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.completion import CompletionClient, to_data_uri
from chatrelay.service.errors import NotFoundError
from chatrelay.service.history import HistoryBuilder, HistoryEntry
from chatrelay.service.tracing import traced_stage
from chatrelay.storage.models import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    Message,
    MessageRole,
)

logger = get_logger(__name__)

T = TypeVar("T")

SYNTHETIC_PREFIX = "/test "
SYNTHETIC_REPLY_TEMPLATE = (
    'This is a test streaming response. Your message: "{prompt}"\n\n'
    "Streaming is working! Each word is delivered as its own event.\n\n"
    "✅ Streaming test completed successfully!"
)
RATE_LIMIT_STREAM_MESSAGE = (
    "429 Too Many Requests: Rate limit exceeded. Please wait a moment and try again."
)
GENERIC_STREAM_ERROR = "An error occurred while streaming"
MAX_TITLE_LENGTH = 50
TITLE_ELLIPSIS = "..."
FIRST_EXCHANGE_MESSAGE_COUNT = 2

_RATE_LIMIT_SIGNATURES = ("429", "rate limit", "too many requests")
_WORD_PATTERN = re.compile(r"\S+\s*")


class RequestMode(str, Enum):
    SYNTHETIC = "synthetic"
    LIVE = "live"


class SessionState(str, Enum):
    RESOLVING = "resolving"
    HISTORY_LOADED = "history_loaded"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"


_TERMINAL_STATES = frozenset({SessionState.COMPLETE, SessionState.FAILED})


class EventKind(str, Enum):
    INIT = "init"
    CONTENT = "content"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass(frozen=True)
class StreamEvent:
    kind: EventKind
    data: Any

    @classmethod
    def init(cls, conversation_id: str) -> "StreamEvent":
        return cls(EventKind.INIT, {"conversationId": conversation_id})

    @classmethod
    def content(cls, fragment: str) -> "StreamEvent":
        return cls(EventKind.CONTENT, fragment)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(EventKind.ERROR, message)

    @classmethod
    def complete(cls, message_id: str, conversation_id: str) -> "StreamEvent":
        return cls(
            EventKind.COMPLETE,
            {"messageId": message_id, "conversationId": conversation_id},
        )

    def encode(self) -> str:
        """Serialize as one server-sent event; multi-line data spans several ``data:`` lines."""
        payload = self.data if isinstance(self.data, str) else json.dumps(self.data)
        data_lines = "".join(f"data: {line}\n" for line in payload.split("\n"))
        return f"event: {self.kind.value}\n{data_lines}\n"


@dataclass(frozen=True)
class ChatTurn:
    """One inbound chat message with its generation mode fixed up front."""

    message: str
    model: str
    conversation_id: Optional[str] = None
    image: Optional[str] = None
    mode: RequestMode = RequestMode.LIVE
    prompt: str = ""

    @classmethod
    def parse(
        cls,
        message: str,
        model: str,
        *,
        conversation_id: Optional[str] = None,
        image: Optional[str] = None,
        synthetic_prefix: str = SYNTHETIC_PREFIX,
    ) -> "ChatTurn":
        if message.startswith(synthetic_prefix):
            return cls(
                message=message,
                model=model,
                conversation_id=conversation_id,
                image=image,
                mode=RequestMode.SYNTHETIC,
                prompt=message[len(synthetic_prefix):],
            )
        return cls(
            message=message,
            model=model,
            conversation_id=conversation_id,
            image=image,
            mode=RequestMode.LIVE,
            prompt=message,
        )


@dataclass(frozen=True)
class ChatReply:
    content: str
    conversation_id: str
    message_id: str


def render_synthetic_reply(prompt: str) -> str:
    return SYNTHETIC_REPLY_TEMPLATE.format(prompt=prompt)


def split_words(text: str) -> List[str]:
    """Split into word fragments that keep their trailing whitespace."""
    return _WORD_PATTERN.findall(text)


async def synthetic_fragments(prompt: str, delay_seconds: float) -> AsyncIterator[str]:
    for fragment in split_words(render_synthetic_reply(prompt)):
        await asyncio.sleep(delay_seconds)
        yield fragment


def derive_title(source: str) -> Optional[str]:
    if not source or not source.strip():
        return None
    if len(source) > MAX_TITLE_LENGTH:
        return source[:MAX_TITLE_LENGTH] + TITLE_ELLIPSIS
    return source


def describe_stream_failure(exc: BaseException) -> str:
    """Turn a streaming failure into the text of an ``error`` event."""
    message = getattr(exc, "message", None) or str(exc)
    lowered = message.lower()
    if getattr(exc, "upstream_status", None) == 429 or any(
        signature in lowered for signature in _RATE_LIMIT_SIGNATURES
    ):
        return RATE_LIMIT_STREAM_MESSAGE
    if not message.strip():
        return GENERIC_STREAM_ERROR
    return sanitize_error_message(message)


class _RelayFailure:
    __slots__ = ("error",)

    def __init__(self, error: Exception) -> None:
        self.error = error


_RELAY_END = object()


async def relay(source: AsyncIterator[str], *, maxsize: int = 32) -> AsyncIterator[str]:
    """Forward fragments from ``source`` through a bounded queue.

    A producer task drains ``source``; the caller consumes in publish order.
    A full queue pauses the producer. Closing the returned iterator cancels
    the producer and closes ``source``.
    """
    queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def produce() -> None:
        try:
            async for fragment in source:
                await queue.put(fragment)
        except Exception as exc:
            await queue.put(_RelayFailure(exc))
        else:
            await queue.put(_RELAY_END)
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

    producer = asyncio.create_task(produce())
    try:
        while True:
            item = await queue.get()
            if item is _RELAY_END:
                return
            if isinstance(item, _RelayFailure):
                raise item.error
            yield item
    finally:
        if not producer.done():
            producer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await producer


class ConversationStore(Protocol):
    def create_conversation(self, user_id: str, title: str = ...) -> Conversation: ...

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]: ...

    def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        *,
        model: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Message: ...

    def count_messages(self, conversation_id: str) -> int: ...

    def update_conversation_title(
        self, conversation_id: str, title: str
    ) -> Optional[Conversation]: ...


class ChatSession:
    """Non-streaming chat turn: one blocking completion, one reply."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        completion: CompletionClient,
        history: HistoryBuilder,
        user_id: str,
        turn: ChatTurn,
        synthetic_delay_seconds: float = 0.1,
        buffer_size: int = 32,
    ) -> None:
        self.store = store
        self.completion = completion
        self.history_builder = history
        self.user_id = user_id
        self.turn = turn
        self.synthetic_delay_seconds = synthetic_delay_seconds
        self.buffer_size = buffer_size
        self.state = SessionState.RESOLVING
        self.conversation: Optional[Conversation] = None
        self.user_message: Optional[Message] = None
        self.history: List[HistoryEntry] = []

    def trace_context(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "conversation_id": self.conversation.id if self.conversation else None,
            "mode": self.turn.mode.value,
        }

    def _transition(self, state: SessionState) -> None:
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"session already {self.state.value}")
        self.state = state

    async def _db(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def open(self) -> Conversation:
        """Resolve the conversation, persist the user turn and load history.

        Raises before any reply is produced, e.g. :class:`NotFoundError` for
        a conversation that is missing or owned by someone else.
        """
        if self.state is not SessionState.RESOLVING:
            raise RuntimeError("session already opened")
        try:
            await self._resolve()
            await self._persist_user_turn()
            await self._load_history()
        except Exception:
            self._transition(SessionState.FAILED)
            raise
        self._transition(SessionState.HISTORY_LOADED)
        return self.conversation

    @traced_stage("resolve")
    async def _resolve(self) -> None:
        if self.turn.conversation_id:
            conv = await self._db(
                self.store.get_conversation, self.turn.conversation_id, user_id=self.user_id
            )
            if conv is None:
                raise NotFoundError(
                    "Conversation not found",
                    detail={"conversation_id": self.turn.conversation_id},
                )
        else:
            conv = await self._db(
                self.store.create_conversation, self.user_id, DEFAULT_CONVERSATION_TITLE
            )
            logger.info("conversation_created", user_id=self.user_id, conversation_id=conv.id)
        self.conversation = conv

    @traced_stage("persist_user_turn")
    async def _persist_user_turn(self) -> None:
        self.user_message = await self._db(
            self.store.append_message,
            self.conversation.id,
            MessageRole.USER,
            self.turn.message,
            model=self.turn.model,
            image_url=to_data_uri(self.turn.image) if self.turn.image else None,
        )

    @traced_stage("load_history")
    async def _load_history(self) -> None:
        # the current turn is appended by the request builder, not replayed from history
        self.history = await self._db(
            self.history_builder.build,
            self.conversation.id,
            exclude_message_id=self.user_message.id,
        )

    @traced_stage("complete")
    async def _complete(self) -> str:
        if self.turn.mode is RequestMode.SYNTHETIC:
            return render_synthetic_reply(self.turn.prompt)
        return await self.completion.complete(
            self.turn.message, self.turn.model, self.history, self.turn.image
        )

    @traced_stage("finalize")
    async def _finalize(self, content: str) -> Message:
        self._transition(SessionState.FINALIZING)
        message = await self._db(
            self.store.append_message,
            self.conversation.id,
            MessageRole.ASSISTANT,
            content,
            model=self.turn.model,
        )
        await self._maybe_retitle()
        return message

    async def _maybe_retitle(self) -> None:
        if self.conversation.title != DEFAULT_CONVERSATION_TITLE:
            return
        count = await self._db(self.store.count_messages, self.conversation.id)
        if count > FIRST_EXCHANGE_MESSAGE_COUNT:
            return
        title = derive_title(self.turn.message)
        if not title:
            return
        updated = await self._db(
            self.store.update_conversation_title, self.conversation.id, title
        )
        if updated is not None:
            self.conversation = updated
        logger.info(
            "conversation_title_updated",
            conversation_id=self.conversation.id,
            title_length=len(title),
        )

    async def respond(self) -> ChatReply:
        if self.state is SessionState.RESOLVING:
            await self.open()
        try:
            content = await self._complete()
            message = await self._finalize(content)
        except Exception:
            self._transition(SessionState.FAILED)
            raise
        self._transition(SessionState.COMPLETE)
        return ChatReply(
            content=content,
            conversation_id=self.conversation.id,
            message_id=message.id,
        )


class StreamSession(ChatSession):
    """Streaming chat turn emitting ordered :class:`StreamEvent` values."""

    def _fragments(self) -> AsyncIterator[str]:
        if self.turn.mode is RequestMode.SYNTHETIC:
            return synthetic_fragments(self.turn.prompt, self.synthetic_delay_seconds)
        return self.completion.stream(
            self.turn.message, self.turn.model, self.history, self.turn.image
        )

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield ``init``, then ``content`` per fragment, then ``error`` or ``complete``.

        :meth:`open` must have succeeded first. If the consumer stops early
        the relay is cancelled and nothing is persisted for the assistant.
        """
        if self.state is not SessionState.HISTORY_LOADED:
            raise RuntimeError("session must be opened before streaming")
        conversation_id = self.conversation.id
        chunks: List[str] = []
        try:
            yield StreamEvent.init(conversation_id)
            self._transition(SessionState.STREAMING)
            async with contextlib.aclosing(
                relay(self._fragments(), maxsize=self.buffer_size)
            ) as fragments:
                async for fragment in fragments:
                    if not fragment:
                        continue
                    chunks.append(fragment)
                    yield StreamEvent.content(fragment)
        except (asyncio.CancelledError, GeneratorExit):
            self._transition(SessionState.FAILED)
            logger.info(
                "stream_session_cancelled",
                fragments=len(chunks),
                **self.trace_context(),
            )
            raise
        except Exception as exc:
            self._transition(SessionState.FAILED)
            logger.warning(
                "stream_session_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                discarded_fragments=len(chunks),
                **self.trace_context(),
            )
            yield StreamEvent.error(describe_stream_failure(exc))
            return

        try:
            message = await self._finalize("".join(chunks))
        except asyncio.CancelledError:
            self._transition(SessionState.FAILED)
            logger.info("stream_session_cancelled_during_finalize", **self.trace_context())
            raise
        except Exception as exc:
            self._transition(SessionState.FAILED)
            logger.error(
                "stream_session_finalize_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                **self.trace_context(),
            )
            yield StreamEvent.error(GENERIC_STREAM_ERROR)
            return
        self._transition(SessionState.COMPLETE)
        yield StreamEvent.complete(message.id, conversation_id)
