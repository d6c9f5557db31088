"""Sliding-window admission control for chat requests.

A user's window is a sorted set of request entries scored by epoch second.
``is_allowed`` counts the entries scored inside ``[now - W, now]``; the check
and the later record are separate store operations, so concurrent requests
from one user may overshoot the limit by a small amount.
"""

from __future__ import annotations

import time
import uuid
from typing import Callable, Protocol

from chatrelay.logging import get_logger
from chatrelay.service.errors import RateLimitExceeded, ServiceUnavailableError

logger = get_logger(__name__)

RATE_LIMIT_KEY_PREFIX = "rate_limit:user:"
CHAT_RESOURCE = "chat"


class WindowStore(Protocol):
    async def count_window(self, key: str, start: float, end: float) -> int: ...

    async def record_in_window(
        self,
        key: str,
        member: str,
        score: float,
        *,
        ttl_seconds: int,
        prune_before: float,
    ) -> None: ...


def rate_limit_key(user_id: str, resource: str = CHAT_RESOURCE) -> str:
    return f"{RATE_LIMIT_KEY_PREFIX}{user_id}:{resource}"


class RateLimiter:
    """Per-user sliding-window limiter over a shared :class:`WindowStore`.

    With ``fail_open`` a store failure during the check admits the request.
    Otherwise the store error propagates so the gate can answer 503 instead
    of reporting a full window. Recording failures are only logged.
    """

    def __init__(
        self,
        store: WindowStore,
        *,
        limit: int = 10,
        window_seconds: int = 60,
        expiry_margin_seconds: int = 10,
        fail_open: bool = True,
        resource: str = CHAT_RESOURCE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.expiry_margin_seconds = expiry_margin_seconds
        self.fail_open = fail_open
        self.resource = resource
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    async def is_allowed(self, user_id: str) -> bool:
        key = rate_limit_key(user_id, self.resource)
        now = self._now()
        try:
            count = await self.store.count_window(key, now - self.window_seconds, now)
        except Exception as exc:
            logger.warning(
                "rate_limit_check_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
                fail_open=self.fail_open,
            )
            if self.fail_open:
                return True
            raise
        allowed = count < self.limit
        if not allowed:
            logger.info(
                "rate_limit_window_full", user_id=user_id, count=count, limit=self.limit
            )
        return allowed

    async def record_request(self, user_id: str) -> None:
        key = rate_limit_key(user_id, self.resource)
        now = self._now()
        # score collisions within one second are expected; the member must stay unique
        member = f"{now}:{time.time_ns()}:{uuid.uuid4().hex[:12]}"
        try:
            await self.store.record_in_window(
                key,
                member,
                now,
                ttl_seconds=self.window_seconds + self.expiry_margin_seconds,
                prune_before=now - self.window_seconds,
            )
        except Exception as exc:
            logger.warning(
                "rate_limit_record_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )


class RateLimitGate:
    """Admission checkpoint run before a chat session starts."""

    def __init__(self, limiter: RateLimiter, *, fail_open: bool = True) -> None:
        self.limiter = limiter
        self.fail_open = fail_open

    async def admit(self, user_id: str) -> None:
        """Raise :class:`RateLimitExceeded` when the caller's window is full.

        Errors from the limiter, such as a store outage, admit the request
        under fail-open and surface as 503 under fail-secure.
        """
        try:
            allowed = await self.limiter.is_allowed(user_id)
        except Exception as exc:
            logger.warning(
                "rate_limit_gate_error",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
                fail_open=self.fail_open,
            )
            if self.fail_open:
                return
            raise ServiceUnavailableError("rate limiting is temporarily unavailable") from exc
        if not allowed:
            logger.warning("rate_limit_rejected", user_id=user_id, resource=self.limiter.resource)
            raise RateLimitExceeded(retry_after=self.limiter.window_seconds)
        await self.limiter.record_request(user_id)
