from __future__ import annotations

import functools
import time
from typing import Any, Awaitable, Callable, TypeVar

from chatrelay.logging import get_logger

logger = get_logger("chatrelay.stages")

T = TypeVar("T")


def _context_of(target: Any) -> dict[str, Any]:
    context_fn = getattr(target, "trace_context", None)
    return context_fn() if callable(context_fn) else {}


def traced_stage(stage: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Wrap an async session stage with timing and outcome logging.

    The wrapped method's instance may expose ``trace_context()`` returning
    fields (user id, conversation id) to bind onto each log entry.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> T:
            started = time.perf_counter()
            try:
                result = await func(self, *args, **kwargs)
            except Exception as exc:
                logger.warning(
                    "session_stage_failed",
                    stage=stage,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                    error_type=type(exc).__name__,
                    **_context_of(self),
                )
                raise
            logger.debug(
                "session_stage_completed",
                stage=stage,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                **_context_of(self),
            )
            return result

        return wrapper

    return decorator
