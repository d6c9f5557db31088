from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from chatrelay.config import get_settings, reset_settings_cache
from chatrelay.logging import get_logger
from chatrelay.service.auth import AuthService
from chatrelay.service.catalog import ModelCatalog
from chatrelay.service.completion import CompletionClient
from chatrelay.service.history import HistoryBuilder
from chatrelay.service.rate_limit import RateLimitGate, RateLimiter
from chatrelay.service.session import ChatSession, ChatTurn, StreamSession
from chatrelay.storage.memory import InMemoryWindowStore, MemoryStore
from chatrelay.storage.postgres import PostgresStore
from chatrelay.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and the token cache; start Redis or "
                    "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.window_store = self.cache or InMemoryWindowStore()
        self.rate_limiter = RateLimiter(
            self.window_store,
            limit=self.settings.chat_rate_limit,
            window_seconds=self.settings.chat_rate_limit_window_seconds,
            expiry_margin_seconds=self.settings.rate_limit_expiry_margin_seconds,
            fail_open=self.settings.rate_limit_fail_open,
        )
        self.rate_gate = RateLimitGate(
            self.rate_limiter, fail_open=self.settings.rate_limit_fail_open
        )
        self.auth = AuthService(self.store, self.cache, self.settings)
        self.completion = CompletionClient(
            api_key=self.settings.upstream_api_key,
            base_url=self.settings.upstream_base_url,
            http_referer=self.settings.upstream_http_referer,
            app_title=self.settings.upstream_app_title,
            timeout=self.settings.upstream_timeout_seconds,
            connect_timeout=self.settings.upstream_connect_timeout_seconds,
        )
        self.catalog = ModelCatalog(
            self.completion, self.cache, ttl_seconds=self.settings.models_cache_ttl_seconds
        )
        self.history = HistoryBuilder(self.store)

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            rate_limit=self.settings.chat_rate_limit,
            rate_limit_window_seconds=self.settings.chat_rate_limit_window_seconds,
            rate_limit_fail_open=self.settings.rate_limit_fail_open,
        )

    def _session_kwargs(self, user_id: str, turn: ChatTurn) -> dict:
        return {
            "store": self.store,
            "completion": self.completion,
            "history": self.history,
            "user_id": user_id,
            "turn": turn,
            "synthetic_delay_seconds": self.settings.synthetic_token_delay_ms / 1000.0,
            "buffer_size": self.settings.stream_buffer_size,
        }

    def chat_session(self, user_id: str, turn: ChatTurn) -> ChatSession:
        return ChatSession(**self._session_kwargs(user_id, turn))

    def stream_session(self, user_id: str, turn: ChatTurn) -> StreamSession:
        return StreamSession(**self._session_kwargs(user_id, turn))

    async def close(self) -> None:
        await self.completion.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild settings and the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
