from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis

TOKEN_KEY_PREFIX = "token:"
TOKEN_SENTINEL = "1"


class RedisCache:
    """Thin Redis wrapper for rate-limit windows, issued tokens and JSON caches."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool unbound from the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # sliding windows
    async def count_window(self, key: str, start: float, end: float) -> int:
        return int(await self.client.zcount(key, start, end))

    async def record_in_window(
        self,
        key: str,
        member: str,
        score: float,
        *,
        ttl_seconds: int,
        prune_before: float,
    ) -> None:
        """Add ``member`` at ``score``, drop entries older than ``prune_before``
        and refresh the key expiry, all inside one MULTI block."""
        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, "-inf", f"({prune_before}")
        pipe.zadd(key, {member: score})
        pipe.expire(key, ttl_seconds)
        await pipe.execute()

    # issued tokens
    async def cache_token(self, token_digest: str, ttl_seconds: int) -> None:
        await self.client.set(
            f"{TOKEN_KEY_PREFIX}{token_digest}", TOKEN_SENTINEL, ex=max(1, ttl_seconds)
        )

    async def is_token_cached(self, token_digest: str) -> bool:
        return bool(await self.client.exists(f"{TOKEN_KEY_PREFIX}{token_digest}"))

    async def evict_token(self, token_digest: str) -> None:
        await self.client.delete(f"{TOKEN_KEY_PREFIX}{token_digest}")

    # json values
    async def get_json(self, key: str) -> Optional[Any]:
        cached = await self.client.get(key)
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (TypeError, ValueError):
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(value), ex=max(1, ttl_seconds))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)
