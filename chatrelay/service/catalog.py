from __future__ import annotations

import time
from dataclasses import asdict
from typing import Optional

from chatrelay.logging import get_logger
from chatrelay.service.completion import CompletionClient, ModelInfo
from chatrelay.service.errors import UpstreamError
from chatrelay.storage.redis_cache import RedisCache

logger = get_logger(__name__)

MODELS_CACHE_KEY = "models:catalog"

FALLBACK_MODELS = (
    ModelInfo("meta-llama/llama-3.2-3b-instruct:free", "Llama 3.2 3B Instruct (free)", True, False),
    ModelInfo("amazon/nova-2-lite-v1:free", "Amazon Nova 2 Lite (free)", True, True),
    ModelInfo("google/gemma-3-4b-it:free", "Gemma 3 4B (free)", True, False),
    ModelInfo("openai/gpt-oss-20b:free", "GPT-OSS 20B (free)", True, False),
)


class ModelCatalog:
    """Read-through cache over the upstream model listing.

    Uses Redis when available and a process-local copy otherwise. Upstream
    failures fall back to a fixed list of free models and are not cached.
    """

    def __init__(
        self,
        client: CompletionClient,
        cache: Optional[RedisCache],
        *,
        ttl_seconds: int = 3600,
    ) -> None:
        self.client = client
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._local: Optional[tuple[float, list[ModelInfo]]] = None

    async def _read_cache(self) -> Optional[list[ModelInfo]]:
        if self.cache is None:
            if self._local and self._local[0] > time.monotonic():
                return self._local[1]
            return None
        try:
            cached = await self.cache.get_json(MODELS_CACHE_KEY)
        except Exception as exc:
            logger.warning("models_cache_read_failed", error=str(exc))
            return None
        if not isinstance(cached, list):
            return None
        return [ModelInfo(**item) for item in cached if isinstance(item, dict)]

    async def _write_cache(self, models: list[ModelInfo]) -> None:
        if self.cache is None:
            self._local = (time.monotonic() + self.ttl_seconds, models)
            return
        try:
            await self.cache.set_json(
                MODELS_CACHE_KEY, [asdict(m) for m in models], self.ttl_seconds
            )
        except Exception as exc:
            logger.warning("models_cache_write_failed", error=str(exc))

    async def list_models(self) -> list[ModelInfo]:
        cached = await self._read_cache()
        if cached:
            return cached
        try:
            models = await self.client.fetch_models()
        except UpstreamError as exc:
            logger.warning("models_fetch_fallback", error=exc.message)
            return list(FALLBACK_MODELS)
        if not models:
            return list(FALLBACK_MODELS)
        await self._write_cache(models)
        return models

    async def refresh(self) -> list[ModelInfo]:
        """Drop the cached listing and fetch it again."""
        self._local = None
        if self.cache is not None:
            try:
                await self.cache.delete(MODELS_CACHE_KEY)
            except Exception as exc:
                logger.warning("models_cache_evict_failed", error=str(exc))
        logger.info("models_cache_evicted")
        return await self.list_models()
