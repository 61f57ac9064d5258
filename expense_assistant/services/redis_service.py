"""Shared Redis client and the cache for externally computed embeddings.

Only the external embedding endpoint is cached; the local model is cheap
enough to call directly. Keys are namespaced by embedding model so that
switching ``ollama_embed_model`` never serves vectors from the old model, and
each payload records its vector length so a model that changed dimensions
under the same name reads as a miss.
"""

import hashlib
import json
from typing import Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from expense_assistant.config import get_settings

logger = structlog.get_logger(__name__)

KEY_PREFIX = "expense_assistant:embedding"

_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Shared client, or None when Redis cannot be reached.

    A failed connection is not remembered; the next call tries again.
    """
    global _client

    if _client is not None:
        return _client

    settings = get_settings()
    client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning("redis_unavailable", error=str(e))
        await client.aclose()
        return None

    _client = client
    logger.info("redis_connected", host=settings.redis_url.rsplit("@", 1)[-1])
    return _client


async def close_redis() -> None:
    global _client

    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("redis_connection_closed")


class EmbeddingCache:
    """Embedding vectors keyed by (model, text). Every failure reads as a miss."""

    def __init__(self, ttl: Optional[int] = None):
        self.ttl = ttl if ttl is not None else get_settings().embedding_cache_ttl

    @staticmethod
    def key(model: str, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{KEY_PREFIX}:{model or 'default'}:{digest}"

    async def get(
        self, model: str, text: str, dimensions: Optional[int] = None
    ) -> Optional[list[float]]:
        """Cached vector, or None.

        Args:
            dimensions: Expected vector length; a cached vector of another
                length is ignored
        """
        client = await get_redis()
        if client is None:
            return None

        key = self.key(model, text)
        try:
            raw = await client.get(key)
        except (RedisError, OSError) as e:
            logger.warning("embedding_cache_read_failed", error=str(e))
            return None
        if not raw:
            return None

        try:
            payload = json.loads(raw)
            vector = [float(x) for x in payload["vector"]]
            stored_dimensions = int(payload["dimensions"])
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("embedding_cache_entry_invalid", key=key, error=str(e))
            return None

        if len(vector) != stored_dimensions:
            logger.warning("embedding_cache_entry_invalid", key=key, error="length mismatch")
            return None
        if dimensions is not None and stored_dimensions != dimensions:
            logger.info(
                "embedding_cache_dimension_changed",
                model=model,
                cached=stored_dimensions,
                expected=dimensions,
            )
            return None
        return vector

    async def set(self, model: str, text: str, vector: list[float]) -> bool:
        """Store a vector for ``ttl`` seconds. Returns False if Redis is unavailable."""
        client = await get_redis()
        if client is None:
            return False

        payload = json.dumps({"dimensions": len(vector), "vector": vector})
        try:
            await client.setex(self.key(model, text), self.ttl, payload)
        except (RedisError, OSError) as e:
            logger.warning("embedding_cache_write_failed", error=str(e))
            return False
        return True
