"""Embedding provider: local model first, external endpoint second, else None."""

import asyncio
import math
from functools import lru_cache
from typing import Any, Optional, Sequence

import httpx
import structlog

from expense_assistant.config import Settings, get_settings
from expense_assistant.services.redis_service import EmbeddingCache

logger = structlog.get_logger(__name__)

# Maximum characters sent to any embedding backend
MAX_EMBEDDING_CHARS = 8192

_UNRESOLVED: Any = object()


class EmbeddingRequestError(Exception):
    """The external embedding endpoint was called and failed."""


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors.

    Returns -1 when either vector is empty or zero-norm, or the lengths differ.
    """
    if not a or not b or len(a) != len(b):
        return -1.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return -1.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


class EmbeddingProvider:
    """Turns text into a vector, or returns None when no backend is available.

    The local sentence-transformers model is loaded at most once per provider
    instance. A failed load is remembered and never retried. The application
    shares one instance through get_embedding_provider().
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache: Optional[EmbeddingCache] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache or EmbeddingCache(self.settings.embedding_cache_ttl)
        self._external_dimensions: Optional[int] = None
        self._local_model: Any = _UNRESOLVED
        self._load_lock = asyncio.Lock()
        self._client: Optional[httpx.AsyncClient] = None

    def _load_local_model(self) -> Any:
        """Import and construct the local model. Runs in a worker thread."""
        if not self.settings.local_embeddings_enabled:
            return None
        try:
            from sentence_transformers import SentenceTransformer

            model = SentenceTransformer(self.settings.local_embedding_model)
            logger.info("local_embedder_loaded", model=self.settings.local_embedding_model)
            return model
        except Exception as e:
            logger.warning(
                "local_embedder_unavailable",
                model=self.settings.local_embedding_model,
                error=str(e),
                error_type=type(e).__name__,
                external_configured=self.settings.external_embeddings_enabled,
            )
            return None

    async def get_local_model(self) -> Any:
        """Resolve the local model once; concurrent first callers share the load."""
        if self._local_model is not _UNRESOLVED:
            return self._local_model
        async with self._load_lock:
            if self._local_model is _UNRESOLVED:
                self._local_model = await asyncio.to_thread(self._load_local_model)
        return self._local_model

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.timeout_seconds)
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _embed_external(self, text: str) -> Optional[list[float]]:
        """POST {model, prompt} to the embedding endpoint and read ``embedding``.

        Raises:
            EmbeddingRequestError: On transport errors, non-2xx or malformed JSON
        """
        model = self.settings.ollama_embed_model
        cached = await self.cache.get(model, text, self._external_dimensions)
        if cached is not None:
            logger.debug("embedding_cache_hit", model=model, dimensions=len(cached))
            return cached

        client = await self._get_client()
        try:
            response = await client.post(
                self.settings.ollama_embed_url,
                json={"model": model, "prompt": text},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise EmbeddingRequestError(f"{type(e).__name__}: {e}") from e

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not embedding:
            return None

        vector = [float(x) for x in embedding]
        self._external_dimensions = len(vector)
        await self.cache.set(model, text, vector)
        logger.debug("embedding_generated", backend="external", dimensions=len(vector))
        return vector

    async def embed(self, text: str) -> Optional[list[float]]:
        """Embed text.

        Returns:
            Embedding vector, or None when no backend is available

        Raises:
            EmbeddingRequestError: If the external endpoint was tried and failed
        """
        if not text or not text.strip():
            return None

        if len(text) > MAX_EMBEDDING_CHARS:
            logger.warning(
                "embedding_text_truncated",
                original_length=len(text),
                truncated_to=MAX_EMBEDDING_CHARS,
            )
            text = text[:MAX_EMBEDDING_CHARS]

        model = await self.get_local_model()
        if model is not None:
            vector = await asyncio.to_thread(model.encode, text, normalize_embeddings=True)
            return [float(x) for x in vector]

        if self.settings.external_embeddings_enabled:
            return await self._embed_external(text)

        return None


@lru_cache
def get_embedding_provider() -> EmbeddingProvider:
    """The process-wide provider, so the local model resolves once per process."""
    return EmbeddingProvider()
