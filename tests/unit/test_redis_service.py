"""Unit tests for the Redis-backed embedding cache."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from expense_assistant.services import redis_service
from expense_assistant.services.redis_service import KEY_PREFIX, EmbeddingCache

REDIS = "expense_assistant.services.redis_service.get_redis"


@pytest.fixture
def cache():
    return EmbeddingCache(ttl=60)


@pytest.fixture
def mock_redis_client():
    return AsyncMock()


def stored(vector, dimensions=None):
    return json.dumps({"dimensions": len(vector) if dimensions is None else dimensions, "vector": vector})


class TestKeys:
    def test_keys_are_namespaced_by_model(self):
        a = EmbeddingCache.key("model-a", "coffee")
        b = EmbeddingCache.key("model-b", "coffee")

        assert a != b
        assert a.startswith(f"{KEY_PREFIX}:model-a:")
        assert a == EmbeddingCache.key("model-a", "coffee")

    def test_blank_model_gets_a_default_namespace(self):
        assert EmbeddingCache.key("", "coffee").startswith(f"{KEY_PREFIX}:default:")


class TestEmbeddingCache:
    @pytest.mark.asyncio
    async def test_cache_hit(self, cache, mock_redis_client):
        mock_redis_client.get.return_value = stored([0.1, 0.2])

        with patch(REDIS, return_value=mock_redis_client):
            result = await cache.get("nomic", "coffee")

        assert result == [0.1, 0.2]
        mock_redis_client.get.assert_awaited_once_with(EmbeddingCache.key("nomic", "coffee"))

    @pytest.mark.asyncio
    async def test_cache_miss(self, cache, mock_redis_client):
        mock_redis_client.get.return_value = None

        with patch(REDIS, return_value=mock_redis_client):
            assert await cache.get("nomic", "coffee") is None

    @pytest.mark.asyncio
    async def test_other_dimension_is_a_miss(self, cache, mock_redis_client):
        mock_redis_client.get.return_value = stored([0.1, 0.2])

        with patch(REDIS, return_value=mock_redis_client):
            assert await cache.get("nomic", "coffee", dimensions=768) is None
            assert await cache.get("nomic", "coffee", dimensions=2) == [0.1, 0.2]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw",
        ["not json", json.dumps([0.1, 0.2]), stored([0.1, 0.2], dimensions=3), json.dumps({"vector": ["x"], "dimensions": 1})],
    )
    async def test_invalid_entries_read_as_miss(self, cache, mock_redis_client, raw):
        mock_redis_client.get.return_value = raw

        with patch(REDIS, return_value=mock_redis_client):
            assert await cache.get("nomic", "coffee") is None

    @pytest.mark.asyncio
    async def test_write_records_dimensions_and_ttl(self, cache, mock_redis_client):
        with patch(REDIS, return_value=mock_redis_client):
            assert await cache.set("nomic", "coffee", [1.0, 2.0]) is True

        key, ttl, payload = mock_redis_client.setex.call_args[0]
        assert key == EmbeddingCache.key("nomic", "coffee")
        assert ttl == 60
        assert json.loads(payload) == {"dimensions": 2, "vector": [1.0, 2.0]}

    @pytest.mark.asyncio
    async def test_redis_unavailable_graceful_degradation(self, cache):
        """A missing Redis behaves like an empty cache."""
        with patch(REDIS, return_value=None):
            assert await cache.get("nomic", "coffee") is None
            assert await cache.set("nomic", "coffee", [1.0]) is False

    @pytest.mark.asyncio
    async def test_redis_errors_degrade_to_miss(self, cache, mock_redis_client):
        mock_redis_client.get.side_effect = RedisConnectionError("gone")
        mock_redis_client.setex.side_effect = ConnectionResetError("gone")

        with patch(REDIS, return_value=mock_redis_client):
            assert await cache.get("nomic", "coffee") is None
            assert await cache.set("nomic", "coffee", [1.0]) is False


class TestGetRedis:
    @pytest.mark.asyncio
    async def test_unreachable_server_returns_none(self):
        client = AsyncMock()
        client.ping.side_effect = RedisConnectionError("refused")

        with patch("expense_assistant.services.redis_service.redis.from_url", return_value=client):
            assert await redis_service.get_redis() is None

        client.aclose.assert_awaited_once()
