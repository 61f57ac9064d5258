"""Unit tests for service wiring and application lifespan."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI

from expense_assistant.api import dependencies
from expense_assistant.main import lifespan
from expense_assistant.services.chat_service import ChatService
from expense_assistant.services.embedding_service import EmbeddingProvider, get_embedding_provider
from expense_assistant.services.language_service import LanguageService
from expense_assistant.services.pattern_service import PatternService


@pytest.fixture(autouse=True)
def fresh_singletons():
    dependencies.get_chat_service.cache_clear()
    get_embedding_provider.cache_clear()
    yield
    dependencies.get_chat_service.cache_clear()
    get_embedding_provider.cache_clear()


class TestSharedServices:
    def test_chat_service_resolves_once(self):
        assert dependencies.get_chat_service() is dependencies.get_chat_service()

    def test_route_dependencies_share_the_chat_service(self):
        chat = dependencies.get_chat_service()

        assert dependencies.get_learning_service() is chat.learning_service
        assert dependencies.get_knowledge_service() is chat.knowledge_service
        assert dependencies.get_action_service() is chat.actions
        assert chat.learning_service.pattern_service is chat.pattern_service

    def test_pattern_service_uses_process_embedding_provider(self):
        chat = dependencies.get_chat_service()

        assert chat.pattern_service.embedding_provider is get_embedding_provider()
        assert PatternService().embedding_provider is get_embedding_provider()

    @pytest.mark.asyncio
    async def test_local_model_loads_once_across_requests(self):
        with patch.object(EmbeddingProvider, "_load_local_model", return_value=None) as load:
            for _ in range(3):
                chat = dependencies.get_chat_service()
                await chat.pattern_service.embedding_provider.get_local_model()

        assert load.call_count == 1


class TestClose:
    @pytest.mark.asyncio
    async def test_closes_rephrasing_and_embedding_clients(self):
        provider = EmbeddingProvider()
        language = LanguageService()
        chat = ChatService(
            pattern_service=PatternService(embedding_provider=provider),
            language_service=language,
        )
        embed_client = await provider._get_client()
        rephrase_client = await language._get_client()

        await chat.close()

        assert embed_client.is_closed
        assert rephrase_client.is_closed

    @pytest.mark.asyncio
    async def test_close_without_clients_is_noop(self):
        chat = ChatService(
            pattern_service=PatternService(embedding_provider=EmbeddingProvider()),
            language_service=LanguageService(),
        )

        await chat.close()


class TestLifespan:
    @pytest.mark.asyncio
    async def test_shutdown_closes_chat_service_and_stores(self):
        chat = MagicMock()
        chat.close = AsyncMock()
        close_database = AsyncMock()
        close_redis = AsyncMock()

        with patch("expense_assistant.main.get_chat_service", return_value=chat), \
             patch("expense_assistant.database.init_database", AsyncMock(side_effect=OSError("refused"))), \
             patch("expense_assistant.database.close_database", close_database), \
             patch("expense_assistant.services.redis_service.get_redis", AsyncMock(return_value=None)), \
             patch("expense_assistant.services.redis_service.close_redis", close_redis):
            async with lifespan(FastAPI()):
                chat.close.assert_not_awaited()

        chat.close.assert_awaited_once()
        close_database.assert_awaited_once()
        close_redis.assert_awaited_once()
        chat.pattern_service.seed_base_patterns.assert_not_called()

    @pytest.mark.asyncio
    async def test_startup_seeds_through_shared_pattern_service(self):
        chat = MagicMock()
        chat.close = AsyncMock()
        chat.pattern_service.seed_base_patterns = AsyncMock(return_value=18)

        with patch("expense_assistant.main.get_chat_service", return_value=chat), \
             patch("expense_assistant.database.init_database", AsyncMock()), \
             patch("expense_assistant.database.run_migrations", AsyncMock(return_value=[])), \
             patch("expense_assistant.database.close_database", AsyncMock()), \
             patch("expense_assistant.services.redis_service.get_redis", AsyncMock(return_value=None)), \
             patch("expense_assistant.services.redis_service.close_redis", AsyncMock()):
            async with lifespan(FastAPI()):
                pass

        chat.pattern_service.seed_base_patterns.assert_awaited_once()
