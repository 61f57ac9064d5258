"""Unit tests for shipped migrations and schema status."""

from unittest.mock import MagicMock, patch

import asyncpg
import pytest

from conftest import MockPoolAcquire
from expense_assistant import database
from expense_assistant.database import migration_files, run_migrations, schema_status

GET_POOL = "expense_assistant.database.get_pool"


def names():
    return [name for name, _ in migration_files()]


class TestMigrationFiles:
    def test_shipped_with_package_in_order(self):
        assert names() == ["001_finance.sql", "002_assistant.sql"]

    def test_sql_is_read(self):
        sql = dict(migration_files())
        assert "CREATE TABLE" in sql["001_finance.sql"]
        assert "ai_patterns" in sql["002_assistant.sql"]


class TestRunMigrations:
    @pytest.fixture
    def pool(self, mock_pool):
        pool, conn = mock_pool
        conn.transaction = MagicMock(return_value=MockPoolAcquire(conn))
        return pool, conn

    @pytest.mark.asyncio
    async def test_fresh_database_applies_everything(self, pool):
        pool, conn = pool

        with patch(GET_POOL, return_value=pool):
            applied = await run_migrations()

        assert applied == names()
        recorded = [
            c.args[1] for c in conn.execute.await_args_list if "INSERT INTO schema_migrations" in c.args[0]
        ]
        assert recorded == names()
        assert conn.transaction.call_count == len(names())

    @pytest.mark.asyncio
    async def test_applied_migrations_are_skipped(self, pool):
        pool, conn = pool
        conn.fetch.return_value = [{"name": "001_finance.sql"}]

        with patch(GET_POOL, return_value=pool):
            applied = await run_migrations()

        assert applied == ["002_assistant.sql"]
        assert conn.transaction.call_count == 1

    @pytest.mark.asyncio
    async def test_failed_migration_stops_the_run(self, pool):
        pool, conn = pool

        async def execute(sql, *args):
            if "ai_patterns" in sql:
                raise asyncpg.PostgresError("syntax error")

        conn.execute.side_effect = execute

        with patch(GET_POOL, return_value=pool):
            with pytest.raises(asyncpg.PostgresError):
                await run_migrations()


class TestSchemaStatus:
    @pytest.mark.asyncio
    async def test_healthy_and_current(self, mock_pool):
        pool, conn = mock_pool
        conn.fetch.return_value = [{"name": name} for name in names()]
        conn.fetchval.return_value = 18

        with patch(GET_POOL, return_value=pool):
            status = await schema_status()

        assert status == {"database": "healthy", "pending_migrations": [], "patterns": 18}

    @pytest.mark.asyncio
    async def test_reports_pending_migrations(self, mock_pool):
        pool, conn = mock_pool
        conn.fetch.return_value = [{"name": "001_finance.sql"}]
        conn.fetchval.return_value = 0

        with patch(GET_POOL, return_value=pool):
            status = await schema_status()

        assert status["pending_migrations"] == ["002_assistant.sql"]

    @pytest.mark.asyncio
    async def test_untracked_database_has_everything_pending(self, mock_pool):
        pool, conn = mock_pool
        conn.fetch.side_effect = asyncpg.UndefinedTableError("schema_migrations")

        with patch(GET_POOL, return_value=pool):
            status = await schema_status()

        assert status == {"database": "healthy", "pending_migrations": names(), "patterns": 0}

    @pytest.mark.asyncio
    async def test_no_pool_is_unavailable(self):
        with patch.object(database, "_pool", None):
            assert await schema_status() == {"database": "unavailable"}
