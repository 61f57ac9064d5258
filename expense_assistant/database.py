"""Postgres pool and schema migrations.

Migrations are the ``*.sql`` files shipped in ``expense_assistant.migrations``.
Each runs once, in name order, inside its own transaction; applied names are
kept in ``schema_migrations`` so /health can report what is still pending.
"""

from importlib import resources
from typing import Optional

import asyncpg
import structlog

from expense_assistant.config import get_settings

logger = structlog.get_logger(__name__)

MIGRATIONS_PACKAGE = "expense_assistant.migrations"
POOL_MIN_SIZE = 1
POOL_MAX_SIZE = 10

SCHEMA_MIGRATIONS_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    name TEXT PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """The shared pool.

    Raises:
        RuntimeError: Before init_database() or after close_database()
    """
    if _pool is None:
        raise RuntimeError("Database pool not initialized")
    return _pool


async def init_database() -> asyncpg.Pool:
    global _pool

    if _pool is None:
        settings = get_settings()
        _pool = await asyncpg.create_pool(
            settings.postgres_url,
            min_size=POOL_MIN_SIZE,
            max_size=POOL_MAX_SIZE,
            command_timeout=settings.timeout_seconds,
        )
        logger.info("database_pool_created", max_size=POOL_MAX_SIZE)
    return _pool


async def close_database() -> None:
    global _pool

    if _pool is not None:
        pool, _pool = _pool, None
        await pool.close()
        logger.info("database_pool_closed")


def migration_files() -> list[tuple[str, str]]:
    """(name, sql) for every shipped migration, sorted by name."""
    entries = [
        entry
        for entry in resources.files(MIGRATIONS_PACKAGE).iterdir()
        if entry.name.endswith(".sql")
    ]
    return [
        (entry.name, entry.read_text(encoding="utf-8"))
        for entry in sorted(entries, key=lambda e: e.name)
    ]


async def run_migrations() -> list[str]:
    """Apply every migration not yet recorded in schema_migrations.

    Returns:
        Names applied by this call, in order

    Raises:
        asyncpg.PostgresError: A migration failed; it is rolled back and
            later ones are not attempted
    """
    pool = await get_pool()
    applied_now = []

    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_MIGRATIONS_DDL)
        done = {row["name"] for row in await conn.fetch("SELECT name FROM schema_migrations")}

        for name, sql in migration_files():
            if name in done:
                continue
            try:
                async with conn.transaction():
                    await conn.execute(sql)
                    await conn.execute("INSERT INTO schema_migrations (name) VALUES ($1)", name)
            except asyncpg.PostgresError as e:
                logger.error("migration_failed", name=name, error=str(e))
                raise
            applied_now.append(name)
            logger.info("migration_applied", name=name)

    logger.info("migrations_complete", applied=applied_now, already_applied=len(done))
    return applied_now


async def schema_status() -> dict:
    """Database reachability, pending migrations and stored pattern count."""
    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            applied = {row["name"] for row in await conn.fetch("SELECT name FROM schema_migrations")}
            patterns = await conn.fetchval("SELECT COUNT(*) FROM ai_patterns")
    except asyncpg.UndefinedTableError:
        return {
            "database": "healthy",
            "pending_migrations": [name for name, _ in migration_files()],
            "patterns": 0,
        }
    except (asyncpg.PostgresError, OSError, RuntimeError) as e:
        logger.warning("database_health_check_failed", error=str(e))
        return {"database": "unavailable"}

    return {
        "database": "healthy",
        "pending_migrations": [name for name, _ in migration_files() if name not in applied],
        "patterns": int(patterns or 0),
    }
