import logging
import time
from dataclasses import dataclass
from typing import Optional

import asyncpg

from .config import settings
from .observability import current_request_context

logger = logging.getLogger("inhabit-db")


def _statement_timeout_ms() -> int:
    return max(0, int(settings.DB_STATEMENT_TIMEOUT_MS))


def _slow_query_threshold_ms() -> int:
    return max(0, int(settings.DB_SLOW_QUERY_MS))


def _log_slow_query(query_name: str, started_at: float) -> None:
    threshold_ms = _slow_query_threshold_ms()
    if threshold_ms <= 0:
        return

    duration = int((time.monotonic() - started_at) * 1000)
    if duration < threshold_ms:
        return

    context = current_request_context()
    logger.warning(
        "DB_SLOW_QUERY context=%s",
        {
            "request_id": context.get("request_id", ""),
            "path": context.get("path", ""),
            "query_name": query_name,
            "duration_ms": duration,
            "threshold_ms": threshold_ms,
        },
    )


async def fetch_named(conn: asyncpg.Connection, query_name: str, query: str, *args):
    started_at = time.monotonic()
    try:
        return await conn.fetch(query, *args)
    finally:
        _log_slow_query(query_name=query_name, started_at=started_at)


async def fetchrow_named(conn: asyncpg.Connection, query_name: str, query: str, *args):
    started_at = time.monotonic()
    try:
        return await conn.fetchrow(query, *args)
    finally:
        _log_slow_query(query_name=query_name, started_at=started_at)


async def fetchval_named(conn: asyncpg.Connection, query_name: str, query: str, *args):
    started_at = time.monotonic()
    try:
        return await conn.fetchval(query, *args)
    finally:
        _log_slow_query(query_name=query_name, started_at=started_at)


async def execute_named(conn: asyncpg.Connection, query_name: str, query: str, *args):
    started_at = time.monotonic()
    try:
        return await conn.execute(query, *args)
    finally:
        _log_slow_query(query_name=query_name, started_at=started_at)


# Ordered, append-only. Never edit an entry once released; add a new version.
MIGRATIONS: list[tuple[int, str, str]] = [
    (
        1,
        "baseline",
        """
        CREATE TABLE IF NOT EXISTS habits (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL,
            title VARCHAR(255) NOT NULL,
            description TEXT,
            current_streak INT NOT NULL DEFAULT 0,
            longest_streak INT NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT habits_streaks_non_negative
                CHECK (current_streak >= 0 AND longest_streak >= 0)
        );

        CREATE TABLE IF NOT EXISTS habit_completions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            habit_id UUID NOT NULL REFERENCES habits(id) ON DELETE CASCADE,
            user_id UUID NOT NULL,
            completion_date DATE NOT NULL,
            completed BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE (habit_id, completion_date)
        );

        CREATE INDEX IF NOT EXISTS idx_habits_user_created
            ON habits (user_id, created_at DESC);

        CREATE INDEX IF NOT EXISTS idx_habit_completions_user_date
            ON habit_completions (user_id, completion_date DESC);

        CREATE INDEX IF NOT EXISTS idx_habit_completions_habit_completed
            ON habit_completions (habit_id, completion_date)
            WHERE completed;
        """,
    ),
    (
        2,
        "habit_category_archive",
        """
        ALTER TABLE habits
            ADD COLUMN IF NOT EXISTS category VARCHAR(100);

        ALTER TABLE habits
            ADD COLUMN IF NOT EXISTS is_archived BOOLEAN NOT NULL DEFAULT FALSE;

        CREATE INDEX IF NOT EXISTS idx_habits_user_category
            ON habits (user_id, category);

        CREATE INDEX IF NOT EXISTS idx_habits_user_archived
            ON habits (user_id, is_archived);
        """,
    ),
    (
        3,
        "completion_updated_at",
        """
        ALTER TABLE habit_completions
            ADD COLUMN IF NOT EXISTS updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW();
        """,
    ),
]

LATEST_SCHEMA_VERSION = MIGRATIONS[-1][0]


@dataclass(frozen=True)
class SchemaCapabilities:
    """Optional schema features, resolved once from the applied version."""

    schema_version: int
    habit_categories: bool
    completion_timestamps: bool

    @classmethod
    def from_version(cls, version: int) -> "SchemaCapabilities":
        return cls(
            schema_version=version,
            habit_categories=version >= 2,
            completion_timestamps=version >= 3,
        )


async def read_schema_version(conn: asyncpg.Connection) -> int:
    exists = await fetchval_named(
        conn,
        "schema.table_exists",
        "SELECT to_regclass('public.schema_migrations') IS NOT NULL",
    )
    if not exists:
        return 0
    version = await fetchval_named(
        conn,
        "schema.current_version",
        "SELECT COALESCE(MAX(version), 0) FROM schema_migrations",
    )
    return int(version or 0)


async def apply_migrations(conn: asyncpg.Connection) -> int:
    await execute_named(
        conn,
        "schema.bootstrap",
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INT PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
    )
    current = await read_schema_version(conn)
    for version, name, sql in MIGRATIONS:
        if version <= current:
            continue
        async with conn.transaction():
            await execute_named(conn, f"schema.migrate.{version}", sql)
            await execute_named(
                conn,
                "schema.record_version",
                "INSERT INTO schema_migrations (version, name) VALUES ($1, $2)",
                version,
                name,
            )
        logger.info("SCHEMA_MIGRATED version=%s name=%s", version, name)
        current = version
    return current


class Database:
    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None
        self.capabilities = SchemaCapabilities.from_version(LATEST_SCHEMA_VERSION)

    async def create_pool(self):
        dsn = settings.database_url()
        if not dsn:
            logger.warning("DATABASE_URL is not set, database pool will not be created.")
            return

        try:
            self.pool = await asyncpg.create_pool(
                dsn=dsn,
                min_size=1,
                max_size=10,
                max_inactive_connection_lifetime=300.0,
                command_timeout=60.0,
                server_settings={"statement_timeout": f"{_statement_timeout_ms()}ms"},
            )
            logger.info("Database pool created.")
            await self.init_schema()
        except (OSError, asyncpg.PostgresError) as exc:
            logger.error("Failed to create database pool: %s", exc)
            self.pool = None

    async def init_schema(self):
        if not self.pool:
            return

        async with self.pool.acquire() as conn:
            if settings.DB_AUTO_MIGRATE:
                version = await apply_migrations(conn)
            else:
                version = await read_schema_version(conn)

        self.capabilities = SchemaCapabilities.from_version(version)
        if version < LATEST_SCHEMA_VERSION:
            logger.warning(
                "SCHEMA_BEHIND version=%s latest=%s capabilities=%s",
                version,
                LATEST_SCHEMA_VERSION,
                self.capabilities,
            )
        else:
            logger.info("Database schema at version %s.", version)

    async def close_pool(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database pool closed.")

    async def db_check(self) -> str:
        if not settings.database_url():
            return "disabled"
        if not self.pool:
            return "fail"

        try:
            async with self.pool.acquire(timeout=5.0) as conn:
                await conn.execute("SELECT 1")
            return "ok"
        except (OSError, asyncpg.PostgresError, TimeoutError) as exc:
            logger.error("Database health check failed: %s", exc)
            return "fail"


db = Database()


async def get_db():
    if not db.pool:
        if settings.database_url():
            await db.create_pool()
        if not db.pool:
            raise RuntimeError("Database pool is not initialized and DATABASE_URL is missing or invalid")

    async with db.pool.acquire() as conn:
        yield conn


def get_capabilities() -> SchemaCapabilities:
    return db.capabilities
