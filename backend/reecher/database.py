"""
Database connection layer: asyncpg pool for all DB operations.

Tables (keyed by user id):
  channels       one row per user, lifecycle status + encrypted gateway token
  whatsapp_groups  groups discovered by the last collection pass
  sync_progress  one live progress row per user
"""
import logging
from typing import Any, Optional

import asyncpg

from reecher.config import settings

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS channels (
    user_id          TEXT PRIMARY KEY,
    channel_id       TEXT,
    secret_token     TEXT,
    status           TEXT NOT NULL DEFAULT 'none',
    mode             TEXT NOT NULL DEFAULT 'trial',
    login_method     TEXT,
    phone_number     TEXT,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT connected_has_token CHECK (status <> 'connected' OR secret_token IS NOT NULL),
    CONSTRAINT none_has_no_ids CHECK (status <> 'none' OR (channel_id IS NULL AND secret_token IS NULL))
);
CREATE INDEX IF NOT EXISTS idx_channels_status_updated ON channels (status, updated_at);
CREATE INDEX IF NOT EXISTS idx_channels_channel_id ON channels (channel_id);

CREATE TABLE IF NOT EXISTS whatsapp_groups (
    user_id            TEXT NOT NULL,
    group_id           TEXT NOT NULL,
    name               TEXT NOT NULL DEFAULT 'Unknown',
    participant_count  INTEGER NOT NULL DEFAULT 0,
    admin_status       TEXT NOT NULL DEFAULT 'unknown',
    avatar_url         TEXT,
    last_synced_at     TIMESTAMPTZ,
    classified_at      TIMESTAMPTZ,
    PRIMARY KEY (user_id, group_id)
);

CREATE TABLE IF NOT EXISTS sync_progress (
    user_id           TEXT PRIMARY KEY,
    status            TEXT NOT NULL DEFAULT 'not_running',
    phase             TEXT,
    groups_found      INTEGER NOT NULL DEFAULT 0,
    total_scanned     INTEGER NOT NULL DEFAULT 0,
    current_batch     INTEGER NOT NULL DEFAULT 0,
    admin_groups      INTEGER NOT NULL DEFAULT 0,
    message           TEXT NOT NULL DEFAULT '',
    cancel_requested  BOOLEAN NOT NULL DEFAULT FALSE,
    started_at        TIMESTAMPTZ,
    completed_at      TIMESTAMPTZ,
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    error             TEXT
);
"""


class Database:
    """Async Postgres connection pool via asyncpg."""

    def __init__(self, dsn: Optional[str] = None) -> None:
        self._dsn = dsn
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Create the connection pool. Call once at app startup."""
        if self._pool is not None:
            return
        dsn = self._dsn or settings.DATABASE_URL
        if not dsn:
            raise RuntimeError("DATABASE_URL is not set (or use STORE_BACKEND=memory for local runs).")
        self._pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=2,
            max_size=10,
            command_timeout=30,
            statement_cache_size=100,
        )
        logger.info("asyncpg pool created (min=2, max=10)")

    async def close(self) -> None:
        """Close the connection pool. Call at app shutdown."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("asyncpg pool closed")

    async def apply_schema(self) -> None:
        """Create tables if missing (idempotent)."""
        await self.execute(SCHEMA_SQL)

    def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized, call await db.connect() first")
        return self._pool

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        pool = self._ensure_pool()
        return await pool.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        pool = self._ensure_pool()
        return await pool.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        pool = self._ensure_pool()
        return await pool.fetchval(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a statement (INSERT/UPDATE/DELETE). Returns status string."""
        pool = self._ensure_pool()
        return await pool.execute(query, *args)

    async def executemany(self, query: str, args: list) -> None:
        pool = self._ensure_pool()
        await pool.executemany(query, args)

    @property
    def pool(self) -> asyncpg.Pool:
        """Access the underlying pool (e.g. for explicit transactions)."""
        return self._ensure_pool()


# Global singleton, import and use everywhere
db = Database()
