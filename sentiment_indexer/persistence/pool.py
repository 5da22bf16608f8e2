"""
Database Connection Pool

Manages async PostgreSQL connections using asyncpg.
Applies schema_postgres.sql on startup.
"""

import logging
import re
from pathlib import Path
from typing import Optional

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).parent / "schema_postgres.sql"

# Tables that must exist after schema initialization
REQUIRED_TABLES = ("source_records", "composite_index", "jobs", "job_logs")


class DatabasePool:
    """
    Async PostgreSQL connection pool.

    Usage:
        pool = DatabasePool()
        await pool.connect(database_url)
        await pool.initialize_schema()
        rows = await pool.fetch("SELECT * FROM composite_index")
        await pool.close()
    """

    def __init__(self):
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self, database_url: str, min_size: int = 2, max_size: int = 10) -> None:
        if self._pool is not None:
            logger.warning("Pool already connected")
            return
        self._pool = await asyncpg.create_pool(database_url, min_size=min_size, max_size=max_size)
        logger.info(f"Database pool created (min={min_size}, max={max_size})")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed")

    def _require_pool(self) -> asyncpg.Pool:
        if not self._pool:
            raise RuntimeError("Database pool not connected")
        return self._pool

    def acquire(self):
        """Acquire a connection from the pool."""
        return self._require_pool().acquire()

    async def execute(self, query: str, *args) -> str:
        return await self._require_pool().execute(query, *args)

    async def fetch(self, query: str, *args) -> list:
        return await self._require_pool().fetch(query, *args)

    async def fetchrow(self, query: str, *args):
        return await self._require_pool().fetchrow(query, *args)

    async def fetchval(self, query: str, *args):
        return await self._require_pool().fetchval(query, *args)

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def check_health(self) -> bool:
        """Check database connectivity."""
        if not self._pool:
            return False
        try:
            await self._pool.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def initialize_schema(self) -> bool:
        """
        Create tables and indexes if they don't exist.

        Safe to call multiple times - every statement is IF NOT EXISTS.

        Returns:
            True if all required tables exist afterwards, False otherwise
        """
        pool = self._require_pool()

        if not SCHEMA_FILE.exists():
            logger.error(f"Schema file not found: {SCHEMA_FILE}")
            return False

        schema_sql = SCHEMA_FILE.read_text()
        schema_sql = re.sub(r"--[^\n]*", "", schema_sql)
        schema_sql = re.sub(r"/\*.*?\*/", "", schema_sql, flags=re.DOTALL)

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for statement in schema_sql.split(";"):
                        statement = statement.strip()
                        if statement:
                            logger.debug(f"Executing: {statement[:80]}...")
                            await conn.execute(statement)

            for table in REQUIRED_TABLES:
                exists = await pool.fetchval(
                    "SELECT EXISTS (SELECT 1 FROM information_schema.tables WHERE table_name = $1)",
                    table,
                )
                if not exists:
                    logger.error(f"Schema executed but {table} table not found!")
                    return False

            logger.info("Database schema initialized successfully")
            return True

        except asyncpg.PostgresError as e:
            logger.error(f"Failed to initialize schema: {e}")
            return False
