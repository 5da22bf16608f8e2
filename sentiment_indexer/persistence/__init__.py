# Sentiment Indexer Persistence
# PostgreSQL storage for source records, indexes and jobs

"""
Persistence module for source records, composite indexes and jobs.

Components:
- Repository: Storage interface used by every other layer
- PostgresRepository: asyncpg-backed implementation
- InMemoryRepository: Process-local implementation (no DATABASE_URL, tests)
- DatabasePool: Connection pool management
"""

from .base import Repository
from .memory import InMemoryRepository
from .repository import PostgresRepository
from .pool import DatabasePool

__all__ = [
    "Repository",
    "InMemoryRepository",
    "PostgresRepository",
    "DatabasePool",
]
