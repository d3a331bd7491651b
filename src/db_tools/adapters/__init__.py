"""Database backends.

Provides the ``Backend`` Protocol and its two async implementations:
``PostgresBackend`` (SQLAlchemy + asyncpg) and ``MongoBackend``
(pymongo's async client).

Usage:
    from db_tools.adapters import Backend, PostgresBackend, MongoBackend
"""

from db_tools.adapters.base import Backend, BackupResult, QueryResult, SearchHit, SearchOptions
from db_tools.adapters.mongodb import MongoBackend
from db_tools.adapters.postgres import PostgresBackend
from db_tools.adapters.tools import ToolLocator

__all__ = [
    "Backend",
    "BackupResult",
    "MongoBackend",
    "PostgresBackend",
    "QueryResult",
    "SearchHit",
    "SearchOptions",
    "ToolLocator",
]
