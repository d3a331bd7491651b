"""Backend factory.

Opens the engine driver that matches a connection profile.  Every handle
returned here is owned by the caller, who must ``await backend.close()``.

Usage:
    from db_tools.factory import open_backend

    backend = open_backend(profile)
    try:
        print(await backend.list_tables())
    finally:
        await backend.close()
"""

import logging

from db_tools.adapters.base import Backend
from db_tools.adapters.tools import ToolLocator
from db_tools.config.models import BackendKind, ConnectionProfile
from db_tools.errors import ConfigurationError

logger = logging.getLogger(__name__)


def open_backend(
    profile: ConnectionProfile,
    database: str | None = None,
    tools: ToolLocator | None = None,
) -> Backend:
    """Create a backend for *profile*.

    Engines connect lazily, so this never touches the network.

    Args:
        profile: Resolved connection profile.
        database: Database name overriding the one in the profile.
        tools: Shared locator for dump/restore binaries.

    Raises:
        ConfigurationError: If the profile names an unsupported engine.
    """
    kind = BackendKind(profile.type)
    logger.debug("Opening %s backend for project %s", kind.value, profile.name)

    if kind is BackendKind.POSTGRES:
        from db_tools.adapters.postgres import PostgresBackend

        return PostgresBackend(profile, database=database, tools=tools)
    if kind is BackendKind.MONGODB:
        from db_tools.adapters.mongodb import MongoBackend

        return MongoBackend(profile, database=database, tools=tools)

    raise ConfigurationError(f"Unsupported database type: {profile.type}")
