"""db-tools: safe schema and data management for PostgreSQL and MongoDB.

Mutating operations are classified by risk; dangerous ones take an
encrypted temporary backup and are rehearsed in a throwaway shadow
database before they run against the real one.

Usage:
    from db_tools import ConnectionRegistry, open_backend
    from db_tools import PostgresBackend, MongoBackend
    from db_tools import SafetyPipeline, TempBackupStore
"""

__version__ = "0.1.0"

# Adapters
from db_tools.adapters.base import Backend
from db_tools.adapters.mongodb import MongoBackend
from db_tools.adapters.postgres import PostgresBackend

# Config
from db_tools.config.loader import ConnectionRegistry, load_connections, validate_config_file
from db_tools.config.models import BackendKind, ConnectionProfile

# Errors and results
from db_tools.errors import DbToolsError, ProfileNotFoundError, classify_error
from db_tools.result import Err, Ok

# Factory
from db_tools.factory import open_backend

# Safety
from db_tools.backup.temp_store import TempBackupStore
from db_tools.safety.operations import RiskLevel, classify_query
from db_tools.safety.pipeline import SafetyPipeline

__all__ = [
    # Adapters
    "Backend",
    "MongoBackend",
    "PostgresBackend",
    # Config
    "BackendKind",
    "ConnectionProfile",
    "ConnectionRegistry",
    "load_connections",
    "validate_config_file",
    # Errors and results
    "DbToolsError",
    "ProfileNotFoundError",
    "classify_error",
    "Ok",
    "Err",
    # Factory
    "open_backend",
    # Safety
    "RiskLevel",
    "SafetyPipeline",
    "TempBackupStore",
    "classify_query",
]
