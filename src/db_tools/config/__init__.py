"""Connection profiles: connect.json loading, validation and lookup.

Usage:
    >>> from db_tools.config import ConnectionRegistry, ConnectionProfile, BackendKind
"""

from db_tools.config.loader import (
    ConnectionRegistry,
    default_config_path,
    dump_connections,
    load_connections,
    validate_config_file,
)
from db_tools.config.models import (
    BackendKind,
    ConfigIssue,
    ConfigValidationResult,
    ConnectionProfile,
)
from db_tools.config.validator import validate_config_data

__all__ = [
    "BackendKind",
    "ConfigIssue",
    "ConfigValidationResult",
    "ConnectionProfile",
    "ConnectionRegistry",
    "default_config_path",
    "dump_connections",
    "load_connections",
    "validate_config_data",
    "validate_config_file",
]
