"""Error taxonomy, classification and reporting.

Every failure the tool surfaces to an operator is a ``DbToolsError`` (or
is classified into one by ``classify_error``).  Each error carries a
type, a severity, an optional machine code (SQLSTATE, errno name, ...)
and a list of short actionable suggestions.

``ErrorReporter`` prints errors with a severity icon and appends a
structured copy to a daily JSON-lines log.

Usage:
    from db_tools.errors import ErrorReporter, classify_error

    reporter = ErrorReporter(console)
    try:
        await backend.query("SELECT * FROM missing")
    except Exception as exc:
        reporter.report(exc, context={"operation": "query"})
"""

import errno
import json
import logging
import os
import traceback
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from rich.console import Console

logger = logging.getLogger(__name__)


class ErrorType(str, Enum):
    """Category of a failure."""

    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    CONNECTION = "connection"
    PERMISSION = "permission"
    DATABASE = "database"
    FILE_SYSTEM = "file_system"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    """How bad a failure is.  ``CRITICAL`` maps to exit code 2."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ICONS: dict[Severity, str] = {
    Severity.LOW: "⚠️",
    Severity.MEDIUM: "❌",
    Severity.HIGH: "🚨",
    Severity.CRITICAL: "💥",
}

DEFAULT_SEVERITY: dict[ErrorType, Severity] = {
    ErrorType.VALIDATION: Severity.LOW,
    ErrorType.CONFIGURATION: Severity.MEDIUM,
    ErrorType.CONNECTION: Severity.HIGH,
    ErrorType.PERMISSION: Severity.HIGH,
    ErrorType.DATABASE: Severity.MEDIUM,
    ErrorType.FILE_SYSTEM: Severity.MEDIUM,
    ErrorType.UNKNOWN: Severity.MEDIUM,
}

# Suggestions keyed by SQLSTATE / errno name / driver code
CODE_SUGGESTIONS: dict[str, list[str]] = {
    "ECONNREFUSED": [
        "Check that the database server is running",
        "Verify the host and port in connect.json",
        "Check firewall rules between this machine and the server",
    ],
    "ENOTFOUND": [
        "Check the hostname in the connection URI",
        "Verify DNS resolution for the database host",
    ],
    "ETIMEDOUT": [
        "The server did not answer in time; check network connectivity",
        "Verify the server accepts remote connections",
    ],
    "28P01": [
        "Check the username and password in the connection URI",
        "Verify the user exists on the server",
    ],
    "28000": [
        "Check pg_hba.conf allows this client and authentication method",
    ],
    "3D000": [
        "Check the database name in the connection URI",
        "Create the database first or pass -d/--database",
        "Run 'db-tools list-databases <project>' to see available databases",
    ],
    "42P01": [
        "Check the table name spelling",
        "Run 'db-tools list-tables <project>' to see existing tables",
        "Run 'db-tools init <project>' to create the schema",
    ],
    "42703": [
        "Check the column name spelling",
        "Run 'db-tools list-columns <project> <table>' to see existing columns",
    ],
    "42701": [
        "The column already exists; choose a different name",
    ],
    "42P07": [
        "The table or index already exists; choose a different name",
    ],
    "42601": [
        "Check the SQL syntax near the reported position",
        "Quote identifiers that contain upper case letters or spaces",
    ],
    "42501": [
        "The database user lacks privileges for this operation",
        "Run 'db-tools manage-permissions <project>' or connect as an owner",
    ],
    "ENOENT": [
        "Check that the path exists",
        "Use an absolute path if the working directory is unclear",
    ],
    "EACCES": [
        "Check file permissions",
        "Run with a user that can read/write the path",
    ],
}


# ============================================================================
# Exception hierarchy
# ============================================================================


class DbToolsError(Exception):
    """Base error carrying type, severity, code and suggestions.

    Args:
        message: Human readable message.
        code: Optional machine code (SQLSTATE, errno name, ...).
        suggestions: Actionable hints shown below the message.  When
            omitted, suggestions registered for ``code`` are used.
        context: Free-form details recorded in the error log.
        severity: Overrides the default severity of the error type.
    """

    error_type: ErrorType = ErrorType.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        suggestions: list[str] | None = None,
        context: dict[str, Any] | None = None,
        severity: Severity | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        if suggestions is None:
            suggestions = list(CODE_SUGGESTIONS.get(code or "", []))
        self.suggestions = suggestions
        self.context = dict(context or {})
        self.severity = severity or DEFAULT_SEVERITY[self.error_type]

    @property
    def is_critical(self) -> bool:
        return self.severity is Severity.CRITICAL


class ValidationError(DbToolsError):
    """Malformed input or identifier."""

    error_type = ErrorType.VALIDATION


class ConfigurationError(DbToolsError):
    """Bad or missing connect.json."""

    error_type = ErrorType.CONFIGURATION

    def __init__(self, message: str, *, issues: list | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("severity", Severity.CRITICAL)
        super().__init__(message, **kwargs)
        self.issues = issues or []


class ProfileNotFoundError(ConfigurationError):
    """Raised when a project name does not resolve to a profile.

    Not critical: a typo in a project name is a recoverable failure.
    """

    def __init__(
        self,
        name: str,
        available: list[str],
        similar: list[str] | None = None,
        type_hint: str | None = None,
    ) -> None:
        message = f'No connection found for project: "{name}"'
        if type_hint:
            message += f' with type "{type_hint}"'
        suggestions = ["Check the spelling of the project name"]
        suggestions.append("Use the exact name including capitalization and spaces")
        suggestions.append("Run 'db-tools validate-config' to verify your configuration")
        super().__init__(message, suggestions=suggestions, severity=Severity.MEDIUM)
        self.name = name
        self.available = available
        self.similar = similar or []
        self.type_hint = type_hint


class ConnectionFailedError(DbToolsError):
    """Network, DNS or refused connection."""

    error_type = ErrorType.CONNECTION


class PermissionDeniedError(DbToolsError):
    """Authentication, privilege or filesystem mode failure."""

    error_type = ErrorType.PERMISSION


class DatabaseError(DbToolsError):
    """Missing relation, duplicate object, SQL syntax..."""

    error_type = ErrorType.DATABASE


class ShadowUnavailableError(DatabaseError):
    """The shadow database could not be created or populated."""


class FileSystemError(DbToolsError):
    """Missing path or I/O failure."""

    error_type = ErrorType.FILE_SYSTEM


class ToolNotFoundError(FileSystemError):
    """An external client binary (pg_dump, mongodump, ...) is missing."""

    def __init__(self, tool: str, **kwargs: Any) -> None:
        kwargs.setdefault(
            "suggestions",
            [
                f"Install the client tools that provide '{tool}'",
                "Make sure the binary is on PATH",
            ],
        )
        super().__init__(f"{tool} command not found", code="ENOENT", **kwargs)
        self.tool = tool


class DecryptionError(ValidationError):
    """Ciphertext or key is malformed."""


# ============================================================================
# Classification
# ============================================================================


def _sqlstate(exc: BaseException) -> str | None:
    """Find a SQLSTATE on a driver exception or its wrapped cause."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("sqlstate", "pgcode"):
            value = getattr(current, attr, None)
            if isinstance(value, str) and value:
                return value
        current = getattr(current, "orig", None) or current.__cause__
    return None


def classify_error(exc: BaseException, context: dict[str, Any] | None = None) -> DbToolsError:
    """Map an arbitrary exception to a ``DbToolsError``.

    Already-typed errors are returned unchanged.  Otherwise the SQLSTATE
    (asyncpg / psycopg / SQLAlchemy wrapped), the errno of an ``OSError``,
    pymongo failure codes and finally message keywords are consulted.

    Args:
        exc: The exception to classify.
        context: Extra details attached to the resulting error.

    Returns:
        A ``DbToolsError`` whose ``__cause__`` is *exc*.
    """
    if isinstance(exc, DbToolsError):
        if context:
            exc.context.update(context)
        return exc

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    kwargs: dict[str, Any] = {"context": context}
    result: DbToolsError

    state = _sqlstate(exc)
    mongo_code = getattr(exc, "code", None) if exc.__class__.__module__.startswith("pymongo") else None

    if state is not None:
        if state.startswith("28"):
            result = PermissionDeniedError(message, code=state, **kwargs)
        elif state == "42501":
            result = PermissionDeniedError(message, code=state, **kwargs)
        elif state.startswith("08"):
            result = ConnectionFailedError(message, code=state, **kwargs)
        else:
            result = DatabaseError(message, code=state, **kwargs)
    elif isinstance(exc, ConnectionRefusedError) or getattr(exc, "errno", None) == errno.ECONNREFUSED:
        result = ConnectionFailedError(message, code="ECONNREFUSED", **kwargs)
    elif isinstance(exc, FileNotFoundError):
        result = FileSystemError(message, code="ENOENT", **kwargs)
    elif isinstance(exc, PermissionError):
        result = PermissionDeniedError(message, code="EACCES", **kwargs)
    elif isinstance(exc, TimeoutError):
        result = ConnectionFailedError(message, code="ETIMEDOUT", **kwargs)
    elif mongo_code in (13, 18):
        result = PermissionDeniedError(message, code=str(mongo_code), **kwargs)
    elif exc.__class__.__name__ in ("ServerSelectionTimeoutError", "AutoReconnect", "NetworkTimeout"):
        result = ConnectionFailedError(message, code="ETIMEDOUT", **kwargs)
    elif "connection refused" in lowered or "could not connect" in lowered:
        result = ConnectionFailedError(message, code="ECONNREFUSED", **kwargs)
    elif "authentication" in lowered or "password" in lowered:
        result = PermissionDeniedError(message, code="28P01", **kwargs)
    elif "does not exist" in lowered and "database" in lowered:
        result = DatabaseError(message, code="3D000", **kwargs)
    elif "relation" in lowered and "does not exist" in lowered:
        result = DatabaseError(message, code="42P01", **kwargs)
    elif "syntax error" in lowered:
        result = DatabaseError(message, code="42601", **kwargs)
    elif "name or service not known" in lowered or "getaddrinfo" in lowered:
        result = ConnectionFailedError(message, code="ENOTFOUND", **kwargs)
    elif "permission denied" in lowered:
        result = PermissionDeniedError(message, code="EACCES", **kwargs)
    elif "no such file" in lowered:
        result = FileSystemError(message, code="ENOENT", **kwargs)
    elif "invalid" in lowered or "validation" in lowered:
        result = ValidationError(message, **kwargs)
    elif "config" in lowered or "json" in lowered:
        result = ConfigurationError(message, severity=Severity.MEDIUM, **kwargs)
    else:
        result = DbToolsError(message, **kwargs)

    result.__cause__ = exc
    return result


# ============================================================================
# Reporting
# ============================================================================


class ErrorReporter:
    """Prints classified errors and appends them to a daily log.

    Args:
        console: Rich console used for output.
        log_dir: Directory for ``db-tools-errors-YYYY-MM-DD.log`` files.
            Defaults to ``$DB_TOOLS_LOG_DIR`` or ``./logs``.
        verbose: Show stack traces.
    """

    def __init__(
        self,
        console: Console,
        log_dir: Path | None = None,
        verbose: bool = False,
    ) -> None:
        self.console = console
        if log_dir is None:
            log_dir = Path(os.environ.get("DB_TOOLS_LOG_DIR") or Path.cwd() / "logs")
        self.log_dir = Path(log_dir)
        self.verbose = verbose

    def report(self, exc: BaseException, context: dict[str, Any] | None = None) -> DbToolsError:
        """Print *exc* with suggestions and log it.

        Returns:
            The classified error, so callers can read its severity.
        """
        error = classify_error(exc, context)
        icon = SEVERITY_ICONS.get(error.severity, "❌")
        label = error.error_type.value.replace("_", " ").upper()

        self.console.print(f"{icon} [bold red]{label} ERROR:[/bold red] {error.message}", highlight=False)
        if error.code:
            self.console.print(f"  [dim]Code: {error.code}[/dim]")
        if error.suggestions:
            self.console.print("\n[cyan]💡 Suggestions:[/cyan]")
            for suggestion in error.suggestions:
                self.console.print(f"[cyan]  • {suggestion}[/cyan]", highlight=False)
        if self.verbose:
            self.console.print(f"[dim]{self._stack(error)}[/dim]", highlight=False)

        self.log(error)
        return error

    def log(self, error: DbToolsError) -> Path | None:
        """Append *error* as one JSON line to today's log file."""
        now = datetime.now(timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "type": error.error_type.value,
            "severity": error.severity.value,
            "code": error.code,
            "message": error.message,
            "context": error.context,
        }
        stack = self._stack(error)
        if stack:
            entry["stack"] = stack

        path = self.log_dir / f"db-tools-errors-{now.strftime('%Y-%m-%d')}.log"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            # The log is a secondary copy; the error was already printed
            logger.warning("Could not write error log %s: %s", path, e)
            return None
        return path

    @staticmethod
    def _stack(error: DbToolsError) -> str | None:
        source: BaseException = error.__cause__ or error
        if source.__traceback__ is None:
            return None
        return "".join(traceback.format_exception(type(source), source, source.__traceback__))
