"""Loading connect.json and resolving project names.

Usage:
    from db_tools.config.loader import ConnectionRegistry

    registry = ConnectionRegistry.load()          # ./connect.json
    profile = registry.get("Prod PG")
    profile = registry.get("Prod PG", type_hint="postgres")
"""

import json
import logging
import os
import re
from pathlib import Path

from db_tools.config.models import BackendKind, ConfigIssue, ConfigValidationResult, ConnectionProfile
from db_tools.config.validator import validate_config_data
from db_tools.errors import ConfigurationError, ProfileNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "connect.json"


def default_config_path() -> Path:
    """``$DB_TOOLS_CONNECT`` or ``./connect.json``."""
    env_path = os.environ.get("DB_TOOLS_CONNECT")
    if env_path:
        return Path(env_path)
    return Path.cwd() / DEFAULT_CONFIG_NAME


def validate_config_file(config_path: Path | str | None = None) -> ConfigValidationResult:
    """Read and validate a connect.json file without raising.

    File-level problems (missing, unreadable, bad JSON) are reported as
    issues in the returned result.
    """
    path = Path(config_path) if config_path else default_config_path()

    if not path.exists():
        return ConfigValidationResult(
            valid=False,
            path=str(path),
            errors=[
                ConfigIssue(
                    type="file_not_found",
                    message=f"Configuration file not found: {path}",
                    suggestion="Create connect.json or run 'db-tools validate-config --fix'",
                )
            ],
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        return ConfigValidationResult(
            valid=False,
            path=str(path),
            errors=[
                ConfigIssue(
                    type="invalid_json",
                    message=f"Invalid JSON in {path}: {e.msg} (line {e.lineno}, column {e.colno})",
                    suggestion="Check for missing commas, quotes or brackets",
                )
            ],
        )
    except PermissionError:
        return ConfigValidationResult(
            valid=False,
            path=str(path),
            errors=[
                ConfigIssue(
                    type="permission_denied",
                    message=f"Permission denied reading {path}",
                    suggestion="Check file permissions (should be readable)",
                )
            ],
        )

    return validate_config_data(data, path=str(path))


def load_connections(config_path: Path | str | None = None) -> list[ConnectionProfile]:
    """Load and validate connection profiles.

    Args:
        config_path: Path to connect.json (default: ``default_config_path()``).

    Returns:
        Validated profiles in file order.

    Raises:
        ConfigurationError: If any validation error is found.  Warnings
            are logged and do not fail the load.
    """
    result = validate_config_file(config_path)

    for warning in result.warnings:
        logger.warning("connect.json: %s", warning.message)

    if not result.valid:
        first = result.errors[0]
        suggestions = [issue.suggestion for issue in result.errors if issue.suggestion]
        suggestions.append("Run 'db-tools validate-config' for detailed validation")
        raise ConfigurationError(
            first.message,
            code=first.type,
            suggestions=suggestions,
            issues=result.errors,
            context={"path": result.path},
        )

    return result.profiles


def dump_connections(profiles: list[ConnectionProfile], config_path: Path | str) -> Path:
    """Write profiles as canonical connect.json."""
    path = Path(config_path)
    path.write_text(json.dumps([p.to_config() for p in profiles], indent=2) + "\n", encoding="utf-8")
    return path


# ============================================================================
# Name resolution
# ============================================================================


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def _normalize(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def suggest_names(name: str, candidates: list[str], limit: int = 3) -> list[str]:
    """Names from *candidates* that look like a typo of *name*.

    Comparison ignores case and punctuation; a candidate qualifies when
    one contains the other or the edit distance is at most a third of
    the longer name (minimum 2).
    """
    target = _normalize(name)
    scored: list[tuple[int, str]] = []
    for candidate in candidates:
        norm = _normalize(candidate)
        if not norm or not target:
            continue
        distance = levenshtein(target, norm)
        threshold = max(2, max(len(target), len(norm)) // 3)
        if target in norm or norm in target or distance <= threshold:
            scored.append((distance, candidate))
    scored.sort()
    return [candidate for _, candidate in scored[:limit]]


class ConnectionRegistry:
    """Index of connection profiles by name.

    Args:
        profiles: Validated profiles.
        path: File the profiles were loaded from, if any.
    """

    def __init__(self, profiles: list[ConnectionProfile], path: Path | None = None) -> None:
        self.profiles = list(profiles)
        self.path = path

    @classmethod
    def load(cls, config_path: Path | str | None = None) -> "ConnectionRegistry":
        path = Path(config_path) if config_path else default_config_path()
        return cls(load_connections(path), path=path)

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.profiles]

    def get(self, name: str, type_hint: BackendKind | str | None = None) -> ConnectionProfile:
        """Return the profile whose name matches exactly.

        Args:
            name: Project name.
            type_hint: Restrict the lookup to one backend.

        Raises:
            ProfileNotFoundError: With available names and near-miss
                suggestions.
        """
        candidates = self.profiles
        hint = BackendKind(type_hint) if type_hint else None
        if hint is not None:
            candidates = [p for p in candidates if p.type is hint]

        for profile in candidates:
            if profile.name == name:
                return profile

        available = [p.name for p in candidates]
        raise ProfileNotFoundError(
            name,
            available=available,
            similar=suggest_names(name, available),
            type_hint=hint.value if hint else None,
        )
