"""Pydantic models for connection profiles and config validation."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BackendKind(str, Enum):
    """Backend discriminator carried by profiles and backends."""

    POSTGRES = "postgres"
    MONGODB = "mongodb"

    @property
    def uri_field(self) -> str:
        return "postgres_uri" if self is BackendKind.POSTGRES else "mongodb_uri"


# ============================================================================
# Configuration Models
# ============================================================================


class ConnectionProfile(BaseModel):
    """A named project connection loaded from connect.json."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: BackendKind
    uri: str
    database: str | None = None  # Optional override of the database in the URI

    def to_config(self) -> dict:
        """Canonical connect.json representation."""
        data: dict = {"name": self.name, "type": self.type.value, self.type.uri_field: self.uri}
        if self.database:
            data["database"] = self.database
        return data


# ============================================================================
# Validation Result Models
# ============================================================================


class ConfigIssue(BaseModel):
    """A single error or warning found while validating connect.json."""

    type: str
    message: str
    suggestion: str = ""
    index: int | None = None  # Position of the offending entry, if any


class ConfigValidationResult(BaseModel):
    """Outcome of validating a connect.json document."""

    valid: bool
    path: str | None = None
    errors: list[ConfigIssue] = Field(default_factory=list)
    warnings: list[ConfigIssue] = Field(default_factory=list)
    profiles: list[ConnectionProfile] = Field(default_factory=list)

    def format_report(self, verbose: bool = False) -> str:
        """Format the validation result as a plain text report."""
        lines: list[str] = []
        if self.valid:
            lines.append(f"Configuration valid ({len(self.profiles)} connections)")
        else:
            lines.append(f"Configuration invalid ({len(self.errors)} errors)")

        for label, issues in (("Errors", self.errors), ("Warnings", self.warnings)):
            if not issues:
                continue
            lines.append(f"\n  {label} ({len(issues)}):")
            for issue in issues:
                where = f"[{issue.index}] " if issue.index is not None else ""
                lines.append(f"    - {where}{issue.message}")
                if verbose and issue.suggestion:
                    lines.append(f"      suggestion: {issue.suggestion}")

        return "\n".join(lines)
