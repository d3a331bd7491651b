"""External client tool resolution and execution.

``ToolLocator`` finds ``pg_dump`` / ``pg_restore`` / ``psql`` /
``mongodump`` / ``mongorestore`` binaries and runs them as awaited
subprocesses.  For PostgreSQL tools the client major version must be at
least the server major version; when the binary on ``PATH`` is older,
versioned install locations are searched.  An unresolved mismatch is
returned as a warning on the resolution, not an error.

A locator is passed into each backend explicitly; it never changes
``PATH`` or ``os.environ``.  Child environments are built as copies.

Usage:
    from db_tools.adapters.tools import ToolLocator

    tools = ToolLocator()
    resolved = await tools.resolve("pg_dump", server_major=16)
    result = await tools.run([resolved.path, "--version"])
"""

import asyncio
import logging
import os
import re
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path

from db_tools.errors import ToolNotFoundError

logger = logging.getLogger(__name__)

_VERSION = re.compile(r"(\d+)(?:\.\d+)*")


@dataclass
class ToolResolution:
    """A resolved executable and how well it matches the server."""

    name: str
    path: str
    version: int | None = None
    warning: str | None = None


@dataclass
class ToolRun:
    """Captured outcome of a subprocess."""

    argv: list[str]
    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


def parse_major_version(text: str) -> int | None:
    """Major version from ``--version`` output or ``SELECT version()``.

    Examples:
        >>> parse_major_version("pg_dump (PostgreSQL) 16.2")
        16
        >>> parse_major_version("PostgreSQL 9.6.24 on x86_64-pc-linux-gnu")
        9
    """
    marker = re.search(r"PostgreSQL\)?\s+(\d+)", text)
    if marker:
        return int(marker.group(1))
    match = _VERSION.search(text)
    return int(match.group(1)) if match else None


@dataclass
class ToolLocator:
    """Resolves and runs external database client tools.

    Args:
        platform: ``sys.platform`` value used to decide on Homebrew lookups.
        extra_dirs: Directories searched before the well-known locations.
    """

    platform: str = sys.platform
    extra_dirs: list[str] = field(default_factory=list)
    _cache: dict[tuple[str, int | None], ToolResolution] = field(default_factory=dict, init=False, repr=False)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def candidate_dirs(self, server_major: int) -> list[str]:
        """Versioned install directories for PostgreSQL client tools."""
        dirs = list(self.extra_dirs)
        dirs += [
            f"/usr/lib/postgresql/{server_major}/bin",
            f"/usr/pgsql-{server_major}/bin",
            f"/opt/homebrew/opt/postgresql@{server_major}/bin",
            f"/usr/local/opt/postgresql@{server_major}/bin",
        ]
        if self.platform == "darwin" and shutil.which("brew"):
            result = await self.run(["brew", "--prefix", f"postgresql@{server_major}"])
            if result.ok:
                prefix = result.stdout.decode().strip()
                if prefix:
                    dirs.append(str(Path(prefix) / "bin"))
        return dirs

    async def version_of(self, path: str) -> int | None:
        try:
            result = await self.run([path, "--version"])
        except OSError as e:
            logger.debug("Could not run %s --version: %s", path, e)
            return None
        if not result.ok:
            return None
        return parse_major_version(result.stdout.decode("utf-8", errors="replace"))

    async def resolve(self, tool: str, server_major: int | None = None) -> ToolResolution:
        """Find *tool*, preferring a build whose major version is >= *server_major*.

        Raises:
            ToolNotFoundError: If no executable named *tool* exists.
        """
        key = (tool, server_major)
        if key in self._cache:
            return self._cache[key]

        default = shutil.which(tool)
        if server_major is None:
            if default is None:
                raise ToolNotFoundError(tool)
            resolution = ToolResolution(tool, default)
            self._cache[key] = resolution
            return resolution

        default_version = await self.version_of(default) if default else None
        if default and default_version is not None and default_version >= server_major:
            resolution = ToolResolution(tool, default, default_version)
            self._cache[key] = resolution
            return resolution

        for directory in await self.candidate_dirs(server_major):
            candidate = Path(directory) / tool
            if not (candidate.is_file() and os.access(candidate, os.X_OK)):
                continue
            version = await self.version_of(str(candidate))
            if version is None or version >= server_major:
                logger.info("Using %s from %s for server version %s", tool, directory, server_major)
                resolution = ToolResolution(tool, str(candidate), version)
                self._cache[key] = resolution
                return resolution

        if default is None:
            raise ToolNotFoundError(tool)

        warning = (
            f"{tool} version {default_version} is older than server version {server_major}; "
            f"install PostgreSQL {server_major} client tools if the command fails"
        )
        logger.warning(warning)
        resolution = ToolResolution(tool, default, default_version, warning)
        self._cache[key] = resolution
        return resolution

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self,
        argv: list[str],
        env: dict[str, str] | None = None,
        input: bytes | None = None,
    ) -> ToolRun:
        """Run *argv* to completion and capture its output.

        Args:
            argv: Executable and arguments.
            env: Variables added to a copy of the current environment.
            input: Bytes written to the child's stdin.
        """
        child_env = {**os.environ, **env} if env else None
        logger.debug("Running %s", argv[0])
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=child_env,
        )
        try:
            stdout, stderr = await process.communicate(input)
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return ToolRun(argv=list(argv), returncode=process.returncode, stdout=stdout, stderr=stderr)
