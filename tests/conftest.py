"""Shared fixtures."""

from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from db_tools.backup.temp_store import TempBackupStore
from db_tools.config.models import BackendKind

from fakes import FakeBackend, shop_state


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend(state=shop_state())


@pytest.fixture
def mongo_backend() -> FakeBackend:
    return FakeBackend(BackendKind.MONGODB, state=shop_state())


@pytest.fixture
def store(tmp_path: Path) -> TempBackupStore:
    return TempBackupStore(tmp_path / "temp")


@pytest.fixture
def output() -> StringIO:
    return StringIO()


@pytest.fixture
def console(output: StringIO) -> Console:
    return Console(file=output, width=200, color_system=None)
