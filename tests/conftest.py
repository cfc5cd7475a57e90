"""Shared pytest fixtures for braid tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from braid.core import BRAID_DIR_NAME, DB_FILENAME, BraidDB, Installation, write_config
from braid.engine import SyncEngine
from braid.retry import RetryPolicy
from tests._fakes import WEBHOOK_SECRET, FakeRemote


async def _no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def db(tmp_path: Path) -> Generator[BraidDB, None, None]:
    """Fresh BraidDB for each test."""
    d = BraidDB(tmp_path / "braid.db", prefix="test")
    d.initialize()
    yield d
    d.close()


@pytest.fixture
def installation(db: BraidDB) -> Installation:
    """Installation ``acme`` for acme/widgets with default conventions."""
    return db.add_installation("acme", "acme", "widgets", webhook_secret=WEBHOOK_SECRET, api_token="ghp_test")


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
async def engine(db: BraidDB, remote: FakeRemote) -> AsyncGenerator[SyncEngine, None]:
    """SyncEngine over the fake remote, with retries that never sleep."""
    e = SyncEngine(db, remote, retry=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0), debounce_seconds=0.01, sleep=_no_sleep)
    yield e
    await e.aclose()


@pytest.fixture
def braid_project(tmp_path: Path) -> Path:
    """A tmp directory set up as a braid project (.braid/ with config + db).

    Returns the project root (parent of .braid/).
    """
    braid_dir = tmp_path / BRAID_DIR_NAME
    braid_dir.mkdir()
    write_config(braid_dir, {"prefix": "proj", "version": 1})
    d = BraidDB(braid_dir / DB_FILENAME, prefix="proj")
    d.initialize()
    d.close()
    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
