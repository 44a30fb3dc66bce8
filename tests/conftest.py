import logging

import pytest

from batchrun.config import BatchConfig
from batchrun.items import ItemSink
from batchrun.repository import InMemoryJobRepository, SqliteJobRepository


@pytest.fixture
def test_config(tmp_path):
    return BatchConfig(
        repository_path=str(tmp_path / "repo" / "batchrun.db"),
        definitions_dir=str(tmp_path / "jobs"),
        chunk_size=2,
        failure_policy="abort_step",
        log_level="DEBUG",
        log_format="structured",
    )


@pytest.fixture
def repository():
    return InMemoryJobRepository()


@pytest.fixture
def sqlite_repository(tmp_path):
    return SqliteJobRepository(tmp_path / "runs.db")


@pytest.fixture(params=["memory", "sqlite"])
def any_repository(request, tmp_path):
    """Each JobRepository implementation."""
    if request.param == "memory":
        return InMemoryJobRepository()
    return SqliteJobRepository(tmp_path / "runs.db")


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point BATCHRUN_HOME at a temp dir and clear env overrides."""
    home = tmp_path / "home"
    monkeypatch.setenv("BATCHRUN_HOME", str(home))
    for var in ("BATCHRUN_REPOSITORY_PATH", "BATCHRUN_LOG_LEVEL", "BATCHRUN_CHUNK_SIZE"):
        monkeypatch.delenv(var, raising=False)
    yield home
    # setup_logging installs handlers on the package logger
    logging.getLogger("batchrun").handlers = []


class FailingSink(ItemSink):
    """Records chunks, raising on the chunk numbers (1-based) listed in fail_on."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.attempts = 0
        self.chunks = []
        self.opened = False
        self.closed = False

    def open(self):
        self.opened = True

    def write(self, chunk):
        self.attempts += 1
        if self.attempts in self.fail_on:
            raise RuntimeError(f"sink down on chunk {self.attempts}")
        self.chunks.append(list(chunk))

    def close(self):
        self.closed = True


@pytest.fixture
def failing_sink():
    return FailingSink
