"""
Pytest configuration and shared fixtures for the update executor tests.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from kinuxota_executor.config import ExecutorConfig
from kinuxota_executor.errors import RuntimeTargetError
from kinuxota_executor.runtime_target import RuntimeTarget

pytest_plugins = ["pytest_asyncio"]

OLD_BINARY = b"#!/bin/sh\necho kinuxota_client 2.2.0\n"
NEW_BINARY = b"#!/bin/sh\necho kinuxota_client 2.3.0\n"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


class FakeRuntimeTarget(RuntimeTarget):
    """
    In-memory runtime target.

    ``start_outcomes`` decides, per start() call, whether the target comes
    up; once exhausted every further start succeeds. ``on_start`` lets a
    test observe the live executable at the moment the client is started.
    """

    kind = "process"

    def __init__(
        self,
        *,
        running: bool = True,
        start_outcomes: list[bool] | None = None,
        stop_error: bool = False,
        on_start: Callable[[], None] | None = None,
    ) -> None:
        self.running = running
        self.start_outcomes = list(start_outcomes or [])
        self.stop_error = stop_error
        self.on_start = on_start
        self.calls: list[str] = []

    def describe(self) -> str:
        return "process fake"

    async def stop(self) -> bool:
        self.calls.append("stop")
        if self.stop_error:
            self.stop_error = False
            raise RuntimeTargetError("kill refused")
        was_running = self.running
        self.running = False
        return was_running

    async def start(self) -> None:
        self.calls.append("start")
        if self.on_start is not None:
            self.on_start()
        self.running = self.start_outcomes.pop(0) if self.start_outcomes else True

    async def is_running(self) -> bool:
        self.calls.append("is_running")
        return self.running


@pytest.fixture
def install_layout(tmp_path: Path) -> dict[str, Path]:
    """Create a live executable and a staging directory with one artifact."""
    install_dir = tmp_path / "bin"
    install_dir.mkdir()
    live = install_dir / "kinuxota_client"
    live.write_bytes(OLD_BINARY)
    live.chmod(0o755)

    staging = tmp_path / "updates"
    (staging / "2.3.0").mkdir(parents=True)
    artifact = staging / "2.3.0" / "kinuxota"
    artifact.write_bytes(NEW_BINARY)

    return {
        "install_dir": install_dir,
        "live": live,
        "staging": staging,
        "artifact": artifact,
        "backup_dir": install_dir / "backup",
        "state_file": tmp_path / "state" / "update_state.json",
    }


@pytest.fixture
def fast_config(install_layout: dict[str, Path]) -> ExecutorConfig:
    """Configuration pointing at the temp layout with no waiting."""
    return ExecutorConfig(
        target={"executable_path": str(install_layout["live"])},
        staging={"directory": str(install_layout["staging"])},
        polling={"attempts": 3, "interval_seconds": 0},
        health={"settle_delay_seconds": 0},
        reporting={"credential_paths": []},
        state_file=str(install_layout["state_file"]),
    )


@pytest.fixture
def old_binary() -> bytes:
    """Content of the live executable before the update."""
    return OLD_BINARY


@pytest.fixture
def new_binary() -> bytes:
    """Content of the staged artifact."""
    return NEW_BINARY


@pytest.fixture
def make_target() -> type[FakeRuntimeTarget]:
    """Factory for fake runtime targets with custom behaviour."""
    return FakeRuntimeTarget


@pytest.fixture
def fake_target() -> FakeRuntimeTarget:
    """A running fake runtime target."""
    return FakeRuntimeTarget()


class RecordCollector(logging.Handler):
    """Logging handler that keeps every record it receives."""

    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def log_records() -> Iterator[list[logging.LogRecord]]:
    """Records logged under the kinuxota_executor logger during a test."""
    collector = RecordCollector()
    logger = logging.getLogger("kinuxota_executor")
    previous_level = logger.level
    logger.setLevel(logging.DEBUG)
    logger.addHandler(collector)
    yield collector.records
    logger.removeHandler(collector)
    logger.setLevel(previous_level)
