"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from task_coordinator.config import ProtocolSettings, Settings, StoreSettings, WorkerSettings
from task_coordinator.coordination.repository import TaskRepository
from task_coordinator.protocol.tools import TaskToolService

_ENV_PREFIX = "TASK_COORDINATOR_"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer TASK_COORDINATOR_* variables out of tests."""

    for name in list(os.environ):
        if name.startswith(_ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "coordinator.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def service(repository: TaskRepository) -> TaskToolService:
    return TaskToolService(repository)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "coordinator.db",
        log_level="WARNING",
        store=StoreSettings(workspace_root=tmp_path / "workspaces"),
        protocol=ProtocolSettings(
            handshake_timeout_seconds=20.0,
            call_timeout_seconds=20.0,
            health_check_interval_seconds=60.0,
            graceful_shutdown_seconds=5.0,
        ),
        worker=WorkerSettings(
            worker_id="worker-test",
            poll_interval_seconds=0.05,
            poll_backoff_max_seconds=0.2,
        ),
    )

