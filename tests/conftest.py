"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from command_dispatch.coordinator.models import CommandStatus, ExecutionLogEntry
from command_dispatch.coordinator.repository import CommandRepository
from command_dispatch.worker.execution_log import ExecutionLogRepository


class FakeWorkerProbe:
    """Scriptable stand-in for the worker's recovery endpoints."""

    def __init__(self) -> None:
        self.logs: dict[str, ExecutionLogEntry] = {}
        self.running: set[tuple[str, str]] = set()
        self.log_error: Exception | None = None
        self.liveness_error: Exception | None = None
        self.health_errors: list[Exception] = []
        self.log_queries: list[str] = []
        self.liveness_queries: list[tuple[str, str]] = []
        self.health_checks = 0

    def fetch_execution_log(self, command_id: str) -> ExecutionLogEntry | None:
        self.log_queries.append(command_id)
        if self.log_error is not None:
            raise self.log_error
        return self.logs.get(command_id)

    def is_agent_running(self, agent_id: str, command_id: str) -> bool:
        self.liveness_queries.append((agent_id, command_id))
        if self.liveness_error is not None:
            raise self.liveness_error
        return (agent_id, command_id) in self.running

    def check_health(self) -> None:
        self.health_checks += 1
        if self.health_errors:
            raise self.health_errors.pop(0)


def log_entry(  # noqa: PLR0913
    command_id: str,
    *,
    agent_id: str = "agent-1",
    attempt: int = 1,
    status: CommandStatus = CommandStatus.COMPLETED,
    result: object = None,
    error: str | None = None,
) -> ExecutionLogEntry:
    now = datetime.now(tz=UTC)
    return ExecutionLogEntry(
        command_id=command_id,
        agent_id=agent_id,
        attempt=attempt,
        status=status,
        result=result,
        error=error,
        started_at=now,
        completed_at=now,
    )


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "coordinator.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[CommandRepository]:
    repo = CommandRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def log_store(tmp_path: Path) -> Iterator[ExecutionLogRepository]:
    store = ExecutionLogRepository(tmp_path / "worker.db")
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@pytest.fixture()
def probe() -> FakeWorkerProbe:
    return FakeWorkerProbe()
