from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from command_dispatch.coordinator.models import (
    CommandStatus,
    CommandType,
    ReportOutcome,
)
from command_dispatch.coordinator.reconciler import CrashReconciler
from command_dispatch.coordinator.repository import CommandRepository
from command_dispatch.coordinator.services import CoordinatorService
from command_dispatch.errors import CommandValidationError, WorkerUnavailableError
from conftest import FakeWorkerProbe, log_entry

pytestmark = [
    allure.epic("Command Dispatch"),
    allure.feature("Coordinator Service"),
]


def _service(repository: CommandRepository, probe: FakeWorkerProbe) -> CoordinatorService:
    return CoordinatorService(
        repository=repository,
        reconciler=CrashReconciler(repository=repository, probe=probe, sleep=lambda _: None),
    )


def _restart_coordinator(db_path: Path, probe: FakeWorkerProbe) -> CommandRepository:
    repository = CommandRepository(db_path)
    repository.init_schema()
    CrashReconciler(repository=repository, probe=probe, sleep=lambda _: None).startup_sweep()
    return repository


def test_submit_poll_report_happy_path(
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    service = _service(repository, probe)

    command_id = service.submit("DELAY", {"ms": 10})
    assigned = service.poll_next("agent-1")
    assert assigned is not None
    assert assigned.command_id == command_id
    assert assigned.command_type is CommandType.DELAY
    assert assigned.payload == {"ms": 10}
    assert assigned.attempt == 1

    running = service.get_status(command_id)
    assert running is not None
    assert running.status == CommandStatus.RUNNING
    assert running.agent_id == "agent-1"

    outcome = service.report(command_id, "agent-1", "COMPLETED", {"delayed_ms": 10})
    assert outcome is ReportOutcome.ACKNOWLEDGED

    done = service.get_status(command_id)
    assert done is not None
    assert done.status == CommandStatus.COMPLETED
    assert done.result == {"delayed_ms": 10}
    assert service.poll_next("agent-1") is None


@pytest.mark.parametrize(
    ("command_type", "payload", "message"),
    [
        ("SHELL", {}, "Unknown command type"),
        ("DELAY", ["not", "an", "object"], "payload must be a JSON object"),
    ],
)
def test_submit_validation_errors_store_nothing(
    repository: CommandRepository,
    probe: FakeWorkerProbe,
    command_type: str,
    payload: object,
    message: str,
) -> None:
    service = _service(repository, probe)

    with pytest.raises(CommandValidationError, match=message):
        service.submit(command_type, payload)

    assert repository.list_commands() == []


def test_poll_and_report_require_agent_id(
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    service = _service(repository, probe)
    command_id = service.submit(CommandType.DELAY, {"ms": 1})

    with pytest.raises(CommandValidationError, match="agent_id is required"):
        service.poll_next("  ")
    with pytest.raises(CommandValidationError, match="agent_id is required"):
        service.report(command_id, "", "COMPLETED")
    with pytest.raises(CommandValidationError, match="must be COMPLETED or FAILED"):
        service.report(command_id, "agent-1", "RUNNING")
    with pytest.raises(CommandValidationError, match="Unknown status"):
        service.report(command_id, "agent-1", "DONE")


def test_report_from_wrong_agent_is_rejected(
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    service = _service(repository, probe)
    command_id = service.submit("DELAY", {"ms": 1})
    service.poll_next("agent-1")

    assert service.report(command_id, "agent-2", "FAILED", None, "x") is ReportOutcome.REJECTED
    status = service.get_status(command_id)
    assert status is not None
    assert status.status == CommandStatus.RUNNING


def test_get_status_unknown_command_returns_none(
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    assert _service(repository, probe).get_status("missing") is None


def test_poll_reconciles_agents_stale_command_before_assigning(
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    service = _service(repository, probe)
    stale = service.submit("DELAY", {"ms": 10}, is_idempotent=False)
    fresh = service.submit("DELAY", {"ms": 20})
    service.poll_next("agent-1")

    assigned = service.poll_next("agent-1")

    assert assigned is not None
    assert assigned.command_id == fresh
    stale_status = service.get_status(stale)
    assert stale_status is not None
    assert stale_status.status == CommandStatus.FAILED


def test_poll_assigns_nothing_while_agents_stale_command_is_deferred(
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    service = _service(repository, probe)
    stale = service.submit("DELAY", {"ms": 10}, is_idempotent=False)
    waiting = service.submit("DELAY", {"ms": 20})
    service.poll_next("agent-1")
    probe.log_error = WorkerUnavailableError("worker timed out")

    assert service.poll_next("agent-1") is None

    owned = repository.find_running_for_agent("agent-1")
    assert [command.command_id for command in owned] == [stale]
    waiting_status = service.get_status(waiting)
    assert waiting_status is not None
    assert waiting_status.status == CommandStatus.PENDING

    probe.log_error = None
    assigned = service.poll_next("agent-1")

    assert assigned is not None
    assert assigned.command_id == waiting


def test_scenario_idempotent_crash_is_requeued_on_restart(
    db_path: Path,
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    service = _service(repository, probe)
    command_id = service.submit("DELAY", {"ms": 10}, is_idempotent=True)
    assert service.poll_next("agent-1") is not None
    repository.close()

    restarted = _restart_coordinator(db_path, probe)
    try:
        command = restarted.get_command(command_id)
        assert command is not None
        assert command.status == CommandStatus.PENDING
        assert command.attempt == 1
    finally:
        restarted.close()


def test_scenario_non_idempotent_crash_fails_on_restart(
    db_path: Path,
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    service = _service(repository, probe)
    command_id = service.submit("DELAY", {"ms": 10}, is_idempotent=False)
    assert service.poll_next("agent-1") is not None
    repository.close()

    restarted = _restart_coordinator(db_path, probe)
    try:
        command = restarted.get_command(command_id)
        assert command is not None
        assert command.status == CommandStatus.FAILED
        assert command.error is not None
        assert "crash" in command.error.lower()
    finally:
        restarted.close()


def test_scenario_logged_completion_is_recovered_on_restart(
    db_path: Path,
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    service = _service(repository, probe)
    command_id = service.submit("DELAY", {"ms": 10}, is_idempotent=False)
    assert service.poll_next("agent-1") is not None
    probe.logs[command_id] = log_entry(command_id, result={"delayed_ms": 10})
    repository.close()

    restarted = _restart_coordinator(db_path, probe)
    try:
        command = restarted.get_command(command_id)
        assert command is not None
        assert command.status == CommandStatus.COMPLETED
        assert command.result == {"delayed_ms": 10}
    finally:
        restarted.close()


def test_scenario_concurrent_polls_single_pending_command(
    db_path: Path,
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    command_id = _service(repository, probe).submit("DELAY", {"ms": 10})
    barrier = threading.Barrier(2)
    results: dict[str, object] = {}

    def _poll(agent_id: str) -> None:
        local = CommandRepository(db_path)
        try:
            barrier.wait(timeout=5)
            results[agent_id] = _service(local, probe).poll_next(agent_id)
        finally:
            local.close()

    threads = [threading.Thread(target=_poll, args=(agent,)) for agent in ("agent-1", "agent-2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    winners = [agent for agent, assigned in results.items() if assigned is not None]
    assert len(results) == 2
    assert len(winners) == 1
    command = repository.get_command(command_id)
    assert command is not None
    assert command.agent_id == winners[0]
