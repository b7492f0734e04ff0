from __future__ import annotations

import threading
from collections import Counter
from pathlib import Path

import allure
import pytest

from command_dispatch.coordinator.models import (
    CommandCreate,
    CommandStatus,
    CommandType,
)
from command_dispatch.coordinator.repository import CommandRepository
from conftest import log_entry

pytestmark = [
    allure.epic("Command Dispatch"),
    allure.feature("Command Store"),
]


def _submit(
    repository: CommandRepository,
    *,
    ms: int = 10,
    is_idempotent: bool = False,
) -> str:
    return repository.submit(
        CommandCreate(
            command_type=CommandType.DELAY,
            payload={"ms": ms},
            is_idempotent=is_idempotent,
        ),
    ).command_id


def test_submit_creates_pending_command_with_submitted_event(
    repository: CommandRepository,
) -> None:
    command = repository.submit(
        CommandCreate(command_type=CommandType.HTTP_GET_JSON, payload={"url": "https://x.test"}),
    )

    assert command.status == CommandStatus.PENDING
    assert command.agent_id is None
    assert command.attempt == 0
    assert command.is_idempotent is False
    assert command.payload == {"url": "https://x.test"}

    details = repository.get_command_details(command.command_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["submitted"]
    assert details.events[0].status_to == CommandStatus.PENDING
    assert details.events[0].actor == "client"


def test_assign_next_is_fifo_and_sets_owner(repository: CommandRepository) -> None:
    first = _submit(repository, ms=1)
    second = _submit(repository, ms=2)
    third = _submit(repository, ms=3)

    assigned = [
        repository.assign_next(agent_id="agent-1"),
        repository.assign_next(agent_id="agent-2"),
        repository.assign_next(agent_id="agent-1"),
    ]

    assert [command.command_id for command in assigned if command] == [first, second, third]
    assert assigned[0] is not None
    assert assigned[0].status == CommandStatus.RUNNING
    assert assigned[0].agent_id == "agent-1"
    assert assigned[0].attempt == 1
    assert assigned[0].started_at is not None
    assert repository.assign_next(agent_id="agent-3") is None


def test_report_result_by_owner_completes_command(repository: CommandRepository) -> None:
    command_id = _submit(repository)
    repository.assign_next(agent_id="agent-1")

    applied = repository.report_result(
        command_id=command_id,
        agent_id="agent-1",
        status=CommandStatus.COMPLETED,
        result={"delayed_ms": 10},
        error=None,
    )

    assert applied is True
    command = repository.get_command(command_id)
    assert command is not None
    assert command.status == CommandStatus.COMPLETED
    assert command.result == {"delayed_ms": 10}
    assert command.agent_id is None
    assert command.completed_at is not None


def test_report_result_from_non_owner_is_rejected_and_audited(
    repository: CommandRepository,
) -> None:
    command_id = _submit(repository)
    repository.assign_next(agent_id="agent-1")

    applied = repository.report_result(
        command_id=command_id,
        agent_id="agent-2",
        status=CommandStatus.FAILED,
        result=None,
        error="boom",
    )

    assert applied is False
    command = repository.get_command(command_id)
    assert command is not None
    assert command.status == CommandStatus.RUNNING
    assert command.agent_id == "agent-1"

    details = repository.get_command_details(command_id)
    assert details is not None
    rejected = details.events[-1]
    assert rejected.event_type == "report_rejected"
    assert rejected.actor == "agent-2"
    assert rejected.details == {"reported_status": "FAILED", "owner": "agent-1"}


def test_terminal_command_ignores_late_reports(repository: CommandRepository) -> None:
    command_id = _submit(repository)
    repository.assign_next(agent_id="agent-1")
    repository.report_result(
        command_id=command_id,
        agent_id="agent-1",
        status=CommandStatus.COMPLETED,
        result={"ok": True},
        error=None,
    )

    second = repository.report_result(
        command_id=command_id,
        agent_id="agent-1",
        status=CommandStatus.FAILED,
        result=None,
        error="late",
    )

    assert second is False
    command = repository.get_command(command_id)
    assert command is not None
    assert command.status == CommandStatus.COMPLETED
    assert command.result == {"ok": True}
    assert command.error is None


def test_report_result_rejects_non_terminal_status(repository: CommandRepository) -> None:
    command_id = _submit(repository)
    repository.assign_next(agent_id="agent-1")

    with pytest.raises(ValueError, match="Unsupported report status"):
        repository.report_result(
            command_id=command_id,
            agent_id="agent-1",
            status=CommandStatus.PENDING,
            result=None,
            error=None,
        )


def test_report_for_unknown_command_returns_false(repository: CommandRepository) -> None:
    assert (
        repository.report_result(
            command_id="missing",
            agent_id="agent-1",
            status=CommandStatus.COMPLETED,
            result=None,
            error=None,
        )
        is False
    )


def test_requeue_after_crash_keeps_attempt_and_clears_owner(
    repository: CommandRepository,
) -> None:
    command_id = _submit(repository, is_idempotent=True)
    repository.assign_next(agent_id="agent-1")

    assert repository.requeue_after_crash(command_id=command_id, agent_id="agent-1") is True
    assert repository.requeue_after_crash(command_id=command_id, agent_id="agent-1") is False

    command = repository.get_command(command_id)
    assert command is not None
    assert command.status == CommandStatus.PENDING
    assert command.agent_id is None
    assert command.started_at is None
    assert command.attempt == 1

    reassigned = repository.assign_next(agent_id="agent-2")
    assert reassigned is not None
    assert reassigned.command_id == command_id
    assert reassigned.attempt == 2


def test_fail_after_crash_and_apply_log_require_current_owner(
    repository: CommandRepository,
) -> None:
    failed_id = _submit(repository)
    logged_id = _submit(repository)
    repository.assign_next(agent_id="agent-1")
    repository.assign_next(agent_id="agent-2")

    assert (
        repository.fail_after_crash(command_id=failed_id, agent_id="agent-2", error="crash")
        is False
    )
    assert (
        repository.fail_after_crash(command_id=failed_id, agent_id="agent-1", error="crash")
        is True
    )
    assert repository.apply_execution_log(
        command_id=logged_id,
        agent_id="agent-2",
        entry=log_entry(logged_id, agent_id="agent-2", result={"delayed_ms": 10}),
    )

    failed = repository.get_command(failed_id)
    logged = repository.get_command(logged_id)
    assert failed is not None
    assert failed.status == CommandStatus.FAILED
    assert failed.error == "crash"
    assert logged is not None
    assert logged.status == CommandStatus.COMPLETED
    assert logged.result == {"delayed_ms": 10}

    details = repository.get_command_details(logged_id)
    assert details is not None
    assert details.events[-1].event_type == "recovered_from_log"
    assert details.events[-1].actor == "reconciler"


def test_find_running_for_agent_and_list_running(repository: CommandRepository) -> None:
    first = _submit(repository)
    second = _submit(repository)
    _submit(repository)
    repository.assign_next(agent_id="agent-1")
    repository.assign_next(agent_id="agent-2")

    assert [c.command_id for c in repository.find_running_for_agent("agent-1")] == [first]
    assert [c.command_id for c in repository.find_running_for_agent("agent-2")] == [second]
    assert repository.find_running_for_agent("agent-3") == []
    assert {c.command_id for c in repository.list_running()} == {first, second}


def test_list_commands_filters_by_status_newest_first(repository: CommandRepository) -> None:
    first = _submit(repository)
    second = _submit(repository)
    repository.assign_next(agent_id="agent-1")

    assert [c.command_id for c in repository.list_commands()] == [second, first]
    pending = repository.list_commands(status=CommandStatus.PENDING)
    assert [c.command_id for c in pending] == [second]
    assert len(repository.list_commands(limit=1)) == 1


def test_concurrent_polls_assign_each_command_exactly_once(tmp_path: Path) -> None:
    db_path = tmp_path / "coordinator.db"
    seed = CommandRepository(db_path)
    seed.init_schema()
    command_ids = [_submit(seed, ms=index) for index in range(10)]
    seed.close()

    start = threading.Barrier(5)
    claims: list[tuple[str, str]] = []
    claims_lock = threading.Lock()
    errors: list[BaseException] = []

    def _agent_loop(agent_id: str) -> None:
        repository = CommandRepository(db_path)
        try:
            start.wait(timeout=5)
            while True:
                command = repository.assign_next(agent_id=agent_id)
                if command is None:
                    return
                with claims_lock:
                    claims.append((command.command_id, agent_id))
        except BaseException as error:  # noqa: BLE001
            errors.append(error)
        finally:
            repository.close()

    threads = [
        threading.Thread(target=_agent_loop, args=(f"agent-{index}",)) for index in range(1, 6)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    counts = Counter(command_id for command_id, _ in claims)
    assert sorted(counts) == sorted(command_ids)
    assert set(counts.values()) == {1}

    verify = CommandRepository(db_path)
    try:
        for command_id, agent_id in claims:
            command = verify.get_command(command_id)
            assert command is not None
            assert command.status == CommandStatus.RUNNING
            assert command.agent_id == agent_id
            assert command.attempt == 1
    finally:
        verify.close()
