"""Controllers for command-dispatch CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import uvicorn

from command_dispatch.config import Settings
from command_dispatch.coordinator.api import create_app as create_coordinator_app
from command_dispatch.coordinator.models import CommandStatus
from command_dispatch.coordinator.reconciler import CrashReconciler, RecoveryPolicy
from command_dispatch.coordinator.repository import CommandRepository
from command_dispatch.coordinator.services import CoordinatorService
from command_dispatch.coordinator.worker_client import HttpWorkerProbe
from command_dispatch.worker.api import create_app as create_worker_app
from command_dispatch.worker.runtime import WorkerRuntime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CoordinatorServeCommand:
    """CLI input for running the coordinator service."""

    db_path: Path | None
    host: str | None
    port: int | None
    log_level: str


@dataclass(slots=True)
class ReconcileCommand:
    """CLI input for a one-off reconciliation sweep."""

    db_path: Path | None


@dataclass(slots=True)
class WorkerServeCommand:
    """CLI input for running the worker service."""

    db_path: Path | None
    host: str | None
    port: int | None
    agent_count: int | None
    random_failures: bool
    kill_after_ms: int | None
    log_level: str


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for command submission."""

    db_path: Path | None
    command_type: str
    payload: str
    is_idempotent: bool


@dataclass(slots=True)
class ListCommandsCommand:
    """CLI input for command listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectCommand:
    """CLI input for status lookup and event inspection."""

    db_path: Path | None
    command_id: str


class CommandDispatchCliController:
    """Coordinates service startup, queue mutation, and inspection CLI operations."""

    def serve_coordinator(self, command: CoordinatorServeCommand) -> None:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_coordinator()
        host = command.host or settings.coordinator.host
        port = command.port or settings.coordinator.port
        with _repository(settings) as repository, _probe(settings) as probe:
            service = CoordinatorService(
                repository=repository,
                reconciler=_reconciler(settings, repository=repository, probe=probe),
            )
            app = create_coordinator_app(service)
            logger.info("Coordinator listening on %s:%d", host, port)
            uvicorn.run(app, host=host, port=port, log_level=command.log_level.lower())

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_coordinator()
        with _repository(settings) as repository, _probe(settings) as probe:
            summary = _reconciler(settings, repository=repository, probe=probe).startup_sweep()
        return [
            "Reconcile summary: "
            f"inspected={summary.inspected} recovered_from_log={summary.recovered_from_log} "
            f"still_running={summary.still_running} requeued={summary.requeued} "
            f"failed={summary.failed} deferred={summary.deferred} skipped={summary.skipped}",
        ]

    def serve_worker(self, command: WorkerServeCommand) -> None:
        settings = Settings.from_env(worker_db_path=command.db_path)
        settings.validate_for_worker()
        host = command.host or settings.worker.host
        port = command.port or settings.worker.port
        runtime = WorkerRuntime.from_settings(
            settings,
            agent_count=command.agent_count,
            random_failures=command.random_failures or None,
        )
        logger.info(
            "Starting worker service with agent_count=%d random_failures=%s kill_after=%s",
            runtime.agent_count,
            runtime.dispatcher.failure_injector.enabled,
            command.kill_after_ms,
        )
        if command.kill_after_ms:
            runtime.schedule_kill(command.kill_after_ms)
        app = create_worker_app(runtime)
        uvicorn.run(app, host=host, port=port, log_level=command.log_level.lower())

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            payload = json.loads(command.payload)
        except json.JSONDecodeError as error:
            raise ValueError(f"Payload is not valid JSON: {error}") from error
        with _repository(settings) as repository, _probe(settings) as probe:
            service = CoordinatorService(
                repository=repository,
                reconciler=_reconciler(settings, repository=repository, probe=probe),
            )
            command_id = service.submit(
                command.command_type.upper(),
                payload,
                command.is_idempotent,
            )
        return [
            f"Command submitted: command_id={command_id} type={command.command_type.upper()} "
            f"idempotent={str(command.is_idempotent).lower()}",
        ]

    def status(self, command: InspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            view = repository.get_command(command.command_id)
        if view is None:
            return [f"Command not found: {command.command_id}"]
        return [
            f"Command: {view.command_id}",
            f"Type: {view.command_type.value}",
            f"Status: {view.status.value}",
            f"Agent: {view.agent_id or '-'}",
            f"Attempt: {view.attempt}",
            f"Idempotent: {str(view.is_idempotent).lower()}",
            f"Result: {_format_result(view.result)}",
            f"Error: {view.error or '-'}",
        ]

    def list_commands(self, command: ListCommandsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            commands = repository.list_commands(status=status_filter, limit=command.limit)

        lines = [f"Commands: {len(commands)}"]
        for item in commands:
            lines.append(
                f"  {item.command_id} type={item.command_type.value} status={item.status.value} "
                f"agent={item.agent_id or '-'} attempt={item.attempt} "
                f"created_at={item.created_at.isoformat()}",
            )
        return lines

    def inspect(self, command: InspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_command_details(command.command_id)
        if details is None:
            return [f"Command not found: {command.command_id}"]

        view = details.command
        lines = [
            f"Command: {view.command_id}",
            f"Type: {view.command_type.value}",
            f"Status: {view.status.value}",
            f"Attempt: {view.attempt}",
            f"Error: {view.error or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'} actor={event.actor}",
            )
        return lines


def _format_result(value: object) -> str:
    if value is None:
        return "-"
    return json.dumps(value, ensure_ascii=False)


def _parse_status(value: str | None) -> CommandStatus | None:
    if value is None:
        return None
    try:
        return CommandStatus(value.upper())
    except ValueError as error:
        allowed = ", ".join(status.value for status in CommandStatus)
        raise ValueError(f"Unknown status {value!r}. Expected one of: {allowed}") from error


def _reconciler(
    settings: Settings,
    *,
    repository: CommandRepository,
    probe: HttpWorkerProbe,
) -> CrashReconciler:
    return CrashReconciler(
        repository=repository,
        probe=probe,
        policy=RecoveryPolicy(
            max_attempts=settings.recovery.max_attempts,
            retry_interval_seconds=settings.recovery.retry_interval_seconds,
        ),
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[CommandRepository]:
    repository = CommandRepository(
        settings.coordinator.db_path,
        sqlite_busy_timeout_ms=settings.coordinator.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _probe(settings: Settings) -> Iterator[HttpWorkerProbe]:
    with HttpWorkerProbe(
        settings.recovery.worker_url,
        timeout_seconds=settings.recovery.request_timeout_seconds,
    ) as probe:
        yield probe
