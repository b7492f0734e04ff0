"""Use-case services for the command queue."""

from __future__ import annotations

import logging
from typing import Any

from command_dispatch.coordinator.models import (
    AssignedCommand,
    CommandCreate,
    CommandStatus,
    CommandStatusView,
    CommandType,
    ReportOutcome,
)
from command_dispatch.coordinator.reconciler import CrashReconciler
from command_dispatch.coordinator.repository import CommandRepository
from command_dispatch.errors import CommandValidationError

logger = logging.getLogger(__name__)


class CoordinatorService:
    """Client and agent facing operations over the command store."""

    def __init__(self, *, repository: CommandRepository, reconciler: CrashReconciler) -> None:
        self.repository = repository
        self.reconciler = reconciler

    def submit(
        self,
        command_type: CommandType | str,
        payload: Any,
        is_idempotent: bool = False,
    ) -> str:
        """Create a PENDING command and return its id."""

        resolved_type = _resolve_command_type(command_type)
        if not isinstance(payload, dict):
            raise CommandValidationError("payload must be a JSON object")
        command = self.repository.submit(
            CommandCreate(
                command_type=resolved_type,
                payload=payload,
                is_idempotent=is_idempotent,
            ),
        )
        return command.command_id

    def poll_next(self, agent_id: str) -> AssignedCommand | None:
        """Reconcile the agent's stale work, then assign the oldest PENDING command.

        Nothing is assigned while reconciliation of the agent's RUNNING work is deferred.
        """

        agent_id = _require_agent_id(agent_id)
        summary = self.reconciler.reconcile_agent(agent_id)
        if summary.deferred:
            logger.warning(
                "Agent %s has %d unresolved RUNNING commands; not assigning new work",
                agent_id,
                summary.deferred,
            )
            return None
        command = self.repository.assign_next(agent_id=agent_id)
        if command is None:
            return None
        return AssignedCommand(
            command_id=command.command_id,
            command_type=command.command_type,
            payload=command.payload,
            attempt=command.attempt,
        )

    def report(  # noqa: PLR0913
        self,
        command_id: str,
        agent_id: str,
        status: CommandStatus | str,
        result: Any = None,
        error: str | None = None,
    ) -> ReportOutcome:
        """Apply an agent's terminal outcome if the agent still owns the command."""

        agent_id = _require_agent_id(agent_id)
        try:
            resolved_status = CommandStatus(status)
        except ValueError as exc:
            raise CommandValidationError(f"Unknown status: {status!r}") from exc
        if not resolved_status.is_terminal:
            raise CommandValidationError(
                f"Reported status must be COMPLETED or FAILED, got {resolved_status.value}",
            )

        applied = self.repository.report_result(
            command_id=command_id,
            agent_id=agent_id,
            status=resolved_status,
            result=result,
            error=error,
        )
        return ReportOutcome.ACKNOWLEDGED if applied else ReportOutcome.REJECTED

    def get_status(self, command_id: str) -> CommandStatusView | None:
        command = self.repository.get_command(command_id)
        if command is None:
            return None
        return CommandStatusView(
            command_id=command.command_id,
            status=command.status,
            result=command.result,
            error=command.error,
            agent_id=command.agent_id,
            attempt=command.attempt,
        )


def _resolve_command_type(value: CommandType | str) -> CommandType:
    try:
        return CommandType(value)
    except ValueError as exc:
        supported = ", ".join(item.value for item in CommandType)
        raise CommandValidationError(
            f"Unknown command type: {value!r}. Supported types: {supported}.",
        ) from exc


def _require_agent_id(agent_id: str | None) -> str:
    if agent_id is None or not agent_id.strip():
        raise CommandValidationError("agent_id is required")
    return agent_id.strip()
