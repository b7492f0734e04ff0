"""Crash reconciliation for commands stuck in RUNNING.

Resolution order for one stale command owned by agent ``A``:

1. Execution log. If the worker logged a terminal outcome, that outcome is
   copied verbatim; the agent finished but its report never landed.
2. Liveness. If ``A`` is still executing the command, nothing changes.
3. Idempotency. Idempotent commands go back to PENDING, the rest are FAILED
   with the agent-crash error.

A transport error while reading the log (or a malformed liveness answer)
defers the command to the next pass untouched. An unreachable worker during
the liveness step counts as "not running".
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from command_dispatch.coordinator.models import (
    AGENT_CRASHED_ERROR,
    CommandStatus,
    CommandView,
    ExecutionLogEntry,
    ReconcileOutcome,
    ReconcileSummary,
)
from command_dispatch.coordinator.repository import CommandRepository
from command_dispatch.errors import WorkerProbeError, WorkerUnavailableError

logger = logging.getLogger(__name__)

RETRY_LIMIT_ERROR = "Agent crashed during execution; retry limit reached"


class WorkerProbe(Protocol):
    """Worker-side queries the reconciler depends on."""

    def fetch_execution_log(self, command_id: str) -> ExecutionLogEntry | None:
        """Logged outcome, ``None`` for a clean "no entry" answer, raise otherwise."""

    def is_agent_running(self, agent_id: str, command_id: str) -> bool:
        """Whether the agent is executing the command right now."""

    def check_health(self) -> None:
        """Raise unless the worker service is ready."""


@dataclass(slots=True)
class RecoveryPolicy:
    """Knobs for the idempotency step.

    ``max_attempts`` of 0 retries idempotent commands without limit; otherwise a
    command that already used that many attempts is failed instead of requeued.
    """

    max_attempts: int = 0
    retry_interval_seconds: float = 10.0

    def allows_retry(self, command: CommandView) -> bool:
        if not command.is_idempotent:
            return False
        return self.max_attempts <= 0 or command.attempt < self.max_attempts


class CrashReconciler:
    """Decides the fate of RUNNING commands whose agent cannot be trusted."""

    def __init__(
        self,
        *,
        repository: CommandRepository,
        probe: WorkerProbe,
        policy: RecoveryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.probe = probe
        self.policy = policy or RecoveryPolicy()
        self._sleep = sleep

    def startup_sweep(self) -> ReconcileSummary:
        """Wait for the worker service, then reconcile every RUNNING command in turn."""

        logger.info("Starting recovery process...")
        self.wait_for_worker()

        running = self.repository.list_running()
        summary = ReconcileSummary()
        if not running:
            logger.info("No RUNNING commands found. Recovery complete.")
            return summary

        logger.info("Found %d RUNNING commands. Processing...", len(running))
        for command in running:
            summary.record(self.reconcile_command(command))
        logger.info("Recovery pass finished: %s", summary)
        return summary

    def reconcile_agent(self, agent_id: str) -> ReconcileSummary:
        """Resolve stale RUNNING commands still attributed to a polling agent."""

        summary = ReconcileSummary()
        for command in self.repository.find_running_for_agent(agent_id):
            logger.warning(
                "Agent %s polled while owning RUNNING command %s; reconciling",
                agent_id,
                command.command_id,
            )
            summary.record(self.reconcile_command(command))
        return summary

    def wait_for_worker(self) -> None:
        """Block until the worker health probe succeeds, retrying at a fixed interval."""

        while True:
            try:
                self.probe.check_health()
            except WorkerProbeError as exc:
                logger.warning(
                    "Worker service not available (%s). Retrying in %.1f seconds...",
                    exc,
                    self.policy.retry_interval_seconds,
                )
                self._sleep(self.policy.retry_interval_seconds)
                continue
            logger.info("Worker service is available.")
            return

    def reconcile_command(self, command: CommandView) -> ReconcileOutcome:
        """Apply logs -> liveness -> idempotency to one RUNNING command."""

        if command.status != CommandStatus.RUNNING or command.agent_id is None:
            return ReconcileOutcome.SKIPPED
        agent_id = command.agent_id

        try:
            entry = self.probe.fetch_execution_log(command.command_id)
        except WorkerProbeError as exc:
            logger.warning(
                "Command %s: execution log query failed (%s); deferring to next pass",
                command.command_id,
                exc,
            )
            return ReconcileOutcome.DEFERRED

        if entry is not None:
            applied = self.repository.apply_execution_log(
                command_id=command.command_id,
                agent_id=agent_id,
                entry=entry,
            )
            if not applied:
                return ReconcileOutcome.SKIPPED
            logger.info(
                "Command %s: found execution log, marked as %s",
                command.command_id,
                entry.status.value,
            )
            return ReconcileOutcome.RECOVERED_FROM_LOG

        try:
            still_running = self.probe.is_agent_running(agent_id, command.command_id)
        except WorkerUnavailableError as exc:
            logger.warning(
                "Command %s: worker unreachable during liveness check (%s); "
                "treating agent %s as not running",
                command.command_id,
                exc,
                agent_id,
            )
            still_running = False
        except WorkerProbeError as exc:
            logger.warning(
                "Command %s: liveness query failed (%s); deferring to next pass",
                command.command_id,
                exc,
            )
            return ReconcileOutcome.DEFERRED

        if still_running:
            logger.info(
                "Command %s: agent %s still running, keeping RUNNING status",
                command.command_id,
                agent_id,
            )
            return ReconcileOutcome.STILL_RUNNING

        return self._handle_crashed_agent(command, agent_id=agent_id)

    def _handle_crashed_agent(self, command: CommandView, *, agent_id: str) -> ReconcileOutcome:
        if self.policy.allows_retry(command):
            if not self.repository.requeue_after_crash(
                command_id=command.command_id,
                agent_id=agent_id,
            ):
                return ReconcileOutcome.SKIPPED
            logger.info(
                "Command %s: agent %s crashed, idempotent=true, reset to PENDING",
                command.command_id,
                agent_id,
            )
            return ReconcileOutcome.REQUEUED

        error = AGENT_CRASHED_ERROR if not command.is_idempotent else RETRY_LIMIT_ERROR
        if not self.repository.fail_after_crash(
            command_id=command.command_id,
            agent_id=agent_id,
            error=error,
        ):
            return ReconcileOutcome.SKIPPED
        logger.info(
            "Command %s: agent %s crashed, idempotent=%s, marked as FAILED",
            command.command_id,
            agent_id,
            str(command.is_idempotent).lower(),
        )
        return ReconcileOutcome.FAILED
