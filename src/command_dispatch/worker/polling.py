"""Per-agent poll loops: claim, execute, log, report."""

from __future__ import annotations

import logging
import threading
from enum import Enum

from command_dispatch.errors import CoordinatorUnavailableError
from command_dispatch.storage.common import utc_now
from command_dispatch.worker.coordinator_client import CoordinatorClient, PolledCommand
from command_dispatch.worker.dispatcher import ExecutionDispatcher
from command_dispatch.worker.execution_log import ExecutionLogRepository, ExecutionLogWrite
from command_dispatch.worker.registry import AgentRegistry

logger = logging.getLogger(__name__)


class PollResult(str, Enum):
    BUSY = "busy"
    NO_WORK = "no_work"
    EXECUTED = "executed"
    ERROR = "error"


class AgentPoller:
    """Runs one independent poll loop per active agent on a fixed interval."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: AgentRegistry,
        client: CoordinatorClient,
        dispatcher: ExecutionDispatcher,
        log_store: ExecutionLogRepository,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        self.registry = registry
        self.client = client
        self.dispatcher = dispatcher
        self.log_store = log_store
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = threading.Event()
        self._threads: dict[str, threading.Thread] = {}

    def start(self) -> None:
        """Start a daemon thread for every ACTIVE agent."""

        self._stop.clear()
        agents = self.registry.active_agents()
        logger.info(
            "Starting polling for %d agents (interval: %.1fs)",
            len(agents),
            self.poll_interval_seconds,
        )
        for agent in agents:
            if agent.agent_id in self._threads:
                continue
            thread = threading.Thread(
                target=self._agent_loop,
                args=(agent.agent_id,),
                daemon=True,
                name=f"poll-{agent.agent_id}",
            )
            self._threads[agent.agent_id] = thread
            thread.start()
            logger.info("Agent %s polling started", agent.agent_id)

    def stop(self, timeout_seconds: float = 15.0) -> None:
        self._stop.set()
        for agent_id, thread in self._threads.items():
            thread.join(timeout=timeout_seconds)
            logger.info("Agent %s polling stopped", agent_id)
        self._threads.clear()

    def poll_once(self, agent_id: str) -> PollResult:
        """One loop body: skip while busy, otherwise ask for work and run it."""

        if self.registry.is_busy(agent_id):
            return PollResult.BUSY

        try:
            command = self.client.poll_next(agent_id)
        except CoordinatorUnavailableError as exc:
            logger.error("Polling error for agent %s: %s", agent_id, exc)
            return PollResult.ERROR

        if command is None:
            return PollResult.NO_WORK
        self._handle_command(agent_id, command)
        return PollResult.EXECUTED

    def _agent_loop(self, agent_id: str) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once(agent_id)
            except Exception:
                logger.exception("Agent %s poll loop error", agent_id)
            self._stop.wait(timeout=self.poll_interval_seconds)

    def _handle_command(self, agent_id: str, command: PolledCommand) -> None:
        started_at = utc_now()
        logger.info("Agent %s received command %s", agent_id, command.command_id)
        self.registry.mark_running(agent_id, command.command_id)
        try:
            outcome = self.dispatcher.execute(
                command.command_id,
                command.command_type,
                command.payload,
            )
            self.log_store.save(
                ExecutionLogWrite(
                    command_id=command.command_id,
                    agent_id=agent_id,
                    attempt=command.attempt,
                    status=outcome.status,
                    result=outcome.result,
                    error=outcome.error,
                    started_at=started_at,
                    completed_at=utc_now(),
                ),
            )
            try:
                self.client.report(
                    command_id=command.command_id,
                    agent_id=agent_id,
                    status=outcome.status,
                    result=outcome.result,
                    error=outcome.error,
                )
            except CoordinatorUnavailableError as exc:
                logger.error(
                    "Failed to report result for command %s: %s",
                    command.command_id,
                    exc,
                )
            logger.info(
                "Agent %s completed command %s: %s",
                agent_id,
                command.command_id,
                outcome.status.value,
            )
        except Exception:
            logger.exception(
                "Agent %s failed to process command %s",
                agent_id,
                command.command_id,
            )
        finally:
            self.registry.mark_idle(agent_id)
