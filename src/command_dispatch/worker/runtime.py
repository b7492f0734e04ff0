"""Wires the worker process together: registry, log store, dispatcher, pollers."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass

from command_dispatch.config import Settings
from command_dispatch.worker.coordinator_client import CoordinatorClient
from command_dispatch.worker.dispatcher import (
    CRASH_EXIT_CODE,
    ExecutionDispatcher,
    FailureInjector,
    build_default_dispatcher,
)
from command_dispatch.worker.execution_log import ExecutionLogRepository
from command_dispatch.worker.polling import AgentPoller
from command_dispatch.worker.registry import AgentRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRuntime:
    """Service objects owned by one worker process."""

    registry: AgentRegistry
    log_store: ExecutionLogRepository
    dispatcher: ExecutionDispatcher
    client: CoordinatorClient
    poller: AgentPoller
    agent_count: int = 1

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        agent_count: int | None = None,
        random_failures: bool | None = None,
    ) -> WorkerRuntime:
        worker = settings.worker
        dispatch = settings.dispatch
        registry = AgentRegistry(
            pool_size=worker.max_agent_count,
            max_active=worker.max_agent_count,
        )
        log_store = ExecutionLogRepository(
            worker.db_path,
            sqlite_busy_timeout_ms=worker.sqlite_busy_timeout_ms,
        )
        dispatcher = build_default_dispatcher(
            http_timeout_seconds=dispatch.http_fetch_timeout_seconds,
            http_max_bytes=dispatch.http_fetch_max_bytes,
            failure_injector=FailureInjector(
                enabled=dispatch.random_failures if random_failures is None else random_failures,
                rate=dispatch.random_failure_rate,
            ),
        )
        client = CoordinatorClient(
            worker.coordinator_url,
            timeout_seconds=worker.request_timeout_seconds,
        )
        poller = AgentPoller(
            registry=registry,
            client=client,
            dispatcher=dispatcher,
            log_store=log_store,
            poll_interval_seconds=worker.poll_interval_seconds,
        )
        return cls(
            registry=registry,
            log_store=log_store,
            dispatcher=dispatcher,
            client=client,
            poller=poller,
            agent_count=worker.agent_count if agent_count is None else agent_count,
        )

    def start(self) -> None:
        """Migrate the execution log, activate agents, and start polling."""

        self.log_store.init_schema()
        logger.info("Initializing %d agents...", self.agent_count)
        self.registry.activate(self.agent_count)
        self.poller.start()

    def stop(self) -> None:
        self.poller.stop()
        self.dispatcher.close()
        self.client.close()
        self.log_store.close()

    def schedule_kill(
        self,
        after_ms: int,
        *,
        crash: Callable[[int], object] = os._exit,
    ) -> threading.Timer:
        """Hard-exit the process after ``after_ms`` to simulate a crash mid-flight."""

        logger.warning("Service will crash after %dms", after_ms)

        def _kill() -> None:
            logger.error("CRASH: kill timer expired. Simulating service crash!")
            crash(CRASH_EXIT_CODE)

        timer = threading.Timer(after_ms / 1000.0, _kill)
        timer.daemon = True
        timer.start()
        return timer
