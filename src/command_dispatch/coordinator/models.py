"""Domain models for the command queue and its recovery protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

AGENT_CRASHED_ERROR = "Agent crashed during execution"
RECONCILER_ACTOR = "reconciler"
CLIENT_ACTOR = "client"


class CommandStatus(str, Enum):
    """Durable command lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in {CommandStatus.COMPLETED, CommandStatus.FAILED}


class CommandType(str, Enum):
    """Kinds of work the execution dispatcher knows how to run."""

    DELAY = "DELAY"
    HTTP_GET_JSON = "HTTP_GET_JSON"


class ReportOutcome(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"


class ReconcileOutcome(str, Enum):
    """What the reconciler decided for one stale RUNNING command."""

    RECOVERED_FROM_LOG = "recovered_from_log"
    STILL_RUNNING = "still_running"
    REQUEUED = "requeued"
    FAILED = "failed"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


@dataclass(slots=True)
class CommandCreate:
    """Input payload for submitting a command."""

    command_type: CommandType
    payload: dict[str, Any]
    is_idempotent: bool = False
    command_id: str | None = None


@dataclass(slots=True)
class CommandView:
    """Readable command view for API, CLI, and reconciler logic."""

    command_id: str
    command_type: CommandType
    payload: dict[str, Any]
    status: CommandStatus
    agent_id: str | None
    attempt: int
    is_idempotent: bool
    result: Any
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class CommandEventView:
    """Transition entry for audit trail."""

    event_id: int
    command_id: str
    event_type: str
    status_from: CommandStatus | None
    status_to: CommandStatus | None
    actor: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CommandDetails:
    """Command with its event stream."""

    command: CommandView
    events: list[CommandEventView]


@dataclass(slots=True)
class AssignedCommand:
    """What an agent receives from a successful poll."""

    command_id: str
    command_type: CommandType
    payload: dict[str, Any]
    attempt: int


@dataclass(slots=True)
class CommandStatusView:
    """Client-facing status snapshot."""

    command_id: str
    status: CommandStatus
    result: Any
    error: str | None
    agent_id: str | None
    attempt: int


@dataclass(slots=True)
class ExecutionLogEntry:
    """Worker-side record of one attempt that reached a terminal outcome."""

    command_id: str
    agent_id: str
    attempt: int
    status: CommandStatus
    result: Any
    error: str | None
    started_at: datetime
    completed_at: datetime


@dataclass(slots=True)
class ReconcileSummary:
    """Counters for one reconciliation pass."""

    inspected: int = 0
    recovered_from_log: int = 0
    still_running: int = 0
    requeued: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0

    def record(self, outcome: ReconcileOutcome) -> None:
        self.inspected += 1
        counter = outcome.value
        setattr(self, counter, getattr(self, counter) + 1)
