"""Domain exceptions shared by the coordinator and worker sides."""

from __future__ import annotations


class CommandValidationError(ValueError):
    """Request rejected before any state was touched."""


class UnknownAgentError(LookupError):
    """Agent id is not part of this worker's fixed pool."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Unknown agent: {agent_id}")
        self.agent_id = agent_id


class WorkerProbeError(RuntimeError):
    """Worker answered a recovery query with something other than a clean answer."""


class WorkerUnavailableError(WorkerProbeError):
    """Worker service could not be reached at all (connect error or timeout)."""


class CoordinatorUnavailableError(RuntimeError):
    """Coordinator could not be reached or answered with an unexpected status."""
