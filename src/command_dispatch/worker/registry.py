"""In-process table of this worker's agents and their busy/idle state."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum

from command_dispatch.errors import UnknownAgentError

logger = logging.getLogger(__name__)


class AgentState(str, Enum):
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    RUNNING = "RUNNING"


@dataclass(slots=True)
class Agent:
    """One worker slot. Never persisted; rebuilt on every process start."""

    agent_id: str
    name: str
    state: AgentState = AgentState.INACTIVE
    current_command_id: str | None = None


class AgentRegistry:
    """Fixed pool ``agent-1..agent-N``; the first ``n`` are activated at startup."""

    def __init__(self, *, pool_size: int = 5, max_active: int | None = None) -> None:
        if pool_size <= 0:
            raise ValueError("pool_size must be a positive integer")
        self.max_active = min(max_active or pool_size, pool_size)
        self._agents = [
            Agent(agent_id=f"agent-{index}", name=f"Agent {index}")
            for index in range(1, pool_size + 1)
        ]
        self._by_id = {agent.agent_id: agent for agent in self._agents}
        self._lock = threading.Lock()

    def activate(self, count: int) -> list[str]:
        """Mark the first ``count`` agents ACTIVE, clamped to the configured maximum."""

        if count > self.max_active:
            logger.warning(
                "Requested %d agents, but max is %d. Using %d.",
                count,
                self.max_active,
                self.max_active,
            )
            count = self.max_active
        activated: list[str] = []
        with self._lock:
            for agent in self._agents[: max(0, count)]:
                if agent.state is AgentState.INACTIVE:
                    agent.state = AgentState.ACTIVE
                activated.append(agent.agent_id)
                logger.info("Agent %s initialized as ACTIVE", agent.agent_id)
        return activated

    def mark_running(self, agent_id: str, command_id: str) -> None:
        with self._lock:
            agent = self._require(agent_id)
            if agent.state is AgentState.INACTIVE:
                raise RuntimeError(f"Agent {agent_id} is not active")
            agent.state = AgentState.RUNNING
            agent.current_command_id = command_id
        logger.info("Agent %s is now RUNNING command %s", agent_id, command_id)

    def mark_idle(self, agent_id: str) -> None:
        with self._lock:
            agent = self._require(agent_id)
            agent.state = AgentState.ACTIVE
            agent.current_command_id = None
        logger.info("Agent %s is now ACTIVE (ready for work)", agent_id)

    def is_busy(self, agent_id: str) -> bool:
        with self._lock:
            agent = self._by_id.get(agent_id)
            return agent is not None and agent.state is AgentState.RUNNING

    def is_running_command(self, agent_id: str, command_id: str) -> bool:
        with self._lock:
            agent = self._by_id.get(agent_id)
            return (
                agent is not None
                and agent.state is AgentState.RUNNING
                and agent.current_command_id == command_id
            )

    def get(self, agent_id: str) -> Agent | None:
        with self._lock:
            agent = self._by_id.get(agent_id)
            return replace(agent) if agent is not None else None

    def active_agents(self) -> list[Agent]:
        """Agents that are ACTIVE or RUNNING."""

        with self._lock:
            return [
                replace(agent)
                for agent in self._agents
                if agent.state is not AgentState.INACTIVE
            ]

    def snapshot(self) -> list[Agent]:
        with self._lock:
            return [replace(agent) for agent in self._agents]

    def _require(self, agent_id: str) -> Agent:
        agent = self._by_id.get(agent_id)
        if agent is None:
            raise UnknownAgentError(agent_id)
        return agent
