"""HTTP client agents use to poll the coordinator and report outcomes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from command_dispatch.coordinator.models import CommandStatus
from command_dispatch.errors import CoordinatorUnavailableError

logger = logging.getLogger(__name__)

AGENT_ID_HEADER = "X-Agent-Id"


@dataclass(slots=True)
class PolledCommand:
    """Command handed to an agent by the coordinator."""

    command_id: str
    command_type: str
    payload: dict[str, Any]
    attempt: int


class CoordinatorClient:
    """Thin wrapper over the coordinator's poll and report endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def poll_next(self, agent_id: str) -> PolledCommand | None:
        """Ask for work; ``None`` when the queue has nothing for this agent."""

        response = self._request(
            "GET",
            "/api/commands/next",
            headers={AGENT_ID_HEADER: agent_id},
        )
        if response.status_code == httpx.codes.NO_CONTENT:
            return None
        if response.status_code != httpx.codes.OK:
            raise CoordinatorUnavailableError(
                f"Unexpected status {response.status_code} polling for {agent_id}",
            )
        body = response.json()
        return PolledCommand(
            command_id=str(body["command_id"]),
            command_type=str(body["type"]),
            payload=body.get("payload") or {},
            attempt=int(body.get("attempt", 0)),
        )

    def report(  # noqa: PLR0913
        self,
        *,
        command_id: str,
        agent_id: str,
        status: CommandStatus,
        result: Any,
        error: str | None,
    ) -> bool:
        """Report a terminal outcome; ``False`` when the coordinator says we no longer own it."""

        response = self._request(
            "PATCH",
            f"/api/commands/{command_id}",
            json={
                "agent_id": agent_id,
                "status": status.value,
                "result": result,
                "error": error,
            },
        )
        if response.status_code == httpx.codes.CONFLICT:
            logger.warning(
                "Coordinator rejected report for command %s from %s (not owned)",
                command_id,
                agent_id,
            )
            return False
        if response.status_code != httpx.codes.OK:
            raise CoordinatorUnavailableError(
                f"Unexpected status {response.status_code} reporting command {command_id}",
            )
        return True

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> CoordinatorClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise CoordinatorUnavailableError(f"Coordinator request failed: {exc}") from exc
