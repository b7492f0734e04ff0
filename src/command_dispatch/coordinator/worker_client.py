"""HTTP client the coordinator uses to ask the worker service about its agents."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from command_dispatch.coordinator.models import CommandStatus, ExecutionLogEntry
from command_dispatch.errors import WorkerProbeError, WorkerUnavailableError
from command_dispatch.storage.common import from_iso

logger = logging.getLogger(__name__)


class HttpWorkerProbe:
    """Recovery queries against the worker service (execution log, liveness, health)."""

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

    def fetch_execution_log(self, command_id: str) -> ExecutionLogEntry | None:
        """Return the worker's log entry for ``command_id``, or ``None`` on a clean 404."""

        response = self._get(f"/logs/{command_id}")
        if response.status_code == httpx.codes.NOT_FOUND:
            return None
        if response.status_code != httpx.codes.OK:
            raise WorkerProbeError(
                f"Unexpected status {response.status_code} fetching log for {command_id}",
            )
        return _parse_log_entry(_json_object(response))

    def is_agent_running(self, agent_id: str, command_id: str) -> bool:
        """Ask whether ``agent_id`` is executing ``command_id`` right now."""

        response = self._get(f"/agent/status/{agent_id}", params={"command_id": command_id})
        if response.status_code != httpx.codes.OK:
            raise WorkerProbeError(
                f"Unexpected status {response.status_code} checking agent {agent_id}",
            )
        is_running = _json_object(response).get("is_running")
        if not isinstance(is_running, bool):
            raise WorkerProbeError(f"Malformed liveness answer for agent {agent_id}")
        return is_running

    def check_health(self) -> None:
        """Raise unless the worker service answers its readiness probe."""

        response = self._get("/check")
        if response.status_code != httpx.codes.OK:
            raise WorkerProbeError(f"Worker health check returned {response.status_code}")

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpWorkerProbe:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _get(self, path: str, *, params: dict[str, str] | None = None) -> httpx.Response:
        try:
            return self._client.get(path, params=params)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise WorkerUnavailableError(f"Worker service unreachable: {exc}") from exc
        except httpx.HTTPError as exc:
            raise WorkerProbeError(f"Worker request failed: {exc}") from exc


def _json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise WorkerProbeError("Worker returned a non-JSON body") from exc
    if not isinstance(body, dict):
        raise WorkerProbeError("Worker returned a non-object JSON body")
    return body


def _parse_log_entry(body: dict[str, Any]) -> ExecutionLogEntry:
    try:
        status = CommandStatus(body["status"])
        if not status.is_terminal:
            raise ValueError(f"non-terminal status {status.value}")
        return ExecutionLogEntry(
            command_id=str(body["command_id"]),
            agent_id=str(body["agent_id"]),
            attempt=int(body.get("attempt", 0)),
            status=status,
            result=body.get("result"),
            error=body.get("error"),
            started_at=from_iso(body["started_at"]),
            completed_at=from_iso(body["completed_at"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise WorkerProbeError(f"Malformed execution log entry: {exc}") from exc
