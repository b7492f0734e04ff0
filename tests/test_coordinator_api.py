from __future__ import annotations

from collections.abc import Iterator

import allure
import pytest
from fastapi.testclient import TestClient

from command_dispatch.coordinator.api import create_app
from command_dispatch.coordinator.models import AGENT_CRASHED_ERROR
from command_dispatch.coordinator.reconciler import CrashReconciler
from command_dispatch.coordinator.repository import CommandRepository
from command_dispatch.coordinator.services import CoordinatorService
from conftest import FakeWorkerProbe

pytestmark = [
    allure.epic("Command Dispatch"),
    allure.feature("Coordinator HTTP API"),
]


@pytest.fixture()
def client(repository: CommandRepository, probe: FakeWorkerProbe) -> Iterator[TestClient]:
    service = CoordinatorService(
        repository=repository,
        reconciler=CrashReconciler(repository=repository, probe=probe, sleep=lambda _: None),
    )
    with TestClient(create_app(service)) as test_client:
        yield test_client


def test_startup_sweep_runs_before_serving(
    repository: CommandRepository,
    probe: FakeWorkerProbe,
) -> None:
    service = CoordinatorService(
        repository=repository,
        reconciler=CrashReconciler(repository=repository, probe=probe, sleep=lambda _: None),
    )
    crashed = service.submit("DELAY", {"ms": 10}, is_idempotent=False)
    retried = service.submit("DELAY", {"ms": 20}, is_idempotent=True)
    repository.assign_next(agent_id="agent-1")
    repository.assign_next(agent_id="agent-2")
    assert probe.health_checks == 0

    with TestClient(create_app(service)) as test_client:
        crashed_body = test_client.get(f"/api/commands/{crashed}").json()
        retried_body = test_client.get(f"/api/commands/{retried}").json()
        assert test_client.get("/health").json() == {"status": "ok"}

    assert probe.health_checks == 1
    assert sorted(probe.log_queries) == sorted([crashed, retried])
    assert crashed_body["status"] == "FAILED"
    assert crashed_body["error"] == AGENT_CRASHED_ERROR
    assert retried_body["status"] == "PENDING"
    assert retried_body["agent_id"] is None
    assert retried_body["attempt"] == 1


def test_submit_poll_report_status_round(client: TestClient) -> None:
    submitted = client.post(
        "/api/commands",
        json={"type": "DELAY", "payload": {"ms": 5}, "is_idempotent": True},
    )
    assert submitted.status_code == 201
    command_id = submitted.json()["command_id"]

    polled = client.get("/api/commands/next", headers={"X-Agent-Id": "agent-1"})
    assert polled.status_code == 200
    assert polled.json() == {
        "command_id": command_id,
        "type": "DELAY",
        "payload": {"ms": 5},
        "attempt": 1,
    }

    empty = client.get("/api/commands/next", headers={"X-Agent-Id": "agent-2"})
    assert empty.status_code == 204

    reported = client.patch(
        f"/api/commands/{command_id}",
        json={"agent_id": "agent-1", "status": "COMPLETED", "result": {"delayed_ms": 5}},
    )
    assert reported.status_code == 200
    assert reported.json() == {"status": "acknowledged"}

    status = client.get(f"/api/commands/{command_id}")
    assert status.status_code == 200
    body = status.json()
    assert body["status"] == "COMPLETED"
    assert body["result"] == {"delayed_ms": 5}
    assert body["error"] is None


def test_report_from_non_owner_returns_conflict(client: TestClient) -> None:
    command_id = client.post("/api/commands", json={"type": "DELAY", "payload": {}}).json()[
        "command_id"
    ]
    client.get("/api/commands/next", headers={"X-Agent-Id": "agent-1"})

    response = client.patch(
        f"/api/commands/{command_id}",
        json={"agent_id": "agent-2", "status": "FAILED", "error": "boom"},
    )

    assert response.status_code == 409
    assert client.get(f"/api/commands/{command_id}").json()["status"] == "RUNNING"


@pytest.mark.parametrize(
    "body",
    [
        {"payload": {"ms": 1}},
        {"type": "SHELL", "payload": {}},
        {"type": "DELAY", "payload": "not-an-object"},
    ],
)
def test_submit_rejects_invalid_requests(client: TestClient, body: dict[str, object]) -> None:
    response = client.post("/api/commands", json=body)

    assert response.status_code == 400
    assert client.get("/api/commands").json() == {"commands": []}


def test_poll_without_agent_header_is_bad_request(client: TestClient) -> None:
    response = client.get("/api/commands/next")

    assert response.status_code == 400
    assert "X-Agent-Id" in response.json()["detail"]


def test_report_with_non_terminal_status_is_bad_request(client: TestClient) -> None:
    command_id = client.post("/api/commands", json={"type": "DELAY"}).json()["command_id"]
    client.get("/api/commands/next", headers={"X-Agent-Id": "agent-1"})

    response = client.patch(
        f"/api/commands/{command_id}",
        json={"agent_id": "agent-1", "status": "PENDING"},
    )

    assert response.status_code == 400


def test_unknown_command_is_not_found(client: TestClient) -> None:
    assert client.get("/api/commands/does-not-exist").status_code == 404


def test_list_commands_filters_by_status(client: TestClient) -> None:
    first = client.post("/api/commands", json={"type": "DELAY"}).json()["command_id"]
    second = client.post("/api/commands", json={"type": "DELAY"}).json()["command_id"]
    client.get("/api/commands/next", headers={"X-Agent-Id": "agent-1"})

    running = client.get("/api/commands", params={"status": "running"}).json()["commands"]
    everything = client.get("/api/commands").json()["commands"]

    assert [item["command_id"] for item in running] == [first]
    assert {item["command_id"] for item in everything} == {first, second}
    assert client.get("/api/commands", params={"status": "bogus"}).status_code == 400
