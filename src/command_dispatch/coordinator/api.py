"""HTTP surface of the coordinator: submit, poll, report, status."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from command_dispatch import __version__
from command_dispatch.coordinator.models import CommandStatus, ReportOutcome
from command_dispatch.coordinator.services import CoordinatorService
from command_dispatch.errors import CommandValidationError
from command_dispatch.web import install_request_logging, install_validation_handlers

logger = logging.getLogger(__name__)

router = APIRouter()


class SubmitCommandRequest(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    is_idempotent: bool = False


class ReportResultRequest(BaseModel):
    agent_id: str
    status: str
    result: Any = None
    error: str | None = None


def _service(request: Request) -> CoordinatorService:
    return request.app.state.service


@router.post("/api/commands", status_code=status.HTTP_201_CREATED)
def submit_command(body: SubmitCommandRequest, request: Request) -> dict[str, str]:
    command_id = _service(request).submit(body.type, body.payload, body.is_idempotent)
    return {"command_id": command_id}


@router.get("/api/commands")
def list_commands(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, list[dict[str, Any]]]:
    parsed_status = None
    if status_filter is not None:
        try:
            parsed_status = CommandStatus(status_filter.upper())
        except ValueError as exc:
            raise CommandValidationError(f"Unknown status: {status_filter!r}") from exc
    commands = _service(request).repository.list_commands(status=parsed_status, limit=limit)
    return {
        "commands": [
            {
                "command_id": command.command_id,
                "type": command.command_type.value,
                "status": command.status.value,
                "agent_id": command.agent_id,
                "attempt": command.attempt,
                "is_idempotent": command.is_idempotent,
                "created_at": command.created_at.isoformat(),
            }
            for command in commands
        ],
    }


@router.get("/api/commands/next", response_model=None)
def next_command(
    request: Request,
    agent_id: str | None = Header(default=None, alias="X-Agent-Id"),
) -> dict[str, Any] | Response:
    if agent_id is None:
        raise CommandValidationError("X-Agent-Id header is required")
    assigned = _service(request).poll_next(agent_id)
    if assigned is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return {
        "command_id": assigned.command_id,
        "type": assigned.command_type.value,
        "payload": assigned.payload,
        "attempt": assigned.attempt,
    }


@router.get("/api/commands/{command_id}")
def get_command(command_id: str, request: Request) -> dict[str, Any]:
    view = _service(request).get_status(command_id)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Command not found")
    return {
        "command_id": view.command_id,
        "status": view.status.value,
        "result": view.result,
        "error": view.error,
        "agent_id": view.agent_id,
        "attempt": view.attempt,
    }


@router.patch("/api/commands/{command_id}")
def report_result(
    command_id: str,
    body: ReportResultRequest,
    request: Request,
) -> dict[str, str]:
    outcome = _service(request).report(
        command_id,
        body.agent_id,
        body.status,
        body.result,
        body.error,
    )
    if outcome is ReportOutcome.REJECTED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="not owned")
    return {"status": outcome.value}


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def create_app(service: CoordinatorService, *, run_startup_sweep: bool = True) -> FastAPI:
    """Create the coordinator app; the startup sweep finishes before requests are served."""

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if run_startup_sweep:
            await run_in_threadpool(service.reconciler.startup_sweep)
        logger.info("Coordinator ready")
        yield
        logger.info("Coordinator shutting down")

    app = FastAPI(
        title="Command Dispatch Coordinator",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    install_request_logging(app)
    install_validation_handlers(app)
    app.include_router(router)
    return app
