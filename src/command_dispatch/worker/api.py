"""HTTP surface of the worker: health, agent liveness, execution log lookup."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from command_dispatch import __version__
from command_dispatch.web import install_request_logging, install_validation_handlers
from command_dispatch.worker.runtime import WorkerRuntime

logger = logging.getLogger(__name__)

router = APIRouter()


def _runtime(request: Request) -> WorkerRuntime:
    return request.app.state.runtime


@router.get("/check")
def check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/agent/status/{agent_id}")
def agent_status(
    agent_id: str,
    request: Request,
    command_id: str | None = Query(default=None),
) -> dict[str, bool]:
    registry = _runtime(request).registry
    if command_id:
        is_running = registry.is_running_command(agent_id, command_id)
    else:
        is_running = registry.is_busy(agent_id)
    return {"is_running": is_running}


@router.get("/agents")
def list_agents(request: Request) -> dict[str, list[dict[str, Any]]]:
    return {
        "agents": [
            {
                "agent_id": agent.agent_id,
                "name": agent.name,
                "state": agent.state.value,
                "current_command_id": agent.current_command_id,
            }
            for agent in _runtime(request).registry.snapshot()
        ],
    }


@router.get("/logs/{command_id}")
def get_log(command_id: str, request: Request) -> dict[str, Any]:
    entry = _runtime(request).log_store.get_latest(command_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Log not found")
    return {
        "command_id": entry.command_id,
        "agent_id": entry.agent_id,
        "attempt": entry.attempt,
        "status": entry.status.value,
        "result": entry.result,
        "error": entry.error,
        "started_at": entry.started_at.isoformat(),
        "completed_at": entry.completed_at.isoformat(),
    }


def create_app(runtime: WorkerRuntime, *, start_polling: bool = True) -> FastAPI:
    """Create the worker app; polling starts with the app and stops with it."""

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if start_polling:
            await run_in_threadpool(runtime.start)
        logger.info("Worker service is ready")
        yield
        if start_polling:
            await run_in_threadpool(runtime.stop)

    app = FastAPI(
        title="Command Dispatch Worker",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    install_request_logging(app)
    install_validation_handlers(app)
    app.include_router(router)
    return app
