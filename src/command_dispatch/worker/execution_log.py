"""Worker-owned durable log of attempts that reached a terminal outcome."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlmodel import Session, col, select

from command_dispatch.coordinator.models import CommandStatus, ExecutionLogEntry
from command_dispatch.storage.alembic_runner import upgrade_head
from command_dispatch.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from command_dispatch.storage.sqlmodel_models import ExecutionLogRow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecutionLogWrite:
    """One finished attempt as observed by the agent that ran it."""

    command_id: str
    agent_id: str
    attempt: int
    status: CommandStatus
    result: Any
    error: str | None
    started_at: datetime
    completed_at: datetime


class ExecutionLogRepository:
    """Execution log persistence backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def save(self, entry: ExecutionLogWrite) -> ExecutionLogEntry:
        if not entry.status.is_terminal:
            raise ValueError(f"Execution log status must be terminal, got {entry.status.value}")
        with Session(self.engine) as session:
            row = ExecutionLogRow(
                command_id=entry.command_id,
                agent_id=entry.agent_id,
                attempt=entry.attempt,
                status=entry.status.value,
                result_json=dump_json(entry.result),
                error=entry.error,
                started_at=to_db_datetime(entry.started_at),
                completed_at=to_db_datetime(entry.completed_at),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            saved = _to_entry(row)

        logger.info(
            "Saved log for command %s: %s by agent %s",
            entry.command_id,
            entry.status.value,
            entry.agent_id,
        )
        return saved

    def get_latest(self, command_id: str) -> ExecutionLogEntry | None:
        """Most recent logged outcome for ``command_id``."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ExecutionLogRow)
                .where(ExecutionLogRow.command_id == command_id)
                .order_by(col(ExecutionLogRow.completed_at).desc(), col(ExecutionLogRow.id).desc())
                .limit(1),
            ).one_or_none()
        return _to_entry(row) if row is not None else None


def _to_entry(row: ExecutionLogRow) -> ExecutionLogEntry:
    return ExecutionLogEntry(
        command_id=row.command_id,
        agent_id=row.agent_id,
        attempt=row.attempt,
        status=CommandStatus(row.status),
        result=load_json(row.result_json),
        error=row.error,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=to_utc_aware_datetime(row.completed_at),
    )
