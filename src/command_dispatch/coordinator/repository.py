"""Persistent command store with compare-and-set lifecycle transitions."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import literal_column
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from command_dispatch.coordinator.models import (
    CLIENT_ACTOR,
    RECONCILER_ACTOR,
    CommandCreate,
    CommandDetails,
    CommandEventView,
    CommandStatus,
    CommandType,
    CommandView,
    ExecutionLogEntry,
)
from command_dispatch.storage.alembic_runner import upgrade_head
from command_dispatch.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from command_dispatch.storage.sqlmodel_models import CommandEventRow, CommandRow

logger = logging.getLogger(__name__)

_INSERTION_ORDER = literal_column("commands.rowid")


class CommandRepository:
    """Command persistence facade backed by SQLModel + SQLite.

    Every status change is a single conditional UPDATE guarded on the expected
    pre-state (and owner, where one exists). A transition that loses the race
    touches nothing and reports ``False``.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def submit(self, payload: CommandCreate, *, actor: str = CLIENT_ACTOR) -> CommandView:
        """Create a PENDING command."""

        now = utc_now()
        command_id = payload.command_id or str(uuid4())
        with Session(self.engine) as session:
            row = CommandRow(
                command_id=command_id,
                command_type=payload.command_type.value,
                payload_json=json.dumps(payload.payload, ensure_ascii=False, sort_keys=True),
                status=CommandStatus.PENDING.value,
                agent_id=None,
                attempt=0,
                is_idempotent=payload.is_idempotent,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                command_id=command_id,
                event_type="submitted",
                status_from=None,
                status_to=CommandStatus.PENDING,
                actor=actor,
                details={
                    "command_type": payload.command_type.value,
                    "is_idempotent": payload.is_idempotent,
                },
            )
            session.commit()
            session.refresh(row)
            view = _to_command_view(row)

        logger.info(
            "Command %s submitted: type=%s idempotent=%s",
            command_id,
            payload.command_type.value,
            payload.is_idempotent,
        )
        return view

    def assign_next(self, *, agent_id: str) -> CommandView | None:
        """Atomically hand the oldest PENDING command to ``agent_id``."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(CommandRow)
                    .where(CommandRow.status == CommandStatus.PENDING.value)
                    .order_by(col(CommandRow.created_at).asc(), _INSERTION_ORDER.asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(CommandRow)
                    .where(
                        col(CommandRow.command_id) == candidate.command_id,
                        col(CommandRow.status) == CommandStatus.PENDING.value,
                    )
                    .values(
                        status=CommandStatus.RUNNING.value,
                        agent_id=agent_id,
                        attempt=col(CommandRow.attempt) + 1,
                        started_at=now,
                        completed_at=None,
                        result_json=None,
                        error=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(CommandRow).where(CommandRow.command_id == candidate.command_id),
                ).one()
                self._add_event(
                    session=session,
                    command_id=claimed.command_id,
                    event_type="assigned",
                    status_from=CommandStatus.PENDING,
                    status_to=CommandStatus.RUNNING,
                    actor=agent_id,
                    details={"attempt": claimed.attempt},
                )
                session.commit()
                view = _to_command_view(claimed)

            logger.info(
                "Command %s PENDING -> RUNNING by %s (attempt %d)",
                view.command_id,
                agent_id,
                view.attempt,
            )
            return view

    def report_result(  # noqa: PLR0913
        self,
        *,
        command_id: str,
        agent_id: str,
        status: CommandStatus,
        result: Any,
        error: str | None,
    ) -> bool:
        """Record an agent's terminal outcome; ``False`` when the agent does not own it."""

        if not status.is_terminal:
            raise ValueError(f"Unsupported report status: {status.value}")

        applied = self._finish_running(
            command_id=command_id,
            agent_id=agent_id,
            status=status,
            result=result,
            error=error,
            event_type=status.value.lower(),
            actor=agent_id,
            details={},
        )
        if not applied:
            self._record_rejected_report(command_id=command_id, agent_id=agent_id, status=status)
        return applied

    def apply_execution_log(
        self,
        *,
        command_id: str,
        agent_id: str,
        entry: ExecutionLogEntry,
    ) -> bool:
        """Copy a worker's logged outcome into a RUNNING command."""

        return self._finish_running(
            command_id=command_id,
            agent_id=agent_id,
            status=entry.status,
            result=entry.result,
            error=entry.error,
            event_type="recovered_from_log",
            actor=RECONCILER_ACTOR,
            details={"agent_id": agent_id, "log_attempt": entry.attempt},
        )

    def fail_after_crash(self, *, command_id: str, agent_id: str, error: str) -> bool:
        """Fail a RUNNING command whose agent crashed and which is unsafe to retry."""

        return self._finish_running(
            command_id=command_id,
            agent_id=agent_id,
            status=CommandStatus.FAILED,
            result=None,
            error=error,
            event_type="failed_after_crash",
            actor=RECONCILER_ACTOR,
            details={"agent_id": agent_id},
        )

    def requeue_after_crash(self, *, command_id: str, agent_id: str) -> bool:
        """Return a RUNNING command to PENDING; ``attempt`` is left as is."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CommandRow)
                .where(
                    col(CommandRow.command_id) == command_id,
                    col(CommandRow.status) == CommandStatus.RUNNING.value,
                    col(CommandRow.agent_id) == agent_id,
                )
                .values(
                    status=CommandStatus.PENDING.value,
                    agent_id=None,
                    started_at=None,
                    completed_at=None,
                    result_json=None,
                    error=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                command_id=command_id,
                event_type="requeued_after_crash",
                status_from=CommandStatus.RUNNING,
                status_to=CommandStatus.PENDING,
                actor=RECONCILER_ACTOR,
                details={"agent_id": agent_id},
            )
            session.commit()

        logger.info(
            "Command %s RUNNING -> PENDING by %s (agent %s crashed)",
            command_id,
            RECONCILER_ACTOR,
            agent_id,
        )
        return True

    def get_command(self, command_id: str) -> CommandView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CommandRow).where(CommandRow.command_id == command_id),
            ).one_or_none()
        return _to_command_view(row) if row is not None else None

    def find_running_for_agent(self, agent_id: str) -> list[CommandView]:
        """RUNNING commands currently owned by ``agent_id``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(CommandRow)
                .where(
                    CommandRow.status == CommandStatus.RUNNING.value,
                    CommandRow.agent_id == agent_id,
                )
                .order_by(col(CommandRow.started_at).asc()),
            ).all()
        return [_to_command_view(row) for row in rows]

    def list_running(self) -> list[CommandView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CommandRow)
                .where(CommandRow.status == CommandStatus.RUNNING.value)
                .order_by(col(CommandRow.started_at).asc()),
            ).all()
        return [_to_command_view(row) for row in rows]

    def list_commands(
        self,
        *,
        status: CommandStatus | None = None,
        limit: int = 50,
    ) -> list[CommandView]:
        """List recent commands, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(CommandRow)
            if status is not None:
                statement = statement.where(CommandRow.status == status.value)
            statement = statement.order_by(
                col(CommandRow.created_at).desc(),
                _INSERTION_ORDER.desc(),
            ).limit(limit)
            rows = session.exec(statement).all()
        return [_to_command_view(row) for row in rows]

    def get_command_details(self, command_id: str) -> CommandDetails | None:
        """Return command details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(
                select(CommandRow).where(CommandRow.command_id == command_id),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(CommandEventRow)
                .where(CommandEventRow.command_id == command_id)
                .order_by(col(CommandEventRow.created_at).asc(), col(CommandEventRow.id).asc()),
            ).all()

        events: list[CommandEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                CommandEventView(
                    event_id=event_row.id or 0,
                    command_id=event_row.command_id,
                    event_type=event_row.event_type,
                    status_from=(
                        CommandStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        CommandStatus(event_row.status_to)
                        if event_row.status_to is not None
                        else None
                    ),
                    actor=event_row.actor,
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return CommandDetails(command=_to_command_view(row), events=events)

    def _finish_running(  # noqa: PLR0913
        self,
        *,
        command_id: str,
        agent_id: str,
        status: CommandStatus,
        result: Any,
        error: str | None,
        event_type: str,
        actor: str,
        details: dict[str, object],
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(CommandRow)
                .where(
                    col(CommandRow.command_id) == command_id,
                    col(CommandRow.status) == CommandStatus.RUNNING.value,
                    col(CommandRow.agent_id) == agent_id,
                )
                .values(
                    status=status.value,
                    agent_id=None,
                    result_json=dump_json(result),
                    error=error,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                command_id=command_id,
                event_type=event_type,
                status_from=CommandStatus.RUNNING,
                status_to=status,
                actor=actor,
                details={**details, "error": error} if error else details,
            )
            session.commit()

        logger.info("Command %s RUNNING -> %s by %s", command_id, status.value, actor)
        return True

    def _record_rejected_report(
        self,
        *,
        command_id: str,
        agent_id: str,
        status: CommandStatus,
    ) -> None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CommandRow).where(CommandRow.command_id == command_id),
            ).one_or_none()
            if row is None:
                logger.warning("Report from %s for unknown command %s", agent_id, command_id)
                return
            current = CommandStatus(row.status)
            owner = row.agent_id
            self._add_event(
                session=session,
                command_id=command_id,
                event_type="report_rejected",
                status_from=current,
                status_to=current,
                actor=agent_id,
                details={"reported_status": status.value, "owner": owner},
            )
            session.commit()

        logger.warning(
            "Rejected %s report for command %s from %s: status=%s owner=%s",
            status.value,
            command_id,
            agent_id,
            current.value,
            owner,
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        command_id: str,
        event_type: str,
        status_from: CommandStatus | None,
        status_to: CommandStatus | None,
        actor: str,
        details: dict[str, object],
    ) -> None:
        session.add(
            CommandEventRow(
                command_id=command_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                actor=actor,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_command_view(row: CommandRow) -> CommandView:
    return CommandView(
        command_id=row.command_id,
        command_type=CommandType(row.command_type),
        payload=json.loads(row.payload_json),
        status=CommandStatus(row.status),
        agent_id=row.agent_id,
        attempt=row.attempt,
        is_idempotent=bool(row.is_idempotent),
        result=load_json(row.result_json),
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
