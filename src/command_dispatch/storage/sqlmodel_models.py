"""SQLModel ORM tables for the command store and the execution log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class CommandRow(SQLModel, table=True):
    __tablename__ = "commands"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_commands_queue", "status", "created_at"),)

    command_id: str = Field(primary_key=True)
    command_type: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    agent_id: str | None = Field(default=None, index=True)
    attempt: int = Field(default=0)
    is_idempotent: bool = Field(default=False)
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CommandEventRow(SQLModel, table=True):
    __tablename__ = "command_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_command_events_command_time", "command_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    command_id: str = Field(
        sa_column=Column(
            ForeignKey("commands.command_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    actor: str
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionLogRow(SQLModel, table=True):
    __tablename__ = "execution_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_execution_logs_command_time", "command_id", "completed_at"),)

    id: int | None = Field(default=None, primary_key=True)
    command_id: str = Field(index=True)
    agent_id: str
    attempt: int = Field(default=0)
    status: str
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
