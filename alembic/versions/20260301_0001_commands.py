"""Command store and transition audit trail."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20260301_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "commands",
        sa.Column("command_id", sa.String(), nullable=False),
        sa.Column("command_type", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_idempotent", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("command_id"),
    )
    op.create_index("ix_commands_command_type", "commands", ["command_type"])
    op.create_index("ix_commands_status", "commands", ["status"])
    op.create_index("ix_commands_agent_id", "commands", ["agent_id"])
    op.create_index("idx_commands_queue", "commands", ["status", "created_at"])

    op.create_table(
        "command_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("command_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["command_id"], ["commands.command_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_command_events_command_id", "command_events", ["command_id"])
    op.create_index("ix_command_events_event_type", "command_events", ["event_type"])
    op.create_index(
        "idx_command_events_command_time",
        "command_events",
        ["command_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("command_events")
    op.drop_table("commands")
