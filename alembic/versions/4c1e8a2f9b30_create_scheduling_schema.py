"""create scheduling schema

Revision ID: 4c1e8a2f9b30
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4c1e8a2f9b30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "working_hours",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("active_days", sa.Text(), nullable=False),
        sa.Column("start_time", sa.Text(), nullable=False),
        sa.Column("end_time", sa.Text(), nullable=False),
        sa.Column("break_start", sa.Text(), nullable=True),
        sa.Column("break_end", sa.Text(), nullable=True),
        sa.Column("timezone", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("start_time < end_time", name="ck_working_hours_start_before_end"),
        sa.CheckConstraint(
            "(break_start IS NULL AND break_end IS NULL) OR "
            "(break_start IS NOT NULL AND break_end IS NOT NULL AND break_start < break_end)",
            name="ck_working_hours_break_pair",
        ),
    )
    op.create_index("ix_working_hours_owner_id", "working_hours", ["owner_id"], unique=True)

    op.create_table(
        "calendar_connections",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("calendar_id", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("needs_reauth", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_calendar_connections_owner_id", "calendar_connections", ["owner_id"], unique=True)

    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "priority",
            sa.Enum(
                "high",
                "medium",
                "low",
                name="task_priority",
                native_enum=False,
                create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column("required_min", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("due_time", sa.Text(), nullable=True),
        sa.Column("scheduled_start", sa.Text(), nullable=True),
        sa.Column("scheduled_end", sa.Text(), nullable=True),
        sa.Column("calendar_event_id", sa.Text(), nullable=True),
        sa.Column("unscheduled_reason", sa.Text(), nullable=True),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("source_message_id", sa.Text(), nullable=True),
        sa.Column("source_channel_id", sa.Text(), nullable=True),
        sa.Column("workspace_id", sa.Text(), nullable=True),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("required_min > 0", name="ck_tasks_required_min_gt_0"),
        sa.CheckConstraint(
            "(scheduled_start IS NULL AND scheduled_end IS NULL) OR "
            "(scheduled_start IS NOT NULL AND scheduled_end IS NOT NULL)",
            name="ck_tasks_schedule_pair",
        ),
        sa.CheckConstraint(
            "calendar_event_id IS NULL OR scheduled_start IS NOT NULL",
            name="ck_tasks_event_requires_schedule",
        ),
    )
    op.create_index("ix_tasks_owner_id", "tasks", ["owner_id"], unique=False)
    op.create_index("ix_tasks_owner_scheduled_start", "tasks", ["owner_id", "scheduled_start"], unique=False)
    op.create_index(
        "ix_tasks_source_message",
        "tasks",
        ["workspace_id", "source_channel_id", "source_message_id"],
        unique=False,
    )

    op.create_table(
        "ingestion_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source_message_id", sa.Text(), nullable=False),
        sa.Column("source_channel_id", sa.Text(), nullable=False),
        sa.Column("workspace_id", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "processing",
                "task_created",
                "no_task_detected",
                "user_declined",
                name="ingestion_status",
                native_enum=False,
                create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column("task_id", sa.Integer(), nullable=True),
        sa.Column("claimed_at", sa.Text(), nullable=False),
        sa.Column("processed_at", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "source_message_id",
            "source_channel_id",
            "workspace_id",
            name="uq_ingestion_records_source_key",
        ),
    )
    op.create_index(
        "ix_ingestion_records_status_processed_at",
        "ingestion_records",
        ["status", "processed_at"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_ingestion_records_status_processed_at", table_name="ingestion_records")
    op.drop_table("ingestion_records")
    op.drop_index("ix_tasks_source_message", table_name="tasks")
    op.drop_index("ix_tasks_owner_scheduled_start", table_name="tasks")
    op.drop_index("ix_tasks_owner_id", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_calendar_connections_owner_id", table_name="calendar_connections")
    op.drop_table("calendar_connections")
    op.drop_index("ix_working_hours_owner_id", table_name="working_hours")
    op.drop_table("working_hours")
