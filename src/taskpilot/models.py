from __future__ import annotations

from datetime import date, datetime, timezone
from enum import StrEnum

from sqlalchemy import CheckConstraint, Column, Enum as SQLEnum, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


class TaskPriority(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IngestionStatus(StrEnum):
    PROCESSING = "processing"
    TASK_CREATED = "task_created"
    NO_TASK = "no_task_detected"
    DECLINED = "user_declined"


TERMINAL_INGESTION_STATUSES: frozenset[IngestionStatus] = frozenset(
    {IngestionStatus.TASK_CREATED, IngestionStatus.NO_TASK, IngestionStatus.DECLINED}
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _enum_values(enum_cls: type[StrEnum]) -> list[str]:
    return [member.value for member in enum_cls]


class WorkingHours(SQLModel, table=True):
    __tablename__ = "working_hours"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_working_hours_start_before_end"),
        CheckConstraint(
            "(break_start IS NULL AND break_end IS NULL) OR "
            "(break_start IS NOT NULL AND break_end IS NOT NULL AND break_start < break_end)",
            name="ck_working_hours_break_pair",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True, unique=True)
    active_days: str = Field(default="mon,tue,wed,thu,fri")
    start_time: str = Field(default="09:00")
    end_time: str = Field(default="17:00")
    break_start: str | None = Field(default="12:00")
    break_end: str | None = Field(default="13:00")
    timezone: str = Field(default="UTC")
    updated_at: str = Field(default_factory=_utc_now_iso)


class CalendarConnection(SQLModel, table=True):
    __tablename__ = "calendar_connections"

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True, unique=True)
    calendar_id: str = Field(default="primary")
    refresh_token: str | None = None
    needs_reauth: int = Field(default=0)
    updated_at: str = Field(default_factory=_utc_now_iso)


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        CheckConstraint("required_min > 0", name="ck_tasks_required_min_gt_0"),
        CheckConstraint(
            "(scheduled_start IS NULL AND scheduled_end IS NULL) OR "
            "(scheduled_start IS NOT NULL AND scheduled_end IS NOT NULL)",
            name="ck_tasks_schedule_pair",
        ),
        CheckConstraint(
            "calendar_event_id IS NULL OR scheduled_start IS NOT NULL",
            name="ck_tasks_event_requires_schedule",
        ),
        Index("ix_tasks_owner_scheduled_start", "owner_id", "scheduled_start"),
        Index("ix_tasks_source_message", "workspace_id", "source_channel_id", "source_message_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    title: str
    description: str | None = None
    priority: TaskPriority = Field(
        sa_column=Column(
            SQLEnum(
                TaskPriority,
                name="task_priority",
                native_enum=False,
                create_constraint=True,
                values_callable=_enum_values,
            ),
            nullable=False,
        )
    )
    required_min: int
    due_date: date | None = None
    due_time: str | None = None
    scheduled_start: str | None = None
    scheduled_end: str | None = None
    calendar_event_id: str | None = None
    unscheduled_reason: str | None = None
    sync_error: str | None = None
    source_message_id: str | None = None
    source_channel_id: str | None = None
    workspace_id: str | None = None
    completed: bool = Field(default=False)
    created_at: str = Field(default_factory=_utc_now_iso)
    updated_at: str = Field(default_factory=_utc_now_iso)


class IngestionRecord(SQLModel, table=True):
    __tablename__ = "ingestion_records"
    __table_args__ = (
        UniqueConstraint(
            "source_message_id",
            "source_channel_id",
            "workspace_id",
            name="uq_ingestion_records_source_key",
        ),
        Index("ix_ingestion_records_status_processed_at", "status", "processed_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    source_message_id: str
    source_channel_id: str
    workspace_id: str
    status: IngestionStatus = Field(
        sa_column=Column(
            SQLEnum(
                IngestionStatus,
                name="ingestion_status",
                native_enum=False,
                create_constraint=True,
                values_callable=_enum_values,
            ),
            nullable=False,
        )
    )
    task_id: int | None = Field(default=None, foreign_key="tasks.id")
    claimed_at: str
    processed_at: str | None = None
