from __future__ import annotations

from datetime import date

from taskpilot.models import Task, TaskPriority
from taskpilot.timeutil import parse_time_hhmm

MAX_TITLE_LENGTH = 100


class TaskServiceError(ValueError):
    """Raised when a task fails validation before it is persisted."""


def build_task(
    *,
    owner_id: int,
    title: str,
    required_min: int,
    priority: TaskPriority = TaskPriority.MEDIUM,
    description: str | None = None,
    due_date: date | None = None,
    due_time: str | None = None,
    source_message_id: str | None = None,
    source_channel_id: str | None = None,
    workspace_id: str | None = None,
    now_iso: str | None = None,
) -> Task:
    cleaned_title = title.strip()
    if not cleaned_title:
        raise TaskServiceError("Task title must not be empty.")
    if len(cleaned_title) > MAX_TITLE_LENGTH:
        cleaned_title = cleaned_title[: MAX_TITLE_LENGTH - 3] + "..."
    if required_min <= 0:
        raise TaskServiceError("Task duration must be > 0 minutes.")
    if due_time is not None:
        if due_date is None:
            raise TaskServiceError("Task due time requires a due date.")
        try:
            parse_time_hhmm(due_time)
        except ValueError as exc:
            raise TaskServiceError(f"Invalid due time '{due_time}'. Expected HH:MM.") from exc

    source_fields = (source_message_id, source_channel_id, workspace_id)
    if any(value is not None for value in source_fields) and not all(value for value in source_fields):
        raise TaskServiceError("Chat-originated tasks need message, channel and workspace ids.")

    task = Task(
        owner_id=owner_id,
        title=cleaned_title,
        description=description.strip() if description else None,
        priority=TaskPriority(priority),
        required_min=required_min,
        due_date=due_date,
        due_time=due_time,
        source_message_id=source_message_id,
        source_channel_id=source_channel_id,
        workspace_id=workspace_id,
    )
    if now_iso is not None:
        task.created_at = now_iso
        task.updated_at = now_iso
    return task
