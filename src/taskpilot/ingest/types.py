from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from taskpilot.models import TaskPriority

DEFAULT_ESTIMATE_MIN = 30


@dataclass(frozen=True)
class MessageKey:
    """Identity of one chat message across redeliveries."""

    source_message_id: str
    source_channel_id: str
    workspace_id: str

    def __post_init__(self) -> None:
        for name in ("source_message_id", "source_channel_id", "workspace_id"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"Message key field {name} must be a non-empty string.")

    def __str__(self) -> str:
        return f"{self.workspace_id}/{self.source_channel_id}/{self.source_message_id}"


@dataclass(frozen=True)
class ClassifiedMessage:
    is_task: bool
    title: str = ""
    description: str | None = None
    estimated_min: int = DEFAULT_ESTIMATE_MIN
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: date | None = None
    due_time: str | None = None
