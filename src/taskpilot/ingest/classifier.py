from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Protocol

from taskpilot.ingest.types import DEFAULT_ESTIMATE_MIN, ClassifiedMessage
from taskpilot.models import TaskPriority


class TaskClassifier(Protocol):
    def classify(self, message_text: str) -> ClassifiedMessage: ...


@dataclass(frozen=True)
class StaticClassifier:
    """Returns a fixed classification, for messages already classified upstream."""

    result: ClassifiedMessage

    def classify(self, message_text: str) -> ClassifiedMessage:
        del message_text
        return self.result


def normalize_classification(result: ClassifiedMessage, message_text: str) -> ClassifiedMessage:
    """Fill the gaps a classifier may leave in a positive result.

    A missing title falls back to the first line of the message, a missing or
    non-positive estimate to 30 minutes.
    """
    if not result.is_task:
        return result

    title = result.title.strip()
    if not title:
        title = next((line.strip() for line in message_text.splitlines() if line.strip()), "")
    estimated_min = result.estimated_min if result.estimated_min and result.estimated_min > 0 else DEFAULT_ESTIMATE_MIN
    return replace(
        result,
        title=title,
        estimated_min=estimated_min,
        priority=_parse_priority(result.priority),
    )


def _parse_priority(value: TaskPriority | str | None) -> TaskPriority:
    if not value:
        return TaskPriority.MEDIUM
    try:
        return TaskPriority(str(value).strip().lower())
    except ValueError:
        return TaskPriority.MEDIUM
