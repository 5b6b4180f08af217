from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from taskpilot.models import Task
from taskpilot.timeutil import db_to_dt


@dataclass(frozen=True)
class Interval:
    """Half-open time interval ``[start, end)``."""

    start: datetime
    end: datetime
    label: str | None = None
    task_id: int | None = None

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


@dataclass
class _MergedInterval:
    start: datetime
    end: datetime
    labels: list[str]


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    ordered = sorted(intervals, key=lambda item: (item.start, item.end))

    merged: list[_MergedInterval] = []
    for item in ordered:
        label = item.label or "(busy)"
        if not merged:
            merged.append(_MergedInterval(start=item.start, end=item.end, labels=[label]))
            continue

        current = merged[-1]
        if item.start <= current.end:
            if item.end > current.end:
                current.end = item.end
            current.labels.append(label)
            continue

        merged.append(_MergedInterval(start=item.start, end=item.end, labels=[label]))

    return [Interval(start=item.start, end=item.end, label=" | ".join(item.labels)) for item in merged]


def committed_from_tasks(tasks: Iterable[Task], *, exclude_task_id: int | None = None) -> list[Interval]:
    intervals: list[Interval] = []
    for task in tasks:
        if task.completed or task.id == exclude_task_id:
            continue
        if task.scheduled_start is None or task.scheduled_end is None:
            continue
        intervals.append(
            Interval(
                start=db_to_dt(task.scheduled_start),
                end=db_to_dt(task.scheduled_end),
                label=task.title,
                task_id=task.id,
            )
        )
    return intervals
