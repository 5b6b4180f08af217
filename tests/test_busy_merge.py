from datetime import datetime, timezone

from taskpilot.busy_service import Interval, committed_from_tasks, merge_intervals
from taskpilot.models import Task, TaskPriority

UTC = timezone.utc


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute, tzinfo=UTC)


def task(id: int, start: str | None, end: str | None, *, completed: bool = False) -> Task:
    return Task(
        id=id,
        owner_id=1,
        title=f"Task {id}",
        priority=TaskPriority.MEDIUM,
        required_min=30,
        scheduled_start=start,
        scheduled_end=end,
        completed=completed,
    )


def test_merge_overlapping_intervals() -> None:
    merged = merge_intervals(
        [
            Interval(start=at(10), end=at(11), label="A"),
            Interval(start=at(10, 30), end=at(12), label="B"),
        ]
    )

    assert merged == [Interval(start=at(10), end=at(12), label="A | B")]


def test_merge_adjacent_intervals() -> None:
    merged = merge_intervals(
        [
            Interval(start=at(14, 30), end=at(15), label="Y"),
            Interval(start=at(14), end=at(14, 30), label="X"),
        ]
    )

    assert merged == [Interval(start=at(14), end=at(15), label="X | Y")]


def test_merge_keeps_gaps_and_labels_unnamed_blocks() -> None:
    merged = merge_intervals(
        [
            Interval(start=at(9), end=at(10)),
            Interval(start=at(11), end=at(12), label="Review"),
        ]
    )

    assert [item.label for item in merged] == ["(busy)", "Review"]


def test_merge_empty_returns_empty_list() -> None:
    assert merge_intervals([]) == []


def test_interval_overlap_is_half_open() -> None:
    interval = Interval(start=at(10), end=at(11))

    assert interval.overlaps(at(10, 30), at(11, 30))
    assert not interval.overlaps(at(11), at(12))
    assert not interval.overlaps(at(9), at(10))


def test_committed_from_tasks_skips_completed_unscheduled_and_excluded() -> None:
    tasks = [
        task(1, "2026-03-02T09:00:00+00:00", "2026-03-02T10:00:00+00:00"),
        task(2, "2026-03-02T10:00:00+00:00", "2026-03-02T11:00:00+00:00", completed=True),
        task(3, None, None),
        task(4, "2026-03-02T13:00:00+00:00", "2026-03-02T14:00:00+00:00"),
    ]

    intervals = committed_from_tasks(tasks, exclude_task_id=4)

    assert intervals == [Interval(start=at(9), end=at(10), label="Task 1", task_id=1)]
