"""Working-hours slot search.

Candidates are generated on the policy granularity grid of the local day and
checked against the daily window, the break and every committed interval using
half-open overlap. The search never looks past the window end, so it always
terminates.
"""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from taskpilot.busy_service import Interval, merge_intervals
from taskpilot.policy import WorkingHoursPolicy
from taskpilot.timeutil import ceil_to_granularity


@dataclass(frozen=True)
class SearchWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Search window bounds must be tz-aware.")


@dataclass(frozen=True)
class SlotFound:
    interval: Interval


@dataclass(frozen=True)
class NoSlotAvailable:
    window: SearchWindow
    reason: str


SlotResult = SlotFound | NoSlotAvailable


def find_slot(
    policy: WorkingHoursPolicy,
    committed: Iterable[Interval],
    duration: timedelta,
    window: SearchWindow,
    *,
    now: datetime | None = None,
) -> SlotResult:
    for interval in iter_slots(policy, committed, duration, window, now=now):
        return SlotFound(interval=interval)
    return NoSlotAvailable(window=window, reason=_exhaustion_reason(policy, duration))


def find_slots(
    policy: WorkingHoursPolicy,
    committed: Iterable[Interval],
    duration: timedelta,
    window: SearchWindow,
    *,
    limit: int,
    now: datetime | None = None,
) -> list[Interval]:
    if limit < 1:
        raise ValueError("limit must be >= 1.")
    slots: list[Interval] = []
    for interval in iter_slots(policy, committed, duration, window, now=now):
        slots.append(interval)
        if len(slots) >= limit:
            break
    return slots


def iter_slots(
    policy: WorkingHoursPolicy,
    committed: Iterable[Interval],
    duration: timedelta,
    window: SearchWindow,
    *,
    now: datetime | None = None,
) -> Iterator[Interval]:
    if duration <= timedelta(0):
        raise ValueError("Slot duration must be positive.")

    tz = policy.timezone
    busy = merge_intervals(committed)
    search_start = window.start if now is None else max(window.start, now)
    cursor = ceil_to_granularity(search_start, policy.granularity, tz)

    while cursor + duration <= window.end:
        local_day = cursor.astimezone(tz).date()
        if not policy.is_active(local_day):
            next_cursor = _next_day_start(policy, local_day)
            if next_cursor is None:
                return
            cursor = next_cursor
            continue

        day_start, day_end = policy.day_window(local_day)
        if cursor < day_start:
            cursor = day_start.astimezone(timezone.utc)
            continue

        slot_end = cursor + duration
        if slot_end > day_end:
            next_cursor = _next_day_start(policy, local_day)
            if next_cursor is None:
                return
            cursor = next_cursor
            continue

        break_window = policy.break_window(local_day)
        if break_window is not None and cursor < break_window[1] and slot_end > break_window[0]:
            cursor += policy.granularity
            continue

        if any(item.overlaps(cursor, slot_end) for item in busy):
            cursor += policy.granularity
            continue

        yield Interval(start=cursor.astimezone(tz), end=slot_end.astimezone(tz))
        cursor += policy.granularity


def _next_day_start(policy: WorkingHoursPolicy, current_day) -> datetime | None:
    next_day = policy.next_active_day(current_day)
    if next_day is None:
        return None
    day_start, _ = policy.day_window(next_day)
    return day_start.astimezone(timezone.utc)


def _exhaustion_reason(policy: WorkingHoursPolicy, duration: timedelta) -> str:
    if not policy.active_days:
        return "no_active_days"
    if duration > policy.daily_window:
        return "duration_exceeds_working_day"
    return "no_free_slot_before_deadline"
