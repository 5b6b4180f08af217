from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taskpilot.models import WorkingHours
from taskpilot.timeutil import parse_time_hhmm

SLOT_GRANULARITY = timedelta(minutes=15)

WEEKDAY_NAMES: tuple[str, ...] = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass(frozen=True)
class WorkingHoursPolicy:
    """A user's schedulable time: active weekdays, a daily window and an optional break.

    Weekdays use ``date.weekday()`` numbering (Monday is 0). Times are wall-clock
    times in ``timezone_name``.
    """

    active_days: frozenset[int]
    start_time: time
    end_time: time
    break_start: time | None = None
    break_end: time | None = None
    timezone_name: str = "UTC"
    granularity: timedelta = SLOT_GRANULARITY
    _timezone: ZoneInfo = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if any(day not in range(7) for day in self.active_days):
            raise ValueError("Active days must be weekday numbers 0 (Mon) through 6 (Sun).")
        if self.start_time >= self.end_time:
            raise ValueError("Working hours start must be earlier than end.")
        if (self.break_start is None) != (self.break_end is None):
            raise ValueError("Break start and break end must be set together.")
        if self.break_start is not None and self.break_end is not None:
            if not (self.start_time <= self.break_start < self.break_end <= self.end_time):
                raise ValueError("Break must lie inside working hours and start before it ends.")
        if self.granularity <= timedelta(0):
            raise ValueError("Slot granularity must be positive.")
        try:
            tz = ZoneInfo(self.timezone_name)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Invalid timezone '{self.timezone_name}'. Expected a valid IANA timezone.") from exc
        object.__setattr__(self, "_timezone", tz)

    @classmethod
    def from_row(cls, row: WorkingHours) -> WorkingHoursPolicy:
        return cls(
            active_days=parse_active_days(row.active_days),
            start_time=parse_time_hhmm(row.start_time),
            end_time=parse_time_hhmm(row.end_time),
            break_start=parse_time_hhmm(row.break_start) if row.break_start else None,
            break_end=parse_time_hhmm(row.break_end) if row.break_end else None,
            timezone_name=row.timezone,
        )

    @property
    def timezone(self) -> ZoneInfo:
        return self._timezone

    @property
    def daily_window(self) -> timedelta:
        return datetime.combine(date.min, self.end_time) - datetime.combine(date.min, self.start_time)

    def is_active(self, day: date) -> bool:
        return day.weekday() in self.active_days

    def day_window(self, day: date) -> tuple[datetime, datetime]:
        return (
            datetime.combine(day, self.start_time, tzinfo=self._timezone),
            datetime.combine(day, self.end_time, tzinfo=self._timezone),
        )

    def break_window(self, day: date) -> tuple[datetime, datetime] | None:
        if self.break_start is None or self.break_end is None:
            return None
        return (
            datetime.combine(day, self.break_start, tzinfo=self._timezone),
            datetime.combine(day, self.break_end, tzinfo=self._timezone),
        )

    def next_active_day(self, after: date) -> date | None:
        for offset in range(1, 8):
            candidate = after + timedelta(days=offset)
            if self.is_active(candidate):
                return candidate
        return None


def parse_active_days(value: str) -> frozenset[int]:
    days: set[int] = set()
    for raw in value.split(","):
        name = raw.strip().lower()[:3]
        if not name:
            continue
        if name not in WEEKDAY_NAMES:
            raise ValueError(f"Unknown weekday '{raw.strip()}'. Expected one of: {', '.join(WEEKDAY_NAMES)}.")
        days.add(WEEKDAY_NAMES.index(name))
    return frozenset(days)


def format_active_days(days: frozenset[int] | set[int]) -> str:
    return ",".join(WEEKDAY_NAMES[day] for day in sorted(days))
