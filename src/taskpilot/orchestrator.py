from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import StrEnum
import logging
import time as time_module
from typing import Protocol

from taskpilot.busy_service import Interval, committed_from_tasks
from taskpilot.config import EngineConfig
from taskpilot.connectors.google_calendar import (
    CalendarErrorKind,
    CalendarEvent,
    CalendarEventRequest,
    CalendarGateway,
    CalendarGatewayError,
)
from taskpilot.models import Task, TaskPriority
from taskpilot.policy import WorkingHoursPolicy
from taskpilot.repository import TaskNotFoundError, TaskRepository
from taskpilot.slot_finder import NoSlotAvailable, SearchWindow, find_slot
from taskpilot.task_service import TaskServiceError
from taskpilot.timeutil import db_to_dt, parse_time_hhmm, utc_now

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], None]
PolicyLoader = Callable[[int], WorkingHoursPolicy]

DEADLINE_BY_PRIORITY: dict[TaskPriority, timedelta] = {
    TaskPriority.HIGH: timedelta(days=1),
    TaskPriority.MEDIUM: timedelta(days=3),
    TaskPriority.LOW: timedelta(days=7),
}
DEFAULT_DUE_TIME = time(17, 0)
MAX_RESERVATION_ATTEMPTS = 5


class ScheduleStatus(StrEnum):
    SCHEDULED = "scheduled"
    SYNC_DEFERRED = "sync_deferred"
    EXHAUSTED = "exhausted"
    SYNC_FAILED = "sync_failed"
    ALREADY_SCHEDULED = "already_scheduled"


@dataclass(frozen=True)
class ScheduleOutcome:
    status: ScheduleStatus
    task: Task
    reason: str | None = None
    error_kind: CalendarErrorKind | None = None
    attempts: int = 0
    # Committed intervals inside the search window when no slot was found.
    blocking: tuple[Interval, ...] = ()

    @property
    def is_scheduled(self) -> bool:
        """True when the task holds a slot, synced or not."""
        return self.status in (
            ScheduleStatus.SCHEDULED,
            ScheduleStatus.ALREADY_SCHEDULED,
            ScheduleStatus.SYNC_DEFERRED,
            ScheduleStatus.SYNC_FAILED,
        )


class ReauthStore(Protocol):
    def needs_reauth(self, owner_id: int) -> bool: ...

    def mark_needs_reauth(self, owner_id: int) -> None: ...


def build_search_window(
    task: Task,
    policy: WorkingHoursPolicy,
    *,
    now: datetime,
    horizon_days: int,
) -> SearchWindow:
    """Search from ``now`` to the task deadline, never past the horizon.

    A due date without a time means end of the working day (17:00) in the
    user's zone. Without a due date the deadline follows the priority. A
    deadline already in the past gives an empty window.
    """
    horizon_end = now + timedelta(days=horizon_days)
    if task.due_date is not None:
        due_time = parse_time_hhmm(task.due_time) if task.due_time else DEFAULT_DUE_TIME
        deadline = datetime.combine(task.due_date, due_time, tzinfo=policy.timezone)
    else:
        deadline = now + DEADLINE_BY_PRIORITY[TaskPriority(task.priority)]
    end = min(deadline, horizon_end)
    return SearchWindow(start=now, end=max(end, now))


class SchedulingOrchestrator:
    """Finds a slot for a task, reserves it and materializes it as a calendar event."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        gateway: CalendarGateway,
        connections: ReauthStore,
        policy_for: PolicyLoader,
        config: EngineConfig | None = None,
        sleep_fn: SleepFn = time_module.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.connections = connections
        self.policy_for = policy_for
        self.config = config or EngineConfig()
        self.sleep_fn = sleep_fn
        self.clock = clock

    def schedule_task(
        self,
        task: Task,
        policy: WorkingHoursPolicy | None = None,
        committed_intervals: Iterable[Interval] | None = None,
    ) -> ScheduleOutcome:
        current = self._require_open(task.id)
        policy = policy or self.policy_for(current.owner_id)

        if current.scheduled_start is not None:
            if current.calendar_event_id and current.sync_error is None:
                return ScheduleOutcome(status=ScheduleStatus.ALREADY_SCHEDULED, task=current)
            # Slot already reserved; only the calendar step is left.
            return self._sync(current, policy)

        return self._place(current, policy, extra=list(committed_intervals or []))

    def reschedule_task(self, task_id: int, policy: WorkingHoursPolicy | None = None) -> ScheduleOutcome:
        """Move a task to the earliest valid slot, updating its existing event in place."""
        current = self._require_open(task_id)
        policy = policy or self.policy_for(current.owner_id)
        return self._place(current, policy, extra=[], moving=True)

    def unschedule_task(self, task_id: int) -> Task:
        current = self._require(task_id)
        if current.calendar_event_id:
            try:
                self.gateway.delete_event(current.owner_id, current.calendar_event_id)
            except CalendarGatewayError as exc:
                if exc.kind == CalendarErrorKind.TOKEN_EXPIRED:
                    self.connections.mark_needs_reauth(current.owner_id)
                logger.warning(
                    "unschedule_failed task_id=%s owner_id=%s kind=%s",
                    current.id,
                    current.owner_id,
                    exc.kind,
                )
                raise
        updated = self.repository.clear_schedule(task_id)
        logger.info("task_unscheduled task_id=%s owner_id=%s", updated.id, updated.owner_id)
        return updated

    def reconcile_deferred(self, owner_id: int, policy: WorkingHoursPolicy | None = None) -> list[ScheduleOutcome]:
        """Retry the calendar step for every scheduled-but-unsynced task of an owner."""
        pending = self.repository.list_unsynced(owner_id)
        if not pending:
            return []

        if self.connections.needs_reauth(owner_id):
            logger.info("reconcile_deferred_skipped owner_id=%s pending=%s reason=needs_reauth", owner_id, len(pending))
            return [
                ScheduleOutcome(status=ScheduleStatus.SYNC_DEFERRED, task=task, reason="needs_reauth")
                for task in pending
            ]

        policy = policy or self.policy_for(owner_id)
        results: list[ScheduleOutcome] = []
        for index, task in enumerate(pending):
            outcome = self._sync(task, policy)
            results.append(outcome)
            if outcome.status == ScheduleStatus.SYNC_DEFERRED:
                # Authorization was lost mid-sweep; the rest would fail the same way.
                results.extend(
                    ScheduleOutcome(status=ScheduleStatus.SYNC_DEFERRED, task=rest, reason="needs_reauth")
                    for rest in pending[index + 1 :]
                )
                break

        synced = sum(1 for outcome in results if outcome.status == ScheduleStatus.SCHEDULED)
        logger.info("reconcile_deferred_done owner_id=%s pending=%s synced=%s", owner_id, len(pending), synced)
        return results

    def _place(
        self,
        task: Task,
        policy: WorkingHoursPolicy,
        *,
        extra: list[Interval],
        moving: bool = False,
    ) -> ScheduleOutcome:
        now = self.clock()
        window = build_search_window(task, policy, now=now, horizon_days=self.config.search_horizon_days)
        duration = timedelta(minutes=task.required_min)
        external = self._external_busy(task, policy, window)

        current = task
        for _ in range(MAX_RESERVATION_ATTEMPTS):
            # Read committed tasks after the search starts so a concurrent reservation is seen.
            own = committed_from_tasks(
                self.repository.get_by_date_range(current.owner_id, window.start, window.end),
                exclude_task_id=current.id,
            )
            busy = [*external, *own, *extra]
            result = find_slot(policy, busy, duration, window, now=now)
            if isinstance(result, NoSlotAvailable):
                return self._exhausted(current, result.reason, moving=moving, blocking=_blocking(busy, window))

            if self.repository.reserve_slot(current.id, result.interval.start, result.interval.end):
                reserved = self._require(current.id)
                logger.info(
                    "slot_reserved task_id=%s owner_id=%s start=%s end=%s",
                    reserved.id,
                    reserved.owner_id,
                    reserved.scheduled_start,
                    reserved.scheduled_end,
                )
                return self._sync(reserved, policy)

            current = self._require_open(current.id)

        return self._exhausted(current, "reservation_conflict", moving=moving, blocking=_blocking(busy, window))

    def _exhausted(
        self,
        task: Task,
        reason: str,
        *,
        moving: bool,
        blocking: tuple[Interval, ...] = (),
    ) -> ScheduleOutcome:
        if moving and task.scheduled_start is not None:
            # The current booking stays; only the move failed.
            logger.info("reschedule_exhausted task_id=%s owner_id=%s reason=%s", task.id, task.owner_id, reason)
            return ScheduleOutcome(status=ScheduleStatus.EXHAUSTED, task=task, reason=reason, blocking=blocking)
        updated = self.repository.update(task.id, unscheduled_reason=reason)
        logger.info(
            "scheduling_exhausted task_id=%s owner_id=%s reason=%s blocking=%s",
            updated.id,
            updated.owner_id,
            reason,
            len(blocking),
        )
        return ScheduleOutcome(status=ScheduleStatus.EXHAUSTED, task=updated, reason=reason, blocking=blocking)

    def _external_busy(self, task: Task, policy: WorkingHoursPolicy, window: SearchWindow) -> list[Interval]:
        if window.end <= window.start:
            return []
        if self.connections.needs_reauth(task.owner_id):
            logger.info("calendar_busy_skipped owner_id=%s reason=needs_reauth", task.owner_id)
            return []

        busy = self.gateway.list_busy_intervals(
            task.owner_id,
            window.start,
            window.end,
            timezone_name=policy.timezone_name,
            exclude_event_ids=(task.calendar_event_id,) if task.calendar_event_id else (),
        )
        if not busy.complete:
            logger.warning(
                "calendar_busy_partial owner_id=%s failed_ranges=%s",
                task.owner_id,
                len(busy.failed_ranges),
            )
        return busy.intervals

    def _sync(self, task: Task, policy: WorkingHoursPolicy) -> ScheduleOutcome:
        if self.connections.needs_reauth(task.owner_id):
            updated = self.repository.update(task.id, sync_error=CalendarErrorKind.TOKEN_EXPIRED.value)
            logger.info("scheduling_deferred task_id=%s owner_id=%s reason=needs_reauth", task.id, task.owner_id)
            return ScheduleOutcome(
                status=ScheduleStatus.SYNC_DEFERRED,
                task=updated,
                reason="needs_reauth",
                error_kind=CalendarErrorKind.TOKEN_EXPIRED,
            )

        request = CalendarEventRequest(
            title=task.title,
            start=db_to_dt(task.scheduled_start),
            end=db_to_dt(task.scheduled_end),
            timezone_name=policy.timezone_name,
            description=task.description,
            task_id=task.id,
        )
        try:
            event, attempts = self._write_with_recovery(task, request)
        except CalendarGatewayError as exc:
            return self._sync_error(task, exc)

        updated = self.repository.update(task.id, calendar_event_id=event.event_id, sync_error=None)
        logger.info(
            "task_synced task_id=%s owner_id=%s event_id=%s attempts=%s",
            updated.id,
            updated.owner_id,
            event.event_id,
            attempts,
        )
        return ScheduleOutcome(status=ScheduleStatus.SCHEDULED, task=updated, attempts=attempts)

    def _sync_error(self, task: Task, exc: CalendarGatewayError) -> ScheduleOutcome:
        updated = self.repository.update(task.id, sync_error=exc.kind.value)
        if exc.kind == CalendarErrorKind.TOKEN_EXPIRED:
            self.connections.mark_needs_reauth(task.owner_id)
            logger.warning(
                "scheduling_deferred task_id=%s owner_id=%s reason=token_expired",
                task.id,
                task.owner_id,
            )
            return ScheduleOutcome(
                status=ScheduleStatus.SYNC_DEFERRED,
                task=updated,
                reason="token_expired",
                error_kind=exc.kind,
            )

        logger.warning(
            "calendar_sync_failed task_id=%s owner_id=%s kind=%s status=%s",
            task.id,
            task.owner_id,
            exc.kind,
            exc.status,
        )
        return ScheduleOutcome(
            status=ScheduleStatus.SYNC_FAILED,
            task=updated,
            reason=str(exc),
            error_kind=exc.kind,
        )

    def _write_with_recovery(self, task: Task, request: CalendarEventRequest) -> tuple[CalendarEvent, int]:
        max_attempts = max(1, self.config.sync_max_attempts)
        attempt = 0
        calls = 0
        minimized = False
        while True:
            calls += 1
            try:
                return self._write_event(task, request), calls
            except CalendarGatewayError as exc:
                if exc.kind == CalendarErrorKind.MALFORMED_REQUEST and not minimized and not request.is_minimal:
                    minimized = True
                    request = request.minimal()
                    logger.info("calendar_payload_minimized task_id=%s status=%s", task.id, exc.status)
                    continue
                if exc.kind == CalendarErrorKind.TRANSIENT and attempt + 1 < max_attempts:
                    delay_sec = self.config.sync_backoff_ms * (2**attempt) / 1000
                    attempt += 1
                    logger.info(
                        "calendar_sync_retry task_id=%s attempt=%s delay_sec=%s",
                        task.id,
                        attempt + 1,
                        delay_sec,
                    )
                    self.sleep_fn(delay_sec)
                    continue
                raise

    def _write_event(self, task: Task, request: CalendarEventRequest) -> CalendarEvent:
        if task.calendar_event_id:
            try:
                return self.gateway.update_event(task.owner_id, task.calendar_event_id, request)
            except CalendarGatewayError as exc:
                if not exc.event_missing:
                    raise
                # The provider dropped the event; the task falls back to scheduled-but-unsynced.
                logger.info(
                    "calendar_event_missing task_id=%s event_id=%s status=%s",
                    task.id,
                    task.calendar_event_id,
                    exc.status,
                )
                task = self.repository.update(task.id, calendar_event_id=None)
        return self.gateway.create_event(task.owner_id, request)

    def _require(self, task_id: int | None) -> Task:
        if task_id is None:
            raise TaskServiceError("Task must be saved before scheduling.")
        task = self.repository.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found.")
        return task

    def _require_open(self, task_id: int | None) -> Task:
        task = self._require(task_id)
        if task.completed:
            raise TaskServiceError(f"Task {task.id} is completed.")
        return task


def _blocking(busy: Iterable[Interval], window: SearchWindow) -> tuple[Interval, ...]:
    """Busy intervals that fall inside the window, earliest first, for the caller to decide on."""
    inside = [item for item in busy if item.overlaps(window.start, window.end)]
    return tuple(sorted(inside, key=lambda item: (item.start, item.end)))
