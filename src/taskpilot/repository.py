from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Protocol

import sqlalchemy as sa
from sqlalchemy.orm import aliased
from sqlmodel import Session, select

from taskpilot.models import CalendarConnection, Task, WorkingHours
from taskpilot.timeutil import dt_to_db

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS: set[str] = {
    "title",
    "description",
    "priority",
    "required_min",
    "due_date",
    "due_time",
    "scheduled_start",
    "scheduled_end",
    "calendar_event_id",
    "unscheduled_reason",
    "sync_error",
    "completed",
}


class TaskNotFoundError(LookupError):
    """Raised when a task id does not exist."""


class TaskRepository(Protocol):
    def create(self, task: Task) -> Task: ...

    def get(self, task_id: int) -> Task | None: ...

    def update(self, task_id: int, **changes: Any) -> Task: ...

    def get_by_date_range(self, owner_id: int, start: datetime, end: datetime) -> list[Task]: ...

    def find_by_source(self, *, source_message_id: str, source_channel_id: str, workspace_id: str) -> Task | None: ...

    def mark_complete(self, task_id: int) -> Task: ...

    def list_unsynced(self, owner_id: int) -> list[Task]: ...

    def reserve_slot(self, task_id: int, start: datetime, end: datetime) -> bool: ...

    def clear_schedule(self, task_id: int) -> Task: ...


class SqlTaskRepository:
    """Task persistence on a SQLModel engine.

    Every call opens its own session so one repository can be shared by
    concurrent workers. Returned rows are detached snapshots.
    """

    def __init__(self, engine) -> None:
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def create(self, task: Task) -> Task:
        with self._session() as session:
            session.add(task)
            session.commit()
            session.refresh(task)
        logger.info("task_created task_id=%s owner_id=%s", task.id, task.owner_id)
        return task

    def get(self, task_id: int) -> Task | None:
        with self._session() as session:
            return session.get(Task, task_id)

    def update(self, task_id: int, **changes: Any) -> Task:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}.")

        with self._session() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found.")
            for key, value in changes.items():
                setattr(task, key, value)
            task.updated_at = _now_iso()
            session.add(task)
            session.commit()
            session.refresh(task)
            return task

    def list_for_owner(self, owner_id: int) -> list[Task]:
        with self._session() as session:
            rows = session.exec(
                select(Task)
                .where(Task.owner_id == owner_id)
                .order_by(Task.completed, sa.nulls_last(Task.scheduled_start), Task.id)
            ).all()
            return list(rows)

    def get_by_date_range(self, owner_id: int, start: datetime, end: datetime) -> list[Task]:
        """Open tasks of ``owner_id`` whose scheduled interval overlaps ``[start, end)``."""
        with self._session() as session:
            rows = session.exec(
                select(Task)
                .where(Task.owner_id == owner_id)
                .where(Task.completed == sa.false())
                .where(Task.scheduled_start.is_not(None))
                .where(Task.scheduled_start < dt_to_db(end))
                .where(Task.scheduled_end > dt_to_db(start))
                .order_by(Task.scheduled_start, Task.id)
            ).all()
            return list(rows)

    def find_by_source(self, *, source_message_id: str, source_channel_id: str, workspace_id: str) -> Task | None:
        with self._session() as session:
            return session.exec(
                select(Task)
                .where(Task.workspace_id == workspace_id)
                .where(Task.source_channel_id == source_channel_id)
                .where(Task.source_message_id == source_message_id)
                .order_by(Task.id)
            ).first()

    def mark_complete(self, task_id: int) -> Task:
        return self.update(task_id, completed=True)

    def list_unsynced(self, owner_id: int) -> list[Task]:
        """Scheduled open tasks whose calendar event is missing or out of date."""
        with self._session() as session:
            rows = session.exec(
                select(Task)
                .where(Task.owner_id == owner_id)
                .where(Task.completed == sa.false())
                .where(Task.scheduled_start.is_not(None))
                .where(sa.or_(Task.calendar_event_id.is_(None), Task.sync_error.is_not(None)))
                .order_by(Task.scheduled_start, Task.id)
            ).all()
            return list(rows)

    def list_owners_with_unsynced(self) -> list[int]:
        with self._session() as session:
            rows = session.exec(
                select(Task.owner_id)
                .where(Task.completed == sa.false())
                .where(Task.scheduled_start.is_not(None))
                .where(sa.or_(Task.calendar_event_id.is_(None), Task.sync_error.is_not(None)))
                .distinct()
                .order_by(Task.owner_id)
            ).all()
            return list(rows)

    def reserve_slot(self, task_id: int, start: datetime, end: datetime) -> bool:
        """Atomically assign ``[start, end)`` to a task if no other open task of the owner overlaps it.

        The owner's working-hours row is locked first, so reservations for one
        owner are serialized; the conditional UPDATE is the compare-and-swap.
        Returns False when the interval was taken in the meantime.
        """
        start_db = dt_to_db(start)
        end_db = dt_to_db(end)

        with self._session() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found.")
            owner_id = task.owner_id

            session.exec(
                select(WorkingHours).where(WorkingHours.owner_id == owner_id).with_for_update()
            ).first()

            other = aliased(Task)
            overlapping = (
                sa.select(other.id)
                .where(other.owner_id == owner_id)
                .where(other.id != task_id)
                .where(other.completed == sa.false())
                .where(other.scheduled_start.is_not(None))
                .where(other.scheduled_start < end_db)
                .where(other.scheduled_end > start_db)
                .exists()
            )
            result = session.execute(
                sa.update(Task)
                .where(Task.id == task_id)
                .where(Task.completed == sa.false())
                .where(~overlapping)
                .values(
                    scheduled_start=start_db,
                    scheduled_end=end_db,
                    unscheduled_reason=None,
                    updated_at=_now_iso(),
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()

        reserved = result.rowcount == 1
        if not reserved:
            logger.info(
                "slot_reservation_conflict task_id=%s owner_id=%s start=%s end=%s",
                task_id,
                owner_id,
                start_db,
                end_db,
            )
        return reserved

    def clear_schedule(self, task_id: int) -> Task:
        return self.update(
            task_id,
            scheduled_start=None,
            scheduled_end=None,
            calendar_event_id=None,
            sync_error=None,
        )


class SqlConnectionStore:
    """Per-owner calendar authorization state."""

    def __init__(self, engine) -> None:
        self.engine = engine

    def get(self, owner_id: int) -> CalendarConnection | None:
        with Session(self.engine, expire_on_commit=False) as session:
            return session.exec(
                select(CalendarConnection).where(CalendarConnection.owner_id == owner_id)
            ).first()

    def refresh_token(self, owner_id: int) -> str | None:
        connection = self.get(owner_id)
        if connection is None or connection.needs_reauth:
            return None
        return connection.refresh_token

    def needs_reauth(self, owner_id: int) -> bool:
        connection = self.get(owner_id)
        return connection is None or connection.refresh_token is None or bool(connection.needs_reauth)

    def connect(self, owner_id: int, *, refresh_token: str, calendar_id: str = "primary") -> CalendarConnection:
        if not refresh_token.strip():
            raise ValueError("Refresh token must not be empty.")
        with Session(self.engine, expire_on_commit=False) as session:
            connection = session.exec(
                select(CalendarConnection).where(CalendarConnection.owner_id == owner_id)
            ).first()
            if connection is None:
                connection = CalendarConnection(owner_id=owner_id)
            connection.refresh_token = refresh_token.strip()
            connection.calendar_id = calendar_id.strip() or "primary"
            connection.needs_reauth = 0
            connection.updated_at = _now_iso()
            session.add(connection)
            session.commit()
            session.refresh(connection)
        logger.info("calendar_connected owner_id=%s calendar_id=%s", owner_id, connection.calendar_id)
        return connection

    def mark_needs_reauth(self, owner_id: int) -> None:
        with Session(self.engine) as session:
            connection = session.exec(
                select(CalendarConnection).where(CalendarConnection.owner_id == owner_id)
            ).first()
            if connection is None:
                connection = CalendarConnection(owner_id=owner_id)
            connection.needs_reauth = 1
            connection.updated_at = _now_iso()
            session.add(connection)
            session.commit()
        logger.warning("calendar_reauth_required owner_id=%s", owner_id)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
