from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from taskpilot.models import WorkingHours
from taskpilot.policy import WorkingHoursPolicy, format_active_days, parse_active_days

ALLOWED_HOURS_KEYS: set[str] = {
    "active_days",
    "start_time",
    "end_time",
    "break_start",
    "break_end",
    "timezone",
}

_HHMM_PATTERN = re.compile(r"^(?:[01]\d|2[0-3]):[0-5]\d$")
_TIME_KEYS: set[str] = {"start_time", "end_time", "break_start", "break_end"}
_NULLABLE_KEYS: set[str] = {"break_start", "break_end"}
_NULL_VALUES: set[str] = {"", "none", "-"}


@dataclass(frozen=True)
class EngineConfig:
    sync_max_attempts: int = 3
    sync_backoff_ms: int = 500
    provider_timeout_sec: float = 20.0
    search_horizon_days: int = 14
    ledger_retention_days: int = 30
    claim_lease_sec: int = 600

    @classmethod
    def from_env(cls) -> EngineConfig:
        defaults = cls()
        return cls(
            sync_max_attempts=_env_int("TASKPILOT_SYNC_MAX_ATTEMPTS", defaults.sync_max_attempts, minimum=1),
            sync_backoff_ms=_env_int("TASKPILOT_SYNC_BACKOFF_MS", defaults.sync_backoff_ms, minimum=0),
            provider_timeout_sec=float(
                _env_int("TASKPILOT_PROVIDER_TIMEOUT_SEC", int(defaults.provider_timeout_sec), minimum=1)
            ),
            search_horizon_days=_env_int(
                "TASKPILOT_SEARCH_HORIZON_DAYS", defaults.search_horizon_days, minimum=1
            ),
            ledger_retention_days=_env_int(
                "TASKPILOT_LEDGER_RETENTION_DAYS", defaults.ledger_retention_days, minimum=1
            ),
            claim_lease_sec=_env_int("TASKPILOT_CLAIM_LEASE_SEC", defaults.claim_lease_sec, minimum=1),
        )


def _env_int(name: str, default: int, *, minimum: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def validate_hours_value(key: str, value: str) -> str | None:
    """Validate one working-hours field and return its normalized stored value."""
    if key not in ALLOWED_HOURS_KEYS:
        allowed = ", ".join(sorted(ALLOWED_HOURS_KEYS))
        raise ValueError(f"Unknown working hours key: {key}. Allowed keys: {allowed}.")

    stripped = value.strip()
    if key in _NULLABLE_KEYS and stripped.lower() in _NULL_VALUES:
        return None

    if key in _TIME_KEYS:
        if not _HHMM_PATTERN.fullmatch(stripped):
            raise ValueError(f"Invalid HH:MM value for {key}: '{value}'.")
        return stripped

    if key == "active_days":
        return format_active_days(parse_active_days(stripped))

    return stripped


def get_working_hours(session: Session, owner_id: int) -> WorkingHours:
    """Return the owner's working hours row, creating it with defaults on first use."""
    row = session.exec(select(WorkingHours).where(WorkingHours.owner_id == owner_id)).first()
    if row is not None:
        return row

    row = WorkingHours(owner_id=owner_id)
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        # Another worker created the defaults first.
        session.rollback()
        return session.exec(select(WorkingHours).where(WorkingHours.owner_id == owner_id)).one()
    session.refresh(row)
    return row


def load_policy(session: Session, owner_id: int) -> WorkingHoursPolicy:
    return WorkingHoursPolicy.from_row(get_working_hours(session, owner_id))


def update_working_hours(session: Session, owner_id: int, changes: dict[str, str]) -> WorkingHours:
    normalized = {key: validate_hours_value(key, value) for key, value in changes.items()}
    row = get_working_hours(session, owner_id)

    candidate = WorkingHours(
        owner_id=owner_id,
        active_days=normalized.get("active_days", row.active_days),
        start_time=normalized.get("start_time", row.start_time),
        end_time=normalized.get("end_time", row.end_time),
        break_start=normalized["break_start"] if "break_start" in normalized else row.break_start,
        break_end=normalized["break_end"] if "break_end" in normalized else row.break_end,
        timezone=normalized.get("timezone", row.timezone),
    )
    # Raises ValueError when the combined settings break a policy invariant.
    WorkingHoursPolicy.from_row(candidate)

    row.active_days = candidate.active_days
    row.start_time = candidate.start_time
    row.end_time = candidate.end_time
    row.break_start = candidate.break_start
    row.break_end = candidate.break_end
    row.timezone = candidate.timezone
    row.updated_at = datetime.now(timezone.utc).isoformat()
    session.add(row)
    session.commit()
    session.refresh(row)
    return row
