from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
import logging
import time

from taskpilot.connectors.google_calendar import CalendarGatewayError
from taskpilot.orchestrator import ScheduleOutcome, ScheduleStatus

logger = logging.getLogger(__name__)

ReconcileOperation = Callable[[int], list[ScheduleOutcome]]
SleepFn = Callable[[float], None]


@dataclass(frozen=True)
class OwnerReconcileOutcome:
    owner_id: int
    success: bool
    attempts: int
    results: list[ScheduleOutcome] = field(default_factory=list)
    reason: str | None = None
    elapsed_sec: float = 0.0

    def count(self, status: ScheduleStatus) -> int:
        return sum(1 for result in self.results if result.status == status)


@dataclass(frozen=True)
class ReconcileSweepOutcome:
    owners: list[OwnerReconcileOutcome]
    elapsed_sec: float = 0.0

    @property
    def exit_code(self) -> int:
        if all(owner.success for owner in self.owners):
            return 0
        if any(owner.success for owner in self.owners):
            return 2
        return 1


def run_reconcile_sweep(
    *,
    owner_ids: Iterable[int],
    reconcile: ReconcileOperation,
    retries: int = 1,
    backoff_sec: int = 5,
    sleep_fn: SleepFn = time.sleep,
    parallel: bool = True,
    max_workers: int = 4,
) -> ReconcileSweepOutcome:
    """Retry deferred calendar syncs for many owners.

    One owner's failure never stops the sweep; it is reported per owner.
    """
    if retries < 0:
        raise ValueError("--retries must be >= 0.")
    if backoff_sec < 0:
        raise ValueError("--backoff-sec must be >= 0.")
    if max_workers < 1:
        raise ValueError("--workers must be >= 1.")

    owners = list(dict.fromkeys(owner_ids))
    started_at = time.perf_counter()
    if parallel and len(owners) > 1:
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="taskpilot-reconcile") as pool:
            futures = [
                pool.submit(
                    _run_owner,
                    owner_id=owner_id,
                    reconcile=reconcile,
                    retries=retries,
                    backoff_sec=backoff_sec,
                    sleep_fn=sleep_fn,
                )
                for owner_id in owners
            ]
            outcomes = [future.result() for future in futures]
    else:
        outcomes = [
            _run_owner(
                owner_id=owner_id,
                reconcile=reconcile,
                retries=retries,
                backoff_sec=backoff_sec,
                sleep_fn=sleep_fn,
            )
            for owner_id in owners
        ]
    return ReconcileSweepOutcome(owners=outcomes, elapsed_sec=time.perf_counter() - started_at)


def _run_owner(
    *,
    owner_id: int,
    reconcile: ReconcileOperation,
    retries: int,
    backoff_sec: int,
    sleep_fn: SleepFn,
) -> OwnerReconcileOutcome:
    started_at = time.perf_counter()
    last_error: Exception | None = None
    for attempt in range(retries + 1):
        try:
            results = reconcile(owner_id)
            return OwnerReconcileOutcome(
                owner_id=owner_id,
                success=True,
                attempts=attempt + 1,
                results=results,
                elapsed_sec=time.perf_counter() - started_at,
            )
        except Exception as exc:
            last_error = exc
            logger.warning(
                "reconcile_owner_attempt_failed owner_id=%s attempt=%s retries=%s error_type=%s",
                owner_id,
                attempt + 1,
                retries,
                exc.__class__.__name__,
            )
            if attempt == retries:
                break
            delay_sec = backoff_sec * (2**attempt)
            logger.info(
                "reconcile_owner_retrying owner_id=%s next_attempt=%s backoff_sec=%s",
                owner_id,
                attempt + 2,
                delay_sec,
            )
            sleep_fn(float(delay_sec))

    assert last_error is not None
    return OwnerReconcileOutcome(
        owner_id=owner_id,
        success=False,
        attempts=retries + 1,
        reason=_sanitize_reason(last_error),
        elapsed_sec=time.perf_counter() - started_at,
    )


def _sanitize_reason(error: Exception) -> str:
    if isinstance(error, CalendarGatewayError):
        return f"calendar provider unavailable ({error.kind})"
    if isinstance(error, ValueError):
        return "validation failed"
    return f"unexpected {error.__class__.__name__}"
