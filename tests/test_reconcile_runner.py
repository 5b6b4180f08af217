from __future__ import annotations

import threading
import time

import pytest

from taskpilot.connectors.google_calendar import CalendarErrorKind, CalendarGatewayError
from taskpilot.orchestrator import ScheduleOutcome, ScheduleStatus
from taskpilot.sync_runner import run_reconcile_sweep
from taskpilot.task_service import build_task


def _outcomes(*statuses: ScheduleStatus) -> list[ScheduleOutcome]:
    task = build_task(owner_id=1, title="Pending sync", required_min=30)
    return [ScheduleOutcome(status=status, task=task) for status in statuses]


def test_sweep_keeps_going_after_one_owner_fails_and_returns_exit_two() -> None:
    calls: list[int] = []

    def _reconcile(owner_id: int) -> list[ScheduleOutcome]:
        calls.append(owner_id)
        if owner_id == 1:
            raise CalendarGatewayError(CalendarErrorKind.TRANSIENT, "provider down token=abc123", status=503)
        return _outcomes(ScheduleStatus.SCHEDULED, ScheduleStatus.SYNC_DEFERRED)

    sweep = run_reconcile_sweep(
        owner_ids=[1, 2],
        reconcile=_reconcile,
        retries=0,
        sleep_fn=lambda _: None,
        parallel=False,
    )

    assert calls == [1, 2]
    failed, succeeded = sweep.owners
    assert failed.success is False
    assert failed.reason == "calendar provider unavailable (transient)"
    assert "abc123" not in failed.reason
    assert succeeded.count(ScheduleStatus.SCHEDULED) == 1
    assert succeeded.count(ScheduleStatus.SYNC_DEFERRED) == 1
    assert sweep.exit_code == 2


def test_sweep_all_owners_failing_returns_exit_one() -> None:
    def _reconcile(owner_id: int) -> list[ScheduleOutcome]:
        raise RuntimeError(f"owner {owner_id} broken")

    sweep = run_reconcile_sweep(owner_ids=[1, 2], reconcile=_reconcile, retries=0, parallel=False)

    assert [owner.reason for owner in sweep.owners] == ["unexpected RuntimeError"] * 2
    assert sweep.exit_code == 1


def test_sweep_retries_owner_with_exponential_backoff() -> None:
    attempts = {"count": 0}
    backoff_calls: list[float] = []

    def _flaky(owner_id: int) -> list[ScheduleOutcome]:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise RuntimeError("database busy")
        return _outcomes(ScheduleStatus.SCHEDULED)

    sweep = run_reconcile_sweep(
        owner_ids=[7],
        reconcile=_flaky,
        retries=2,
        backoff_sec=5,
        sleep_fn=backoff_calls.append,
        parallel=False,
    )

    assert sweep.exit_code == 0
    assert sweep.owners[0].attempts == 3
    assert backoff_calls == [5.0, 10.0]


def test_sweep_deduplicates_owner_ids() -> None:
    seen: list[int] = []

    def _reconcile(owner_id: int) -> list[ScheduleOutcome]:
        seen.append(owner_id)
        return []

    sweep = run_reconcile_sweep(owner_ids=[3, 3, 4], reconcile=_reconcile, parallel=False)

    assert seen == [3, 4]
    assert [owner.owner_id for owner in sweep.owners] == [3, 4]


def test_sweep_rejects_negative_retries() -> None:
    with pytest.raises(ValueError, match="retries"):
        run_reconcile_sweep(owner_ids=[1], reconcile=lambda owner_id: [], retries=-1)


def test_parallel_sweep_runs_owners_concurrently() -> None:
    threads: set[str] = set()
    lock = threading.Lock()

    def _slow(owner_id: int) -> list[ScheduleOutcome]:
        with lock:
            threads.add(threading.current_thread().name)
        time.sleep(0.2)
        return []

    start = time.perf_counter()
    sweep = run_reconcile_sweep(owner_ids=[1, 2], reconcile=_slow, parallel=True, max_workers=2)
    elapsed = time.perf_counter() - start

    assert sweep.exit_code == 0
    assert [owner.owner_id for owner in sweep.owners] == [1, 2]
    assert all(name.startswith("taskpilot-reconcile") for name in threads)
    # Sequential execution would be around 0.4s.
    assert elapsed < 0.35


def test_sweep_rejects_empty_worker_pool() -> None:
    with pytest.raises(ValueError, match="workers"):
        run_reconcile_sweep(owner_ids=[1], reconcile=lambda owner_id: [], max_workers=0)
