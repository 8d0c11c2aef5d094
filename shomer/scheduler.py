"""
shomer/scheduler.py
Periodic and manual scan triggers.

The orchestrator does not lock itself. Both triggers here refuse to start
a scan for an account that already has a `running` ScanRun, and ScanGuard
closes the race between two triggers inside one process.

Free plans are manual-only and are never picked up by the scheduler.
"""

import logging
import threading
import time
from typing import List, Optional, Set

from shomer.errors import AccountNotFound, ScanAlreadyRunning
from shomer.models.record import ScanResult, SubjectProfile
from shomer.plans import scan_interval_seconds

logger = logging.getLogger(__name__)

POLL_INTERVAL_SEC = 60 * 60


class ScanGuard:
    """In-process set of accounts with a scan in flight."""

    def __init__(self):
        self._lock   = threading.Lock()
        self._active: Set[str] = set()

    def acquire(self, account_id: str) -> bool:
        with self._lock:
            if account_id in self._active:
                return False
            self._active.add(account_id)
            return True

    def release(self, account_id: str) -> None:
        with self._lock:
            self._active.discard(account_id)


_default_guard = ScanGuard()


def is_due(store, subject: SubjectProfile, now: float) -> bool:
    interval = scan_interval_seconds(subject.plan)
    if interval is None:
        return False
    if store.running_scan(subject.account_id) is not None:
        return False
    history = store.scan_history(subject.account_id, limit=1)
    if not history:
        return True
    return now - history[0].started_at >= interval


def due_accounts(store, now: Optional[float] = None) -> List[SubjectProfile]:
    now = now if now is not None else time.time()
    return [s for s in store.list_accounts() if s is not None and is_due(store, s, now)]


def trigger_scan(store, orchestrator, account_id: str, guard: Optional[ScanGuard] = None) -> ScanResult:
    """
    Manual trigger. Raises AccountNotFound for an unknown account and
    ScanAlreadyRunning when a run is already in flight.
    """
    guard = guard or _default_guard
    if store.get_account(account_id) is None:
        raise AccountNotFound(account_id)
    running = store.running_scan(account_id)
    if running is not None:
        raise ScanAlreadyRunning(account_id, running.id)
    if not guard.acquire(account_id):
        raise ScanAlreadyRunning(account_id, -1)
    try:
        return orchestrator.run_scan(account_id)
    finally:
        guard.release(account_id)


def run_due_scans(
    store,
    orchestrator,
    now:   Optional[float]      = None,
    guard: Optional[ScanGuard]  = None,
) -> List[ScanResult]:
    """One pass over all due accounts. One account failing never stops the others."""
    results = []
    due = due_accounts(store, now)
    if due:
        logger.info(f"Scheduler: {len(due)} account(s) due")
    for subject in due:
        try:
            results.append(trigger_scan(store, orchestrator, subject.account_id, guard))
        except ScanAlreadyRunning:
            logger.info(f"Scheduler: {subject.account_id} already scanning — skipped")
        except Exception as e:
            logger.error(f"Scheduler: scan of {subject.account_id} failed: {type(e).__name__}")
    return results


def run_forever(
    store,
    orchestrator,
    poll_interval_sec: int                       = POLL_INTERVAL_SEC,
    stop:              Optional[threading.Event] = None,
) -> None:
    stop = stop or threading.Event()
    logger.info(f"Scheduler started (poll every {poll_interval_sec}s)")
    while not stop.is_set():
        run_due_scans(store, orchestrator)
        stop.wait(poll_interval_sec)
    logger.info("Scheduler stopped")
