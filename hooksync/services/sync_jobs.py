"""Entry points for whatever background worker schedules sync runs.

The worker owns queueing; these functions only need a way to look up a
target's replicator and a way to enqueue a follow-up run. Manual sync
requests wait in a ``SyncSchedule`` until they come due.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from hooksync.config import settings
from hooksync.models.sync_target import SyncTarget
from hooksync.services.replicator import Replicator
from hooksync.services.sync_target_service import (
    SyncResult,
    SyncStatus,
    SyncTargetService,
    continuation_deadline,
)

logger = logging.getLogger(__name__)

Enqueue = Callable[[int], None]
ScheduleAt = Callable[[int, datetime], None]


def run_sync_job(
    service: SyncTargetService,
    db: Session,
    target_id: int,
    replicators: Mapping[str, Replicator],
    enqueue: Enqueue,
    now: Optional[datetime] = None,
) -> Optional[SyncResult]:
    """Run one sync inside a time-boxed job.

    The run gets a deadline of ``sync_max_transaction_seconds`` from when it
    starts. If it stops early to respect it, ``enqueue(target_id)`` schedules
    the continuation.

    Args:
        service: Sync target service.
        db: Database session.
        target_id: ID of the sync target.
        replicators: Replicators keyed by integration ID.
        enqueue: Schedules another run of a target.
        now: Upper bound of the sync window (defaults to the service clock).

    Returns:
        The run's result, or None if the target no longer exists.

    Raises:
        KeyError: If no replicator is registered for the target's integration.
    """
    target = db.query(SyncTarget).filter(SyncTarget.id == target_id).first()
    if target is None:
        logger.info(f"Sync target {target_id} no longer exists, nothing to run")
        return None
    replicator = replicators[target.integration_id]
    started_at = service.clock()
    result = service.run_sync(db, target, replicator, now=now, deadline=continuation_deadline(started_at))
    if result.status == SyncStatus.CONTINUE:
        logger.info(f"Sync target {target_id} ran out of time, enqueueing a continuation")
        enqueue(target_id)
    return result


def run_due_syncs(
    service: SyncTargetService,
    db: Session,
    replicators: Mapping[str, Replicator],
    enqueue: Enqueue,
    now: Optional[datetime] = None,
) -> List[SyncResult]:
    """Run every target that is due as of ``now``, one after another."""
    now = now or service.clock()
    due = service.due_for_sync(db, now)
    logger.info(f"{len(due)} sync targets are due")
    results = []
    for target in due:
        if target.integration_id not in replicators:
            logger.warning(f"No replicator for integration {target.integration_id}, skipping {target.opaque_id}")
            continue
        result = run_sync_job(service, db, target.id, replicators, enqueue, now=now)
        if result is not None:
            results.append(result)
    return results


class SyncSchedule:
    """Manually requested sync runs, each due at a given time.

    The API records requests here; the worker drains the due ones with
    ``run_requested_syncs``. Requesting a target that is already pending
    keeps the earlier time.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[int, datetime] = {}

    def __call__(self, target_id: int, run_at: datetime) -> None:
        with self._lock:
            current = self._pending.get(target_id)
            if current is None or run_at < current:
                self._pending[target_id] = run_at

    def pending(self) -> Dict[int, datetime]:
        with self._lock:
            return dict(self._pending)

    def pop_due(self, now: datetime) -> List[int]:
        """Remove and return the targets due at ``now``, earliest first."""
        with self._lock:
            due = sorted((run_at, target_id) for target_id, run_at in self._pending.items() if run_at <= now)
            for _, target_id in due:
                del self._pending[target_id]
        return [target_id for _, target_id in due]


def request_sync(target: SyncTarget, schedule: ScheduleAt, now: Optional[datetime] = None) -> datetime:
    """Schedule a manual run at the earliest time the minimum period allows.

    Returns:
        When the run was scheduled for.
    """
    now = now or datetime.utcnow()
    run_at = target.next_possible_sync(now, settings.sync_min_period_seconds)
    schedule(target.id, run_at)
    logger.info(f"Sync for target {target.opaque_id} scheduled at {run_at.isoformat()}")
    return run_at


def run_requested_syncs(
    service: SyncTargetService,
    db: Session,
    schedule: SyncSchedule,
    replicators: Mapping[str, Replicator],
    enqueue: Enqueue,
    now: Optional[datetime] = None,
) -> List[SyncResult]:
    """Run every manually requested sync that has come due."""
    now = now or service.clock()
    results = []
    for target_id in schedule.pop_due(now):
        result = run_sync_job(service, db, target_id, replicators, enqueue, now=now)
        if result is not None:
            results.append(result)
    return results
