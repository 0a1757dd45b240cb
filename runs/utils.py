"""
Run tracker.

start_run / set_matched / advance_run / record_run_error / finish_run write
progress for a job; latest_run is the polling read. A single-flight rule is
enforced per run kind: a Redis lock serialises concurrent starts and a partial
unique constraint backs it up in the database.
"""

import logging
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from call_orchestrator.constants import MAX_STORED_RUN_ERRORS, RUN_STALE_AFTER_SECONDS
from call_orchestrator.exceptions import AlreadyRunning, InvariantViolation, RunAborted
from call_orchestrator.redis import LOCK_TIMEOUTS, RUN_START_LOCK_REDIS_KEY, SLEEP, conn
from .models import Run

logger = logging.getLogger(__name__)

COUNTER_FIELDS = (
    'tasks_created',
    'sampled_activities',
    'inactive_activities',
    'allocated',
    'skipped',
    'error_count',
)


# ============================================================================
# START / FINISH
# ============================================================================

def start_run(kind, run_type, filters=None, created_by=''):
    """
    Create a `running` Run for `kind`.

    Raises AlreadyRunning, without writing anything, when another run of the
    same kind has not reached a terminal state.
    """
    lock_key = f"{RUN_START_LOCK_REDIS_KEY}{kind}"
    start_lock = conn.lock(lock_key, timeout=LOCK_TIMEOUTS, sleep=SLEEP)

    try:
        if not start_lock.acquire(blocking_timeout=LOCK_TIMEOUTS):
            logger.warning(f"Could not acquire start lock for {kind} run - another start in flight")
            raise AlreadyRunning(kind)

        expire_stale_runs(kind)

        current = Run.objects.filter(kind=kind, status=Run.Status.RUNNING).first()
        if current is not None:
            raise AlreadyRunning(kind, run_id=current.id)

        try:
            with transaction.atomic():
                run = Run.objects.create(
                    kind=kind,
                    run_type=run_type,
                    filters=filters or {},
                    created_by=created_by or '',
                    last_progress_at=timezone.now(),
                )
        except IntegrityError as exc:
            raise AlreadyRunning(kind) from exc

        logger.info(f"Started {kind} run {run.id} ({run_type})")
        return run

    finally:
        if start_lock.owned():
            start_lock.release()


def finish_run(run_id, status, error=None):
    if status not in Run.TERMINAL_STATUSES:
        raise InvariantViolation(f"finish_run needs a terminal status, got {status!r}")

    if error:
        record_run_error(run_id, error)

    now = timezone.now()
    updated = Run.objects.filter(pk=run_id, status=Run.Status.RUNNING).update(
        status=status,
        finished_at=now,
        last_progress_at=now,
    )
    if not updated:
        logger.warning(f"Run {run_id} was already terminal, finish({status}) ignored")
    else:
        logger.info(f"Run {run_id} finished: {status}")
    return Run.objects.get(pk=run_id)


# ============================================================================
# PROGRESS
# ============================================================================

def set_matched(run_id, matched):
    run = Run.objects.get(pk=run_id)
    if matched < run.processed:
        raise InvariantViolation(
            f"Run {run_id}: matched={matched} is below processed={run.processed}"
        )
    Run.objects.filter(pk=run_id).update(matched=matched, last_progress_at=timezone.now())


def advance_run(run_id, processed_delta=0, counters=None, skipped_by_language=None):
    """
    Add `processed_delta` and counter deltas to a running Run.

    Progress only moves forward and never past `matched`.
    """
    counters = counters or {}
    if processed_delta < 0 or any(value < 0 for value in counters.values()):
        raise InvariantViolation(f"Run {run_id}: progress deltas must be non-negative")

    unknown = set(counters) - set(COUNTER_FIELDS)
    if unknown:
        raise InvariantViolation(f"Run {run_id}: unknown counters {sorted(unknown)}")

    run = Run.objects.get(pk=run_id)
    if run.processed + processed_delta > run.matched:
        raise InvariantViolation(
            f"Run {run_id}: processed would exceed matched "
            f"({run.processed} + {processed_delta} > {run.matched})"
        )

    update = {
        'processed': F('processed') + processed_delta,
        'last_progress_at': timezone.now(),
    }
    for field, value in counters.items():
        update[field] = F(field) + value

    if skipped_by_language:
        merged = dict(run.skipped_by_language or {})
        for language, count in skipped_by_language.items():
            merged[language] = merged.get(language, 0) + count
        update['skipped_by_language'] = merged

    Run.objects.filter(pk=run_id, status=Run.Status.RUNNING).update(**update)


def heartbeat_run(run_id):
    """
    Refresh `last_progress_at` of a running Run.

    Returns False when the Run is no longer running, in which case its job
    must stop writing.
    """
    updated = Run.objects.filter(pk=run_id, status=Run.Status.RUNNING).update(last_progress_at=timezone.now())
    return updated == 1


def ensure_running(run_id):
    """heartbeat_run that raises RunAborted instead of returning False."""
    if not heartbeat_run(run_id):
        status = Run.objects.filter(pk=run_id).values_list('status', flat=True).first()
        raise RunAborted(run_id, status)


def record_run_error(run_id, message):
    run = Run.objects.get(pk=run_id)
    messages = list(run.error_messages or [])
    messages.append(str(message))
    Run.objects.filter(pk=run_id).update(
        error_count=F('error_count') + 1,
        error_messages=messages[-MAX_STORED_RUN_ERRORS:],
        last_progress_at=timezone.now(),
    )


# ============================================================================
# POLLING
# ============================================================================

def expire_stale_runs(kind, now=None):
    """Mark `running` runs with no progress for RUN_STALE_AFTER_SECONDS as failed."""
    now = now or timezone.now()
    cutoff = now - timedelta(seconds=RUN_STALE_AFTER_SECONDS)
    stale_ids = list(
        Run.objects.filter(
            kind=kind,
            status=Run.Status.RUNNING,
            last_progress_at__lt=cutoff,
        ).values_list('id', flat=True)
    )
    for run_id in stale_ids:
        logger.warning(f"Run {run_id} has made no progress since before {cutoff.isoformat()}, marking failed")
        finish_run(run_id, Run.Status.FAILED, error='Run went stale (no progress) and was marked failed')
    return len(stale_ids)


def latest_run(kind, now=None):
    expire_stale_runs(kind, now=now)
    return Run.objects.filter(kind=kind).order_by('-started_at', '-id').first()


def serialize_run(run):
    """Convert run to JSON dict."""
    if run is None:
        return None
    return {
        'id': run.id,
        'kind': run.kind,
        'run_type': run.run_type,
        'status': run.status,
        'filters': run.filters,
        'created_by': run.created_by,
        'matched': run.matched,
        'processed': run.processed,
        'tasks_created': run.tasks_created,
        'sampled_activities': run.sampled_activities,
        'inactive_activities': run.inactive_activities,
        'allocated': run.allocated,
        'skipped': run.skipped,
        'skipped_by_language': run.skipped_by_language,
        'error_count': run.error_count,
        'error_messages': run.error_messages,
        'started_at': run.started_at.isoformat() if run.started_at else None,
        'finished_at': run.finished_at.isoformat() if run.finished_at else None,
        'last_progress_at': run.last_progress_at.isoformat() if run.last_progress_at else None,
    }
