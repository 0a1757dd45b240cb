import logging
import random

from django.db import DatabaseError
from django.db.models import Max, Min
from django.utils import timezone
from django.utils.dateparse import parse_date

from CELERY_INIT import app
from call_orchestrator.constants import PROGRESS_FLUSH_EVERY, SAMPLING_RUN_MAX_ACTIVITIES
from call_orchestrator.exceptions import AlreadyRunning, ExternalSourceUnavailable, InvariantViolation
from runs.models import Run
from runs.utils import advance_run, finish_run, heartbeat_run, record_run_error, set_matched, start_run
from .models import Activity, LifecycleStatus, SamplingConfig
from .utils import FIRST_SAMPLE_RUN_TYPES, CoolingLedger, sample_activity

logger = logging.getLogger(__name__)

SAMPLING_RUN_TYPES = (Run.RunType.FIRST_SAMPLE, Run.RunType.ADHOC, Run.RunType.AUTO)
ADHOC_DEFAULT_STATUSES = (LifecycleStatus.ACTIVE, LifecycleStatus.SAMPLED, LifecycleStatus.INACTIVE)


# ============================================================================
# SAMPLING RUN - CELERY ENTRY POINT
# ============================================================================

@app.task(bind=True)
def run_sampling_job(self, run_id):
    try:
        return process_sampling_run(run_id)

    except Exception as exc:
        logger.exception(f"Sampling run {run_id} crashed: {exc}")
        finish_run(run_id, Run.Status.FAILED, error=str(exc))
        return {
            'status': 'error',
            'run_id': run_id,
            'error': str(exc),
            'timestamp': timezone.now().isoformat()
        }


def process_sampling_run(run_id, rng=None):
    """
    Sample every activity the run's filters match, one atomic unit per activity.

    A failing activity is logged and recorded on the run; the run goes on.
    The job stops as soon as its Run is no longer `running`. When more
    activities match than one run may take, the run's `date_to` is pulled
    back to the last activity it reached so the next first-sample run
    starts there.
    """
    run = Run.objects.get(pk=run_id)
    if not heartbeat_run(run_id):
        logger.warning(f"Sampling run {run_id} is {run.status}, job not started")
        return {'status': run.status, 'run_id': run_id, 'aborted': True}

    config = SamplingConfig.get_active()
    ledger = CoolingLedger(config)
    rng = rng or random.Random()
    filters = run.filters or {}
    percentage = filters.get('percentage')

    logger.info(f"=== SAMPLING RUN START === run {run_id} ({run.run_type}) filters={filters}")

    try:
        activity_pks = list(select_activities_for_run(run.run_type, filters)[:SAMPLING_RUN_MAX_ACTIVITIES + 1])
    except DatabaseError as exc:
        logger.exception(f"Could not read activities for sampling run {run_id}")
        error = ExternalSourceUnavailable(f"Activity source unavailable: {exc}")
        finish_run(run_id, Run.Status.FAILED, error=str(error))
        return {'status': 'failed', 'run_id': run_id, 'error': str(error)}

    truncated = len(activity_pks) > SAMPLING_RUN_MAX_ACTIVITIES
    if truncated:
        activity_pks = activity_pks[:SAMPLING_RUN_MAX_ACTIVITIES]
        logger.warning(
            f"Sampling run {run_id} matched more than {SAMPLING_RUN_MAX_ACTIVITIES} activities, "
            f"the rest is left for the next run"
        )

    set_matched(run_id, len(activity_pks))

    totals = {'tasks_created': 0, 'sampled_activities': 0, 'inactive_activities': 0}
    pending = dict(totals)
    pending_processed = 0
    last_date = None
    aborted = False

    for activity in Activity.objects.filter(pk__in=activity_pks).order_by('date', 'id'):
        if not heartbeat_run(run_id):
            logger.warning(f"Sampling run {run_id} is no longer running, stopping before {activity.activity_id}")
            aborted = True
            break

        try:
            result = sample_activity(
                activity,
                config,
                run.run_type,
                ledger,
                now=timezone.now(),
                rng=rng,
                percentage=percentage,
                run=run,
            )
            pending['tasks_created'] += result.tasks_created
            if result.outcome == 'sampled':
                pending['sampled_activities'] += 1
            elif result.outcome == 'inactive':
                pending['inactive_activities'] += 1

        except Exception as exc:
            logger.exception(f"Sampling failed for activity {activity.activity_id} in run {run_id}")
            record_run_error(run_id, f"Activity {activity.activity_id}: {exc}")

        last_date = activity.date
        pending_processed += 1
        if pending_processed >= PROGRESS_FLUSH_EVERY:
            advance_run(run_id, processed_delta=pending_processed, counters=pending)
            for key in totals:
                totals[key] += pending[key]
                pending[key] = 0
            pending_processed = 0

    advance_run(run_id, processed_delta=pending_processed, counters=pending)
    for key in totals:
        totals[key] += pending[key]

    if aborted:
        run = Run.objects.get(pk=run_id)
        logger.warning(f"=== SAMPLING RUN ABORTED === run {run_id} ({run.status}) after {run.processed} activities")
        return {'status': run.status, 'run_id': run_id, 'aborted': True, **totals}

    if truncated and last_date is not None:
        filters = dict(filters, date_to=last_date.isoformat(), requested_date_to=filters.get('date_to'))
        Run.objects.filter(pk=run_id).update(filters=filters)

    run = finish_run(run_id, Run.Status.COMPLETED)
    logger.info(
        f"=== SAMPLING RUN COMPLETE === run {run_id}: {run.processed}/{run.matched} activities, "
        f"{totals['tasks_created']} tasks, {totals['sampled_activities']} sampled, "
        f"{totals['inactive_activities']} inactive, {run.error_count} errors"
    )
    return {'status': run.status, 'run_id': run_id, **totals}


# ============================================================================
# ACTIVITY SELECTION
# ============================================================================

def select_activities_for_run(run_type, filters):
    """Primary keys of the activities a run of `run_type` should visit, oldest first."""
    queryset = Activity.objects.exclude(lifecycle_status=LifecycleStatus.NOT_ELIGIBLE)

    if run_type in FIRST_SAMPLE_RUN_TYPES:
        queryset = queryset.filter(lifecycle_status=LifecycleStatus.ACTIVE)
    else:
        statuses = [
            status for status in (filters.get('lifecycle_statuses') or ADHOC_DEFAULT_STATUSES)
            if status != LifecycleStatus.NOT_ELIGIBLE
        ]
        queryset = queryset.filter(lifecycle_status__in=statuses)

    if filters.get('date_from'):
        queryset = queryset.filter(date__gte=filters['date_from'])
    if filters.get('date_to'):
        queryset = queryset.filter(date__lte=filters['date_to'])

    return queryset.order_by('date', 'id').values_list('pk', flat=True)


def resolve_first_sample_range(today=None):
    """
    (date_from, date_to) for the next first-sample run.

    The very first run spans the never-sampled active activities; later runs
    continue from the previous completed first-sample run's end date up to
    today. Returns (None, None) when there is nothing to sample.
    """
    today = today or timezone.localdate()

    previous = (
        Run.objects
        .filter(kind=Run.Kind.SAMPLING, run_type__in=FIRST_SAMPLE_RUN_TYPES, status=Run.Status.COMPLETED)
        .order_by('-started_at', '-id')
        .first()
    )
    if previous is not None and previous.filters.get('date_to'):
        return min(parse_date(previous.filters['date_to']), today), today

    bounds = Activity.objects.filter(
        lifecycle_status=LifecycleStatus.ACTIVE,
        first_sampled_at__isnull=True,
    ).aggregate(date_from=Min('date'), date_to=Max('date'))
    return bounds['date_from'], bounds['date_to']


# ============================================================================
# TRIGGERS
# ============================================================================

def trigger_sampling_run(run_type, date_from=None, date_to=None, lifecycle_statuses=None,
                         percentage=None, created_by=''):
    """
    Validate, create the Run and dispatch the Celery job.

    Raises AlreadyRunning when a sampling run is still in progress and
    InvariantViolation for bad input. Both happen before anything is written.
    """
    if run_type not in SAMPLING_RUN_TYPES:
        raise InvariantViolation(f"Unknown sampling run type {run_type!r}")
    if percentage is not None and not 1 <= percentage <= 100:
        raise InvariantViolation(f"Sampling percentage must be between 1 and 100, got {percentage}")

    if run_type == Run.RunType.ADHOC:
        if not date_from or not date_to:
            raise InvariantViolation("Ad-hoc sampling needs date_from and date_to")
        bad_statuses = set(lifecycle_statuses or []) - set(ADHOC_DEFAULT_STATUSES)
        if bad_statuses:
            raise InvariantViolation(f"Ad-hoc sampling cannot process {', '.join(sorted(bad_statuses))} activities")
    else:
        date_from, date_to = resolve_first_sample_range()

    if date_from and date_to and date_from > date_to:
        raise InvariantViolation("date_from is after date_to")

    filters = {
        'date_from': date_from.isoformat() if date_from else None,
        'date_to': date_to.isoformat() if date_to else None,
    }
    if lifecycle_statuses:
        filters['lifecycle_statuses'] = list(lifecycle_statuses)
    if percentage is not None:
        filters['percentage'] = percentage

    run = start_run(Run.Kind.SAMPLING, run_type, filters=filters, created_by=created_by)

    try:
        run_sampling_job.delay(run.id)
    except Exception as exc:
        logger.exception(f"Could not dispatch sampling run {run.id}")
        run = finish_run(run.id, Run.Status.FAILED, error=f"Could not dispatch sampling job: {exc}")

    return run


@app.task(bind=True)
def auto_run_sampling(self):
    """Hourly beat task: start a first-sample run when enough activities are waiting."""
    config = SamplingConfig.get_active()
    now = timezone.now()

    if not config.auto_run_enabled:
        return {'status': 'skipped', 'reason': 'disabled'}

    if config.auto_run_activate_from and now < config.auto_run_activate_from:
        return {'status': 'skipped', 'reason': 'not_active_yet'}

    waiting = Activity.objects.filter(
        lifecycle_status=LifecycleStatus.ACTIVE,
        first_sampled_at__isnull=True,
    ).count()
    if waiting < config.auto_run_threshold:
        logger.info(f"Auto run skipped: {waiting} activities waiting, threshold {config.auto_run_threshold}")
        return {'status': 'skipped', 'reason': 'below_threshold', 'waiting': waiting}

    try:
        run = trigger_sampling_run(Run.RunType.AUTO, created_by='auto-run')
    except AlreadyRunning as exc:
        logger.info(f"Auto run skipped: sampling run {exc.run_id} still in progress")
        return {'status': 'skipped', 'reason': 'already_running', 'run_id': exc.run_id}

    logger.info(f"Auto run started sampling run {run.id} for {waiting} waiting activities")
    return {'status': 'started', 'run_id': run.id, 'waiting': waiting}
