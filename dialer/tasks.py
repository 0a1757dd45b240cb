import logging

from django.utils import timezone

from CELERY_INIT import app
from call_orchestrator.constants import ALLOCATION_SERVER_CAP
from call_orchestrator.exceptions import InvariantViolation, RunAborted
from runs.models import Run
from runs.utils import finish_run, start_run
from .models import Agent
from .utils import RedisCursorStore, allocate_tasks, is_all_languages, normalize_language, reallocate_agent_tasks

logger = logging.getLogger(__name__)


# ============================================================================
# ALLOCATION JOBS - CELERY ENTRY POINTS
# ============================================================================

@app.task(bind=True)
def run_allocation_job(self, run_id):
    try:
        run = Run.objects.get(pk=run_id)
        filters = run.filters or {}

        logger.info(f"=== ALLOCATION RUN START === run {run_id} filters={filters}")
        summary = allocate_tasks(
            language=filters.get('language'),
            count=filters.get('count'),
            date_from=filters.get('date_from'),
            date_to=filters.get('date_to'),
            bu=filters.get('bu'),
            state=filters.get('state'),
            team_lead_id=filters.get('team_lead_id'),
            cursor_store=RedisCursorStore(),
            run_id=run_id,
        )
        finish_run(run_id, Run.Status.COMPLETED)

        logger.info(f"=== ALLOCATION RUN COMPLETE === run {run_id}: {summary}")
        return {'status': 'completed', 'run_id': run_id, **summary}

    except RunAborted as exc:
        logger.warning(f"Allocation run {run_id} stopped: {exc}")
        return {'status': 'aborted', 'run_id': run_id, 'run_status': exc.status}

    except Exception as exc:
        logger.exception(f"Allocation run {run_id} crashed: {exc}")
        finish_run(run_id, Run.Status.FAILED, error=str(exc))
        return {
            'status': 'error',
            'run_id': run_id,
            'error': str(exc),
            'timestamp': timezone.now().isoformat()
        }


@app.task(bind=True)
def run_reallocation_job(self, run_id):
    try:
        run = Run.objects.get(pk=run_id)
        agent_id = run.filters['agent_id']

        logger.info(f"=== REALLOCATION RUN START === run {run_id} agent {agent_id}")
        summary = reallocate_agent_tasks(agent_id, cursor_store=RedisCursorStore(), run_id=run_id)
        finish_run(run_id, Run.Status.COMPLETED)

        logger.info(f"=== REALLOCATION RUN COMPLETE === run {run_id}: {summary}")
        return {'status': 'completed', 'run_id': run_id, **summary}

    except RunAborted as exc:
        logger.warning(f"Reallocation run {run_id} stopped: {exc}")
        return {'status': 'aborted', 'run_id': run_id, 'run_status': exc.status}

    except Exception as exc:
        logger.exception(f"Reallocation run {run_id} crashed: {exc}")
        finish_run(run_id, Run.Status.FAILED, error=str(exc))
        return {
            'status': 'error',
            'run_id': run_id,
            'error': str(exc),
            'timestamp': timezone.now().isoformat()
        }


# ============================================================================
# TRIGGERS
# ============================================================================

def _dispatch(job, run):
    try:
        job.delay(run.id)
    except Exception as exc:
        logger.exception(f"Could not dispatch allocation run {run.id}")
        run = finish_run(run.id, Run.Status.FAILED, error=f"Could not dispatch allocation job: {exc}")
    return run


def trigger_allocation(language=None, count=None, date_from=None, date_to=None, bu=None, state=None,
                       team_lead_id=None, created_by=''):
    if count is not None and (count < 1 or count > ALLOCATION_SERVER_CAP):
        raise InvariantViolation(f"count must be between 1 and {ALLOCATION_SERVER_CAP}")
    if date_from and date_to and date_from > date_to:
        raise InvariantViolation("date_from is after date_to")

    filters = {
        'language': 'all' if is_all_languages(language) else normalize_language(language),
        'count': count,
        'date_from': date_from.isoformat() if date_from else None,
        'date_to': date_to.isoformat() if date_to else None,
        'bu': bu,
        'state': state,
        'team_lead_id': team_lead_id,
    }
    run = start_run(Run.Kind.ALLOCATION, Run.RunType.ALLOCATE, filters=filters, created_by=created_by)
    return _dispatch(run_allocation_job, run)


def trigger_reallocation(agent_id, created_by=''):
    """Raises Agent.DoesNotExist before any run is created."""
    agent = Agent.objects.get(pk=agent_id)
    run = start_run(
        Run.Kind.ALLOCATION,
        Run.RunType.REALLOCATE,
        filters={'agent_id': agent.pk},
        created_by=created_by,
    )
    return _dispatch(run_reallocation_job, run)
