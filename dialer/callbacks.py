"""
Callback scheduler and call outcome intake.

A finished task (completed or not_reachable) can spawn one follow-up task
with callback_number + 1. The chain stops at MAX_CALLBACKS.
"""

import logging
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from call_orchestrator.constants import AUTO_CALLBACK_STATUSES, CALLBACK_PARENT_STATUSES, MAX_CALLBACKS
from call_orchestrator.exceptions import InvariantViolation
from sampling.models import SamplingConfig
from .models import Agent, CallLog, CallTask, TaskStatus

logger = logging.getLogger(__name__)

OUTCOME_STATUSES = (
    TaskStatus.IN_PROGRESS,
    TaskStatus.COMPLETED,
    TaskStatus.NOT_REACHABLE,
    TaskStatus.INVALID_NUMBER,
)
OPEN_STATUSES = (TaskStatus.SAMPLED_IN_QUEUE, TaskStatus.IN_PROGRESS)


# ============================================================================
# CANDIDATES
# ============================================================================

def list_callback_candidates(date_from=None, date_to=None, outcome=None, call_type=None, agent_id=None):
    """
    Finished tasks that may still get a callback.

    call_type is 'original' or 'callback'; outcome narrows to one parent status.
    """
    queryset = CallTask.objects.filter(
        status__in=CALLBACK_PARENT_STATUSES,
        callback_number__lt=MAX_CALLBACKS,
        callback_task__isnull=True,
    ).select_related('farmer', 'activity', 'assigned_agent')

    if outcome:
        if outcome not in CALLBACK_PARENT_STATUSES:
            raise InvariantViolation(f"Outcome {outcome!r} cannot have callbacks")
        queryset = queryset.filter(status=outcome)
    if call_type == 'original':
        queryset = queryset.filter(is_callback=False)
    elif call_type == 'callback':
        queryset = queryset.filter(is_callback=True)
    elif call_type:
        raise InvariantViolation(f"Unknown call type {call_type!r}")
    if date_from:
        queryset = queryset.filter(outcome_at__date__gte=date_from)
    if date_to:
        queryset = queryset.filter(outcome_at__date__lte=date_to)
    if agent_id:
        queryset = queryset.filter(assigned_agent_id=agent_id)

    return queryset.order_by('outcome_at', 'id')


# ============================================================================
# CREATION
# ============================================================================

def create_callback(parent, now=None, due_in_days=0):
    """
    Create the follow-up task for `parent`. Returns (task, created).

    A parent that already has a callback returns it with created=False.
    """
    now = now or timezone.now()

    if parent.status not in CALLBACK_PARENT_STATUSES:
        raise InvariantViolation(f"Task {parent.pk} is {parent.status}; callbacks need {' or '.join(CALLBACK_PARENT_STATUSES)}")
    if parent.callback_number >= MAX_CALLBACKS:
        logger.error(f"Rejected callback for task {parent.pk}: already at callback {parent.callback_number}")
        raise InvariantViolation(f"Task {parent.pk} has reached the callback limit of {MAX_CALLBACKS}")

    existing = CallTask.objects.filter(parent_task=parent).first()
    if existing is not None:
        return existing, False

    callback = CallTask(
        farmer_id=parent.farmer_id,
        activity_id=parent.activity_id,
        status=TaskStatus.UNASSIGNED,
        scheduled_date=now + timedelta(days=due_in_days),
        is_callback=True,
        callback_number=parent.callback_number + 1,
        parent_task=parent,
    )
    callback.add_interaction(TaskStatus.UNASSIGNED, f"Callback {callback.callback_number} for task {parent.pk}", at=now)

    try:
        with transaction.atomic():
            callback.save()
    except IntegrityError:
        # another request created it first
        return CallTask.objects.get(parent_task=parent), False

    logger.info(f"Created callback task {callback.pk} (#{callback.callback_number}) for task {parent.pk}")
    return callback, True


def create_callbacks(task_ids, now=None):
    """Create callbacks for a batch of parents, reporting each id's fate."""
    now = now or timezone.now()
    due_in_days = SamplingConfig.get_active().task_due_in_days
    result = {'created': [], 'already_exists': [], 'rejected': [], 'not_found': []}

    parents = CallTask.objects.in_bulk(task_ids)
    for task_id in task_ids:
        parent = parents.get(task_id)
        if parent is None:
            result['not_found'].append(task_id)
            continue
        try:
            callback, created = create_callback(parent, now=now, due_in_days=due_in_days)
        except InvariantViolation as exc:
            result['rejected'].append({'task_id': task_id, 'error': str(exc)})
            continue
        key = 'created' if created else 'already_exists'
        result[key].append({'task_id': task_id, 'callback_task_id': callback.pk})

    logger.info(
        f"Callbacks: {len(result['created'])} created, {len(result['already_exists'])} existing, "
        f"{len(result['rejected'])} rejected, {len(result['not_found'])} not found"
    )
    return result


def callback_history(task):
    """The whole chain `task` belongs to, original task first."""
    root = task
    while root.parent_task_id is not None:
        root = CallTask.objects.get(pk=root.parent_task_id)

    chain = [root]
    current = root
    while True:
        child = CallTask.objects.filter(parent_task=current).first()
        if child is None:
            return chain
        chain.append(child)
        current = child


# ============================================================================
# OUTCOME INTAKE
# ============================================================================

def apply_call_outcome(task_id, status, call_status=None, agent_id=None, duration_seconds=0, notes='', now=None):
    """
    Record what happened on a call and move the task on.

    A not_reachable outcome schedules the next callback automatically while
    the chain is under MAX_CALLBACKS. Returns (task, callback or None).
    """
    if status not in OUTCOME_STATUSES:
        raise InvariantViolation(f"Unknown task outcome {status!r}")
    if call_status and call_status not in CallLog.CallStatus.values:
        raise InvariantViolation(f"Unknown call status {call_status!r}")

    now = now or timezone.now()

    with transaction.atomic():
        task = CallTask.objects.select_for_update().get(pk=task_id)
        if task.status not in OPEN_STATUSES:
            raise InvariantViolation(f"Task {task.pk} is {task.status} and cannot take an outcome")

        if agent_id is not None:
            agent = Agent.objects.get(pk=agent_id)
        else:
            agent = task.assigned_agent

        if call_status:
            CallLog.objects.create(
                task=task,
                agent=agent,
                call_status=call_status,
                duration_seconds=duration_seconds or 0,
                notes=notes or '',
            )

        if status == TaskStatus.IN_PROGRESS:
            task.call_started_at = now
        else:
            task.call_started_at = task.call_started_at or now
            task.outcome_at = now

        task.status = status
        task.add_interaction(status, notes or '', at=now)
        task.save(update_fields=['status', 'call_started_at', 'outcome_at', 'interaction_history', 'updated_at'])

        callback = None
        if status in AUTO_CALLBACK_STATUSES and task.callback_number < MAX_CALLBACKS:
            due_in_days = SamplingConfig.get_active().task_due_in_days
            callback, _ = create_callback(task, now=now, due_in_days=due_in_days)

    logger.info(f"Task {task.pk} -> {status}" + (f", callback task {callback.pk} scheduled" if callback else ''))
    return task, callback
