"""
Activity lifecycle manager.

    active       -> sampled | inactive | not_eligible
    inactive     -> sampled (ad-hoc) | not_eligible | active (reactivation)
    sampled      -> not_eligible | active (reactivation)
    not_eligible -> active (eligibility re-included, or reactivation)

Anything else raises InvariantViolation.
"""

import logging

from django.db import transaction
from django.utils import timezone

from call_orchestrator.constants import REACTIVATION_CONFIRM_TOKEN
from call_orchestrator.exceptions import ConfirmationRequired, InvariantViolation
from dialer.models import CallTask, TaskStatus
from .models import Activity, ActivityType, CoolingPeriod, LifecycleStatus, SamplingAudit, SamplingConfig

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    LifecycleStatus.ACTIVE: {LifecycleStatus.SAMPLED, LifecycleStatus.INACTIVE, LifecycleStatus.NOT_ELIGIBLE},
    LifecycleStatus.INACTIVE: {LifecycleStatus.SAMPLED, LifecycleStatus.NOT_ELIGIBLE, LifecycleStatus.ACTIVE},
    LifecycleStatus.SAMPLED: {LifecycleStatus.NOT_ELIGIBLE, LifecycleStatus.ACTIVE},
    LifecycleStatus.NOT_ELIGIBLE: {LifecycleStatus.ACTIVE},
}

REACTIVATABLE_STATUSES = (
    LifecycleStatus.INACTIVE,
    LifecycleStatus.NOT_ELIGIBLE,
    LifecycleStatus.SAMPLED,
)

# Tasks nobody has dialled yet. Anything further along keeps its history.
DELETABLE_TASK_STATUSES = (TaskStatus.UNASSIGNED, TaskStatus.SAMPLED_IN_QUEUE)


def can_transition(from_status, to_status):
    if from_status == to_status:
        return True
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


def transition_lifecycle(activity, to_status, now=None, save=True):
    """
    Move `activity` to `to_status`. Returns False for a same-status no-op.
    """
    from_status = activity.lifecycle_status
    if from_status == to_status:
        return False

    if not can_transition(from_status, to_status):
        logger.error(f"Rejected lifecycle transition for activity {activity.activity_id}: {from_status} -> {to_status}")
        raise InvariantViolation(
            f"Activity {activity.activity_id} cannot move from {from_status} to {to_status}"
        )

    activity.lifecycle_status = to_status
    activity.lifecycle_updated_at = now or timezone.now()
    if save:
        activity.save(update_fields=['lifecycle_status', 'lifecycle_updated_at', 'updated_at'])
    return True


# ============================================================================
# ELIGIBILITY
# ============================================================================

def apply_eligibility(eligible_types, updated_by='', now=None):
    """
    Persist the eligible activity types and move activities accordingly.

    Activities of an excluded type become not_eligible whatever their status;
    not_eligible activities whose type is included again go back to active.
    An empty list makes every type eligible.
    """
    unknown = sorted(set(eligible_types) - set(ActivityType.values))
    if unknown:
        raise InvariantViolation(f"Unknown activity types: {', '.join(unknown)}")

    now = now or timezone.now()

    with transaction.atomic():
        config = SamplingConfig.get_active()
        config.eligible_activity_types = list(dict.fromkeys(eligible_types))
        config.updated_by = updated_by or config.updated_by
        config.save()

        excluded_types = [t for t in ActivityType.values if not config.is_type_eligible(t)]

        marked_not_eligible = (
            Activity.objects
            .filter(type__in=excluded_types)
            .exclude(lifecycle_status=LifecycleStatus.NOT_ELIGIBLE)
            .update(lifecycle_status=LifecycleStatus.NOT_ELIGIBLE, lifecycle_updated_at=now, updated_at=now)
        )
        reactivated = (
            Activity.objects
            .filter(lifecycle_status=LifecycleStatus.NOT_ELIGIBLE)
            .exclude(type__in=excluded_types)
            .update(lifecycle_status=LifecycleStatus.ACTIVE, lifecycle_updated_at=now, updated_at=now)
        )

    logger.info(
        f"Eligibility applied ({config.eligible_activity_types or 'all types'}): "
        f"{marked_not_eligible} not eligible, {reactivated} back to active"
    )
    return {
        'eligible_activity_types': config.eligible_activity_types,
        'excluded_activity_types': excluded_types,
        'marked_not_eligible': marked_not_eligible,
        'reactivated': reactivated,
    }


# ============================================================================
# REACTIVATION
# ============================================================================

def _reactivation_queryset(from_status, date_from, date_to, activity_ids=None):
    if from_status not in REACTIVATABLE_STATUSES:
        raise InvariantViolation(
            f"Cannot reactivate from {from_status!r}; expected one of {', '.join(REACTIVATABLE_STATUSES)}"
        )
    if not date_from or not date_to:
        raise InvariantViolation("Reactivation needs date_from and date_to")
    if date_from > date_to:
        raise InvariantViolation("date_from is after date_to")

    queryset = Activity.objects.filter(
        lifecycle_status=from_status,
        date__gte=date_from,
        date__lte=date_to,
    )
    if activity_ids:
        queryset = queryset.filter(activity_id__in=activity_ids)
    return queryset


def _deletable_tasks(activity_pks):
    # No CallLog means no call attempt was ever recorded on the task.
    return CallTask.objects.filter(
        activity_id__in=activity_pks,
        status__in=DELETABLE_TASK_STATUSES,
        call_logs__isnull=True,
    )


def reactivate_preview(from_status, date_from, date_to, activity_ids=None):
    activity_pks = list(
        _reactivation_queryset(from_status, date_from, date_to, activity_ids).values_list('pk', flat=True)
    )
    total_tasks = CallTask.objects.filter(activity_id__in=activity_pks).count()
    deletable = _deletable_tasks(activity_pks).count()
    return {
        'matched_activities': len(activity_pks),
        'deletable_tasks': deletable,
        'kept_tasks': total_tasks - deletable,
    }


def reactivate(from_status, date_from, date_to, confirm, activity_ids=None,
               delete_tasks=False, delete_audit=False, now=None):
    """
    Move matching activities back to active.

    `delete_tasks` removes their tasks that were never dialled. `delete_audit`
    clears their sampling audits and activity cooling entries; farmer cooling
    is never cleared here.
    """
    if confirm != REACTIVATION_CONFIRM_TOKEN:
        raise ConfirmationRequired(f"Reactivation requires confirm={REACTIVATION_CONFIRM_TOKEN!r}")

    now = now or timezone.now()

    with transaction.atomic():
        activity_pks = list(
            _reactivation_queryset(from_status, date_from, date_to, activity_ids)
            .select_for_update()
            .values_list('pk', flat=True)
        )

        deleted_tasks = 0
        if delete_tasks and activity_pks:
            deletable_ids = list(_deletable_tasks(activity_pks).values_list('pk', flat=True))
            deleted_tasks = len(deletable_ids)
            CallTask.objects.filter(pk__in=deletable_ids).delete()

        deleted_audits = 0
        cleared_cooling = 0
        if delete_audit and activity_pks:
            deleted_audits, _ = SamplingAudit.objects.filter(activity_id__in=activity_pks).delete()
            cleared_cooling, _ = CoolingPeriod.objects.filter(activity_id__in=activity_pks).delete()

        reactivated = Activity.objects.filter(pk__in=activity_pks).update(
            lifecycle_status=LifecycleStatus.ACTIVE,
            lifecycle_updated_at=now,
            updated_at=now,
        )

    logger.info(
        f"Reactivated {reactivated} {from_status} activities ({date_from} to {date_to}); "
        f"deleted {deleted_tasks} tasks, {deleted_audits} audits, {cleared_cooling} activity cooling entries"
    )
    return {
        'reactivated': reactivated,
        'deleted_tasks': deleted_tasks,
        'deleted_audits': deleted_audits,
        'cleared_activity_cooling': cleared_cooling,
    }
