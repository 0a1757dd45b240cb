"""
Sampling engine: reservoir sampler, cooling ledger and task factory.

sample_activity() is the unit of work a sampling run executes per activity.
Everything it writes (tasks, cooling entries, lifecycle, audit) happens in one
transaction, so a failure leaves the activity as it was for the next run.
"""

import logging
import math
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from django.db import transaction
from django.utils import timezone

from call_orchestrator.constants import FARMER_PAGE_SIZE
from call_orchestrator.exceptions import NoEligibleFarmers
from dialer.models import CallTask, TaskStatus
from runs.models import Run
from .lifecycle import transition_lifecycle
from .models import Activity, CoolingPeriod, LifecycleStatus, SamplingAudit

logger = logging.getLogger(__name__)

ALGORITHM_NAME = 'Reservoir Sampling'
FIRST_SAMPLE_RUN_TYPES = (Run.RunType.FIRST_SAMPLE, Run.RunType.AUTO)


# ============================================================================
# RESERVOIR SAMPLER
# ============================================================================

def calculate_sample_size(total_farmers, percentage):
    """ceil(percentage% of the attendees), at least one when there are attendees."""
    if percentage is None or not 1 <= percentage <= 100:
        raise ValueError(f"Sampling percentage must be between 1 and 100, got {percentage}")
    if total_farmers <= 0:
        return 0
    return max(1, math.ceil(percentage * total_farmers / 100))


def reservoir_sample(stream, k, rng=None):
    """
    Algorithm R over an iterable of unknown length.

    Every item ends up in the result with probability min(1, k / n).
    """
    rng = rng or random.Random()
    reservoir = []
    if k <= 0:
        return reservoir

    for seen, item in enumerate(stream):
        if seen < k:
            reservoir.append(item)
            continue
        slot = rng.randrange(seen + 1)
        if slot < k:
            reservoir[slot] = item
    return reservoir


def iter_activity_farmers(activity, page_size=FARMER_PAGE_SIZE):
    """Yield the activity's attendees a page at a time, keyset-paginated by pk."""
    last_pk = 0
    while True:
        page = list(activity.farmers.filter(pk__gt=last_pk).order_by('pk')[:page_size])
        if not page:
            return
        yield page
        last_pk = page[-1].pk


# ============================================================================
# COOLING LEDGER
# ============================================================================

class CoolingLedger:
    """
    Last-sampled timestamps per farmer and per activity.

    Built from one SamplingConfig snapshot so a run uses the same windows
    from start to finish.
    """

    def __init__(self, config):
        self.farmer_window = timedelta(days=config.farmer_cooling_days)
        self.activity_window = timedelta(days=config.activity_cooling_days)

    def is_farmer_eligible(self, farmer_id, now):
        entry = CoolingPeriod.objects.filter(farmer_id=farmer_id).first()
        return entry is None or now - entry.last_sampled_at >= self.farmer_window

    def is_activity_eligible(self, activity_id, now, ad_hoc=False):
        # Ad-hoc runs only skip the activity window; farmers are always checked.
        if ad_hoc:
            return True
        entry = CoolingPeriod.objects.filter(activity_id=activity_id).first()
        return entry is None or now - entry.last_sampled_at >= self.activity_window

    def eligible_farmer_ids(self, farmer_ids, now):
        cutoff = now - self.farmer_window
        cooling = set(
            CoolingPeriod.objects.filter(
                farmer_id__in=farmer_ids,
                last_sampled_at__gt=cutoff,
            ).values_list('farmer_id', flat=True)
        )
        return [farmer_id for farmer_id in farmer_ids if farmer_id not in cooling]

    def record_farmers(self, farmer_ids, now):
        farmer_ids = list(farmer_ids)
        existing = set(
            CoolingPeriod.objects.filter(farmer_id__in=farmer_ids).values_list('farmer_id', flat=True)
        )
        if existing:
            CoolingPeriod.objects.filter(farmer_id__in=existing).update(last_sampled_at=now, updated_at=now)
        CoolingPeriod.objects.bulk_create([
            CoolingPeriod(farmer_id=farmer_id, last_sampled_at=now)
            for farmer_id in farmer_ids
            if farmer_id not in existing
        ])

    def record_activity(self, activity_id, now):
        CoolingPeriod.objects.update_or_create(
            activity_id=activity_id,
            defaults={'last_sampled_at': now},
        )


# ============================================================================
# DRAW + TASK FACTORY
# ============================================================================

def _eligible_farmer_stream(activity, now, ledger, page_size, counter):
    already_tasked = set(
        CallTask.objects.filter(activity=activity, is_callback=False).values_list('farmer_id', flat=True)
    )
    for page in iter_activity_farmers(activity, page_size=page_size):
        by_id = {farmer.pk: farmer for farmer in page if farmer.pk not in already_tasked}
        for farmer_id in ledger.eligible_farmer_ids(list(by_id), now):
            counter['eligible'] += 1
            yield by_id[farmer_id]


def draw_farmers(activity, k, now, ledger, rng=None, page_size=FARMER_PAGE_SIZE):
    """
    Return (sampled farmers, eligible count) for one activity.

    Farmers in cooling and farmers that already hold an original task for this
    activity are not eligible. Raises NoEligibleFarmers when nobody is left.
    """
    if k <= 0:
        raise NoEligibleFarmers(f"Activity {activity.activity_id} has no attendees")

    counter = {'eligible': 0}
    sampled = reservoir_sample(_eligible_farmer_stream(activity, now, ledger, page_size, counter), k, rng)
    if not sampled:
        raise NoEligibleFarmers(f"Activity {activity.activity_id}: every attendee is cooling or already tasked")
    return sampled, counter['eligible']


def create_unassigned_tasks(activity, farmers, now, due_in_days=0):
    scheduled_date = now + timedelta(days=due_in_days)
    history = [{
        'timestamp': now.isoformat(),
        'status': TaskStatus.UNASSIGNED,
        'notes': 'Created by sampling run',
    }]
    tasks = [
        CallTask(
            farmer=farmer,
            activity=activity,
            status=TaskStatus.UNASSIGNED,
            scheduled_date=scheduled_date,
            is_callback=False,
            callback_number=0,
            interaction_history=list(history),
        )
        for farmer in farmers
    ]
    return CallTask.objects.bulk_create(tasks)


@dataclass
class SamplingResult:
    activity_id: str
    outcome: str
    lifecycle_status: str
    total_farmers: int = 0
    eligible_farmers: int = 0
    sampled_count: int = 0
    tasks_created: int = 0
    reason: Optional[str] = None
    task_ids: List[int] = field(default_factory=list)

    @property
    def skipped(self):
        return self.outcome == 'skipped'


def _skip(activity, reason):
    logger.info(f"Skipping activity {activity.activity_id}: {reason}")
    return SamplingResult(
        activity_id=activity.activity_id,
        outcome='skipped',
        lifecycle_status=activity.lifecycle_status,
        reason=reason,
    )


def sample_activity(activity, config, run_type, ledger, now=None, rng=None,
                    percentage=None, run=None, page_size=FARMER_PAGE_SIZE):
    """
    Sample one activity and persist the outcome atomically.

    First-sample runs only touch `active` activities and respect the activity
    cooling window; ad-hoc runs may reprocess `sampled` and `inactive` ones.
    `not_eligible` activities, and activities whose type is no longer
    eligible, are always skipped and keep their status.
    """
    now = now or timezone.now()
    ad_hoc = run_type == Run.RunType.ADHOC

    with transaction.atomic():
        activity = Activity.objects.select_for_update().get(pk=activity.pk)

        if activity.lifecycle_status == LifecycleStatus.NOT_ELIGIBLE:
            return _skip(activity, 'not eligible')
        if not config.is_type_eligible(activity.type):
            return _skip(activity, f"type {activity.type} is not eligible")
        if not ad_hoc and activity.lifecycle_status != LifecycleStatus.ACTIVE:
            return _skip(activity, f"status is {activity.lifecycle_status}")
        if not ledger.is_activity_eligible(activity.pk, now, ad_hoc=ad_hoc):
            return _skip(activity, 'activity cooling period')

        pct = percentage or config.percentage_for(activity.type)
        total = activity.farmers.count()
        k = calculate_sample_size(total, pct)

        try:
            sampled, eligible = draw_farmers(activity, k, now, ledger, rng=rng, page_size=page_size)
        except NoEligibleFarmers as exc:
            logger.info(str(exc))
            sampled, eligible = [], 0

        tasks = create_unassigned_tasks(activity, sampled, now, due_in_days=config.task_due_in_days)

        if sampled:
            ledger.record_farmers([farmer.pk for farmer in sampled], now)
            ledger.record_activity(activity.pk, now)
            new_status = LifecycleStatus.SAMPLED
        elif activity.lifecycle_status == LifecycleStatus.SAMPLED:
            # a sampled activity never moves backwards
            new_status = LifecycleStatus.SAMPLED
        else:
            new_status = LifecycleStatus.INACTIVE

        transition_lifecycle(activity, new_status, now=now, save=False)
        activity.last_sampling_run_at = now
        if run_type in FIRST_SAMPLE_RUN_TYPES and activity.first_sampled_at is None:
            activity.first_sampled_at = now
        activity.save(update_fields=[
            'lifecycle_status',
            'lifecycle_updated_at',
            'last_sampling_run_at',
            'first_sampled_at',
            'updated_at',
        ])

        SamplingAudit.objects.filter(activity=activity).delete()
        SamplingAudit.objects.create(
            activity=activity,
            run=run,
            sampling_percentage=pct,
            total_farmers=total,
            eligible_farmers=eligible,
            sampled_count=len(sampled),
            tasks_created=len(tasks),
            algorithm=ALGORITHM_NAME,
            metadata={
                'run_type': run_type,
                'sample_size': k,
                'farmer_cooling_days': config.farmer_cooling_days,
                'activity_cooling_days': config.activity_cooling_days,
                'task_due_in_days': config.task_due_in_days,
            },
        )

    logger.info(
        f"Activity {activity.activity_id}: {len(sampled)}/{eligible} eligible of {total} attendees "
        f"sampled at {pct}% -> {new_status}"
    )
    if sampled:
        outcome = 'sampled'
    elif new_status == LifecycleStatus.INACTIVE:
        outcome = 'inactive'
    else:
        outcome = 'unchanged'

    return SamplingResult(
        activity_id=activity.activity_id,
        outcome=outcome,
        lifecycle_status=new_status,
        total_farmers=total,
        eligible_farmers=eligible,
        sampled_count=len(sampled),
        tasks_created=len(tasks),
        task_ids=[task.pk for task in tasks],
    )
