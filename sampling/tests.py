"""
Tests for the sampling engine.

Tests cover:
- Reservoir sampler size and uniformity
- Cooling ledger windows (first-sample and ad-hoc)
- Per-activity sampling, lifecycle outcomes and rollback
- Eligibility and reactivation
- Sampling runs, triggers and the hourly auto run
- HTTP endpoints
"""

import random
from datetime import date, timedelta
from unittest.mock import patch

import orjson as json
import pytest
from django.db import DatabaseError
from django.utils import timezone

from call_orchestrator.exceptions import AlreadyRunning, ConfirmationRequired, InvariantViolation
from dialer.models import CallLog, CallTask, TaskStatus
from runs.models import Run
from runs.utils import expire_stale_runs, heartbeat_run, start_run
from sampling.lifecycle import (
    ALLOWED_TRANSITIONS,
    apply_eligibility,
    can_transition,
    reactivate,
    reactivate_preview,
    transition_lifecycle,
)
from sampling.models import Activity, ActivityType, CoolingPeriod, LifecycleStatus, SamplingAudit, SamplingConfig
from sampling.tasks import (
    auto_run_sampling,
    process_sampling_run,
    resolve_first_sample_range,
    select_activities_for_run,
    trigger_sampling_run,
)
from sampling.utils import (
    CoolingLedger,
    calculate_sample_size,
    iter_activity_farmers,
    reservoir_sample,
    sample_activity,
)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def now():
    return timezone.now()


@pytest.fixture
def ledger(sampling_config):
    return CoolingLedger(sampling_config)


@pytest.fixture
def rng():
    return random.Random(20260118)


@pytest.fixture
def mock_delay():
    with patch('sampling.tasks.run_sampling_job.delay') as mock:
        yield mock


# ============================================================================
# TEST: reservoir sampler
# ============================================================================

class TestSampleSize:

    def test_ten_percent_of_twenty(self):
        assert calculate_sample_size(20, 10) == 2

    def test_rounds_up(self):
        assert calculate_sample_size(21, 10) == 3

    def test_at_least_one_when_there_are_attendees(self):
        assert calculate_sample_size(3, 1) == 1

    def test_zero_attendees(self):
        assert calculate_sample_size(0, 50) == 0

    @pytest.mark.parametrize('percentage', [0, 0.5, 101, None])
    def test_percentage_out_of_range(self, percentage):
        with pytest.raises(ValueError):
            calculate_sample_size(10, percentage)


class TestReservoirSample:

    def test_fewer_items_than_k_returns_everything(self, rng):
        assert sorted(reservoir_sample(iter(range(4)), 10, rng)) == [0, 1, 2, 3]

    def test_exact_size(self, rng):
        result = reservoir_sample(iter(range(1000)), 25, rng)

        assert len(result) == 25
        assert len(set(result)) == 25

    def test_zero_k(self, rng):
        assert reservoir_sample(iter(range(10)), 0, rng) == []

    def test_single_pass_over_generator(self, rng):
        consumed = []

        def stream():
            for i in range(50):
                consumed.append(i)
                yield i

        reservoir_sample(stream(), 5, rng)

        assert consumed == list(range(50))

    def test_uniform_selection_chi_square(self):
        """n=10, k=3 over 20000 seeded trials; chi-square with 9 dof below the 0.001 critical value."""
        rng = random.Random(42)
        n, k, trials = 10, 3, 20000
        counts = [0] * n

        for _ in range(trials):
            for item in reservoir_sample(iter(range(n)), k, rng):
                counts[item] += 1

        expected = trials * k / n
        chi_square = sum((observed - expected) ** 2 / expected for observed in counts)
        assert chi_square < 27.88

    def test_same_seed_same_sample(self):
        first = reservoir_sample(iter(range(100)), 7, random.Random(5))
        second = reservoir_sample(iter(range(100)), 7, random.Random(5))

        assert first == second


@pytest.mark.django_db
class TestFarmerPaging:

    def test_pages_cover_all_attendees_once(self, make_activity):
        activity = make_activity(farmers=7)

        pages = list(iter_activity_farmers(activity, page_size=3))

        assert [len(page) for page in pages] == [3, 3, 1]
        ids = [farmer.pk for page in pages for farmer in page]
        assert sorted(ids) == sorted(activity.farmers.values_list('pk', flat=True))


# ============================================================================
# TEST: cooling ledger
# ============================================================================

@pytest.mark.django_db
class TestCoolingLedger:

    def test_farmer_without_entry_is_eligible(self, ledger, make_farmer, now):
        assert ledger.is_farmer_eligible(make_farmer().pk, now)

    def test_farmer_inside_window_not_eligible(self, ledger, make_farmer, now):
        farmer = make_farmer()
        ledger.record_farmers([farmer.pk], now - timedelta(days=29))

        assert not ledger.is_farmer_eligible(farmer.pk, now)
        assert ledger.eligible_farmer_ids([farmer.pk], now) == []

    def test_farmer_at_window_end_is_eligible(self, ledger, make_farmer, now):
        farmer = make_farmer()
        ledger.record_farmers([farmer.pk], now - timedelta(days=30))

        assert ledger.is_farmer_eligible(farmer.pk, now)
        assert ledger.eligible_farmer_ids([farmer.pk], now) == [farmer.pk]

    def test_record_farmers_upserts(self, ledger, make_farmer, now):
        farmer = make_farmer()
        ledger.record_farmers([farmer.pk], now - timedelta(days=40))
        ledger.record_farmers([farmer.pk], now)

        assert CoolingPeriod.objects.filter(farmer=farmer).count() == 1
        assert CoolingPeriod.objects.get(farmer=farmer).last_sampled_at == now

    def test_activity_window(self, ledger, make_activity, now):
        activity = make_activity()
        ledger.record_activity(activity.pk, now - timedelta(days=2))

        assert not ledger.is_activity_eligible(activity.pk, now)
        assert ledger.is_activity_eligible(activity.pk, now + timedelta(days=3))

    def test_ad_hoc_bypasses_activity_window_only(self, ledger, make_activity, make_farmer, now):
        farmer = make_farmer()
        activity = make_activity(farmers=[farmer])
        ledger.record_activity(activity.pk, now)
        ledger.record_farmers([farmer.pk], now)

        assert ledger.is_activity_eligible(activity.pk, now, ad_hoc=True)
        assert not ledger.is_farmer_eligible(farmer.pk, now)


# ============================================================================
# TEST: sample_activity
# ============================================================================

@pytest.mark.django_db
class TestSampleActivity:

    def test_scenario_twenty_attendees_five_cooling(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=20)
        cooling_ids = list(activity.farmers.order_by('pk').values_list('pk', flat=True)[:5])
        ledger.record_farmers(cooling_ids, now - timedelta(days=1))

        result = sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        activity.refresh_from_db()
        tasks = CallTask.objects.filter(activity=activity)
        assert result.tasks_created == 2
        assert result.eligible_farmers == 15
        assert result.total_farmers == 20
        assert tasks.count() == 2
        assert all(task.status == TaskStatus.UNASSIGNED for task in tasks)
        assert not set(tasks.values_list('farmer_id', flat=True)) & set(cooling_ids)
        assert activity.lifecycle_status == LifecycleStatus.SAMPLED
        assert activity.first_sampled_at == now

        for task in tasks:
            assert CoolingPeriod.objects.get(farmer_id=task.farmer_id).last_sampled_at == now
        assert CoolingPeriod.objects.filter(activity=activity).exists()

    def test_scenario_everyone_cooling(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=10)
        ledger.record_farmers(activity.farmers.values_list('pk', flat=True), now - timedelta(days=3))

        result = sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        activity.refresh_from_db()
        assert result.tasks_created == 0
        assert result.outcome == 'inactive'
        assert activity.lifecycle_status == LifecycleStatus.INACTIVE
        assert not CallTask.objects.filter(activity=activity).exists()
        assert not CoolingPeriod.objects.filter(activity=activity).exists()

    def test_activity_without_attendees_goes_inactive(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=0)

        result = sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        assert result.lifecycle_status == LifecycleStatus.INACTIVE

    def test_scheduled_date_uses_due_in_days(self, make_activity, sampling_config, ledger, rng, now):
        sampling_config.task_due_in_days = 2
        sampling_config.save()
        activity = make_activity(farmers=3)

        sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        task = CallTask.objects.get(activity=activity)
        assert task.scheduled_date == now + timedelta(days=2)
        assert task.callback_number == 0
        assert not task.is_callback

    def test_type_percentage_override(self, make_activity, sampling_config, ledger, rng, now):
        sampling_config.activity_type_percentages = {ActivityType.OFM: 50}
        sampling_config.save()
        activity = make_activity(farmers=10, type=ActivityType.OFM)

        result = sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        assert result.tasks_created == 5

    def test_explicit_percentage_wins(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=10)

        result = sample_activity(activity, sampling_config, Run.RunType.ADHOC, ledger, now=now, rng=rng, percentage=30)

        assert result.tasks_created == 3

    def test_audit_written_once_per_activity(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=10)

        sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)
        sample_activity(activity, sampling_config, Run.RunType.ADHOC, ledger, now=now + timedelta(days=40), rng=rng)

        audit = SamplingAudit.objects.get(activity=activity)
        assert audit.algorithm == 'Reservoir Sampling'
        assert audit.metadata['run_type'] == Run.RunType.ADHOC
        assert audit.total_farmers == 10

    def test_not_eligible_activity_is_skipped(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=5, lifecycle_status=LifecycleStatus.NOT_ELIGIBLE)

        result = sample_activity(activity, sampling_config, Run.RunType.ADHOC, ledger, now=now, rng=rng)

        activity.refresh_from_db()
        assert result.skipped
        assert activity.lifecycle_status == LifecycleStatus.NOT_ELIGIBLE
        assert not CallTask.objects.exists()

    def test_ineligible_type_keeps_status(self, make_activity, sampling_config, ledger, rng, now):
        sampling_config.eligible_activity_types = [ActivityType.OFM]
        activity = make_activity(farmers=5, type=ActivityType.FIELD_DAY)

        result = sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        activity.refresh_from_db()
        assert result.skipped
        assert activity.lifecycle_status == LifecycleStatus.ACTIVE

    def test_first_sample_skips_non_active(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=5, lifecycle_status=LifecycleStatus.INACTIVE)

        result = sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        assert result.skipped
        assert not CallTask.objects.exists()

    def test_first_sample_respects_activity_cooling(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=5)
        ledger.record_activity(activity.pk, now - timedelta(days=1))

        result = sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        assert result.skipped
        assert result.reason == 'activity cooling period'

    def test_ad_hoc_bypasses_activity_cooling(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=5)
        ledger.record_activity(activity.pk, now - timedelta(days=1))

        result = sample_activity(activity, sampling_config, Run.RunType.ADHOC, ledger, now=now, rng=rng)

        activity.refresh_from_db()
        assert result.tasks_created == 1
        assert activity.first_sampled_at is None

    def test_ad_hoc_revives_inactive_activity(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=4)
        ledger.record_farmers(activity.farmers.values_list('pk', flat=True), now)
        sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)
        activity.refresh_from_db()
        assert activity.lifecycle_status == LifecycleStatus.INACTIVE

        later = now + timedelta(days=31)
        sample_activity(activity, sampling_config, Run.RunType.ADHOC, ledger, now=later, rng=rng)

        activity.refresh_from_db()
        assert activity.lifecycle_status == LifecycleStatus.SAMPLED

    def test_ad_hoc_rerun_never_moves_sampled_backwards(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=1)
        sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        result = sample_activity(activity, sampling_config, Run.RunType.ADHOC, ledger, now=now, rng=rng)

        activity.refresh_from_db()
        assert result.outcome == 'unchanged'
        assert activity.lifecycle_status == LifecycleStatus.SAMPLED

    def test_no_second_original_task_for_same_farmer(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=3)
        sampling_config.default_percentage = 100
        sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        # farmers are out of cooling again, but each already holds a task here
        sample_activity(activity, sampling_config, Run.RunType.ADHOC, ledger, now=now + timedelta(days=60), rng=rng)

        assert CallTask.objects.filter(activity=activity).count() == 3

    def test_failure_rolls_back_everything(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=10)

        with patch.object(SamplingAudit.objects, 'create', side_effect=RuntimeError('disk full')):
            with pytest.raises(RuntimeError):
                sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)

        activity.refresh_from_db()
        assert activity.lifecycle_status == LifecycleStatus.ACTIVE
        assert not CallTask.objects.exists()
        assert not CoolingPeriod.objects.exists()


# ============================================================================
# TEST: lifecycle
# ============================================================================

@pytest.mark.django_db
class TestLifecycle:

    @pytest.mark.parametrize('from_status,to_status', [
        (LifecycleStatus.ACTIVE, LifecycleStatus.SAMPLED),
        (LifecycleStatus.ACTIVE, LifecycleStatus.INACTIVE),
        (LifecycleStatus.SAMPLED, LifecycleStatus.NOT_ELIGIBLE),
        (LifecycleStatus.INACTIVE, LifecycleStatus.SAMPLED),
        (LifecycleStatus.NOT_ELIGIBLE, LifecycleStatus.ACTIVE),
    ])
    def test_allowed(self, make_activity, from_status, to_status):
        activity = make_activity(lifecycle_status=from_status)

        assert transition_lifecycle(activity, to_status) is True

        activity.refresh_from_db()
        assert activity.lifecycle_status == to_status
        assert activity.lifecycle_updated_at is not None

    @pytest.mark.parametrize('from_status,to_status', [
        (LifecycleStatus.SAMPLED, LifecycleStatus.INACTIVE),
        (LifecycleStatus.NOT_ELIGIBLE, LifecycleStatus.SAMPLED),
        (LifecycleStatus.NOT_ELIGIBLE, LifecycleStatus.INACTIVE),
    ])
    def test_rejected(self, make_activity, from_status, to_status):
        activity = make_activity(lifecycle_status=from_status)

        with pytest.raises(InvariantViolation):
            transition_lifecycle(activity, to_status)

        activity.refresh_from_db()
        assert activity.lifecycle_status == from_status

    def test_same_status_is_a_no_op(self, make_activity):
        activity = make_activity(lifecycle_status=LifecycleStatus.SAMPLED)

        assert transition_lifecycle(activity, LifecycleStatus.SAMPLED) is False

    def test_every_status_has_a_way_out(self):
        for status in LifecycleStatus.values:
            assert ALLOWED_TRANSITIONS[status]
            assert can_transition(status, status)


@pytest.mark.django_db
class TestApplyEligibility:

    def test_excluded_types_become_not_eligible(self, make_activity):
        field_day = make_activity(type=ActivityType.FIELD_DAY, lifecycle_status=LifecycleStatus.SAMPLED)
        ofm = make_activity(type=ActivityType.OFM)

        result = apply_eligibility([ActivityType.OFM])

        field_day.refresh_from_db()
        ofm.refresh_from_db()
        assert field_day.lifecycle_status == LifecycleStatus.NOT_ELIGIBLE
        assert ofm.lifecycle_status == LifecycleStatus.ACTIVE
        assert result['marked_not_eligible'] == 1
        assert SamplingConfig.get_active().eligible_activity_types == [ActivityType.OFM]

    def test_re_included_types_go_back_to_active(self, make_activity):
        activity = make_activity(type=ActivityType.DEMO_VISIT, lifecycle_status=LifecycleStatus.NOT_ELIGIBLE)

        result = apply_eligibility([ActivityType.DEMO_VISIT, ActivityType.OFM])

        activity.refresh_from_db()
        assert activity.lifecycle_status == LifecycleStatus.ACTIVE
        assert result['reactivated'] == 1

    def test_empty_list_means_all_types(self, make_activity):
        activity = make_activity(type=ActivityType.OTHER, lifecycle_status=LifecycleStatus.NOT_ELIGIBLE)

        apply_eligibility([])

        activity.refresh_from_db()
        assert activity.lifecycle_status == LifecycleStatus.ACTIVE

    def test_unknown_type_rejected(self):
        with pytest.raises(InvariantViolation):
            apply_eligibility(['Tractor Show'])


@pytest.mark.django_db
class TestReactivation:

    @pytest.fixture
    def inactive_activity(self, make_activity, make_task):
        activity = make_activity(lifecycle_status=LifecycleStatus.INACTIVE, date=date(2026, 1, 10))
        untouched = make_task(activity=activity)
        queued = make_task(activity=activity, status=TaskStatus.SAMPLED_IN_QUEUE)
        dialled = make_task(activity=activity, status=TaskStatus.SAMPLED_IN_QUEUE)
        CallLog.objects.create(task=dialled, call_status=CallLog.CallStatus.NO_ANSWER)
        make_task(activity=activity, status=TaskStatus.COMPLETED)
        return activity, untouched, queued, dialled

    def test_preview_counts(self, inactive_activity):
        preview = reactivate_preview(LifecycleStatus.INACTIVE, date(2026, 1, 1), date(2026, 1, 31))

        assert preview == {'matched_activities': 1, 'deletable_tasks': 2, 'kept_tasks': 2}

    def test_confirmation_required(self, inactive_activity):
        with pytest.raises(ConfirmationRequired):
            reactivate(LifecycleStatus.INACTIVE, date(2026, 1, 1), date(2026, 1, 31), confirm='yes')

        activity = inactive_activity[0]
        activity.refresh_from_db()
        assert activity.lifecycle_status == LifecycleStatus.INACTIVE

    def test_reactivate_deletes_only_undialled_tasks(self, inactive_activity):
        activity, untouched, queued, dialled = inactive_activity

        result = reactivate(
            LifecycleStatus.INACTIVE, date(2026, 1, 1), date(2026, 1, 31),
            confirm='YES', delete_tasks=True,
        )

        activity.refresh_from_db()
        assert activity.lifecycle_status == LifecycleStatus.ACTIVE
        assert result['deleted_tasks'] == 2
        assert not CallTask.objects.filter(pk__in=[untouched.pk, queued.pk]).exists()
        assert CallTask.objects.filter(pk=dialled.pk).exists()
        assert CallTask.objects.filter(activity=activity).count() == 2

    def test_delete_audit_keeps_farmer_cooling(self, make_activity, sampling_config, ledger, rng, now):
        activity = make_activity(farmers=3, date=date(2026, 1, 10))
        sample_activity(activity, sampling_config, Run.RunType.FIRST_SAMPLE, ledger, now=now, rng=rng)
        farmer_cooling = CoolingPeriod.objects.filter(farmer__isnull=False).count()

        reactivate(
            LifecycleStatus.SAMPLED, date(2026, 1, 1), date(2026, 1, 31),
            confirm='YES', delete_audit=True,
        )

        assert not SamplingAudit.objects.filter(activity=activity).exists()
        assert not CoolingPeriod.objects.filter(activity=activity).exists()
        assert CoolingPeriod.objects.filter(farmer__isnull=False).count() == farmer_cooling == 1

    def test_activity_ids_narrow_the_scope(self, make_activity):
        first = make_activity(lifecycle_status=LifecycleStatus.NOT_ELIGIBLE)
        second = make_activity(lifecycle_status=LifecycleStatus.NOT_ELIGIBLE)

        reactivate(
            LifecycleStatus.NOT_ELIGIBLE, date(2026, 1, 1), date(2026, 1, 31),
            confirm='YES', activity_ids=[first.activity_id],
        )

        first.refresh_from_db()
        second.refresh_from_db()
        assert first.lifecycle_status == LifecycleStatus.ACTIVE
        assert second.lifecycle_status == LifecycleStatus.NOT_ELIGIBLE

    def test_cannot_reactivate_from_active(self):
        with pytest.raises(InvariantViolation):
            reactivate_preview(LifecycleStatus.ACTIVE, date(2026, 1, 1), date(2026, 1, 31))


# ============================================================================
# TEST: sampling runs
# ============================================================================

@pytest.mark.django_db
class TestSamplingRun:

    def test_run_processes_active_activities(self, make_activity, rng):
        sampled = make_activity(farmers=20)
        empty = make_activity(farmers=0)
        make_activity(farmers=5, lifecycle_status=LifecycleStatus.NOT_ELIGIBLE)
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE, filters={'date_from': None, 'date_to': None})

        summary = process_sampling_run(run.id, rng=rng)

        run.refresh_from_db()
        assert run.status == Run.Status.COMPLETED
        assert run.matched == 2
        assert run.processed == 2
        assert run.tasks_created == 2
        assert run.sampled_activities == 1
        assert run.inactive_activities == 1
        assert summary['tasks_created'] == 2
        assert Activity.objects.get(pk=sampled.pk).lifecycle_status == LifecycleStatus.SAMPLED
        assert Activity.objects.get(pk=empty.pk).lifecycle_status == LifecycleStatus.INACTIVE

    def test_failing_activity_is_recorded_and_run_continues(self, make_activity, rng):
        make_activity(farmers=10)
        make_activity(farmers=10)
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)

        real_sample = sample_activity
        calls = []

        def flaky(activity, *args, **kwargs):
            calls.append(activity.pk)
            if len(calls) == 1:
                raise RuntimeError('boom')
            return real_sample(activity, *args, **kwargs)

        with patch('sampling.tasks.sample_activity', side_effect=flaky):
            process_sampling_run(run.id, rng=rng)

        run.refresh_from_db()
        assert run.status == Run.Status.COMPLETED
        assert run.processed == 2
        assert run.error_count == 1
        assert 'boom' in run.error_messages[0]
        assert Activity.objects.filter(lifecycle_status=LifecycleStatus.ACTIVE).count() == 1

    def test_activity_source_down_fails_run(self):
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)

        with patch('sampling.tasks.select_activities_for_run', side_effect=DatabaseError('gone')):
            result = process_sampling_run(run.id)

        run.refresh_from_db()
        assert result['status'] == 'failed'
        assert run.status == Run.Status.FAILED
        assert run.error_count == 1

    def test_ad_hoc_selection_defaults_and_date_range(self, make_activity):
        inside = make_activity(lifecycle_status=LifecycleStatus.INACTIVE, date=date(2026, 2, 5))
        make_activity(lifecycle_status=LifecycleStatus.INACTIVE, date=date(2026, 3, 5))
        make_activity(lifecycle_status=LifecycleStatus.NOT_ELIGIBLE, date=date(2026, 2, 6))

        selected = list(select_activities_for_run(
            Run.RunType.ADHOC, {'date_from': '2026-02-01', 'date_to': '2026-02-28'}
        ))

        assert selected == [inside.pk]

    def test_first_sample_never_selects_non_active(self, make_activity):
        active = make_activity()
        make_activity(lifecycle_status=LifecycleStatus.SAMPLED)
        make_activity(lifecycle_status=LifecycleStatus.INACTIVE)

        assert list(select_activities_for_run(Run.RunType.FIRST_SAMPLE, {})) == [active.pk]

    def _first_sample_run(self, rng, today):
        date_from, date_to = resolve_first_sample_range(today=today)
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE, filters={
            'date_from': date_from.isoformat() if date_from else None,
            'date_to': date_to.isoformat() if date_to else None,
        })
        process_sampling_run(run.id, rng=rng)
        return Run.objects.get(pk=run.id)

    @patch('sampling.tasks.SAMPLING_RUN_MAX_ACTIVITIES', 2)
    def test_capped_run_leaves_the_rest_to_the_next_run(self, make_activity, rng):
        for day in (1, 2, 3, 4):
            make_activity(farmers=2, date=date(2026, 1, day))

        first = self._first_sample_run(rng, today=date(2026, 2, 1))

        assert first.matched == 2
        assert first.filters['date_to'] == '2026-01-02'
        assert first.filters['requested_date_to'] == '2026-01-04'

        second = self._first_sample_run(rng, today=date(2026, 2, 1))

        assert second.filters['date_from'] == '2026-01-02'
        assert second.matched == 2
        assert not Activity.objects.filter(lifecycle_status=LifecycleStatus.ACTIVE).exists()

    def test_job_of_expired_run_writes_nothing(self, make_activity, rng):
        activity = make_activity(farmers=10)
        expired = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)
        expire_stale_runs(Run.Kind.SAMPLING, now=timezone.now() + timedelta(hours=1))
        current = start_run(Run.Kind.SAMPLING, Run.RunType.ADHOC)

        result = process_sampling_run(expired.id, rng=rng)

        assert result['aborted'] is True
        assert result['status'] == Run.Status.FAILED
        assert CallTask.objects.count() == 0
        assert Activity.objects.get(pk=activity.pk).lifecycle_status == LifecycleStatus.ACTIVE
        assert Run.objects.get(pk=current.id).status == Run.Status.RUNNING

    def test_run_failed_mid_way_stops_before_next_activity(self, make_activity, rng):
        make_activity(farmers=10, date=date(2026, 1, 1))
        untouched = make_activity(farmers=10, date=date(2026, 1, 2))
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)

        real_sample = sample_activity

        def sample_then_expire(activity, *args, **kwargs):
            result = real_sample(activity, *args, **kwargs)
            Run.objects.filter(pk=run.id).update(status=Run.Status.FAILED)
            return result

        with patch('sampling.tasks.sample_activity', side_effect=sample_then_expire) as sampler:
            result = process_sampling_run(run.id, rng=rng)

        assert sampler.call_count == 1
        assert result['aborted'] is True
        assert Activity.objects.get(pk=untouched.pk).lifecycle_status == LifecycleStatus.ACTIVE
        assert not CallTask.objects.filter(activity=untouched).exists()

    def test_progress_heartbeat_per_activity(self, make_activity, rng):
        for _ in range(3):
            make_activity(farmers=1)
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)

        with patch('sampling.tasks.heartbeat_run', wraps=heartbeat_run) as heartbeat:
            process_sampling_run(run.id, rng=rng)

        # once at job start, then once per activity
        assert heartbeat.call_count == 4


@pytest.mark.django_db
class TestFirstSampleRange:

    def test_first_run_spans_never_sampled_activities(self, make_activity):
        make_activity(date=date(2026, 1, 3))
        make_activity(date=date(2026, 1, 20))
        make_activity(date=date(2025, 12, 1), first_sampled_at=timezone.now())

        assert resolve_first_sample_range() == (date(2026, 1, 3), date(2026, 1, 20))

    def test_later_runs_continue_from_previous_end(self):
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE, filters={'date_to': '2026-01-20'})
        Run.objects.filter(pk=run.pk).update(status=Run.Status.COMPLETED)

        assert resolve_first_sample_range(today=date(2026, 2, 1)) == (date(2026, 1, 20), date(2026, 2, 1))

    def test_nothing_to_sample(self):
        assert resolve_first_sample_range() == (None, None)


@pytest.mark.django_db
class TestTriggerSamplingRun:

    def test_dispatches_job(self, make_activity, mock_delay):
        make_activity(date=date(2026, 1, 5))

        run = trigger_sampling_run(Run.RunType.FIRST_SAMPLE, created_by='ops')

        mock_delay.assert_called_once_with(run.id)
        assert run.filters['date_from'] == '2026-01-05'
        assert run.status == Run.Status.RUNNING

    def test_ad_hoc_needs_dates(self, mock_delay):
        with pytest.raises(InvariantViolation):
            trigger_sampling_run(Run.RunType.ADHOC)

        assert not Run.objects.exists()

    def test_ad_hoc_cannot_target_not_eligible(self, mock_delay):
        with pytest.raises(InvariantViolation):
            trigger_sampling_run(
                Run.RunType.ADHOC, date(2026, 1, 1), date(2026, 1, 31),
                lifecycle_statuses=[LifecycleStatus.NOT_ELIGIBLE],
            )

    def test_second_trigger_rejected(self, mock_delay):
        trigger_sampling_run(Run.RunType.ADHOC, date(2026, 1, 1), date(2026, 1, 31))

        with pytest.raises(AlreadyRunning):
            trigger_sampling_run(Run.RunType.ADHOC, date(2026, 1, 1), date(2026, 1, 31))

        assert Run.objects.count() == 1

    def test_dispatch_failure_fails_run(self, mock_delay):
        mock_delay.side_effect = ConnectionError('broker down')

        run = trigger_sampling_run(Run.RunType.ADHOC, date(2026, 1, 1), date(2026, 1, 31))

        assert run.status == Run.Status.FAILED
        assert 'broker down' in run.error_messages[0]


@pytest.mark.django_db
class TestAutoRun:

    def test_disabled(self, sampling_config):
        assert auto_run_sampling()['reason'] == 'disabled'

    def test_not_active_yet(self, sampling_config):
        sampling_config.auto_run_enabled = True
        sampling_config.auto_run_activate_from = timezone.now() + timedelta(days=1)
        sampling_config.save()

        assert auto_run_sampling()['reason'] == 'not_active_yet'

    def test_below_threshold(self, sampling_config, make_activity):
        sampling_config.auto_run_enabled = True
        sampling_config.auto_run_threshold = 3
        sampling_config.save()
        make_activity()

        result = auto_run_sampling()

        assert result['reason'] == 'below_threshold'
        assert result['waiting'] == 1

    def test_starts_auto_run(self, sampling_config, make_activity, mock_delay):
        sampling_config.auto_run_enabled = True
        sampling_config.auto_run_threshold = 2
        sampling_config.save()
        make_activity()
        make_activity()

        result = auto_run_sampling()

        assert result['status'] == 'started'
        assert Run.objects.get(pk=result['run_id']).run_type == Run.RunType.AUTO
        mock_delay.assert_called_once()

    def test_skips_when_run_in_progress(self, sampling_config, make_activity, mock_delay):
        sampling_config.auto_run_enabled = True
        sampling_config.save()
        make_activity()
        busy = start_run(Run.Kind.SAMPLING, Run.RunType.ADHOC)

        result = auto_run_sampling()

        assert result == {'status': 'skipped', 'reason': 'already_running', 'run_id': busy.id}


# ============================================================================
# TEST: HTTP endpoints
# ============================================================================

@pytest.mark.django_db
class TestSamplingViews:

    def test_get_config(self, client):
        response = client.get('/api/sampling/config/')

        assert response.status_code == 200
        assert response.json()['farmer_cooling_days'] == 30
        assert response.json()['activity_cooling_days'] == 5

    def test_update_config(self, client):
        response = client.put(
            '/api/sampling/config/',
            data=json.dumps({'default_percentage': 25, 'task_due_in_days': 1}),
            content_type='application/json',
        )

        assert response.status_code == 200
        config = SamplingConfig.get_active()
        assert config.default_percentage == 25
        assert config.task_due_in_days == 1

    def test_update_config_validates_range(self, client):
        response = client.put(
            '/api/sampling/config/',
            data=json.dumps({'default_percentage': 150}),
            content_type='application/json',
        )

        assert response.status_code == 400
        assert SamplingConfig.get_active().default_percentage == 10

    def test_apply_eligibility(self, client, make_activity):
        activity = make_activity(type=ActivityType.OTHER)

        response = client.post(
            '/api/sampling/apply-eligibility/',
            data=json.dumps({'eligible_activity_types': ['Field Day']}),
            content_type='application/json',
        )

        activity.refresh_from_db()
        assert response.status_code == 200
        assert activity.lifecycle_status == LifecycleStatus.NOT_ELIGIBLE

    def test_run_returns_202(self, client, mock_delay):
        response = client.post(
            '/api/sampling/run/',
            data=json.dumps({'run_type': 'adhoc', 'date_from': '2026-01-01', 'date_to': '2026-01-31'}),
            content_type='application/json',
        )

        assert response.status_code == 202
        assert response.json()['run']['run_type'] == 'adhoc'

    def test_run_conflict_returns_409(self, client, mock_delay):
        busy = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)

        response = client.post(
            '/api/sampling/run/',
            data=json.dumps({'run_type': 'first_sample'}),
            content_type='application/json',
        )

        assert response.status_code == 409
        assert response.json()['run_id'] == busy.id

    def test_run_bad_date(self, client, mock_delay):
        response = client.post(
            '/api/sampling/run/',
            data=json.dumps({'run_type': 'adhoc', 'date_from': '01/02/2026', 'date_to': '2026-01-31'}),
            content_type='application/json',
        )

        assert response.status_code == 400

    @pytest.mark.parametrize('percentage', [True, '10'])
    def test_run_rejects_non_numeric_percentage(self, client, mock_delay, percentage):
        response = client.post(
            '/api/sampling/run/',
            data=json.dumps({'run_type': 'first_sample', 'percentage': percentage}),
            content_type='application/json',
        )

        assert response.status_code == 400
        assert not Run.objects.exists()
        mock_delay.assert_not_called()

    def test_reactivate_without_confirmation(self, client, make_activity):
        make_activity(lifecycle_status=LifecycleStatus.INACTIVE)

        response = client.post(
            '/api/sampling/reactivate/',
            data=json.dumps({'from_status': 'inactive', 'date_from': '2026-01-01', 'date_to': '2026-01-31'}),
            content_type='application/json',
        )

        assert response.status_code == 400

    def test_reactivate_preview(self, client, make_activity):
        make_activity(lifecycle_status=LifecycleStatus.INACTIVE)

        response = client.get(
            '/api/sampling/reactivate-preview/',
            {'from_status': 'inactive', 'date_from': '2026-01-01', 'date_to': '2026-01-31'},
        )

        assert response.status_code == 200
        assert response.json()['matched_activities'] == 1

    def test_first_sample_range(self, client, make_activity):
        make_activity(date=date(2026, 1, 9))

        response = client.get('/api/sampling/first-sample-range/')

        assert response.json() == {'date_from': '2026-01-09', 'date_to': '2026-01-09', 'never_sampled_active': 1}

    def test_list_activities_by_status(self, client, make_activity):
        make_activity(lifecycle_status=LifecycleStatus.SAMPLED)
        make_activity()

        response = client.get('/api/sampling/activities/', {'lifecycle_status': 'sampled'})

        body = response.json()
        assert body['count'] == 1
        assert body['results'][0]['lifecycle_status'] == 'sampled'
