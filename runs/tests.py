"""
Tests for the run tracker (runs/utils.py) and the polling endpoint.

Tests cover:
- Single-flight per run kind
- Monotonic progress and counters
- Stale run detection
- Error recording
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from call_orchestrator.constants import MAX_STORED_RUN_ERRORS, RUN_STALE_AFTER_SECONDS
from call_orchestrator.exceptions import AlreadyRunning, InvariantViolation, RunAborted
from runs.models import Run
from runs.utils import (
    advance_run,
    ensure_running,
    expire_stale_runs,
    finish_run,
    heartbeat_run,
    latest_run,
    record_run_error,
    set_matched,
    start_run,
)

pytestmark = pytest.mark.django_db


# ============================================================================
# TEST: start_run / finish_run
# ============================================================================

class TestSingleFlight:

    def test_start_creates_running_run(self):
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE, filters={'date_to': '2026-01-31'}, created_by='ops')

        assert run.status == Run.Status.RUNNING
        assert run.filters == {'date_to': '2026-01-31'}
        assert run.created_by == 'ops'
        assert run.last_progress_at is not None

    def test_second_start_of_same_kind_is_rejected(self):
        first = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)

        with pytest.raises(AlreadyRunning) as exc_info:
            start_run(Run.Kind.SAMPLING, Run.RunType.ADHOC)

        assert exc_info.value.run_id == first.id
        assert Run.objects.filter(kind=Run.Kind.SAMPLING).count() == 1

    def test_kinds_are_independent(self):
        start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)
        allocation = start_run(Run.Kind.ALLOCATION, Run.RunType.ALLOCATE)

        assert allocation.status == Run.Status.RUNNING
        assert Run.objects.filter(status=Run.Status.RUNNING).count() == 2

    def test_start_allowed_after_previous_finishes(self):
        first = start_run(Run.Kind.ALLOCATION, Run.RunType.ALLOCATE)
        finish_run(first.id, Run.Status.COMPLETED)

        second = start_run(Run.Kind.ALLOCATION, Run.RunType.REALLOCATE)

        assert second.id != first.id

    def test_lock_not_acquired_creates_nothing(self, mock_run_lock):
        mock_run_lock.lock.return_value.acquire.return_value = False
        mock_run_lock.lock.return_value.owned.return_value = False

        with pytest.raises(AlreadyRunning):
            start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)

        assert Run.objects.count() == 0
        mock_run_lock.lock.return_value.release.assert_not_called()

    def test_lock_released_after_start(self, mock_run_lock):
        start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)

        mock_run_lock.lock.assert_called_once()
        assert mock_run_lock.lock.call_args[0][0] == 'RUN_START_LOCK:sampling'
        mock_run_lock.lock.return_value.release.assert_called_once()

    def test_finish_requires_terminal_status(self):
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)

        with pytest.raises(InvariantViolation):
            finish_run(run.id, Run.Status.RUNNING)

    def test_finish_is_not_applied_twice(self):
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)
        finish_run(run.id, Run.Status.FAILED)

        run = finish_run(run.id, Run.Status.COMPLETED)

        assert run.status == Run.Status.FAILED
        assert run.finished_at is not None


# ============================================================================
# TEST: progress
# ============================================================================

class TestProgress:

    @pytest.fixture
    def run(self):
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)
        set_matched(run.id, 10)
        return run

    def test_advance_adds_processed_and_counters(self, run):
        advance_run(run.id, processed_delta=3, counters={'tasks_created': 7, 'sampled_activities': 2})
        advance_run(run.id, processed_delta=2, counters={'inactive_activities': 1})

        run.refresh_from_db()
        assert run.processed == 5
        assert run.tasks_created == 7
        assert run.sampled_activities == 2
        assert run.inactive_activities == 1

    def test_negative_delta_rejected(self, run):
        with pytest.raises(InvariantViolation):
            advance_run(run.id, processed_delta=-1)

        with pytest.raises(InvariantViolation):
            advance_run(run.id, counters={'allocated': -2})

    def test_processed_never_exceeds_matched(self, run):
        advance_run(run.id, processed_delta=10)

        with pytest.raises(InvariantViolation):
            advance_run(run.id, processed_delta=1)

        run.refresh_from_db()
        assert run.processed == 10

    def test_matched_cannot_drop_below_processed(self, run):
        advance_run(run.id, processed_delta=4)

        with pytest.raises(InvariantViolation):
            set_matched(run.id, 3)

    def test_unknown_counter_rejected(self, run):
        with pytest.raises(InvariantViolation):
            advance_run(run.id, counters={'farmers_called': 1})

    def test_skipped_by_language_merges(self, run):
        advance_run(run.id, processed_delta=1, counters={'skipped': 2}, skipped_by_language={'tamil': 2})
        advance_run(run.id, processed_delta=1, counters={'skipped': 3}, skipped_by_language={'tamil': 1, 'odia': 2})

        run.refresh_from_db()
        assert run.skipped == 5
        assert run.skipped_by_language == {'tamil': 3, 'odia': 2}

    def test_record_error_keeps_latest_messages(self, run):
        for i in range(MAX_STORED_RUN_ERRORS + 5):
            record_run_error(run.id, f'error {i}')

        run.refresh_from_db()
        assert run.error_count == MAX_STORED_RUN_ERRORS + 5
        assert len(run.error_messages) == MAX_STORED_RUN_ERRORS
        assert run.error_messages[-1] == f'error {MAX_STORED_RUN_ERRORS + 4}'


# ============================================================================
# TEST: stale runs + polling
# ============================================================================

class TestStaleRuns:

    def test_stale_run_marked_failed_on_read(self):
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)
        old = timezone.now() - timedelta(seconds=RUN_STALE_AFTER_SECONDS + 60)
        Run.objects.filter(pk=run.id).update(last_progress_at=old)

        latest = latest_run(Run.Kind.SAMPLING)

        assert latest.id == run.id
        assert latest.status == Run.Status.FAILED
        assert latest.error_count == 1

    def test_recent_run_left_running(self):
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)

        assert latest_run(Run.Kind.SAMPLING).status == Run.Status.RUNNING
        assert latest_run(Run.Kind.SAMPLING).id == run.id

    def test_stale_run_does_not_block_new_start(self):
        run = start_run(Run.Kind.ALLOCATION, Run.RunType.ALLOCATE)
        old = timezone.now() - timedelta(seconds=RUN_STALE_AFTER_SECONDS + 1)
        Run.objects.filter(pk=run.id).update(last_progress_at=old)

        new_run = start_run(Run.Kind.ALLOCATION, Run.RunType.ALLOCATE)

        assert new_run.status == Run.Status.RUNNING
        assert Run.objects.get(pk=run.id).status == Run.Status.FAILED

    def test_latest_run_none_when_kind_never_ran(self):
        assert latest_run(Run.Kind.ALLOCATION) is None


class TestLatestRunView:

    def test_returns_latest_snapshot(self, client):
        start_run(Run.Kind.SAMPLING, Run.RunType.ADHOC)

        response = client.get('/api/runs/sampling/latest/')

        assert response.status_code == 200
        body = response.json()
        assert body['run']['kind'] == 'sampling'
        assert body['run']['status'] == 'running'
        assert body['run']['processed'] == 0

    def test_null_when_no_run(self, client):
        response = client.get('/api/runs/allocation/latest/')

        assert response.status_code == 200
        assert response.json() == {'run': None}

    def test_unknown_kind(self, client):
        response = client.get('/api/runs/export/latest/')

        assert response.status_code == 404

    def test_post_not_allowed(self, client):
        response = client.post('/api/runs/sampling/latest/')

        assert response.status_code == 405


# ============================================================================
# TEST: heartbeat
# ============================================================================

class TestHeartbeat:

    def test_heartbeat_refreshes_running_run(self):
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)
        old = timezone.now() - timedelta(seconds=RUN_STALE_AFTER_SECONDS - 10)
        Run.objects.filter(pk=run.id).update(last_progress_at=old)

        assert heartbeat_run(run.id) is True

        run.refresh_from_db()
        assert run.last_progress_at > old

    def test_heartbeat_refuses_terminal_run(self):
        run = start_run(Run.Kind.SAMPLING, Run.RunType.FIRST_SAMPLE)
        finish_run(run.id, Run.Status.FAILED)
        finished = Run.objects.get(pk=run.id).last_progress_at

        assert heartbeat_run(run.id) is False
        assert Run.objects.get(pk=run.id).last_progress_at == finished

    def test_ensure_running_raises_once_expired(self):
        run = start_run(Run.Kind.ALLOCATION, Run.RunType.ALLOCATE)
        expire_stale_runs(Run.Kind.ALLOCATION, now=timezone.now() + timedelta(hours=1))

        with pytest.raises(RunAborted) as exc_info:
            ensure_running(run.id)

        assert exc_info.value.status == Run.Status.FAILED
