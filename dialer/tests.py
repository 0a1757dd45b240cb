"""
Tests for the allocator (dialer/utils.py), callbacks (dialer/callbacks.py)
and the dialer endpoints.

Tests cover:
- Cursor stores and lock handling
- Round-robin fairness and cursor continuity
- Language grouping, skips and filters
- Reallocation
- Callback chain and cap
- Call outcome intake
"""

from collections import Counter
from datetime import timedelta
from unittest.mock import MagicMock, patch

import orjson as json
import pytest
from django.utils import timezone

from call_orchestrator.exceptions import AlreadyRunning, InvariantViolation, RunAborted
from dialer.callbacks import (
    apply_call_outcome,
    callback_history,
    create_callback,
    create_callbacks,
    list_callback_candidates,
)
from dialer.models import CallLog, CallTask, TaskStatus
from dialer.tasks import run_allocation_job, run_reallocation_job
from dialer.utils import (
    InMemoryCursorStore,
    RedisCursorStore,
    agents_by_language,
    allocate_tasks,
    assign_language,
    next_agent,
    normalize_language,
    reallocate_agent_tasks,
)
from runs.models import Run
from runs.utils import finish_run, start_run


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def cursor_store():
    return InMemoryCursorStore()


@pytest.fixture
def mock_conn():
    """Mock Redis connection with a lock that is always granted"""
    mock = MagicMock()
    mock_lock = MagicMock()
    mock_lock.acquire.return_value = True
    mock_lock.owned.return_value = True
    mock.lock.return_value = mock_lock
    return mock


def _assignees(tasks):
    return [CallTask.objects.get(pk=task.pk).assigned_agent_id for task in tasks]


# ============================================================================
# TEST: cursor stores
# ============================================================================

class TestNormalizeLanguage:

    def test_trims_and_lowercases(self):
        assert normalize_language('  Hindi ') == 'hindi'

    def test_blank_is_unknown(self):
        assert normalize_language('') == 'unknown'
        assert normalize_language(None) == 'unknown'


class TestCursorStores:

    def test_in_memory_defaults_to_zero(self, cursor_store):
        assert cursor_store.get('hindi') == 0

        with cursor_store.locked('hindi'):
            cursor_store.set('hindi', 2)

        assert cursor_store.get('hindi') == 2

    def test_redis_lock_acquired_and_released(self, mock_conn):
        store = RedisCursorStore(mock_conn)

        with store.locked('hindi'):
            pass

        mock_conn.lock.assert_called_once()
        assert mock_conn.lock.call_args[0][0] == 'ALLOCATION_CURSOR_LOCK:hindi'
        mock_conn.lock.return_value.release.assert_called_once()

    def test_redis_lock_busy(self, mock_conn):
        mock_conn.lock.return_value.acquire.return_value = False
        mock_conn.lock.return_value.owned.return_value = False
        store = RedisCursorStore(mock_conn)

        with pytest.raises(AlreadyRunning):
            with store.locked('hindi'):
                pass

        mock_conn.lock.return_value.release.assert_not_called()

    def test_redis_lock_released_on_error(self, mock_conn):
        store = RedisCursorStore(mock_conn)

        with pytest.raises(RuntimeError):
            with store.locked('tamil'):
                raise RuntimeError('db down')

        mock_conn.lock.return_value.release.assert_called_once()

    def test_redis_cursor_read_write(self, mock_conn):
        store = RedisCursorStore(mock_conn)
        mock_conn.hget.return_value = '4'

        assert store.get('hindi') == 4

        mock_conn.hget.return_value = None
        assert store.get('odia') == 0

        store.set('hindi', 1)
        mock_conn.hset.assert_called_once_with('ALLOCATION_CURSORS', 'hindi', 1)


# ============================================================================
# TEST: allocation
# ============================================================================

@pytest.mark.django_db
class TestAgentsByLanguage:

    def test_active_agents_grouped_and_ordered(self, make_agent):
        first = make_agent(languages=['Hindi', 'Marathi'])
        second = make_agent(languages=['hindi '])
        make_agent(languages=['Hindi'], is_active=False)

        mapping = agents_by_language()

        assert mapping == {'hindi': [first.id, second.id], 'marathi': [first.id]}

    def test_exclude_agent(self, make_agent):
        first = make_agent()
        second = make_agent()

        assert agents_by_language(exclude_agent_id=first.id) == {'hindi': [second.id]}


@pytest.mark.django_db
class TestAllocate:

    def test_fair_split_floor_ceil(self, make_agent, make_task, cursor_store):
        agents = [make_agent() for _ in range(3)]
        for _ in range(10):
            make_task()

        summary = allocate_tasks(language='Hindi', cursor_store=cursor_store)

        loads = Counter(CallTask.objects.values_list('assigned_agent_id', flat=True))
        assert summary['allocated'] == 10
        assert sorted(loads[agent.id] for agent in agents) == [3, 3, 4]
        assert not CallTask.objects.filter(status=TaskStatus.UNASSIGNED).exists()

    def test_cursor_continues_across_calls(self, make_agent, make_task, cursor_store):
        a1, a2, a3 = make_agent(), make_agent(), make_agent()
        first_batch = [make_task(), make_task()]

        allocate_tasks(language='all', cursor_store=cursor_store)
        second_batch = [make_task(), make_task()]
        allocate_tasks(language='all', cursor_store=cursor_store)

        assert _assignees(first_batch) == [a1.id, a2.id]
        assert _assignees(second_batch) == [a3.id, a1.id]
        assert cursor_store.get('hindi') == a1.id

    def test_assignment_moves_to_queue_with_history(self, make_agent, make_task, cursor_store):
        agent = make_agent()
        task = make_task()

        allocate_tasks(cursor_store=cursor_store)

        task.refresh_from_db()
        assert task.status == TaskStatus.SAMPLED_IN_QUEUE
        assert task.assigned_agent_id == agent.id
        assert task.interaction_history[-1]['status'] == TaskStatus.SAMPLED_IN_QUEUE

    def test_language_without_agent_is_skipped(self, make_agent, make_task, cursor_store):
        make_agent(languages=['Hindi'])
        make_task(language='Hindi')
        tamil = [make_task(language='Tamil'), make_task(language='Tamil')]

        summary = allocate_tasks(cursor_store=cursor_store)

        assert summary == {
            'matched': 3,
            'processed': 3,
            'allocated': 1,
            'skipped': 2,
            'skipped_by_language': {'tamil': 2},
        }
        for task in tamil:
            task.refresh_from_db()
            assert task.status == TaskStatus.UNASSIGNED
            assert task.assigned_agent_id is None

    def test_language_filter(self, make_agent, make_task, cursor_store):
        make_agent(languages=['Hindi', 'Marathi'])
        make_task(language='Hindi')
        marathi = make_task(language='marathi')

        summary = allocate_tasks(language='Marathi', cursor_store=cursor_store)

        assert summary['matched'] == 1
        assert CallTask.objects.get(status=TaskStatus.SAMPLED_IN_QUEUE).pk == marathi.pk

    def test_count_caps_selection_oldest_first(self, make_agent, make_task, cursor_store):
        make_agent()
        now = timezone.now()
        oldest = make_task(scheduled_date=now - timedelta(days=2))
        make_task(scheduled_date=now)
        older = make_task(scheduled_date=now - timedelta(days=1))

        summary = allocate_tasks(language='Hindi', count=2, cursor_store=cursor_store)

        assert summary['allocated'] == 2
        allocated = set(CallTask.objects.filter(status=TaskStatus.SAMPLED_IN_QUEUE).values_list('pk', flat=True))
        assert allocated == {oldest.pk, older.pk}

    def test_all_languages_with_count_interleaves(self, make_agent, make_task, cursor_store):
        make_agent(languages=['Hindi', 'Marathi'])
        for _ in range(4):
            make_task(language='Hindi')
        for _ in range(4):
            make_task(language='Marathi')

        allocate_tasks(language='all', count=4, cursor_store=cursor_store)

        queued = CallTask.objects.filter(status=TaskStatus.SAMPLED_IN_QUEUE)
        languages = Counter(task.farmer.preferred_language for task in queued)
        assert languages == {'Hindi': 2, 'Marathi': 2}

    def test_bu_filter(self, make_agent, make_task, make_activity, cursor_store):
        make_agent()
        south = make_task(activity=make_activity(bu='South'))
        make_task(activity=make_activity(bu='North'))

        summary = allocate_tasks(bu='South', cursor_store=cursor_store)

        assert summary['allocated'] == 1
        south.refresh_from_db()
        assert south.status == TaskStatus.SAMPLED_IN_QUEUE

    def test_team_lead_limits_agents(self, make_agent, make_task, cursor_store):
        lead = make_agent(languages=[])
        member = make_agent(team_lead=lead)
        make_agent()
        make_task()
        make_task()

        allocate_tasks(team_lead_id=lead.id, cursor_store=cursor_store)

        assert set(CallTask.objects.values_list('assigned_agent_id', flat=True)) == {member.id}

    def test_progress_written_to_run(self, make_agent, make_task, cursor_store):
        make_agent()
        make_task()
        make_task(language='Odia')
        run = start_run(Run.Kind.ALLOCATION, Run.RunType.ALLOCATE)

        allocate_tasks(cursor_store=cursor_store, run_id=run.id)

        run.refresh_from_db()
        assert run.matched == 2
        assert run.processed == 2
        assert run.allocated == 1
        assert run.skipped == 1
        assert run.skipped_by_language == {'odia': 1}

    def test_already_taken_task_not_reassigned(self, make_agent, make_task, cursor_store):
        make_agent()
        task = make_task()

        with patch('dialer.utils.select_unassigned_tasks', return_value=[task]):
            CallTask.objects.filter(pk=task.pk).update(status=TaskStatus.IN_PROGRESS)
            summary = allocate_tasks(cursor_store=cursor_store)

        task.refresh_from_db()
        assert summary['skipped'] == 1
        assert task.status == TaskStatus.IN_PROGRESS
        assert cursor_store.get('hindi') == 0

    def test_next_agent_wraps_around(self):
        assert next_agent([3, 5, 9], 0) == 3
        assert next_agent([3, 5, 9], 5) == 9
        assert next_agent([3, 5, 9], 9) == 3
        assert next_agent([3, 9], 4) == 9

    def test_cursor_follows_last_agent_across_agent_sets(self, make_agent, make_task):
        a1, a2, a3 = make_agent(), make_agent(), make_agent()
        cursor_store = InMemoryCursorStore({'hindi': a2.id})
        moved = make_task(status=TaskStatus.SAMPLED_IN_QUEUE, assigned_agent=a1)

        reallocate_agent_tasks(a1.id, cursor_store=cursor_store)
        fresh = make_task()
        allocate_tasks(language='Hindi', cursor_store=cursor_store)

        assert _assignees([moved, fresh]) == [a3.id, a1.id]

    def test_team_lead_allocation_keeps_rotation(self, make_agent, make_task, cursor_store):
        lead = make_agent(languages=[])
        a1 = make_agent()
        a2 = make_agent(team_lead=lead)
        a3 = make_agent(team_lead=lead)
        team_task = make_task()

        allocate_tasks(team_lead_id=lead.id, cursor_store=cursor_store)
        later = [make_task(), make_task()]
        allocate_tasks(cursor_store=cursor_store)

        assert _assignees([team_task]) == [a2.id]
        assert _assignees(later) == [a3.id, a1.id]

    def test_failed_run_stops_between_languages(self, make_agent, make_task, cursor_store):
        make_agent(languages=['Hindi', 'Marathi'])
        hindi = make_task(language='Hindi')
        marathi = make_task(language='Marathi')
        run = start_run(Run.Kind.ALLOCATION, Run.RunType.ALLOCATE)

        real_assign = assign_language

        def assign_then_expire(*args, **kwargs):
            result = real_assign(*args, **kwargs)
            Run.objects.filter(pk=run.id).update(status=Run.Status.FAILED)
            return result

        with patch('dialer.utils.assign_language', side_effect=assign_then_expire):
            with pytest.raises(RunAborted):
                allocate_tasks(cursor_store=cursor_store, run_id=run.id)

        assert CallTask.objects.get(pk=hindi.pk).status == TaskStatus.SAMPLED_IN_QUEUE
        assert CallTask.objects.get(pk=marathi.pk).status == TaskStatus.UNASSIGNED


@pytest.mark.django_db
class TestReallocate:

    def test_queue_moves_round_robin_to_other_agents(self, make_agent, make_task, cursor_store):
        leaving, b, c = make_agent(), make_agent(), make_agent()
        queued = [make_task(status=TaskStatus.SAMPLED_IN_QUEUE, assigned_agent=leaving) for _ in range(4)]
        calling = make_task(status=TaskStatus.IN_PROGRESS, assigned_agent=leaving)

        summary = reallocate_agent_tasks(leaving.id, cursor_store=cursor_store)

        assert summary['allocated'] == 4
        assert _assignees(queued) == [b.id, c.id, b.id, c.id]
        calling.refresh_from_db()
        assert calling.assigned_agent_id == leaving.id

    def test_no_other_capable_agent_returns_to_pool(self, make_agent, make_task, cursor_store):
        leaving = make_agent(languages=['Hindi', 'Tamil'])
        make_agent(languages=['Hindi'])
        tamil = make_task(language='Tamil', status=TaskStatus.SAMPLED_IN_QUEUE, assigned_agent=leaving)

        summary = reallocate_agent_tasks(leaving.id, cursor_store=cursor_store)

        tamil.refresh_from_db()
        assert summary['skipped'] == 1
        assert summary['skipped_by_language'] == {'tamil': 1}
        assert tamil.status == TaskStatus.UNASSIGNED
        assert tamil.assigned_agent_id is None


@pytest.mark.django_db
class TestAllocationJobs:

    @patch('dialer.tasks.RedisCursorStore', InMemoryCursorStore)
    def test_allocation_job_completes_run(self, make_agent, make_task):
        make_agent()
        make_task()
        run = start_run(Run.Kind.ALLOCATION, Run.RunType.ALLOCATE, filters={'language': 'all'})

        result = run_allocation_job(run.id)

        run.refresh_from_db()
        assert result['status'] == 'completed'
        assert run.status == Run.Status.COMPLETED
        assert run.allocated == 1

    @patch('dialer.tasks.RedisCursorStore', InMemoryCursorStore)
    def test_allocation_job_of_failed_run_assigns_nothing(self, make_agent, make_task):
        make_agent()
        task = make_task()
        run = start_run(Run.Kind.ALLOCATION, Run.RunType.ALLOCATE, filters={'language': 'all'})
        finish_run(run.id, Run.Status.FAILED)

        result = run_allocation_job(run.id)

        run.refresh_from_db()
        assert result['status'] == 'aborted'
        assert result['run_status'] == Run.Status.FAILED
        assert run.matched == 0
        assert CallTask.objects.get(pk=task.pk).status == TaskStatus.UNASSIGNED

    @patch('dialer.tasks.RedisCursorStore', InMemoryCursorStore)
    def test_reallocation_job_of_failed_run_moves_nothing(self, make_agent, make_task):
        leaving = make_agent()
        make_agent()
        task = make_task(status=TaskStatus.SAMPLED_IN_QUEUE, assigned_agent=leaving)
        run = start_run(Run.Kind.ALLOCATION, Run.RunType.REALLOCATE, filters={'agent_id': leaving.id})
        finish_run(run.id, Run.Status.FAILED)

        result = run_reallocation_job(run.id)

        assert result['status'] == 'aborted'
        assert CallTask.objects.get(pk=task.pk).assigned_agent_id == leaving.id

    @patch('dialer.tasks.RedisCursorStore', InMemoryCursorStore)
    def test_reallocation_job_failure_marks_run_failed(self):
        run = start_run(Run.Kind.ALLOCATION, Run.RunType.REALLOCATE, filters={})

        result = run_reallocation_job(run.id)

        run.refresh_from_db()
        assert result['status'] == 'error'
        assert run.status == Run.Status.FAILED


# ============================================================================
# TEST: callbacks
# ============================================================================

@pytest.mark.django_db
class TestCallbacks:

    def test_callback_from_not_reachable(self, make_task):
        parent = make_task(status=TaskStatus.NOT_REACHABLE)

        callback, created = create_callback(parent)

        assert created
        assert callback.is_callback
        assert callback.callback_number == 1
        assert callback.parent_task_id == parent.pk
        assert callback.status == TaskStatus.UNASSIGNED
        assert (callback.farmer_id, callback.activity_id) == (parent.farmer_id, parent.activity_id)

    def test_callback_is_idempotent(self, make_task):
        parent = make_task(status=TaskStatus.COMPLETED)

        first, _ = create_callback(parent)
        second, created = create_callback(parent)

        assert not created
        assert first.pk == second.pk
        assert CallTask.objects.filter(parent_task=parent).count() == 1

    def test_cap_reached(self, make_task):
        parent = make_task(status=TaskStatus.NOT_REACHABLE, is_callback=True, callback_number=2)

        with pytest.raises(InvariantViolation):
            create_callback(parent)

    def test_open_task_cannot_have_callback(self, make_task):
        parent = make_task(status=TaskStatus.SAMPLED_IN_QUEUE)

        with pytest.raises(InvariantViolation):
            create_callback(parent)

    def test_chain_stops_at_second_callback(self, make_agent, make_task):
        agent = make_agent()
        first_callback = make_task(
            status=TaskStatus.SAMPLED_IN_QUEUE, assigned_agent=agent, is_callback=True, callback_number=1,
        )

        _, second_callback = apply_call_outcome(
            first_callback.pk, TaskStatus.NOT_REACHABLE, call_status=CallLog.CallStatus.NO_ANSWER,
        )
        assert second_callback.callback_number == 2

        CallTask.objects.filter(pk=second_callback.pk).update(
            status=TaskStatus.SAMPLED_IN_QUEUE, assigned_agent=agent,
        )
        task, third = apply_call_outcome(
            second_callback.pk, TaskStatus.NOT_REACHABLE, call_status=CallLog.CallStatus.BUSY,
        )

        assert third is None
        assert task.status == TaskStatus.NOT_REACHABLE
        assert not CallTask.objects.filter(parent_task=second_callback).exists()

    def test_candidates_exclude_capped_and_already_called_back(self, make_task):
        eligible = make_task(status=TaskStatus.COMPLETED, outcome_at=timezone.now())
        make_task(status=TaskStatus.NOT_REACHABLE, is_callback=True, callback_number=2)
        handled = make_task(status=TaskStatus.NOT_REACHABLE)
        create_callback(handled)
        make_task(status=TaskStatus.SAMPLED_IN_QUEUE)

        candidates = list(list_callback_candidates())

        assert [task.pk for task in candidates] == [eligible.pk]

    def test_candidate_filters(self, make_task):
        original = make_task(status=TaskStatus.NOT_REACHABLE)
        make_task(status=TaskStatus.COMPLETED)
        make_task(status=TaskStatus.NOT_REACHABLE, is_callback=True, callback_number=1)

        candidates = list(list_callback_candidates(outcome='not_reachable', call_type='original'))

        assert [task.pk for task in candidates] == [original.pk]

    def test_batch_report(self, make_task):
        ok = make_task(status=TaskStatus.NOT_REACHABLE)
        capped = make_task(status=TaskStatus.COMPLETED, is_callback=True, callback_number=2)

        result = create_callbacks([ok.pk, capped.pk, 999999])

        assert [entry['task_id'] for entry in result['created']] == [ok.pk]
        assert [entry['task_id'] for entry in result['rejected']] == [capped.pk]
        assert result['not_found'] == [999999]

    def test_history_walks_whole_chain(self, make_task):
        original = make_task(status=TaskStatus.NOT_REACHABLE)
        first, _ = create_callback(original)
        CallTask.objects.filter(pk=first.pk).update(status=TaskStatus.NOT_REACHABLE)
        first.refresh_from_db()
        second, _ = create_callback(first)

        chain = callback_history(first)

        assert [task.pk for task in chain] == [original.pk, first.pk, second.pk]
        assert [task.callback_number for task in chain] == [0, 1, 2]


@pytest.mark.django_db
class TestCallOutcome:

    def test_completed_records_call_log(self, make_agent, make_task):
        agent = make_agent()
        task = make_task(status=TaskStatus.SAMPLED_IN_QUEUE, assigned_agent=agent)

        task, callback = apply_call_outcome(
            task.pk, TaskStatus.COMPLETED, call_status=CallLog.CallStatus.CONNECTED,
            duration_seconds=95, notes='Happy with seed quality',
        )

        log = CallLog.objects.get(task=task)
        assert callback is None
        assert task.outcome_at is not None
        assert task.call_started_at is not None
        assert log.agent_id == agent.id
        assert log.duration_seconds == 95
        assert task.interaction_history[-1]['notes'] == 'Happy with seed quality'

    def test_in_progress_sets_start_time(self, make_task):
        task = make_task(status=TaskStatus.SAMPLED_IN_QUEUE)

        task, _ = apply_call_outcome(task.pk, TaskStatus.IN_PROGRESS)

        assert task.status == TaskStatus.IN_PROGRESS
        assert task.call_started_at is not None
        assert task.outcome_at is None

    def test_finished_task_rejects_new_outcome(self, make_task):
        task = make_task(status=TaskStatus.COMPLETED)

        with pytest.raises(InvariantViolation):
            apply_call_outcome(task.pk, TaskStatus.NOT_REACHABLE)

    def test_unknown_status(self, make_task):
        task = make_task(status=TaskStatus.SAMPLED_IN_QUEUE)

        with pytest.raises(InvariantViolation):
            apply_call_outcome(task.pk, 'voicemail')


# ============================================================================
# TEST: HTTP endpoints
# ============================================================================

@pytest.mark.django_db
class TestDialerViews:

    @patch('dialer.tasks.run_allocation_job.delay')
    def test_allocate_returns_202(self, mock_delay, client):
        response = client.post(
            '/api/dialer/allocate/',
            data=json.dumps({'language': 'Hindi', 'count': 50}),
            content_type='application/json',
        )

        body = response.json()
        assert response.status_code == 202
        assert body['run']['filters']['language'] == 'hindi'
        mock_delay.assert_called_once_with(body['run']['id'])

    @patch('dialer.tasks.run_allocation_job.delay')
    def test_allocate_conflict(self, mock_delay, client):
        start_run(Run.Kind.ALLOCATION, Run.RunType.REALLOCATE)

        response = client.post('/api/dialer/allocate/', data=json.dumps({}), content_type='application/json')

        assert response.status_code == 409
        mock_delay.assert_not_called()

    @patch('dialer.tasks.run_allocation_job.delay')
    def test_allocate_count_over_cap(self, mock_delay, client):
        response = client.post(
            '/api/dialer/allocate/',
            data=json.dumps({'count': 5001}),
            content_type='application/json',
        )

        assert response.status_code == 400
        assert not Run.objects.exists()

    @patch('dialer.tasks.run_reallocation_job.delay')
    def test_reallocate_unknown_agent(self, mock_delay, client):
        response = client.post(
            '/api/dialer/reallocate/',
            data=json.dumps({'agent_id': 424242}),
            content_type='application/json',
        )

        assert response.status_code == 404
        assert not Run.objects.exists()

    @pytest.mark.parametrize('agent_id', ['abc', True, -3, 1.5])
    @patch('dialer.tasks.run_reallocation_job.delay')
    def test_reallocate_rejects_bad_agent_id(self, mock_delay, client, agent_id):
        response = client.post(
            '/api/dialer/reallocate/',
            data=json.dumps({'agent_id': agent_id}),
            content_type='application/json',
        )

        assert response.status_code == 400
        assert not Run.objects.exists()
        mock_delay.assert_not_called()

    def test_callback_candidates_bad_agent_id(self, client):
        response = client.get('/api/dialer/callbacks/candidates/', {'agent_id': 'abc'})

        assert response.status_code == 400

    def test_create_callbacks_rejects_non_integer_ids(self, client):
        response = client.post(
            '/api/dialer/callbacks/create/',
            data=json.dumps({'task_ids': ['abc']}),
            content_type='application/json',
        )

        assert response.status_code == 400

    @patch('dialer.tasks.run_reallocation_job.delay')
    def test_reallocate_returns_202(self, mock_delay, client, make_agent):
        agent = make_agent()

        response = client.post(
            '/api/dialer/reallocate/',
            data=json.dumps({'agent_id': agent.id}),
            content_type='application/json',
        )

        assert response.status_code == 202
        assert response.json()['run']['run_type'] == 'reallocate'

    def test_create_callbacks(self, client, make_task):
        parent = make_task(status=TaskStatus.NOT_REACHABLE)

        response = client.post(
            '/api/dialer/callbacks/create/',
            data=json.dumps({'task_ids': [parent.pk]}),
            content_type='application/json',
        )

        assert response.status_code == 201
        assert response.json()['created'][0]['task_id'] == parent.pk

    def test_callback_candidates(self, client, make_task):
        make_task(status=TaskStatus.COMPLETED)

        response = client.get('/api/dialer/callbacks/candidates/', {'outcome': 'completed'})

        assert response.status_code == 200
        assert response.json()['count'] == 1

    def test_callback_history_not_found(self, client):
        response = client.get('/api/dialer/tasks/999/callback-history/')

        assert response.status_code == 404

    def test_outcome_schedules_callback(self, client, make_task):
        task = make_task(status=TaskStatus.SAMPLED_IN_QUEUE)

        response = client.post(
            f'/api/dialer/tasks/{task.pk}/outcome/',
            data=json.dumps({'status': 'not_reachable', 'call_status': 'no_answer'}),
            content_type='application/json',
        )

        body = response.json()
        assert response.status_code == 200
        assert body['task']['status'] == 'not_reachable'
        assert body['callback_task']['callback_number'] == 1

    def test_outcome_missing_status(self, client, make_task):
        task = make_task(status=TaskStatus.SAMPLED_IN_QUEUE)

        response = client.post(
            f'/api/dialer/tasks/{task.pk}/outcome/',
            data=json.dumps({}),
            content_type='application/json',
        )

        assert response.status_code == 400
