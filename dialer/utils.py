"""
Allocator: round-robin of unassigned call tasks over language-capable agents.

Each language keeps a cursor (id of the last agent that received a task) that
survives across allocation calls, so consecutive small allocations still
spread evenly, whichever subset of agents a call works with. Cursor read,
assignment and cursor write for one language happen under that language's
lock.
"""

import logging
import threading
from collections import OrderedDict, defaultdict
from contextlib import contextmanager

from django.db.models import Q
from django.utils import timezone

from call_orchestrator.constants import ALL_LANGUAGES, ALLOCATION_SERVER_CAP, UNKNOWN_LANGUAGE
from call_orchestrator.exceptions import AlreadyRunning, NoCapableAgent
from call_orchestrator.redis import (
    ALLOCATION_CURSOR_LOCK_REDIS_KEY,
    ALLOCATION_CURSOR_REDIS_KEY,
    CURSOR_LOCK_TIMEOUT,
    LOCK_TIMEOUTS,
    SLEEP,
    conn,
)
from runs.models import Run
from runs.utils import advance_run, ensure_running, set_matched
from .models import Agent, CallTask, TaskStatus

logger = logging.getLogger(__name__)


def normalize_language(language):
    return (language or '').strip().lower() or UNKNOWN_LANGUAGE


def is_all_languages(language):
    return language is None or normalize_language(language) in ALL_LANGUAGES


# ============================================================================
# CURSOR STORES
# ============================================================================

class RedisCursorStore:
    """Cursors in one Redis hash, locked per language with a Redis lock."""

    def __init__(self, connection=None):
        self.conn = connection or conn

    @contextmanager
    def locked(self, language):
        lock_key = f"{ALLOCATION_CURSOR_LOCK_REDIS_KEY}{language}"
        cursor_lock = self.conn.lock(lock_key, timeout=CURSOR_LOCK_TIMEOUT, sleep=SLEEP)
        try:
            if not cursor_lock.acquire(blocking_timeout=LOCK_TIMEOUTS):
                logger.error(f"Could not acquire cursor lock for {language} - allocation busy")
                raise AlreadyRunning(Run.Kind.ALLOCATION)
            yield
        finally:
            if cursor_lock.owned():
                cursor_lock.release()

    def get(self, language):
        raw = self.conn.hget(ALLOCATION_CURSOR_REDIS_KEY, language)
        return int(raw) if raw is not None else 0

    def set(self, language, value):
        self.conn.hset(ALLOCATION_CURSOR_REDIS_KEY, language, value)


class InMemoryCursorStore:
    """Process-local cursors. Used by tests and one-off scripts."""

    def __init__(self, cursors=None):
        self._cursors = dict(cursors or {})
        self._locks = defaultdict(threading.Lock)
        self._guard = threading.Lock()

    @contextmanager
    def locked(self, language):
        with self._guard:
            language_lock = self._locks[language]
        with language_lock:
            yield

    def get(self, language):
        return self._cursors.get(language, 0)

    def set(self, language, value):
        self._cursors[language] = value


# ============================================================================
# AGENTS + TASK SELECTION
# ============================================================================

def agents_by_language(exclude_agent_id=None, team_lead_id=None):
    """{normalised language: [agent ids ordered by id]} for active agents."""
    agents = Agent.objects.filter(is_active=True).order_by('id')
    if exclude_agent_id is not None:
        agents = agents.exclude(pk=exclude_agent_id)
    if team_lead_id is not None:
        agents = agents.filter(team_lead_id=team_lead_id)

    mapping = defaultdict(list)
    for agent in agents:
        for language in set(normalize_language(lang) for lang in agent.language_capabilities or []):
            mapping[language].append(agent.id)
    return dict(mapping)


def capable_agents(language, agent_map):
    agent_ids = agent_map.get(language)
    if not agent_ids:
        raise NoCapableAgent(language)
    return agent_ids


def group_by_language(tasks):
    grouped = OrderedDict()
    for task in tasks:
        grouped.setdefault(normalize_language(task.farmer.preferred_language), []).append(task)
    return grouped


def interleave_languages(grouped, count):
    """Take one task per language in turn until `count` tasks are picked."""
    queues = [list(tasks) for _, tasks in sorted(grouped.items())]
    picked = []
    while len(picked) < count and any(queues):
        for queue in queues:
            if queue and len(picked) < count:
                picked.append(queue.pop(0))
    return picked


def select_unassigned_tasks(language=None, count=None, date_from=None, date_to=None, bu=None, state=None):
    """Unassigned tasks matching the filters, oldest scheduled first, capped at the server cap."""
    cap = min(count, ALLOCATION_SERVER_CAP) if count else ALLOCATION_SERVER_CAP

    queryset = CallTask.objects.filter(status=TaskStatus.UNASSIGNED).select_related('farmer', 'activity')
    if date_from:
        queryset = queryset.filter(scheduled_date__date__gte=date_from)
    if date_to:
        queryset = queryset.filter(scheduled_date__date__lte=date_to)
    if bu:
        queryset = queryset.filter(activity__bu=bu)
    if state:
        queryset = queryset.filter(activity__state=state)

    queryset = queryset.order_by('scheduled_date', 'created_at', 'id')

    if not is_all_languages(language):
        normalised = normalize_language(language)
        language_filter = Q(farmer__preferred_language__iexact=normalised)
        if normalised == UNKNOWN_LANGUAGE:
            language_filter |= Q(farmer__preferred_language='')
        return list(queryset.filter(language_filter)[:cap])

    if count:
        # Pull the whole capped window so every language gets its turn.
        return interleave_languages(group_by_language(queryset[:ALLOCATION_SERVER_CAP]), cap)
    return list(queryset[:cap])


# ============================================================================
# ASSIGNMENT
# ============================================================================

def _move_task(task, now, expected_status, new_status, agent_id, notes, expected_agent_id=None):
    """Conditional update; False when the task changed under us."""
    task.add_interaction(new_status, notes, at=now)
    guard = CallTask.objects.filter(pk=task.pk, status=expected_status)
    if expected_agent_id is not None:
        guard = guard.filter(assigned_agent_id=expected_agent_id)
    updated = guard.update(
        status=new_status,
        assigned_agent_id=agent_id,
        interaction_history=task.interaction_history,
        updated_at=now,
    )
    return updated == 1


def next_agent(agent_ids, last_agent_id):
    """First agent after `last_agent_id` in id order, wrapping to the lowest id."""
    for agent_id in agent_ids:
        if agent_id > last_agent_id:
            return agent_id
    return agent_ids[0]


def assign_language(language, tasks, agent_map, cursor_store, now, expected_status=TaskStatus.UNASSIGNED,
                    expected_agent_id=None):
    """
    Round-robin `tasks` of one language across its capable agents.

    Returns (allocated, skipped). Raises NoCapableAgent when nobody speaks it.
    """
    agent_ids = capable_agents(language, agent_map)
    allocated = 0
    skipped = 0

    with cursor_store.locked(language):
        last_agent_id = cursor_store.get(language)
        for task in tasks:
            agent_id = next_agent(agent_ids, last_agent_id)
            moved = _move_task(
                task,
                now,
                expected_status=expected_status,
                new_status=TaskStatus.SAMPLED_IN_QUEUE,
                agent_id=agent_id,
                notes=f"Allocated to agent {agent_id}",
                expected_agent_id=expected_agent_id,
            )
            if moved:
                allocated += 1
                last_agent_id = agent_id
            else:
                logger.warning(f"Task {task.pk} changed before it could be allocated, skipping")
                skipped += 1
        cursor_store.set(language, last_agent_id)

    return allocated, skipped


def allocate_tasks(language=None, count=None, date_from=None, date_to=None, bu=None, state=None,
                   team_lead_id=None, cursor_store=None, run_id=None, now=None):
    """
    Assign unassigned tasks to agents. Tasks nobody can take stay unassigned.

    Returns a summary with matched, processed, allocated, skipped and
    skipped_by_language.
    """
    cursor_store = cursor_store or RedisCursorStore()
    now = now or timezone.now()

    if run_id is not None:
        ensure_running(run_id)

    tasks = select_unassigned_tasks(language, count, date_from, date_to, bu, state)
    if run_id is not None:
        set_matched(run_id, len(tasks))

    agent_map = agents_by_language(team_lead_id=team_lead_id)
    summary = {'matched': len(tasks), 'processed': 0, 'allocated': 0, 'skipped': 0, 'skipped_by_language': {}}

    for task_language, language_tasks in sorted(group_by_language(tasks).items()):
        if run_id is not None:
            ensure_running(run_id)
        skipped_by_language = {}
        try:
            allocated, skipped = assign_language(task_language, language_tasks, agent_map, cursor_store, now)
        except NoCapableAgent as exc:
            logger.warning(f"{exc}: leaving {len(language_tasks)} tasks unassigned")
            allocated, skipped = 0, len(language_tasks)
            skipped_by_language = {task_language: skipped}

        _tally(summary, len(language_tasks), allocated, skipped, skipped_by_language)
        if run_id is not None:
            advance_run(
                run_id,
                processed_delta=len(language_tasks),
                counters={'allocated': allocated, 'skipped': skipped},
                skipped_by_language=skipped_by_language,
            )

    logger.info(
        f"Allocation ({language or 'all'}): {summary['allocated']} allocated, "
        f"{summary['skipped']} skipped of {summary['matched']} matched"
    )
    return summary


def reallocate_agent_tasks(agent_id, cursor_store=None, run_id=None, now=None):
    """
    Spread one agent's queued (sampled_in_queue) tasks over the other capable agents.

    In-progress tasks stay where they are. A task nobody else can take goes
    back to unassigned and counts as skipped.
    """
    cursor_store = cursor_store or RedisCursorStore()
    now = now or timezone.now()

    if run_id is not None:
        ensure_running(run_id)

    tasks = list(
        CallTask.objects
        .filter(assigned_agent_id=agent_id, status=TaskStatus.SAMPLED_IN_QUEUE)
        .select_related('farmer')
        .order_by('scheduled_date', 'created_at', 'id')
    )
    if run_id is not None:
        set_matched(run_id, len(tasks))

    agent_map = agents_by_language(exclude_agent_id=agent_id)
    summary = {'matched': len(tasks), 'processed': 0, 'allocated': 0, 'skipped': 0, 'skipped_by_language': {}}

    for task_language, language_tasks in sorted(group_by_language(tasks).items()):
        if run_id is not None:
            ensure_running(run_id)
        skipped_by_language = {}
        try:
            allocated, skipped = assign_language(
                task_language,
                language_tasks,
                agent_map,
                cursor_store,
                now,
                expected_status=TaskStatus.SAMPLED_IN_QUEUE,
                expected_agent_id=agent_id,
            )
        except NoCapableAgent as exc:
            logger.warning(f"{exc}: returning {len(language_tasks)} tasks of agent {agent_id} to unassigned")
            allocated, skipped = 0, len(language_tasks)
            skipped_by_language = {task_language: skipped}
            for task in language_tasks:
                _move_task(
                    task,
                    now,
                    expected_status=TaskStatus.SAMPLED_IN_QUEUE,
                    new_status=TaskStatus.UNASSIGNED,
                    agent_id=None,
                    notes=f"Returned to pool from agent {agent_id}",
                    expected_agent_id=agent_id,
                )

        _tally(summary, len(language_tasks), allocated, skipped, skipped_by_language)
        if run_id is not None:
            advance_run(
                run_id,
                processed_delta=len(language_tasks),
                counters={'allocated': allocated, 'skipped': skipped},
                skipped_by_language=skipped_by_language,
            )

    logger.info(
        f"Reallocation of agent {agent_id}: {summary['allocated']} moved, "
        f"{summary['skipped']} returned to pool of {summary['matched']}"
    )
    return summary


def _tally(summary, processed, allocated, skipped, skipped_by_language):
    summary['processed'] += processed
    summary['allocated'] += allocated
    summary['skipped'] += skipped
    for language, value in skipped_by_language.items():
        summary['skipped_by_language'][language] = summary['skipped_by_language'].get(language, 0) + value
