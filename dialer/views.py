"""
API Views for Dialer endpoints.

Allocation and reallocation runs, callback scheduling and call outcome intake.
Allocation progress is polled from /api/runs/allocation/latest/.
"""

from django.http import JsonResponse
from django.utils.dateparse import parse_date
from django.views.decorators.http import require_http_methods
from django.views.decorators.csrf import csrf_exempt
import orjson as json
import logging

from call_orchestrator.exceptions import AlreadyRunning, InvariantViolation
from runs.utils import serialize_run
from . import callbacks
from .models import Agent, CallTask
from .tasks import trigger_allocation, trigger_reallocation

logger = logging.getLogger(__name__)


def _serialize_task(task):
    """Convert call task to JSON dict."""
    return {
        'id': task.id,
        'farmer_id': task.farmer_id,
        'activity_id': task.activity_id,
        'status': task.status,
        'assigned_agent_id': task.assigned_agent_id,
        'scheduled_date': task.scheduled_date.isoformat(),
        'is_callback': task.is_callback,
        'callback_number': task.callback_number,
        'parent_task_id': task.parent_task_id,
        'call_started_at': task.call_started_at.isoformat() if task.call_started_at else None,
        'outcome_at': task.outcome_at.isoformat() if task.outcome_at else None,
        'created_at': task.created_at.isoformat() if task.created_at else None,
        'interaction_history': task.interaction_history,
    }


def _parse_date(value, name):
    if value in (None, ''):
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise InvariantViolation(f"{name} must be a YYYY-MM-DD date")
    return parsed


def _parse_id(value, name):
    """Positive integer id from JSON or a query string; None when absent."""
    if value in (None, ''):
        return None
    if isinstance(value, bool):
        raise InvariantViolation(f"{name} must be an integer id")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if not isinstance(value, int) or value < 1:
        raise InvariantViolation(f"{name} must be an integer id")
    return value


def _created_by(request, data=None):
    user = getattr(request, 'user', None)
    if user is not None and user.is_authenticated:
        return user.get_username()
    return (data or {}).get('created_by', '')


# ============================================================================
# ALLOCATION
# ============================================================================

@csrf_exempt
@require_http_methods(["POST"])
def allocate(request):
    """
    Start an allocation run.

    POST /api/dialer/allocate/
    {
        "language": "Hindi" | "all",
        "count": 200,
        "date_from": "2026-01-01",
        "date_to": "2026-01-31",
        "bu": "North",
        "state": "Punjab",
        "team_lead_id": 3
    }
    """
    try:
        data = json.loads(request.body) if request.body else {}

        count = data.get('count')
        if count is not None and (not isinstance(count, int) or isinstance(count, bool)):
            return JsonResponse({'error': 'count must be an integer'}, status=400)

        run = trigger_allocation(
            language=data.get('language'),
            count=count,
            date_from=_parse_date(data.get('date_from'), 'date_from'),
            date_to=_parse_date(data.get('date_to'), 'date_to'),
            bu=data.get('bu') or None,
            state=data.get('state') or None,
            team_lead_id=_parse_id(data.get('team_lead_id'), 'team_lead_id'),
            created_by=_created_by(request, data),
        )
        return JsonResponse({'run': serialize_run(run)}, status=202)

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except AlreadyRunning as e:
        return JsonResponse({'error': str(e), 'run_id': e.run_id}, status=409)
    except InvariantViolation as e:
        return JsonResponse({'error': str(e)}, status=400)


@csrf_exempt
@require_http_methods(["POST"])
def reallocate(request):
    """
    Move one agent's queued tasks to the other capable agents.

    POST /api/dialer/reallocate/
    {"agent_id": 7}
    """
    try:
        data = json.loads(request.body)
        agent_id = _parse_id(data.get('agent_id'), 'agent_id')
        if agent_id is None:
            return JsonResponse({'error': 'Missing required field: agent_id'}, status=400)

        run = trigger_reallocation(agent_id, created_by=_created_by(request, data))
        return JsonResponse({'run': serialize_run(run)}, status=202)

    except Agent.DoesNotExist:
        return JsonResponse({'error': 'Agent not found'}, status=404)
    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except AlreadyRunning as e:
        return JsonResponse({'error': str(e), 'run_id': e.run_id}, status=409)
    except InvariantViolation as e:
        return JsonResponse({'error': str(e)}, status=400)


# ============================================================================
# CALLBACKS
# ============================================================================

@csrf_exempt
@require_http_methods(["GET"])
def list_callback_candidates(request):
    """
    GET /api/dialer/callbacks/candidates/?outcome=not_reachable&call_type=original&agent_id=3&date_from=...
    """
    try:
        candidates = callbacks.list_callback_candidates(
            date_from=_parse_date(request.GET.get('date_from'), 'date_from'),
            date_to=_parse_date(request.GET.get('date_to'), 'date_to'),
            outcome=request.GET.get('outcome') or None,
            call_type=request.GET.get('call_type') or None,
            agent_id=_parse_id(request.GET.get('agent_id'), 'agent_id'),
        )
        results = [_serialize_task(task) for task in candidates]
        return JsonResponse({'count': len(results), 'results': results})

    except InvariantViolation as e:
        return JsonResponse({'error': str(e)}, status=400)


@csrf_exempt
@require_http_methods(["POST"])
def create_callbacks(request):
    """
    POST /api/dialer/callbacks/create/
    {"task_ids": [11, 12, 13]}
    """
    try:
        data = json.loads(request.body)
        task_ids = data.get('task_ids')
        if not isinstance(task_ids, list) or not task_ids:
            return JsonResponse({'error': 'task_ids must be a non-empty list'}, status=400)
        if any(isinstance(task_id, bool) or not isinstance(task_id, int) for task_id in task_ids):
            return JsonResponse({'error': 'task_ids must be integer ids'}, status=400)

        result = callbacks.create_callbacks(task_ids)
        status = 201 if result['created'] else 200
        return JsonResponse(result, status=status)

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)


@csrf_exempt
@require_http_methods(["GET"])
def get_callback_history(request, task_id):
    try:
        task = CallTask.objects.get(pk=task_id)
    except CallTask.DoesNotExist:
        return JsonResponse({'error': 'Task not found'}, status=404)

    chain = callbacks.callback_history(task)
    return JsonResponse({'task_id': task.id, 'chain': [_serialize_task(item) for item in chain]})


# ============================================================================
# CALL OUTCOME
# ============================================================================

@csrf_exempt
@require_http_methods(["POST"])
def record_call_outcome(request, task_id):
    """
    Intake from the call-handling workflow.

    POST /api/dialer/tasks/<task_id>/outcome/
    {
        "status": "not_reachable",
        "call_status": "no_answer",
        "agent_id": 3,
        "duration_seconds": 0,
        "notes": "Switched off"
    }
    """
    try:
        data = json.loads(request.body)
        if not data.get('status'):
            return JsonResponse({'error': 'Missing required field: status'}, status=400)

        task, callback = callbacks.apply_call_outcome(
            task_id,
            data['status'],
            call_status=data.get('call_status'),
            agent_id=_parse_id(data.get('agent_id'), 'agent_id'),
            duration_seconds=data.get('duration_seconds', 0),
            notes=data.get('notes', ''),
        )
        return JsonResponse({
            'task': _serialize_task(task),
            'callback_task': _serialize_task(callback) if callback else None,
        })

    except CallTask.DoesNotExist:
        return JsonResponse({'error': 'Task not found'}, status=404)
    except Agent.DoesNotExist:
        return JsonResponse({'error': 'Agent not found'}, status=404)
    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except InvariantViolation as e:
        return JsonResponse({'error': str(e)}, status=400)
