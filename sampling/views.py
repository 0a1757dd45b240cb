"""
API Views for Sampling endpoints.

Config, eligibility, sampling runs and reactivation. Runs are started here and
processed by Celery; progress is polled from /api/runs/sampling/latest/.
"""

from django.core.exceptions import ValidationError
from django.core.paginator import Paginator
from django.http import JsonResponse
from django.utils.dateparse import parse_date
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
import orjson as json
import logging

from call_orchestrator.exceptions import AlreadyRunning, ConfirmationRequired, InvariantViolation
from runs.models import Run
from runs.utils import serialize_run
from .lifecycle import apply_eligibility as apply_eligibility_to_activities
from .lifecycle import reactivate as reactivate_activities
from .lifecycle import reactivate_preview as preview_reactivation
from .models import Activity, LifecycleStatus, SamplingConfig
from .tasks import resolve_first_sample_range, trigger_sampling_run

logger = logging.getLogger(__name__)

CONFIG_FIELDS = (
    'eligible_activity_types',
    'activity_cooling_days',
    'farmer_cooling_days',
    'default_percentage',
    'activity_type_percentages',
    'task_due_in_days',
    'auto_run_enabled',
    'auto_run_threshold',
    'auto_run_activate_from',
)


def _serialize_config(config):
    """Convert config to JSON dict."""
    return {
        'eligible_activity_types': config.eligible_activity_types,
        'activity_cooling_days': config.activity_cooling_days,
        'farmer_cooling_days': config.farmer_cooling_days,
        'default_percentage': config.default_percentage,
        'activity_type_percentages': config.activity_type_percentages,
        'task_due_in_days': config.task_due_in_days,
        'auto_run_enabled': config.auto_run_enabled,
        'auto_run_threshold': config.auto_run_threshold,
        'auto_run_activate_from': config.auto_run_activate_from.isoformat() if config.auto_run_activate_from else None,
        'updated_by': config.updated_by,
        'updated_at': config.updated_at.isoformat() if config.updated_at else None,
    }


def _serialize_activity(activity):
    """Convert activity to JSON dict."""
    return {
        'id': activity.id,
        'activity_id': activity.activity_id,
        'type': activity.type,
        'date': activity.date.isoformat(),
        'territory': activity.territory,
        'zone': activity.zone,
        'bu': activity.bu,
        'state': activity.state,
        'officer_id': activity.officer_id,
        'officer_name': activity.officer_name,
        'lifecycle_status': activity.lifecycle_status,
        'lifecycle_updated_at': activity.lifecycle_updated_at.isoformat() if activity.lifecycle_updated_at else None,
        'last_sampling_run_at': activity.last_sampling_run_at.isoformat() if activity.last_sampling_run_at else None,
        'first_sampled_at': activity.first_sampled_at.isoformat() if activity.first_sampled_at else None,
    }


def _parse_date(value, name):
    if value in (None, ''):
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise InvariantViolation(f"{name} must be a YYYY-MM-DD date")
    return parsed


def _created_by(request, data=None):
    user = getattr(request, 'user', None)
    if user is not None and user.is_authenticated:
        return user.get_username()
    return (data or {}).get('created_by', '')


def _reactivation_filter(source):
    activity_ids = source.get('activity_ids') or None
    if isinstance(activity_ids, str):
        activity_ids = [value.strip() for value in activity_ids.split(',') if value.strip()]
    return {
        'from_status': source.get('from_status'),
        'date_from': _parse_date(source.get('date_from'), 'date_from'),
        'date_to': _parse_date(source.get('date_to'), 'date_to'),
        'activity_ids': activity_ids,
    }


# ============================================================================
# CONFIG + ELIGIBILITY
# ============================================================================

@csrf_exempt
@require_http_methods(["GET", "PUT"])
def sampling_config(request):
    """
    Read or update the sampling config.

    PUT /api/sampling/config/
    {
        "farmer_cooling_days": 30,
        "default_percentage": 10,
        "activity_type_percentages": {"Field Day": 15}
    }
    """
    config = SamplingConfig.get_active()
    if request.method == "GET":
        return JsonResponse(_serialize_config(config))

    try:
        data = json.loads(request.body)
        unknown = sorted(set(data) - set(CONFIG_FIELDS) - {'created_by'})
        if unknown:
            return JsonResponse({'error': f"Unknown config fields: {', '.join(unknown)}"}, status=400)
        if 'eligible_activity_types' in data:
            return JsonResponse(
                {'error': 'Use /api/sampling/apply-eligibility/ to change eligible activity types'},
                status=400
            )

        for field_name in CONFIG_FIELDS:
            if field_name in data:
                setattr(config, field_name, data[field_name])
        config.updated_by = _created_by(request, data)
        config.full_clean()
        config.save()

        logger.info(f"Sampling config updated by {config.updated_by or 'unknown'}: {sorted(data)}")
        return JsonResponse(_serialize_config(config))

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except ValidationError as e:
        return JsonResponse({'error': e.message_dict}, status=400)


@csrf_exempt
@require_http_methods(["POST"])
def apply_eligibility(request):
    """
    POST /api/sampling/apply-eligibility/
    {"eligible_activity_types": ["Field Day", "OFM"]}
    """
    try:
        data = json.loads(request.body)
        eligible_types = data.get('eligible_activity_types')
        if not isinstance(eligible_types, list):
            return JsonResponse({'error': 'eligible_activity_types must be a list'}, status=400)

        result = apply_eligibility_to_activities(eligible_types, updated_by=_created_by(request, data))
        return JsonResponse(result)

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except InvariantViolation as e:
        return JsonResponse({'error': str(e)}, status=400)


# ============================================================================
# SAMPLING RUNS
# ============================================================================

@csrf_exempt
@require_http_methods(["POST"])
def run_sampling(request):
    """
    Start a sampling run.

    POST /api/sampling/run/
    {
        "run_type": "first_sample" | "adhoc",
        "date_from": "2026-01-01",            (adhoc only)
        "date_to": "2026-01-31",              (adhoc only)
        "lifecycle_statuses": ["inactive"],   (adhoc only, optional)
        "percentage": 10                      (optional)
    }
    """
    try:
        data = json.loads(request.body)
        run_type = data.get('run_type', Run.RunType.FIRST_SAMPLE)
        if run_type not in (Run.RunType.FIRST_SAMPLE, Run.RunType.ADHOC):
            return JsonResponse({'error': 'run_type must be first_sample or adhoc'}, status=400)

        percentage = data.get('percentage')
        if percentage is not None and (isinstance(percentage, bool) or not isinstance(percentage, (int, float))):
            return JsonResponse({'error': 'percentage must be a number'}, status=400)

        run = trigger_sampling_run(
            run_type,
            date_from=_parse_date(data.get('date_from'), 'date_from'),
            date_to=_parse_date(data.get('date_to'), 'date_to'),
            lifecycle_statuses=data.get('lifecycle_statuses'),
            percentage=percentage,
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
@require_http_methods(["GET"])
def first_sample_range(request):
    """Date range the next first-sample run would cover."""
    date_from, date_to = resolve_first_sample_range()
    waiting = Activity.objects.filter(
        lifecycle_status=LifecycleStatus.ACTIVE,
        first_sampled_at__isnull=True,
    ).count()
    return JsonResponse({
        'date_from': date_from.isoformat() if date_from else None,
        'date_to': date_to.isoformat() if date_to else None,
        'never_sampled_active': waiting,
    })


# ============================================================================
# REACTIVATION
# ============================================================================

@csrf_exempt
@require_http_methods(["GET"])
def reactivate_preview(request):
    """
    GET /api/sampling/reactivate-preview/?from_status=inactive&date_from=2026-01-01&date_to=2026-01-31
    """
    try:
        return JsonResponse(preview_reactivation(**_reactivation_filter(request.GET)))
    except InvariantViolation as e:
        return JsonResponse({'error': str(e)}, status=400)


@csrf_exempt
@require_http_methods(["POST"])
def reactivate(request):
    """
    POST /api/sampling/reactivate/
    {
        "from_status": "inactive",
        "date_from": "2026-01-01",
        "date_to": "2026-01-31",
        "activity_ids": ["ACT-1"],
        "delete_tasks": true,
        "delete_audit": false,
        "confirm": "YES"
    }
    """
    try:
        data = json.loads(request.body)
        result = reactivate_activities(
            confirm=data.get('confirm'),
            delete_tasks=bool(data.get('delete_tasks', False)),
            delete_audit=bool(data.get('delete_audit', False)),
            **_reactivation_filter(data),
        )
        return JsonResponse(result)

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except ConfirmationRequired as e:
        return JsonResponse({'error': str(e)}, status=400)
    except InvariantViolation as e:
        return JsonResponse({'error': str(e)}, status=400)


# ============================================================================
# ACTIVITIES
# ============================================================================

@csrf_exempt
@require_http_methods(["GET"])
def list_activities(request):
    """
    GET /api/sampling/activities/?lifecycle_status=sampled&type=OFM&date_from=...&page=1&page_size=50
    """
    try:
        queryset = Activity.objects.all().order_by('-date', '-id')

        lifecycle_status = request.GET.get('lifecycle_status')
        if lifecycle_status:
            if lifecycle_status not in LifecycleStatus.values:
                return JsonResponse({'error': f'Unknown lifecycle status: {lifecycle_status}'}, status=400)
            queryset = queryset.filter(lifecycle_status=lifecycle_status)
        if request.GET.get('type'):
            queryset = queryset.filter(type=request.GET['type'])

        date_from = _parse_date(request.GET.get('date_from'), 'date_from')
        date_to = _parse_date(request.GET.get('date_to'), 'date_to')
        if date_from:
            queryset = queryset.filter(date__gte=date_from)
        if date_to:
            queryset = queryset.filter(date__lte=date_to)

        page_size = max(1, min(int(request.GET.get('page_size', 50)), 500))
        paginator = Paginator(queryset, page_size)
        page = paginator.get_page(request.GET.get('page', 1))

        return JsonResponse({
            'count': paginator.count,
            'page': page.number,
            'num_pages': paginator.num_pages,
            'results': [_serialize_activity(activity) for activity in page],
        })

    except InvariantViolation as e:
        return JsonResponse({'error': str(e)}, status=400)
    except ValueError:
        return JsonResponse({'error': 'page_size must be an integer'}, status=400)
