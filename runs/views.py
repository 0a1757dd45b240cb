"""
Polling endpoint for batch runs.
"""

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
import logging

from .models import Run
from .utils import latest_run, serialize_run

logger = logging.getLogger(__name__)


@csrf_exempt
@require_http_methods(["GET"])
def get_latest_run(request, kind):
    """
    Latest run snapshot for a job kind.

    GET /api/runs/<kind>/latest/   (kind: sampling | allocation)
    """
    if kind not in Run.Kind.values:
        return JsonResponse({'error': f'Unknown run kind: {kind}'}, status=404)

    run = latest_run(kind)
    return JsonResponse({'run': serialize_run(run)})
