"""
Celery app for call_orchestrator.

Workers run the sampling, allocation and reallocation jobs; beat fires the
hourly sampling auto-run from CELERY_BEAT_SCHEDULE. Task modules import the
app as `from CELERY_INIT import app`.

    celery -A CELERY_INIT worker -l info
    celery -A CELERY_INIT beat -l info
"""

import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'call_orchestrator.settings')

app = Celery('call_orchestrator')

# CELERY_BROKER_URL, CELERY_RESULT_BACKEND, CELERY_BEAT_SCHEDULE, ...
app.config_from_object('django.conf:settings', namespace='CELERY')

# sampling.tasks, dialer.tasks
app.autodiscover_tasks()
