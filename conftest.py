"""
Shared fixtures: model factories and a stand-in for the Redis run-start lock.
"""

import itertools
from datetime import date
from unittest.mock import MagicMock, patch

import pytest
from django.utils import timezone

_sequence = itertools.count(1)


@pytest.fixture(autouse=True)
def mock_run_lock():
    """Redis lock that is always granted, so run tracking works without Redis."""
    mock_lock = MagicMock()
    mock_lock.acquire.return_value = True
    mock_lock.owned.return_value = True
    with patch('runs.utils.conn') as mock_conn:
        mock_conn.lock.return_value = mock_lock
        yield mock_conn


@pytest.fixture
def sampling_config(db):
    from sampling.models import SamplingConfig
    return SamplingConfig.get_active()


@pytest.fixture
def make_farmer(db):
    from sampling.models import Farmer

    def factory(language='Hindi', **kwargs):
        n = next(_sequence)
        defaults = {
            'external_id': f'F-{n}',
            'name': f'Farmer {n}',
            'mobile_number': f'9{n:09d}',
            'preferred_language': language,
        }
        defaults.update(kwargs)
        return Farmer.objects.create(**defaults)

    return factory


@pytest.fixture
def make_activity(db, make_farmer):
    from sampling.models import Activity, ActivityType

    def factory(farmers=0, language='Hindi', **kwargs):
        n = next(_sequence)
        defaults = {
            'activity_id': f'ACT-{n}',
            'type': ActivityType.FIELD_DAY,
            'date': date(2026, 1, 15),
            'bu': 'North',
            'state': 'Punjab',
        }
        defaults.update(kwargs)
        activity = Activity.objects.create(**defaults)
        if isinstance(farmers, int):
            farmers = [make_farmer(language=language) for _ in range(farmers)]
        activity.farmers.add(*farmers)
        return activity

    return factory


@pytest.fixture
def make_agent(db):
    from dialer.models import Agent

    def factory(languages=('Hindi',), **kwargs):
        n = next(_sequence)
        defaults = {
            'external_id': f'AG-{n}',
            'name': f'Agent {n}',
            'language_capabilities': list(languages),
        }
        defaults.update(kwargs)
        return Agent.objects.create(**defaults)

    return factory


@pytest.fixture
def make_task(db, make_activity, make_farmer):
    from dialer.models import CallTask, TaskStatus

    def factory(activity=None, farmer=None, language='Hindi', **kwargs):
        farmer = farmer or make_farmer(language=language)
        activity = activity or make_activity(farmers=[farmer])
        defaults = {
            'status': TaskStatus.UNASSIGNED,
            'scheduled_date': timezone.now(),
        }
        defaults.update(kwargs)
        return CallTask.objects.create(farmer=farmer, activity=activity, **defaults)

    return factory
