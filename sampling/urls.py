"""
URL configuration for Sampling API endpoints.
"""

from django.urls import path
from . import views

urlpatterns = [
    path('config/', views.sampling_config, name='sampling_config'),
    path('apply-eligibility/', views.apply_eligibility, name='apply_eligibility'),

    # Runs
    path('run/', views.run_sampling, name='run_sampling'),
    path('first-sample-range/', views.first_sample_range, name='first_sample_range'),

    # Reactivation
    path('reactivate-preview/', views.reactivate_preview, name='reactivate_preview'),
    path('reactivate/', views.reactivate, name='reactivate'),

    path('activities/', views.list_activities, name='list_activities'),
]
