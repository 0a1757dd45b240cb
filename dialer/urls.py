"""
URL configuration for Dialer API endpoints.

Allocation, reallocation, callbacks and call outcome intake.
"""

from django.urls import path
from . import views

urlpatterns = [
    # Allocation runs
    path('allocate/', views.allocate, name='allocate'),
    path('reallocate/', views.reallocate, name='reallocate'),

    # Callbacks
    path('callbacks/candidates/', views.list_callback_candidates, name='callback_candidates'),
    path('callbacks/create/', views.create_callbacks, name='create_callbacks'),

    # Tasks
    path('tasks/<int:task_id>/callback-history/', views.get_callback_history, name='callback_history'),
    path('tasks/<int:task_id>/outcome/', views.record_call_outcome, name='record_call_outcome'),
]
