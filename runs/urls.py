"""
URL configuration for run status polling.
"""

from django.urls import path
from . import views

urlpatterns = [
    path('<str:kind>/latest/', views.get_latest_run, name='latest_run'),
]
