from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/sampling/', include('sampling.urls')),
    path('api/dialer/', include('dialer.urls')),
    path('api/runs/', include('runs.urls')),
]
