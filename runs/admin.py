from django.contrib import admin

from .models import Run


@admin.register(Run)
class RunAdmin(admin.ModelAdmin):
    list_display = ('id', 'kind', 'run_type', 'status', 'matched', 'processed', 'error_count', 'started_at', 'finished_at')
    list_filter = ('kind', 'run_type', 'status')
    readonly_fields = ('started_at', 'finished_at', 'last_progress_at')
    date_hierarchy = 'started_at'
