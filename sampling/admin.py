from django.contrib import admin

from .models import Activity, CoolingPeriod, Farmer, SamplingAudit, SamplingConfig


# Inline for SamplingAudit in Activity admin
class SamplingAuditInline(admin.TabularInline):
    model = SamplingAudit
    extra = 0
    readonly_fields = ('run', 'sampling_percentage', 'total_farmers', 'eligible_farmers', 'sampled_count', 'tasks_created', 'created_at')
    fields = ('run', 'sampling_percentage', 'total_farmers', 'eligible_farmers', 'sampled_count', 'tasks_created', 'created_at')


@admin.register(Activity)
class ActivityAdmin(admin.ModelAdmin):
    list_display = ('activity_id', 'type', 'date', 'bu', 'state', 'lifecycle_status', 'first_sampled_at')
    list_filter = ('lifecycle_status', 'type', 'bu', 'state')
    search_fields = ('activity_id', 'officer_name', 'territory')
    readonly_fields = ('lifecycle_updated_at', 'last_sampling_run_at', 'first_sampled_at', 'synced_at')
    filter_horizontal = ('farmers',)
    date_hierarchy = 'date'
    inlines = [SamplingAuditInline]


@admin.register(Farmer)
class FarmerAdmin(admin.ModelAdmin):
    list_display = ('external_id', 'name', 'mobile_number', 'preferred_language', 'territory')
    list_filter = ('preferred_language',)
    search_fields = ('external_id', 'name', 'mobile_number')


@admin.register(CoolingPeriod)
class CoolingPeriodAdmin(admin.ModelAdmin):
    list_display = ('id', 'farmer', 'activity', 'last_sampled_at')
    search_fields = ('farmer__mobile_number', 'activity__activity_id')


@admin.register(SamplingConfig)
class SamplingConfigAdmin(admin.ModelAdmin):
    list_display = ('key', 'default_percentage', 'farmer_cooling_days', 'activity_cooling_days', 'auto_run_enabled', 'updated_at')
    fieldsets = (
        ('Eligibility & Cooling', {
            'fields': ('eligible_activity_types', 'activity_cooling_days', 'farmer_cooling_days')
        }),
        ('Sample Size & Tasks', {
            'fields': ('default_percentage', 'activity_type_percentages', 'task_due_in_days')
        }),
        ('Auto Run', {
            'fields': ('auto_run_enabled', 'auto_run_threshold', 'auto_run_activate_from')
        }),
    )


@admin.register(SamplingAudit)
class SamplingAuditAdmin(admin.ModelAdmin):
    list_display = ('activity', 'run', 'sampling_percentage', 'total_farmers', 'eligible_farmers', 'sampled_count', 'created_at')
    list_filter = ('algorithm',)
    search_fields = ('activity__activity_id',)
    readonly_fields = ('created_at',)
