from django.contrib import admin

from .models import Agent, CallLog, CallTask


# Inline for CallLog in CallTask admin
class CallLogInline(admin.TabularInline):
    model = CallLog
    extra = 0
    readonly_fields = ('agent', 'call_status', 'duration_seconds', 'created_at')
    fields = ('agent', 'call_status', 'duration_seconds', 'notes', 'created_at')


# Admin for Agent
@admin.register(Agent)
class AgentAdmin(admin.ModelAdmin):
    list_display = ('id', 'external_id', 'name', 'language_capabilities', 'is_active', 'team_lead')
    list_filter = ('is_active',)
    search_fields = ('external_id', 'name', 'email')


# Admin for CallTask
@admin.register(CallTask)
class CallTaskAdmin(admin.ModelAdmin):
    list_display = ('id', 'farmer', 'activity', 'status', 'assigned_agent', 'scheduled_date', 'callback_number')
    list_filter = ('status', 'is_callback', 'callback_number', 'assigned_agent')
    search_fields = ('farmer__mobile_number', 'farmer__name', 'activity__activity_id')
    readonly_fields = ('created_at', 'updated_at', 'call_started_at', 'outcome_at', 'interaction_history')
    raw_id_fields = ('farmer', 'activity', 'parent_task')
    date_hierarchy = 'scheduled_date'
    inlines = [CallLogInline]


# Admin for CallLog
@admin.register(CallLog)
class CallLogAdmin(admin.ModelAdmin):
    list_display = ('id', 'task', 'agent', 'call_status', 'duration_seconds', 'created_at')
    list_filter = ('call_status', 'agent', 'created_at')
    readonly_fields = ('created_at',)
    date_hierarchy = 'created_at'
