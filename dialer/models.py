"""
Dialer Models - agents, call tasks and call attempts.

Call tasks are created by the sampling engine in `unassigned`, handed to
agents by the allocator and closed by the call-handling workflow through
`dialer.callbacks.apply_call_outcome`.
"""

from django.db import models
from django.db.models import Q
from django.core.validators import MaxValueValidator
from django.utils import timezone

from call_orchestrator.constants import MAX_CALLBACKS


class Agent(models.Model):
    external_id = models.CharField(
        max_length=100,
        unique=True,
        help_text="Agent identifier from the user directory"
    )
    name = models.CharField(max_length=255)
    email = models.EmailField(blank=True)

    language_capabilities = models.JSONField(
        default=list,
        blank=True,
        help_text="Languages the agent can take calls in, e.g. [\"Hindi\", \"Marathi\"]"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Inactive agents never receive allocated tasks"
    )
    team_lead = models.ForeignKey(
        'self',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='team_members'
    )

    # Metadata
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return f"{self.id} ({self.name})"


class TaskStatus(models.TextChoices):
    UNASSIGNED = 'unassigned', 'Unassigned'
    SAMPLED_IN_QUEUE = 'sampled_in_queue', 'Sampled - in queue'
    IN_PROGRESS = 'in_progress', 'In Progress'
    COMPLETED = 'completed', 'Completed'
    NOT_REACHABLE = 'not_reachable', 'Not Reachable'
    INVALID_NUMBER = 'invalid_number', 'Invalid Number'


class CallTask(models.Model):
    """
    One farmer to call about one activity.

    Original tasks have callback_number 0. A callback points at its parent
    through `parent_task`; a parent spawns at most one callback and the chain
    stops at MAX_CALLBACKS.
    """

    farmer = models.ForeignKey(
        'sampling.Farmer',
        on_delete=models.CASCADE,
        related_name='call_tasks'
    )
    activity = models.ForeignKey(
        'sampling.Activity',
        on_delete=models.CASCADE,
        related_name='call_tasks'
    )

    status = models.CharField(
        max_length=20,
        choices=TaskStatus.choices,
        default=TaskStatus.UNASSIGNED,
        db_index=True
    )
    assigned_agent = models.ForeignKey(
        Agent,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='tasks'
    )
    scheduled_date = models.DateTimeField(db_index=True)

    # Callback chain
    is_callback = models.BooleanField(default=False)
    callback_number = models.PositiveSmallIntegerField(
        default=0,
        validators=[MaxValueValidator(MAX_CALLBACKS)]
    )
    parent_task = models.OneToOneField(
        'self',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='callback_task'
    )

    # Timing
    call_started_at = models.DateTimeField(null=True, blank=True)
    outcome_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    interaction_history = models.JSONField(
        default=list,
        blank=True,
        help_text="Status change trail: [{timestamp, status, notes}]"
    )

    class Meta:
        ordering = ['scheduled_date', 'created_at', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['activity', 'farmer'],
                condition=Q(is_callback=False),
                name='dialer_single_original_task',
            ),
            models.CheckConstraint(
                condition=Q(callback_number__gte=0, callback_number__lte=MAX_CALLBACKS),
                name='dialer_callback_number_range',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'scheduled_date'], name='dialer_task_status_sched_idx'),
            models.Index(fields=['assigned_agent', 'status'], name='dialer_task_agent_status_idx'),
        ]

    def __str__(self):
        return f"Task {self.id}: farmer {self.farmer_id} / activity {self.activity_id} ({self.status})"

    def add_interaction(self, status, notes='', at=None):
        """Append a status change to interaction_history (caller saves)."""
        at = at or timezone.now()
        history = list(self.interaction_history or [])
        history.append({
            'timestamp': at.isoformat(),
            'status': status,
            'notes': notes,
        })
        self.interaction_history = history


class CallLog(models.Model):

    class CallStatus(models.TextChoices):
        CONNECTED = 'connected', 'Connected'
        NO_ANSWER = 'no_answer', 'No Answer'
        BUSY = 'busy', 'Busy'
        INVALID = 'invalid', 'Invalid Number'
        DISCONNECTED = 'disconnected', 'Disconnected'

    task = models.ForeignKey(
        CallTask,
        on_delete=models.CASCADE,
        related_name='call_logs'
    )
    agent = models.ForeignKey(
        Agent,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='calls',
        help_text="Agent handling the call"
    )
    call_status = models.CharField(
        max_length=20,
        choices=CallStatus.choices,
        db_index=True
    )
    duration_seconds = models.PositiveIntegerField(
        default=0,
        help_text="Call duration in seconds"
    )
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Call on task {self.task_id} ({self.call_status})"
