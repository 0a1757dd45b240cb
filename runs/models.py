"""
Run model - progress record for every long-running batch job.

One row per sampling or allocation run. Clients poll the latest row of a kind
to render progress; at most one row per kind may be `running`.
"""

from django.db import models
from django.db.models import Q


class Run(models.Model):

    class Kind(models.TextChoices):
        SAMPLING = 'sampling', 'Sampling'
        ALLOCATION = 'allocation', 'Allocation'

    class Status(models.TextChoices):
        RUNNING = 'running', 'Running'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'

    class RunType(models.TextChoices):
        FIRST_SAMPLE = 'first_sample', 'First Sample'
        ADHOC = 'adhoc', 'Ad-hoc'
        AUTO = 'auto', 'Auto (scheduled first sample)'
        ALLOCATE = 'allocate', 'Allocate'
        REALLOCATE = 'reallocate', 'Reallocate'

    TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED)

    kind = models.CharField(max_length=20, choices=Kind.choices, db_index=True)
    run_type = models.CharField(max_length=20, choices=RunType.choices)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RUNNING,
        db_index=True
    )

    filters = models.JSONField(
        default=dict,
        blank=True,
        help_text="Filters the run was started with (date range, language, agent, etc.)"
    )
    created_by = models.CharField(max_length=150, blank=True)

    # Progress
    matched = models.PositiveIntegerField(default=0)
    processed = models.PositiveIntegerField(default=0)

    # Counters
    tasks_created = models.PositiveIntegerField(default=0)
    sampled_activities = models.PositiveIntegerField(default=0)
    inactive_activities = models.PositiveIntegerField(default=0)
    allocated = models.PositiveIntegerField(default=0)
    skipped = models.PositiveIntegerField(default=0)
    error_count = models.PositiveIntegerField(default=0)
    skipped_by_language = models.JSONField(default=dict, blank=True)
    error_messages = models.JSONField(default=list, blank=True)

    # Timing
    started_at = models.DateTimeField(auto_now_add=True, db_index=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    last_progress_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-started_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['kind'],
                condition=Q(status='running'),
                name='runs_single_running_per_kind',
            ),
        ]
        indexes = [
            models.Index(fields=['kind', 'started_at'], name='runs_run_kind_started_idx'),
            models.Index(fields=['kind', 'run_type', 'status'], name='runs_run_kind_type_status_idx'),
        ]

    def __str__(self):
        return f"{self.kind} run {self.id} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES
