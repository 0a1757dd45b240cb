"""
Sampling Models - field activities, attendee farmers and the sampling controls.

Activities and farmers are written by the external activity sync; this app
only owns the lifecycle status, the cooling ledger, the sampling config and
the per-activity sampling audit.
"""

from django.db import models
from django.db.models import Q
from django.core.validators import MinValueValidator, MaxValueValidator


class ActivityType(models.TextChoices):
    FIELD_DAY = 'Field Day', 'Field Day'
    GROUP_MEETING = 'Group Meeting', 'Group Meeting'
    DEMO_VISIT = 'Demo Visit', 'Demo Visit'
    OFM = 'OFM', 'OFM'
    OTHER = 'Other', 'Other'


class LifecycleStatus(models.TextChoices):
    ACTIVE = 'active', 'Active'
    SAMPLED = 'sampled', 'Sampled'
    INACTIVE = 'inactive', 'Inactive'
    NOT_ELIGIBLE = 'not_eligible', 'Not Eligible'


class Farmer(models.Model):
    external_id = models.CharField(
        max_length=100,
        unique=True,
        help_text="Farmer identifier from the activity source"
    )
    name = models.CharField(max_length=255)
    mobile_number = models.CharField(max_length=20, db_index=True)
    preferred_language = models.CharField(max_length=50, db_index=True)
    territory = models.CharField(max_length=100, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} ({self.mobile_number})"


class Activity(models.Model):
    activity_id = models.CharField(
        max_length=100,
        unique=True,
        help_text="Activity identifier from the activity source"
    )
    type = models.CharField(max_length=30, choices=ActivityType.choices, db_index=True)
    date = models.DateField(db_index=True)

    officer_id = models.CharField(max_length=100, blank=True)
    officer_name = models.CharField(max_length=255, blank=True)
    territory = models.CharField(max_length=100, blank=True)
    zone = models.CharField(max_length=100, blank=True)
    bu = models.CharField(max_length=100, blank=True, db_index=True)
    state = models.CharField(max_length=100, blank=True, db_index=True)

    farmers = models.ManyToManyField(Farmer, related_name='activities', blank=True)

    lifecycle_status = models.CharField(
        max_length=20,
        choices=LifecycleStatus.choices,
        default=LifecycleStatus.ACTIVE,
        db_index=True
    )
    lifecycle_updated_at = models.DateTimeField(null=True, blank=True)
    last_sampling_run_at = models.DateTimeField(null=True, blank=True)
    first_sampled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set by first-sample runs only; ad-hoc runs leave it untouched"
    )

    synced_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-date']
        verbose_name_plural = 'activities'
        indexes = [
            models.Index(fields=['lifecycle_status', 'date'], name='sampling_act_status_date_idx'),
        ]

    def __str__(self):
        return f"{self.activity_id} ({self.type}, {self.date}, {self.lifecycle_status})"


class CoolingPeriod(models.Model):
    """
    Cooling ledger entry. Exactly one of farmer / activity is set.
    """

    farmer = models.OneToOneField(
        Farmer,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='cooling_period'
    )
    activity = models.OneToOneField(
        Activity,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='cooling_period'
    )
    last_sampled_at = models.DateTimeField()
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(farmer__isnull=False, activity__isnull=True)
                    | Q(farmer__isnull=True, activity__isnull=False)
                ),
                name='sampling_cooling_single_subject',
            ),
        ]

    def __str__(self):
        subject = f"farmer {self.farmer_id}" if self.farmer_id else f"activity {self.activity_id}"
        return f"Cooling {subject} since {self.last_sampled_at}"


class SamplingConfig(models.Model):
    DEFAULT_KEY = 'default'

    key = models.CharField(max_length=20, unique=True, default=DEFAULT_KEY)

    eligible_activity_types = models.JSONField(
        default=list,
        blank=True,
        help_text="Activity types that may be sampled. Empty means every type is eligible."
    )
    activity_cooling_days = models.PositiveIntegerField(
        default=5,
        validators=[MaxValueValidator(365)]
    )
    farmer_cooling_days = models.PositiveIntegerField(
        default=30,
        validators=[MaxValueValidator(365)]
    )
    default_percentage = models.FloatField(
        default=10,
        validators=[MinValueValidator(1), MaxValueValidator(100)]
    )
    activity_type_percentages = models.JSONField(
        default=dict,
        blank=True,
        help_text="Per activity type sampling percentage, overrides default_percentage"
    )
    task_due_in_days = models.PositiveIntegerField(
        default=0,
        validators=[MaxValueValidator(365)]
    )

    # Auto run (hourly beat task)
    auto_run_enabled = models.BooleanField(default=False)
    auto_run_threshold = models.PositiveIntegerField(
        default=1,
        help_text="Minimum never-sampled active activities before the auto run fires"
    )
    auto_run_activate_from = models.DateTimeField(null=True, blank=True)

    updated_by = models.CharField(max_length=150, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Sampling config ({self.key})"

    @classmethod
    def get_active(cls):
        config, _ = cls.objects.get_or_create(key=cls.DEFAULT_KEY)
        return config

    def is_type_eligible(self, activity_type):
        if not self.eligible_activity_types:
            return True
        return activity_type in self.eligible_activity_types

    def percentage_for(self, activity_type):
        return (self.activity_type_percentages or {}).get(activity_type) or self.default_percentage


class SamplingAudit(models.Model):
    """Latest sampling outcome per activity."""

    activity = models.ForeignKey(
        Activity,
        on_delete=models.CASCADE,
        related_name='sampling_audits'
    )
    run = models.ForeignKey(
        'runs.Run',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='sampling_audits'
    )
    sampling_percentage = models.FloatField()
    total_farmers = models.PositiveIntegerField(default=0)
    eligible_farmers = models.PositiveIntegerField(default=0)
    sampled_count = models.PositiveIntegerField(default=0)
    tasks_created = models.PositiveIntegerField(default=0)
    algorithm = models.CharField(max_length=50, default='Reservoir Sampling')
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Audit {self.activity_id}: {self.sampled_count}/{self.eligible_farmers}"
