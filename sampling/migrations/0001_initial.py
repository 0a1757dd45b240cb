import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('runs', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Farmer',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('external_id', models.CharField(help_text='Farmer identifier from the activity source', max_length=100, unique=True)),
                ('name', models.CharField(max_length=255)),
                ('mobile_number', models.CharField(db_index=True, max_length=20)),
                ('preferred_language', models.CharField(db_index=True, max_length=50)),
                ('territory', models.CharField(blank=True, max_length=100)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name='SamplingConfig',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('key', models.CharField(default='default', max_length=20, unique=True)),
                ('eligible_activity_types', models.JSONField(blank=True, default=list, help_text='Activity types that may be sampled. Empty means every type is eligible.')),
                ('activity_cooling_days', models.PositiveIntegerField(default=5, validators=[django.core.validators.MaxValueValidator(365)])),
                ('farmer_cooling_days', models.PositiveIntegerField(default=30, validators=[django.core.validators.MaxValueValidator(365)])),
                ('default_percentage', models.FloatField(default=10, validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(100)])),
                ('activity_type_percentages', models.JSONField(blank=True, default=dict, help_text='Per activity type sampling percentage, overrides default_percentage')),
                ('task_due_in_days', models.PositiveIntegerField(default=0, validators=[django.core.validators.MaxValueValidator(365)])),
                ('auto_run_enabled', models.BooleanField(default=False)),
                ('auto_run_threshold', models.PositiveIntegerField(default=1, help_text='Minimum never-sampled active activities before the auto run fires')),
                ('auto_run_activate_from', models.DateTimeField(blank=True, null=True)),
                ('updated_by', models.CharField(blank=True, max_length=150)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name='Activity',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('activity_id', models.CharField(help_text='Activity identifier from the activity source', max_length=100, unique=True)),
                ('type', models.CharField(choices=[('Field Day', 'Field Day'), ('Group Meeting', 'Group Meeting'), ('Demo Visit', 'Demo Visit'), ('OFM', 'OFM'), ('Other', 'Other')], db_index=True, max_length=30)),
                ('date', models.DateField(db_index=True)),
                ('officer_id', models.CharField(blank=True, max_length=100)),
                ('officer_name', models.CharField(blank=True, max_length=255)),
                ('territory', models.CharField(blank=True, max_length=100)),
                ('zone', models.CharField(blank=True, max_length=100)),
                ('bu', models.CharField(blank=True, db_index=True, max_length=100)),
                ('state', models.CharField(blank=True, db_index=True, max_length=100)),
                ('lifecycle_status', models.CharField(choices=[('active', 'Active'), ('sampled', 'Sampled'), ('inactive', 'Inactive'), ('not_eligible', 'Not Eligible')], db_index=True, default='active', max_length=20)),
                ('lifecycle_updated_at', models.DateTimeField(blank=True, null=True)),
                ('last_sampling_run_at', models.DateTimeField(blank=True, null=True)),
                ('first_sampled_at', models.DateTimeField(blank=True, help_text='Set by first-sample runs only; ad-hoc runs leave it untouched', null=True)),
                ('synced_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('farmers', models.ManyToManyField(blank=True, related_name='activities', to='sampling.farmer')),
            ],
            options={
                'verbose_name_plural': 'activities',
                'ordering': ['-date'],
                'indexes': [
                    models.Index(fields=['lifecycle_status', 'date'], name='sampling_act_status_date_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='CoolingPeriod',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('last_sampled_at', models.DateTimeField()),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('activity', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='cooling_period', to='sampling.activity')),
                ('farmer', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='cooling_period', to='sampling.farmer')),
            ],
            options={
                'constraints': [
                    models.CheckConstraint(condition=models.Q(models.Q(('activity__isnull', True), ('farmer__isnull', False)), models.Q(('activity__isnull', False), ('farmer__isnull', True)), _connector='OR'), name='sampling_cooling_single_subject'),
                ],
            },
        ),
        migrations.CreateModel(
            name='SamplingAudit',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sampling_percentage', models.FloatField()),
                ('total_farmers', models.PositiveIntegerField(default=0)),
                ('eligible_farmers', models.PositiveIntegerField(default=0)),
                ('sampled_count', models.PositiveIntegerField(default=0)),
                ('tasks_created', models.PositiveIntegerField(default=0)),
                ('algorithm', models.CharField(default='Reservoir Sampling', max_length=50)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('activity', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='sampling_audits', to='sampling.activity')),
                ('run', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='sampling_audits', to='runs.run')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
    ]
