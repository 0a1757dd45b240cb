from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Run',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('sampling', 'Sampling'), ('allocation', 'Allocation')], db_index=True, max_length=20)),
                ('run_type', models.CharField(choices=[('first_sample', 'First Sample'), ('adhoc', 'Ad-hoc'), ('auto', 'Auto (scheduled first sample)'), ('allocate', 'Allocate'), ('reallocate', 'Reallocate')], max_length=20)),
                ('status', models.CharField(choices=[('running', 'Running'), ('completed', 'Completed'), ('failed', 'Failed')], db_index=True, default='running', max_length=20)),
                ('filters', models.JSONField(blank=True, default=dict, help_text='Filters the run was started with (date range, language, agent, etc.)')),
                ('created_by', models.CharField(blank=True, max_length=150)),
                ('matched', models.PositiveIntegerField(default=0)),
                ('processed', models.PositiveIntegerField(default=0)),
                ('tasks_created', models.PositiveIntegerField(default=0)),
                ('sampled_activities', models.PositiveIntegerField(default=0)),
                ('inactive_activities', models.PositiveIntegerField(default=0)),
                ('allocated', models.PositiveIntegerField(default=0)),
                ('skipped', models.PositiveIntegerField(default=0)),
                ('error_count', models.PositiveIntegerField(default=0)),
                ('skipped_by_language', models.JSONField(blank=True, default=dict)),
                ('error_messages', models.JSONField(blank=True, default=list)),
                ('started_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                ('last_progress_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'ordering': ['-started_at', '-id'],
                'indexes': [
                    models.Index(fields=['kind', 'started_at'], name='runs_run_kind_started_idx'),
                    models.Index(fields=['kind', 'run_type', 'status'], name='runs_run_kind_type_status_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('status', 'running')), fields=('kind',), name='runs_single_running_per_kind'),
                ],
            },
        ),
    ]
