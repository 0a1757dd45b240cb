import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('sampling', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Agent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('external_id', models.CharField(help_text='Agent identifier from the user directory', max_length=100, unique=True)),
                ('name', models.CharField(max_length=255)),
                ('email', models.EmailField(blank=True, max_length=254)),
                ('language_capabilities', models.JSONField(blank=True, default=list, help_text='Languages the agent can take calls in, e.g. ["Hindi", "Marathi"]')),
                ('is_active', models.BooleanField(default=True, help_text='Inactive agents never receive allocated tasks')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('team_lead', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='team_members', to='dialer.agent')),
            ],
            options={
                'ordering': ['id'],
            },
        ),
        migrations.CreateModel(
            name='CallTask',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('unassigned', 'Unassigned'), ('sampled_in_queue', 'Sampled - in queue'), ('in_progress', 'In Progress'), ('completed', 'Completed'), ('not_reachable', 'Not Reachable'), ('invalid_number', 'Invalid Number')], db_index=True, default='unassigned', max_length=20)),
                ('scheduled_date', models.DateTimeField(db_index=True)),
                ('is_callback', models.BooleanField(default=False)),
                ('callback_number', models.PositiveSmallIntegerField(default=0, validators=[django.core.validators.MaxValueValidator(2)])),
                ('call_started_at', models.DateTimeField(blank=True, null=True)),
                ('outcome_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('interaction_history', models.JSONField(blank=True, default=list, help_text='Status change trail: [{timestamp, status, notes}]')),
                ('activity', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='call_tasks', to='sampling.activity')),
                ('assigned_agent', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='tasks', to='dialer.agent')),
                ('farmer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='call_tasks', to='sampling.farmer')),
                ('parent_task', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='callback_task', to='dialer.calltask')),
            ],
            options={
                'ordering': ['scheduled_date', 'created_at', 'id'],
                'indexes': [
                    models.Index(fields=['status', 'scheduled_date'], name='dialer_task_status_sched_idx'),
                    models.Index(fields=['assigned_agent', 'status'], name='dialer_task_agent_status_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('is_callback', False)), fields=('activity', 'farmer'), name='dialer_single_original_task'),
                    models.CheckConstraint(condition=models.Q(('callback_number__gte', 0), ('callback_number__lte', 2)), name='dialer_callback_number_range'),
                ],
            },
        ),
        migrations.CreateModel(
            name='CallLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('call_status', models.CharField(choices=[('connected', 'Connected'), ('no_answer', 'No Answer'), ('busy', 'Busy'), ('invalid', 'Invalid Number'), ('disconnected', 'Disconnected')], db_index=True, max_length=20)),
                ('duration_seconds', models.PositiveIntegerField(default=0, help_text='Call duration in seconds')),
                ('notes', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('agent', models.ForeignKey(blank=True, help_text='Agent handling the call', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='calls', to='dialer.agent')),
                ('task', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='call_logs', to='dialer.calltask')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
    ]
