# Generated migration for clinical app

import uuid
from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('authz', '0001_initial'),
        ('core', '0001_initial'),
    ]

    operations = [
        # Patient
        migrations.CreateModel(
            name='Patient',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('first_name', models.CharField(max_length=100)),
                ('last_name', models.CharField(max_length=100)),
                ('birth_date', models.DateField(blank=True, null=True)),
                ('sex', models.CharField(blank=True, choices=[('female', 'Female'), ('male', 'Male'), ('other', 'Other'), ('unknown', 'Unknown')], max_length=20, null=True)),
                ('email', models.EmailField(blank=True, max_length=254, null=True)),
                ('phone', models.CharField(blank=True, max_length=50, null=True)),
                ('is_deleted', models.BooleanField(default=False)),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='patient_profile', to=settings.AUTH_USER_MODEL)),
                ('clinic', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='patients', to='core.clinic')),
            ],
            options={
                'verbose_name': 'Patient',
                'verbose_name_plural': 'Patients',
                'db_table': 'patient',
                'indexes': [
                    models.Index(fields=['last_name', 'first_name'], name='idx_patient_name'),
                    models.Index(fields=['email'], name='idx_patient_email'),
                    models.Index(fields=['is_deleted'], name='idx_patient_deleted'),
                ],
            },
        ),

        # ScheduleLock
        migrations.CreateModel(
            name='ScheduleLock',
            fields=[
                ('id', models.BigAutoField(primary_key=True, serialize=False)),
                ('date', models.DateField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('practitioner', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='schedule_locks', to='authz.practitioner')),
            ],
            options={
                'db_table': 'schedule_lock',
                'constraints': [
                    models.UniqueConstraint(fields=('practitioner', 'date'), name='uniq_schedule_lock_day'),
                ],
            },
        ),

        # Appointment (consultation link added after Consultation exists)
        migrations.CreateModel(
            name='Appointment',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('date', models.DateField()),
                ('start_time', models.TimeField()),
                ('end_time', models.TimeField()),
                ('status', models.CharField(choices=[('scheduled', 'Scheduled'), ('confirmed', 'Confirmed'), ('in_progress', 'In Progress'), ('completed', 'Completed'), ('cancelled', 'Cancelled'), ('no_show', 'No Show')], default='scheduled', max_length=20)),
                ('booked_by', models.CharField(choices=[('clinic', 'Clinic'), ('patient', 'Patient')], default='clinic', max_length=10)),
                ('reason_for_visit', models.TextField(blank=True, null=True)),
                ('notes', models.TextField(blank=True, null=True)),
                ('cancellation_reason', models.TextField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('row_version', models.IntegerField(default=1)),
                ('is_deleted', models.BooleanField(default=False)),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('clinic', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='appointments', to='core.clinic')),
                ('patient', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='appointments', to='clinical.patient')),
                ('practitioner', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='appointments', to='authz.practitioner')),
                ('cancelled_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='cancelled_appointments', to=settings.AUTH_USER_MODEL)),
                ('created_by_user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_appointments', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Appointment',
                'verbose_name_plural': 'Appointments',
                'db_table': 'appointment',
                'ordering': ['date', 'start_time'],
                'indexes': [
                    models.Index(fields=['practitioner', 'date'], name='idx_appointment_calendar'),
                    models.Index(fields=['patient'], name='idx_appointment_patient'),
                    models.Index(fields=['status'], name='idx_appointment_status'),
                    models.Index(fields=['is_deleted'], name='idx_appointment_deleted'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('end_time__gt', models.F('start_time'))), name='chk_appointment_interval'),
                ],
            },
        ),

        # Consultation
        migrations.CreateModel(
            name='Consultation',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('occurred_at', models.DateTimeField()),
                ('status', models.CharField(choices=[('scheduled', 'Scheduled'), ('in_progress', 'In Progress'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='scheduled', max_length=20)),
                ('chief_complaint', models.TextField(blank=True, default='')),
                ('history_of_present_illness', models.TextField(blank=True, default='')),
                ('past_medical_history', models.TextField(blank=True, null=True)),
                ('family_history', models.TextField(blank=True, null=True)),
                ('social_history', models.TextField(blank=True, null=True)),
                ('allergies', models.TextField(blank=True, null=True)),
                ('current_medications', models.TextField(blank=True, null=True)),
                ('physical_examination', models.JSONField(blank=True, default=dict)),
                ('diagnoses', models.JSONField(blank=True, default=list)),
                ('prescriptions', models.JSONField(blank=True, default=list)),
                ('ordered_exams', models.JSONField(blank=True, default=list)),
                ('treatment_plan', models.TextField(blank=True, null=True)),
                ('clinical_notes', models.TextField(blank=True, null=True)),
                ('follow_up_date', models.DateField(blank=True, null=True)),
                ('follow_up_instructions', models.TextField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('cancellation_reason', models.TextField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('row_version', models.IntegerField(default=1)),
                ('is_deleted', models.BooleanField(default=False)),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('clinic', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='consultations', to='core.clinic')),
                ('patient', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='consultations', to='clinical.patient')),
                ('practitioner', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='consultations', to='authz.practitioner')),
                ('appointment', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='consultations', to='clinical.appointment')),
                ('cancelled_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='cancelled_consultations', to=settings.AUTH_USER_MODEL)),
                ('created_by_user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_consultations', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Consultation',
                'verbose_name_plural': 'Consultations',
                'db_table': 'consultation',
                'ordering': ['-occurred_at'],
                'indexes': [
                    models.Index(fields=['patient', 'occurred_at'], name='idx_consultation_patient'),
                    models.Index(fields=['practitioner'], name='idx_consultation_practitioner'),
                    models.Index(fields=['status'], name='idx_consultation_status'),
                    models.Index(fields=['is_deleted'], name='idx_consultation_deleted'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('appointment__isnull', False), ('is_deleted', False)), fields=('appointment',), name='uniq_live_consultation_per_appointment'),
                ],
            },
        ),
        migrations.AddField(
            model_name='appointment',
            name='consultation',
            field=models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='clinical.consultation'),
        ),

        # ClinicalAuditLog
        migrations.CreateModel(
            name='ClinicalAuditLog',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('action', models.CharField(choices=[('create', 'Create'), ('update', 'Update'), ('transition', 'Transition'), ('delete', 'Delete')], max_length=10)),
                ('entity_type', models.CharField(choices=[('Appointment', 'Appointment'), ('Consultation', 'Consultation')], max_length=50)),
                ('entity_id', models.UUIDField()),
                ('metadata', models.JSONField(default=dict)),
                ('actor_user', models.ForeignKey(blank=True, help_text='User who performed the action (null for system actions)', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='clinical_audit_logs', to=settings.AUTH_USER_MODEL)),
                ('patient', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='audit_logs', to='clinical.patient')),
                ('appointment', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='audit_logs', to='clinical.appointment')),
            ],
            options={
                'verbose_name': 'Clinical Audit Log',
                'verbose_name_plural': 'Clinical Audit Logs',
                'db_table': 'clinical_audit_log',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['created_at'], name='idx_audit_created_at'),
                    models.Index(fields=['actor_user'], name='idx_audit_actor'),
                    models.Index(fields=['entity_type'], name='idx_audit_entity_type'),
                    models.Index(fields=['entity_id'], name='idx_audit_entity_id'),
                    models.Index(fields=['patient'], name='idx_audit_patient'),
                    models.Index(fields=['action'], name='idx_audit_action'),
                ],
            },
        ),
    ]
