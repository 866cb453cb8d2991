"""
Clinical models: patient, appointment, consultation, schedule_lock, clinical_audit_log
"""
import uuid
from django.db import models
from django.db.models import Q
from django.conf import settings

from .exceptions import InvalidTransition


# ============================================================================
# Enums
# ============================================================================

class SexChoices(models.TextChoices):
    """Patient sex/gender"""
    FEMALE = 'female', 'Female'
    MALE = 'male', 'Male'
    OTHER = 'other', 'Other'
    UNKNOWN = 'unknown', 'Unknown'


class AppointmentStatusChoices(models.TextChoices):
    """
    Appointment status with allowed transitions:
    - scheduled -> confirmed | in_progress | cancelled | no_show
    - confirmed -> in_progress | cancelled | no_show
    - in_progress -> completed | cancelled
    - completed, cancelled, no_show are terminal states
    """
    SCHEDULED = 'scheduled', 'Scheduled'
    CONFIRMED = 'confirmed', 'Confirmed'
    IN_PROGRESS = 'in_progress', 'In Progress'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'
    NO_SHOW = 'no_show', 'No Show'


class BookedByChoices(models.TextChoices):
    CLINIC = 'clinic', 'Clinic'
    PATIENT = 'patient', 'Patient'


class ConsultationStatusChoices(models.TextChoices):
    """
    Consultation status with allowed transitions:
    - scheduled -> in_progress | cancelled
    - in_progress -> completed | cancelled
    - completed, cancelled are terminal states
    """
    SCHEDULED = 'scheduled', 'Scheduled'
    IN_PROGRESS = 'in_progress', 'In Progress'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


class AuditActionChoices(models.TextChoices):
    """Clinical audit log action types"""
    CREATE = 'create', 'Create'
    UPDATE = 'update', 'Update'
    TRANSITION = 'transition', 'Transition'
    DELETE = 'delete', 'Delete'


class AuditEntityTypeChoices(models.TextChoices):
    """Clinical entity types for audit logging"""
    APPOINTMENT = 'Appointment', 'Appointment'
    CONSULTATION = 'Consultation', 'Consultation'


# ============================================================================
# Models
# ============================================================================

class Patient(models.Model):
    """
    Patient demographics. Clinical history lives on Consultation.

    A patient may be linked to a login (role ``patient``) for self-service
    booking; staff-registered patients have no user.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='patient_profile'
    )
    clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='patients'
    )

    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    birth_date = models.DateField(blank=True, null=True)
    sex = models.CharField(
        max_length=20,
        choices=SexChoices.choices,
        blank=True,
        null=True
    )
    email = models.EmailField(blank=True, null=True)
    phone = models.CharField(max_length=50, blank=True, null=True)

    # Soft delete
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patient'
        verbose_name = 'Patient'
        verbose_name_plural = 'Patients'
        indexes = [
            models.Index(fields=['last_name', 'first_name'], name='idx_patient_name'),
            models.Index(fields=['email'], name='idx_patient_email'),
            models.Index(fields=['is_deleted'], name='idx_patient_deleted'),
        ]

    def __str__(self):
        return f"{self.first_name} {self.last_name}"


class ScheduleLock(models.Model):
    """
    One row per (practitioner, date).

    Bookings and reschedules take SELECT ... FOR UPDATE on this row before
    re-checking overlaps, so writers for the same calendar day run one at a
    time even when the day has no appointments yet.
    """
    id = models.BigAutoField(primary_key=True)
    practitioner = models.ForeignKey(
        'authz.Practitioner',
        on_delete=models.CASCADE,
        related_name='schedule_locks'
    )
    date = models.DateField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'schedule_lock'
        constraints = [
            models.UniqueConstraint(fields=['practitioner', 'date'], name='uniq_schedule_lock_day'),
        ]

    def __str__(self):
        return f"{self.practitioner_id} @ {self.date}"


class Appointment(models.Model):
    """
    Reserved [start_time, end_time) interval on a practitioner's calendar.

    Times are wall-clock in the clinic's timezone. Never hard-deleted.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name='appointments'
    )
    patient = models.ForeignKey(
        'Patient',
        on_delete=models.PROTECT,
        related_name='appointments'
    )
    practitioner = models.ForeignKey(
        'authz.Practitioner',
        on_delete=models.PROTECT,
        related_name='appointments'
    )
    consultation = models.ForeignKey(
        'Consultation',
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='+'
    )

    date = models.DateField()
    start_time = models.TimeField()
    end_time = models.TimeField()

    status = models.CharField(
        max_length=20,
        choices=AppointmentStatusChoices.choices,
        default=AppointmentStatusChoices.SCHEDULED
    )
    booked_by = models.CharField(
        max_length=10,
        choices=BookedByChoices.choices,
        default=BookedByChoices.CLINIC
    )
    reason_for_visit = models.TextField(blank=True, null=True)
    notes = models.TextField(blank=True, null=True)

    cancellation_reason = models.TextField(blank=True, null=True)
    cancelled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='cancelled_appointments'
    )
    cancelled_at = models.DateTimeField(blank=True, null=True)

    # Concurrency control
    row_version = models.IntegerField(default=1)

    # Soft delete
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(blank=True, null=True)

    created_by_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='created_appointments'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'appointment'
        verbose_name = 'Appointment'
        verbose_name_plural = 'Appointments'
        ordering = ['date', 'start_time']
        indexes = [
            models.Index(fields=['practitioner', 'date'], name='idx_appointment_calendar'),
            models.Index(fields=['patient'], name='idx_appointment_patient'),
            models.Index(fields=['status'], name='idx_appointment_status'),
            models.Index(fields=['is_deleted'], name='idx_appointment_deleted'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_time__gt=models.F('start_time')),
                name='chk_appointment_interval',
            ),
        ]

    # BUSINESS RULE: Allowed status transitions
    _ALLOWED_TRANSITIONS = {
        'scheduled': ['confirmed', 'in_progress', 'cancelled', 'no_show'],
        'confirmed': ['in_progress', 'cancelled', 'no_show'],
        'in_progress': ['completed', 'cancelled'],
        'completed': [],  # Terminal state
        'cancelled': [],  # Terminal state
        'no_show': [],    # Terminal state
    }

    # Only these statuses may be moved to another slot
    _RESCHEDULABLE_STATUSES = ['scheduled', 'confirmed']

    def __str__(self):
        return f"Appointment {self.date} {self.start_time:%H:%M} - {self.patient}"

    @classmethod
    def blocking(cls):
        """Appointments that occupy their interval: everything live except cancelled."""
        return cls.objects.filter(is_deleted=False).exclude(
            status=AppointmentStatusChoices.CANCELLED
        )

    @classmethod
    def overlapping(cls, practitioner_id, date, start_time, end_time, exclude_id=None):
        """
        Blocking appointments for the practitioner/date whose interval meets
        [start_time, end_time). Overlap: (start1 < end2) AND (start2 < end1).
        """
        qs = cls.blocking().filter(
            practitioner_id=practitioner_id,
            date=date,
        ).filter(
            Q(start_time__lt=end_time) &
            Q(end_time__gt=start_time)
        )
        if exclude_id:
            qs = qs.exclude(pk=exclude_id)
        return qs

    @property
    def is_terminal(self):
        return not self._ALLOWED_TRANSITIONS.get(self.status)

    def transition_status(self, new_status):
        """
        Move to ``new_status`` if the state machine allows it.

        Raises InvalidTransition for unknown statuses, terminal states and
        transitions not listed in _ALLOWED_TRANSITIONS. Side effects such as
        cancellation bookkeeping belong to the caller.
        """
        if new_status not in AppointmentStatusChoices.values:
            raise InvalidTransition(self.status, new_status, f"Unknown appointment status: {new_status}")

        if new_status not in self._ALLOWED_TRANSITIONS.get(self.status, []):
            raise InvalidTransition(self.status, new_status)

        old_status = self.status
        self.status = new_status
        return old_status


class Consultation(models.Model):
    """
    Clinical record of an encounter.

    Diagnoses, prescriptions and ordered exams are ordered JSON lists of
    typed entries (see entries.py). Completion requires chief_complaint,
    history_of_present_illness and at least one diagnosis.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name='consultations'
    )
    patient = models.ForeignKey(
        'Patient',
        on_delete=models.PROTECT,
        related_name='consultations'
    )
    practitioner = models.ForeignKey(
        'authz.Practitioner',
        on_delete=models.PROTECT,
        related_name='consultations'
    )
    appointment = models.ForeignKey(
        'Appointment',
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='consultations'
    )

    occurred_at = models.DateTimeField()
    status = models.CharField(
        max_length=20,
        choices=ConsultationStatusChoices.choices,
        default=ConsultationStatusChoices.SCHEDULED
    )

    # Anamnesis
    chief_complaint = models.TextField(blank=True, default='')
    history_of_present_illness = models.TextField(blank=True, default='')
    past_medical_history = models.TextField(blank=True, null=True)
    family_history = models.TextField(blank=True, null=True)
    social_history = models.TextField(blank=True, null=True)
    allergies = models.TextField(blank=True, null=True)
    current_medications = models.TextField(blank=True, null=True)
    physical_examination = models.JSONField(default=dict, blank=True)

    # Clinical entries (ordered)
    diagnoses = models.JSONField(default=list, blank=True)
    prescriptions = models.JSONField(default=list, blank=True)
    ordered_exams = models.JSONField(default=list, blank=True)

    # Plan
    treatment_plan = models.TextField(blank=True, null=True)
    clinical_notes = models.TextField(blank=True, null=True)
    follow_up_date = models.DateField(blank=True, null=True)
    follow_up_instructions = models.TextField(blank=True, null=True)

    completed_at = models.DateTimeField(blank=True, null=True)
    cancellation_reason = models.TextField(blank=True, null=True)
    cancelled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='cancelled_consultations'
    )
    cancelled_at = models.DateTimeField(blank=True, null=True)

    # Concurrency control
    row_version = models.IntegerField(default=1)

    # Soft delete
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(blank=True, null=True)

    created_by_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='created_consultations'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'consultation'
        verbose_name = 'Consultation'
        verbose_name_plural = 'Consultations'
        ordering = ['-occurred_at']
        indexes = [
            models.Index(fields=['patient', 'occurred_at'], name='idx_consultation_patient'),
            models.Index(fields=['practitioner'], name='idx_consultation_practitioner'),
            models.Index(fields=['status'], name='idx_consultation_status'),
            models.Index(fields=['is_deleted'], name='idx_consultation_deleted'),
        ]
        constraints = [
            # At most one live consultation per appointment
            models.UniqueConstraint(
                fields=['appointment'],
                condition=Q(is_deleted=False, appointment__isnull=False),
                name='uniq_live_consultation_per_appointment',
            ),
        ]

    # BUSINESS RULE: Allowed status transitions
    _ALLOWED_TRANSITIONS = {
        'scheduled': ['in_progress', 'cancelled'],
        'in_progress': ['completed', 'cancelled'],
        'completed': [],  # Terminal state
        'cancelled': [],  # Terminal state
    }

    NARRATIVE_FIELDS = (
        'chief_complaint',
        'history_of_present_illness',
        'past_medical_history',
        'family_history',
        'social_history',
        'allergies',
        'current_medications',
        'physical_examination',
        'treatment_plan',
        'clinical_notes',
        'follow_up_date',
        'follow_up_instructions',
    )

    def __str__(self):
        return f"Consultation {self.occurred_at:%Y-%m-%d} - {self.patient}"

    @property
    def is_terminal(self):
        return not self._ALLOWED_TRANSITIONS.get(self.status)

    def missing_required_fields(self):
        """Fields that block completion, in a stable order."""
        missing = []
        if not (self.chief_complaint or '').strip():
            missing.append('chief_complaint')
        if not (self.history_of_present_illness or '').strip():
            missing.append('history_of_present_illness')
        if not self.diagnoses:
            missing.append('diagnoses')
        return missing

    def transition_status(self, new_status):
        """Validate and apply a status change. Completeness is checked by the service."""
        if new_status not in ConsultationStatusChoices.values:
            raise InvalidTransition(self.status, new_status, f"Unknown consultation status: {new_status}")

        if new_status not in self._ALLOWED_TRANSITIONS.get(self.status, []):
            raise InvalidTransition(self.status, new_status)

        old_status = self.status
        self.status = new_status
        return old_status


class ClinicalAuditLog(models.Model):
    """
    Audit trail for appointment and consultation changes.

    Metadata holds status changes and the NAMES of changed fields; narrative
    values are never copied here.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)

    actor_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='clinical_audit_logs',
        help_text='User who performed the action (null for system actions)'
    )

    action = models.CharField(
        max_length=10,
        choices=AuditActionChoices.choices
    )

    entity_type = models.CharField(
        max_length=50,
        choices=AuditEntityTypeChoices.choices
    )

    entity_id = models.UUIDField()

    patient = models.ForeignKey(
        'Patient',
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='audit_logs'
    )

    appointment = models.ForeignKey(
        'Appointment',
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='audit_logs'
    )

    metadata = models.JSONField(default=dict)

    class Meta:
        db_table = 'clinical_audit_log'
        verbose_name = 'Clinical Audit Log'
        verbose_name_plural = 'Clinical Audit Logs'
        indexes = [
            models.Index(fields=['created_at'], name='idx_audit_created_at'),
            models.Index(fields=['actor_user'], name='idx_audit_actor'),
            models.Index(fields=['entity_type'], name='idx_audit_entity_type'),
            models.Index(fields=['entity_id'], name='idx_audit_entity_id'),
            models.Index(fields=['patient'], name='idx_audit_patient'),
            models.Index(fields=['action'], name='idx_audit_action'),
        ]
        ordering = ['-created_at']

    def __str__(self):
        actor = self.actor_user.email if self.actor_user else 'system'
        return f"{self.action} on {self.entity_type}[{str(self.entity_id)[:8]}] by {actor}"


# ============================================================================
# Audit Helper Functions
# ============================================================================

def log_clinical_audit(
    actor_id,
    instance,
    action,
    changed_fields=None,
    from_status=None,
    to_status=None,
    appointment=None,
):
    """
    Create a clinical audit log entry.

    Args:
        actor_id: id of the acting user, or None for system actions
        instance: Appointment or Consultation being audited
        action: create|update|transition|delete
        changed_fields: names of fields that changed (values are not stored)
        from_status, to_status: for transitions
        appointment: related appointment (inferred for consultations)
    """
    from apps.core.observability import metrics

    entity_type = instance.__class__.__name__

    if appointment is None:
        if isinstance(instance, Appointment):
            appointment = instance
        elif getattr(instance, 'appointment_id', None):
            appointment = instance.appointment

    metadata = {}
    if changed_fields:
        metadata['changed_fields'] = sorted(changed_fields)
    if from_status or to_status:
        metadata['from_status'] = from_status
        metadata['to_status'] = to_status

    audit_log = ClinicalAuditLog.objects.create(
        actor_user_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=instance.pk,
        patient_id=instance.patient_id,
        appointment=appointment,
        metadata=metadata
    )

    metrics.clinical_auditlog_created_total.labels(model=entity_type, action=action).inc()

    return audit_log
