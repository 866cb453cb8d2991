"""
Appointment ledger and consultation record services.

All writes to appointments and consultations go through these classes.
They enforce the overlap invariant and the completion gate at the write
boundary, under row locks, regardless of what the caller validated.
"""
import logging
from collections import Counter
from datetime import date as date_cls, datetime
from typing import Dict, Iterable, Optional

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.authz.models import Practitioner
from apps.core.models import Clinic
from apps.core.observability import metrics
from apps.core.observability.events import (
    log_appointment_booked,
    log_appointment_rescheduled,
    log_appointment_transition,
    log_completion_blocked,
    log_consultation_transition,
    log_domain_event,
    log_slot_conflict,
)
from apps.clinical.availability import (
    SlotCalendar,
    TimeInterval,
    WorkingHours,
    default_granularity,
)
from apps.clinical.entries import (
    COLLECTIONS,
    Diagnosis,
    OrderedExam,
    PhysicalExamination,
    Prescription,
)
from apps.clinical.exceptions import (
    IncompleteRecord,
    IndexOutOfRange,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    SlotConflict,
    persistence_guard,
)
from apps.clinical.models import (
    Appointment,
    AppointmentStatusChoices,
    AuditActionChoices,
    BookedByChoices,
    Consultation,
    ConsultationStatusChoices,
    Patient,
    ScheduleLock,
    log_clinical_audit,
)

logger = logging.getLogger(__name__)


def _require_interval(interval) -> TimeInterval:
    interval = TimeInterval(*interval)
    if interval.end <= interval.start:
        raise InvalidRequest('end_time must be after start_time', field='end_time')
    return interval


def _get_practitioner(practitioner_id) -> Practitioner:
    try:
        return Practitioner.objects.get(pk=practitioner_id, is_active=True)
    except (Practitioner.DoesNotExist, ValueError, ValidationError):
        raise NotFound('Practitioner', practitioner_id)


def _get_patient(patient_id) -> Patient:
    try:
        return Patient.objects.get(pk=patient_id, is_deleted=False)
    except (Patient.DoesNotExist, ValueError, ValidationError):
        raise NotFound('Patient', patient_id)


def _get_clinic(clinic_id) -> Optional[Clinic]:
    if not clinic_id:
        return None
    try:
        return Clinic.objects.get(pk=clinic_id, is_active=True)
    except (Clinic.DoesNotExist, ValueError, ValidationError):
        raise NotFound('Clinic', clinic_id)


def _check_patient_clinic(patient, clinic):
    # Another clinic's patient is reported as missing
    if clinic and patient.clinic_id and patient.clinic_id != clinic.id:
        raise NotFound('Patient', patient.id)


def _check_date_range(date_from, date_to):
    if date_from and date_to and date_from > date_to:
        raise InvalidRequest('date_from must not be after date_to', field='date_from')


# ============================================================================
# Appointment Ledger
# ============================================================================

class AppointmentLedger:
    """
    Owns appointment records and the appointment state machine.

    Bookings and reschedules for a (practitioner, date) serialize on the
    ScheduleLock row for that day; the overlap check runs after the lock is
    held, so the loser of a race sees the winner's row and gets SlotConflict.
    """

    @staticmethod
    def _lock_days(practitioner_id, dates: Iterable[date_cls]):
        # Sorted so two reschedules crossing the same days cannot deadlock
        for day in sorted(set(dates)):
            ScheduleLock.objects.get_or_create(practitioner_id=practitioner_id, date=day)
            ScheduleLock.objects.select_for_update().get(practitioner_id=practitioner_id, date=day)

    @staticmethod
    def _get_for_update(appointment_id) -> Appointment:
        try:
            return Appointment.objects.select_for_update().get(pk=appointment_id, is_deleted=False)
        except (Appointment.DoesNotExist, ValueError, ValidationError):
            raise NotFound('Appointment', appointment_id)

    @staticmethod
    @persistence_guard
    def get(appointment_id) -> Appointment:
        try:
            return Appointment.objects.select_related('patient', 'practitioner').get(
                pk=appointment_id, is_deleted=False
            )
        except (Appointment.DoesNotExist, ValueError, ValidationError):
            raise NotFound('Appointment', appointment_id)

    @staticmethod
    def booked_intervals(practitioner_id, date):
        """Intervals of blocking appointments for the day, ordered by start."""
        rows = Appointment.blocking().filter(
            practitioner_id=practitioner_id, date=date
        ).order_by('start_time').values_list('start_time', 'end_time')
        return [TimeInterval(start, end) for start, end in rows]

    @staticmethod
    @persistence_guard
    def free_slots(practitioner_id, date, granularity_minutes=None, working_hours=None) -> SlotCalendar:
        """
        SlotCalendar for the practitioner's day.

        The booked intervals are read once here; iterating the calendar
        recomputes slots from that snapshot without touching the database.
        """
        _get_practitioner(practitioner_id)
        with metrics.availability_duration_seconds.time():
            booked = AppointmentLedger.booked_intervals(practitioner_id, date)
            return SlotCalendar(
                practitioner_id,
                date,
                working_hours or WorkingHours.from_settings(),
                granularity_minutes if granularity_minutes is not None else default_granularity(),
                booked,
            )

    @staticmethod
    @persistence_guard
    def book(
        identity,
        practitioner_id,
        patient_id,
        date,
        interval,
        booked_by=BookedByChoices.CLINIC,
        clinic_id=None,
        reason_for_visit=None,
        notes=None,
    ) -> Appointment:
        """
        Reserve ``interval`` on the practitioner's calendar in status scheduled.

        Raises:
            InvalidRequest: end <= start, or unknown booked_by
            NotFound: practitioner, patient or clinic missing
            SlotConflict: interval overlaps a non-cancelled appointment
        """
        interval = _require_interval(interval)
        if booked_by not in BookedByChoices.values:
            raise InvalidRequest(f"Unknown booked_by: {booked_by}", field='booked_by')

        practitioner = _get_practitioner(practitioner_id)
        patient = _get_patient(patient_id)
        clinic = _get_clinic(clinic_id)
        _check_patient_clinic(patient, clinic)

        with transaction.atomic():
            AppointmentLedger._lock_days(practitioner.id, [date])

            conflict = Appointment.overlapping(
                practitioner.id, date, interval.start, interval.end
            ).values_list('id', flat=True).first()
            if conflict:
                metrics.appointment_bookings_total.labels(result='conflict').inc()
                metrics.appointment_slot_conflicts_total.labels(operation='book').inc()
                log_slot_conflict(practitioner.id, date, interval.start, interval.end, operation='book')
                raise SlotConflict(conflicting_appointment_id=str(conflict))

            appointment = Appointment.objects.create(
                clinic=clinic,
                patient=patient,
                practitioner=practitioner,
                date=date,
                start_time=interval.start,
                end_time=interval.end,
                status=AppointmentStatusChoices.SCHEDULED,
                booked_by=booked_by,
                reason_for_visit=reason_for_visit or None,
                notes=notes or None,
                created_by_user_id=identity.actor_id,
            )

            log_clinical_audit(identity.actor_id, appointment, AuditActionChoices.CREATE)

        metrics.appointment_bookings_total.labels(result='success').inc()
        log_appointment_booked(appointment)
        return appointment

    @staticmethod
    @persistence_guard
    def transition(identity, appointment_id, target_status, reason=None) -> Appointment:
        """
        Apply a status change under a row lock.

        Legality is checked against the current persisted status, so a caller
        that lost a race sees InvalidTransition rather than overwriting.
        Cancelling requires a non-blank reason.
        """
        with transaction.atomic():
            appointment = AppointmentLedger._get_for_update(appointment_id)
            from_status = appointment.status

            try:
                appointment.transition_status(target_status)
            except InvalidTransition:
                metrics.appointment_transitions_total.labels(
                    from_status=from_status, to_status=str(target_status), result='blocked'
                ).inc()
                log_appointment_transition(appointment, from_status, target_status, result='blocked')
                raise

            update_fields = ['status', 'row_version', 'updated_at']
            if target_status == AppointmentStatusChoices.CANCELLED:
                if not reason or not str(reason).strip():
                    raise InvalidRequest('A cancellation reason is required', field='reason')
                appointment.cancellation_reason = str(reason).strip()
                appointment.cancelled_by_id = identity.actor_id
                appointment.cancelled_at = timezone.now()
                update_fields += ['cancellation_reason', 'cancelled_by', 'cancelled_at']

            appointment.row_version += 1
            appointment.save(update_fields=update_fields)

            log_clinical_audit(
                identity.actor_id,
                appointment,
                AuditActionChoices.TRANSITION,
                from_status=from_status,
                to_status=target_status,
            )

            def record_success():
                metrics.appointment_transitions_total.labels(
                    from_status=from_status, to_status=target_status, result='success'
                ).inc()
                log_appointment_transition(appointment, from_status, target_status)

            # Deferred so a caller's rolled-back transaction records nothing
            transaction.on_commit(record_success)

        return appointment

    @staticmethod
    def cancel(identity, appointment_id, reason) -> Appointment:
        return AppointmentLedger.transition(
            identity, appointment_id, AppointmentStatusChoices.CANCELLED, reason=reason
        )

    @staticmethod
    @persistence_guard
    def reschedule(identity, appointment_id, new_date, new_interval) -> Appointment:
        """
        Move a scheduled/confirmed appointment to another date or interval.

        Locks the schedule rows of both the old and new day before re-running
        the overlap check, which ignores the appointment being moved.
        """
        new_interval = _require_interval(new_interval)

        with transaction.atomic():
            try:
                current = Appointment.objects.values('practitioner_id', 'date').get(
                    pk=appointment_id, is_deleted=False
                )
            except (Appointment.DoesNotExist, ValueError, ValidationError):
                raise NotFound('Appointment', appointment_id)

            AppointmentLedger._lock_days(current['practitioner_id'], [current['date'], new_date])
            appointment = AppointmentLedger._get_for_update(appointment_id)

            if appointment.status not in Appointment._RESCHEDULABLE_STATUSES:
                raise InvalidTransition(
                    appointment.status,
                    appointment.status,
                    f"Cannot reschedule an appointment in status {appointment.status}",
                )

            conflict = Appointment.overlapping(
                appointment.practitioner_id,
                new_date,
                new_interval.start,
                new_interval.end,
                exclude_id=appointment.id,
            ).values_list('id', flat=True).first()
            if conflict:
                metrics.appointment_slot_conflicts_total.labels(operation='reschedule').inc()
                log_slot_conflict(
                    appointment.practitioner_id, new_date, new_interval.start, new_interval.end,
                    operation='reschedule', appointment_id=str(appointment.id),
                )
                raise SlotConflict(conflicting_appointment_id=str(conflict))

            previous_date, previous_start = appointment.date, appointment.start_time
            appointment.date = new_date
            appointment.start_time = new_interval.start
            appointment.end_time = new_interval.end
            appointment.row_version += 1
            appointment.save(update_fields=['date', 'start_time', 'end_time', 'row_version', 'updated_at'])

            log_clinical_audit(
                identity.actor_id,
                appointment,
                AuditActionChoices.UPDATE,
                changed_fields=['date', 'start_time', 'end_time'],
            )

        log_appointment_rescheduled(appointment, previous_date, previous_start)
        return appointment

    _EDITABLE_FIELDS = ('practitioner_id', 'reason_for_visit', 'notes')

    @staticmethod
    @persistence_guard
    def update(identity, appointment_id, changes) -> Appointment:
        """
        Edit visit details or hand the appointment to another practitioner.

        A practitioner change moves the interval onto another calendar: the
        day is locked for both practitioners and the overlap check re-runs
        against the new one, as a reschedule does.

        Raises:
            InvalidRequest: unknown or malformed field
            InvalidTransition: terminal appointment, or reassignment outside
                scheduled/confirmed
            NotFound: appointment or new practitioner missing
            SlotConflict: the new practitioner is busy over the interval
        """
        if not isinstance(changes, dict):
            raise InvalidRequest('Changes must be an object')
        unknown = sorted(set(changes) - set(AppointmentLedger._EDITABLE_FIELDS))
        if unknown:
            raise InvalidRequest(f"Unknown appointment fields: {', '.join(unknown)}", fields=unknown)
        for key in ('reason_for_visit', 'notes'):
            if changes.get(key) is not None and not isinstance(changes[key], str):
                raise InvalidRequest(f"{key} must be a string", field=key)

        new_practitioner = None
        if changes.get('practitioner_id'):
            new_practitioner = _get_practitioner(changes['practitioner_id'])

        with transaction.atomic():
            try:
                current = Appointment.objects.values('practitioner_id', 'date').get(
                    pk=appointment_id, is_deleted=False
                )
            except (Appointment.DoesNotExist, ValueError, ValidationError):
                raise NotFound('Appointment', appointment_id)

            if new_practitioner and new_practitioner.id == current['practitioner_id']:
                new_practitioner = None
            if new_practitioner:
                # Same (practitioner, date) order as every other locker
                for practitioner_id in sorted({current['practitioner_id'], new_practitioner.id}, key=str):
                    AppointmentLedger._lock_days(practitioner_id, [current['date']])
            appointment = AppointmentLedger._get_for_update(appointment_id)

            if appointment.is_terminal:
                raise InvalidTransition(
                    appointment.status,
                    appointment.status,
                    f"Cannot update a {appointment.status} appointment",
                )

            changed = []
            if new_practitioner:
                if appointment.status not in Appointment._RESCHEDULABLE_STATUSES:
                    raise InvalidTransition(
                        appointment.status,
                        appointment.status,
                        f"Cannot reassign an appointment in status {appointment.status}",
                    )
                conflict = Appointment.overlapping(
                    new_practitioner.id,
                    appointment.date,
                    appointment.start_time,
                    appointment.end_time,
                    exclude_id=appointment.id,
                ).values_list('id', flat=True).first()
                if conflict:
                    metrics.appointment_slot_conflicts_total.labels(operation='reassign').inc()
                    log_slot_conflict(
                        new_practitioner.id, appointment.date, appointment.start_time, appointment.end_time,
                        operation='reassign', appointment_id=str(appointment.id),
                    )
                    raise SlotConflict(conflicting_appointment_id=str(conflict))
                appointment.practitioner = new_practitioner
                changed.append('practitioner')

            for key in ('reason_for_visit', 'notes'):
                if key in changes:
                    value = changes[key]
                    setattr(appointment, key, value.strip() if value and value.strip() else None)
                    changed.append(key)

            if not changed:
                return appointment

            appointment.row_version += 1
            appointment.save(update_fields=changed + ['row_version', 'updated_at'])
            log_clinical_audit(
                identity.actor_id, appointment, AuditActionChoices.UPDATE, changed_fields=changed
            )

        log_domain_event(
            'appointment_updated',
            entity_type='Appointment',
            entity_id=str(appointment.id),
            changed_fields=changed,
        )
        return appointment

    @staticmethod
    @persistence_guard
    def soft_delete(identity, appointment_id) -> Appointment:
        """Hide the appointment and release its interval. Records are never hard-deleted."""
        with transaction.atomic():
            appointment = AppointmentLedger._get_for_update(appointment_id)
            appointment.is_deleted = True
            appointment.deleted_at = timezone.now()
            appointment.row_version += 1
            appointment.save(update_fields=['is_deleted', 'deleted_at', 'row_version', 'updated_at'])
            log_clinical_audit(identity.actor_id, appointment, AuditActionChoices.DELETE)

        log_domain_event(
            'appointment_deleted',
            entity_type='Appointment',
            entity_id=str(appointment.id),
        )
        return appointment

    @staticmethod
    def _live():
        return Appointment.objects.filter(is_deleted=False).select_related('patient', 'practitioner')

    @staticmethod
    @persistence_guard
    def search(
        practitioner_id=None,
        patient_id=None,
        date=None,
        status=None,
        clinic_id=None,
        date_from=None,
        date_to=None,
    ):
        """Live appointments matching every given filter, ordered by date/start."""
        if status and status not in AppointmentStatusChoices.values:
            raise InvalidRequest(f"Unknown appointment status: {status}", field='status')
        _check_date_range(date_from, date_to)
        qs = AppointmentLedger._live()
        if clinic_id:
            qs = qs.filter(clinic_id=clinic_id)
        if practitioner_id:
            qs = qs.filter(practitioner_id=practitioner_id)
        if patient_id:
            qs = qs.filter(patient_id=patient_id)
        if date:
            qs = qs.filter(date=date)
        if date_from:
            qs = qs.filter(date__gte=date_from)
        if date_to:
            qs = qs.filter(date__lte=date_to)
        if status:
            qs = qs.filter(status=status)
        return list(qs.order_by('date', 'start_time'))

    @staticmethod
    def list_by_provider(practitioner_id, date=None, status=None):
        return AppointmentLedger.search(practitioner_id=practitioner_id, date=date, status=status)

    @staticmethod
    def list_by_patient(patient_id, status=None):
        return AppointmentLedger.search(patient_id=patient_id, status=status)

    @staticmethod
    @persistence_guard
    def todays_appointments(practitioner_id=None, today=None, clinic_id=None):
        """Live appointments for the clinic's current date, optionally for one practitioner."""
        today = today or timezone.localdate()
        qs = AppointmentLedger._live().filter(date=today)
        if clinic_id:
            qs = qs.filter(clinic_id=clinic_id)
        if practitioner_id:
            qs = qs.filter(practitioner_id=practitioner_id)
        return list(qs.order_by('start_time'))

    @staticmethod
    @persistence_guard
    def count_by_status(clinic_id=None, status=None, practitioner_id=None) -> Dict[str, int]:
        """Counts of live appointments per status (every status present, zero if none)."""
        if status and status not in AppointmentStatusChoices.values:
            raise InvalidRequest(f"Unknown appointment status: {status}", field='status')

        qs = Appointment.objects.filter(is_deleted=False)
        if clinic_id:
            qs = qs.filter(clinic_id=clinic_id)
        if practitioner_id:
            qs = qs.filter(practitioner_id=practitioner_id)

        statuses = [status] if status else AppointmentStatusChoices.values
        counts = {value: 0 for value in statuses}
        for row_status in qs.filter(status__in=statuses).values_list('status', flat=True):
            counts[row_status] += 1
        return counts


# ============================================================================
# Consultation Record
# ============================================================================

_TEXT_FIELDS = {
    'chief_complaint',
    'history_of_present_illness',
    'past_medical_history',
    'family_history',
    'social_history',
    'allergies',
    'current_medications',
    'treatment_plan',
    'clinical_notes',
    'follow_up_instructions',
}

# Blank is stored as '' for these, NULL for the other narrative fields
_REQUIRED_TEXT_FIELDS = {'chief_complaint', 'history_of_present_illness'}


def _clean_narrative(patch: Dict) -> Dict:
    """Validate a narrative patch. Unknown fields are rejected, never ignored."""
    if not isinstance(patch, dict):
        raise InvalidRequest('Patch must be an object')

    unknown = sorted(set(patch) - set(Consultation.NARRATIVE_FIELDS))
    if unknown:
        raise InvalidRequest(f"Unknown consultation fields: {', '.join(unknown)}", fields=unknown)

    cleaned = {}
    for key, value in patch.items():
        if key in _TEXT_FIELDS:
            if value is not None and not isinstance(value, str):
                raise InvalidRequest(f"{key} must be a string", field=key)
            if key in _REQUIRED_TEXT_FIELDS:
                cleaned[key] = (value or '').strip()
            else:
                cleaned[key] = value.strip() if value and value.strip() else None
        elif key == 'physical_examination':
            cleaned[key] = PhysicalExamination.from_payload(value or {}).to_dict()
        elif key == 'follow_up_date':
            cleaned[key] = _parse_date(value, key)
    return cleaned


def _parse_date(value, field_name) -> Optional[date_cls]:
    if value is None or isinstance(value, date_cls):
        return value
    try:
        return datetime.strptime(str(value), '%Y-%m-%d').date()
    except ValueError:
        raise InvalidRequest(f"{field_name} must be YYYY-MM-DD", field=field_name)


def _check_index(collection, index, size):
    if isinstance(index, bool) or not isinstance(index, int) or index < 0 or index >= size:
        raise IndexOutOfRange(collection, index, size)


class ConsultationService:
    """
    Owns the consultation aggregate and its state machine.

    Every mutation locks the consultation row, refuses to touch a completed
    or cancelled record, and bumps row_version.
    """

    @staticmethod
    def _get_for_update(consultation_id) -> Consultation:
        try:
            return Consultation.objects.select_for_update().get(pk=consultation_id, is_deleted=False)
        except (Consultation.DoesNotExist, ValueError, ValidationError):
            raise NotFound('Consultation', consultation_id)

    @staticmethod
    def _ensure_editable(consultation, operation='update'):
        if consultation.is_terminal:
            raise InvalidTransition(
                consultation.status,
                consultation.status,
                f"Cannot {operation} a {consultation.status} consultation",
            )

    @staticmethod
    def _save(identity, consultation, fields, action=AuditActionChoices.UPDATE):
        consultation.row_version += 1
        consultation.save(update_fields=list(fields) + ['row_version', 'updated_at'])
        log_clinical_audit(identity.actor_id, consultation, action, changed_fields=fields)
        return consultation

    @staticmethod
    @persistence_guard
    def get(consultation_id) -> Consultation:
        try:
            return Consultation.objects.select_related('patient', 'practitioner').get(
                pk=consultation_id, is_deleted=False
            )
        except (Consultation.DoesNotExist, ValueError, ValidationError):
            raise NotFound('Consultation', consultation_id)

    @staticmethod
    @persistence_guard
    def create_standalone(
        identity,
        patient_id,
        practitioner_id,
        clinic_id=None,
        occurred_at=None,
        **narrative
    ) -> Consultation:
        """Walk-in consultation with no appointment. Starts in scheduled."""
        fields = _clean_narrative(narrative)
        practitioner = _get_practitioner(practitioner_id)
        patient = _get_patient(patient_id)
        clinic = _get_clinic(clinic_id)
        _check_patient_clinic(patient, clinic)

        with transaction.atomic():
            consultation = Consultation.objects.create(
                clinic=clinic,
                patient=patient,
                practitioner=practitioner,
                occurred_at=occurred_at or timezone.now(),
                status=ConsultationStatusChoices.SCHEDULED,
                created_by_user_id=identity.actor_id,
                **fields
            )
            log_clinical_audit(identity.actor_id, consultation, AuditActionChoices.CREATE)

        logger.info(
            f"Created consultation {consultation.id}",
            extra={
                'event': 'consultation_created',
                'consultation_id': str(consultation.id),
                'patient_id': str(patient.id),
                'practitioner_id': str(practitioner.id),
            }
        )
        return consultation

    @staticmethod
    @persistence_guard
    def create_from_appointment(identity, appointment_id, seed_fields=None) -> Consultation:
        """
        Open a consultation for an appointment.

        Copies patient, practitioner and clinic; seeds chief_complaint from
        reason_for_visit unless the caller supplies one. Links both directions
        and leaves the appointment's status alone.

        Raises:
            InvalidRequest: the appointment already has a live consultation
        """
        fields = _clean_narrative(seed_fields or {})

        with transaction.atomic():
            appointment = AppointmentLedger._get_for_update(appointment_id)

            existing = Consultation.objects.filter(
                appointment=appointment, is_deleted=False
            ).values_list('id', flat=True).first()
            if existing:
                raise InvalidRequest(
                    'Appointment already has a consultation',
                    consultation_id=str(existing),
                )

            if not fields.get('chief_complaint') and appointment.reason_for_visit:
                fields['chief_complaint'] = appointment.reason_for_visit

            occurred_at = timezone.make_aware(
                datetime.combine(appointment.date, appointment.start_time)
            )
            try:
                with transaction.atomic():
                    consultation = Consultation.objects.create(
                        clinic_id=appointment.clinic_id,
                        patient_id=appointment.patient_id,
                        practitioner_id=appointment.practitioner_id,
                        appointment=appointment,
                        occurred_at=occurred_at,
                        status=ConsultationStatusChoices.SCHEDULED,
                        created_by_user_id=identity.actor_id,
                        **fields
                    )
            except IntegrityError:
                raise InvalidRequest('Appointment already has a consultation')

            appointment.consultation = consultation
            appointment.row_version += 1
            appointment.save(update_fields=['consultation', 'row_version', 'updated_at'])

            log_clinical_audit(
                identity.actor_id, consultation, AuditActionChoices.CREATE, appointment=appointment
            )

        logger.info(
            f"Created consultation {consultation.id} from appointment {appointment.id}",
            extra={
                'event': 'consultation_created',
                'consultation_id': str(consultation.id),
                'appointment_id': str(appointment.id),
                'patient_id': str(appointment.patient_id),
                'practitioner_id': str(appointment.practitioner_id),
            }
        )
        return consultation

    @staticmethod
    @persistence_guard
    def find_by_appointment(appointment_id) -> Consultation:
        consultation = Consultation.objects.filter(
            appointment_id=appointment_id, is_deleted=False
        ).select_related('patient', 'practitioner').first()
        if consultation is None:
            raise NotFound('Consultation for appointment', appointment_id)
        return consultation

    @staticmethod
    @persistence_guard
    def search(
        patient_id=None,
        practitioner_id=None,
        status=None,
        clinic_id=None,
        date_from=None,
        date_to=None,
    ):
        """Live consultations, newest first. The date range applies to the day they occurred."""
        _check_date_range(date_from, date_to)
        qs = Consultation.objects.filter(is_deleted=False).select_related('patient', 'practitioner')
        if clinic_id:
            qs = qs.filter(clinic_id=clinic_id)
        if date_from:
            qs = qs.filter(occurred_at__date__gte=date_from)
        if date_to:
            qs = qs.filter(occurred_at__date__lte=date_to)
        if patient_id:
            qs = qs.filter(patient_id=patient_id)
        if practitioner_id:
            qs = qs.filter(practitioner_id=practitioner_id)
        if status:
            qs = qs.filter(status=status)
        return list(qs.order_by('-occurred_at'))

    @staticmethod
    def list_by_patient(patient_id):
        return ConsultationService.search(patient_id=patient_id)

    @staticmethod
    def list_by_provider(practitioner_id, status=None):
        return ConsultationService.search(practitioner_id=practitioner_id, status=status)

    @staticmethod
    @persistence_guard
    def update(identity, consultation_id, patch) -> Consultation:
        """Merge narrative fields. Allowed in scheduled and in_progress only."""
        fields = _clean_narrative(patch)
        with transaction.atomic():
            consultation = ConsultationService._get_for_update(consultation_id)
            ConsultationService._ensure_editable(consultation)
            if not fields:
                return consultation
            for key, value in fields.items():
                setattr(consultation, key, value)
            return ConsultationService._save(identity, consultation, sorted(fields))

    # ------------------------------------------------------------------
    # Ordered collections
    # ------------------------------------------------------------------

    @staticmethod
    def _append(identity, consultation_id, collection, entry):
        with transaction.atomic():
            consultation = ConsultationService._get_for_update(consultation_id)
            ConsultationService._ensure_editable(consultation, f'add to {collection} of')
            items = list(getattr(consultation, collection))
            items.append(entry.to_dict())
            setattr(consultation, collection, items)
            return ConsultationService._save(identity, consultation, [collection])

    @staticmethod
    @persistence_guard
    def remove_entry(identity, consultation_id, collection, index) -> Consultation:
        """Remove the entry at ``index``; later entries shift down by one."""
        if collection not in COLLECTIONS:
            raise InvalidRequest(f"Unknown collection: {collection}")
        with transaction.atomic():
            consultation = ConsultationService._get_for_update(consultation_id)
            ConsultationService._ensure_editable(consultation, f'remove from {collection} of')
            items = list(getattr(consultation, collection))
            _check_index(collection, index, len(items))
            del items[index]
            setattr(consultation, collection, items)
            return ConsultationService._save(identity, consultation, [collection])

    @staticmethod
    @persistence_guard
    def add_diagnosis(identity, consultation_id, payload) -> Consultation:
        return ConsultationService._append(
            identity, consultation_id, 'diagnoses', Diagnosis.from_payload(payload)
        )

    @staticmethod
    def remove_diagnosis(identity, consultation_id, index) -> Consultation:
        return ConsultationService.remove_entry(identity, consultation_id, 'diagnoses', index)

    @staticmethod
    @persistence_guard
    def add_prescription(identity, consultation_id, payload) -> Consultation:
        return ConsultationService._append(
            identity, consultation_id, 'prescriptions', Prescription.from_payload(payload)
        )

    @staticmethod
    def remove_prescription(identity, consultation_id, index) -> Consultation:
        return ConsultationService.remove_entry(identity, consultation_id, 'prescriptions', index)

    @staticmethod
    @persistence_guard
    def add_ordered_exam(identity, consultation_id, payload) -> Consultation:
        return ConsultationService._append(
            identity, consultation_id, 'ordered_exams', OrderedExam.from_payload(payload)
        )

    @staticmethod
    def remove_ordered_exam(identity, consultation_id, index) -> Consultation:
        return ConsultationService.remove_entry(identity, consultation_id, 'ordered_exams', index)

    @staticmethod
    @persistence_guard
    def record_exam_result(identity, consultation_id, exam_index, results, result_date=None) -> Consultation:
        """
        Attach results to an ordered exam.

        Results usually arrive after the visit, so completed consultations
        accept them; cancelled ones do not.
        """
        result_date = _parse_date(result_date, 'result_date')
        with transaction.atomic():
            consultation = ConsultationService._get_for_update(consultation_id)
            if consultation.status == ConsultationStatusChoices.CANCELLED:
                raise InvalidTransition(
                    consultation.status,
                    consultation.status,
                    'Cannot record exam results on a cancelled consultation',
                )
            exams = list(consultation.ordered_exams)
            _check_index('ordered_exams', exam_index, len(exams))
            exams[exam_index] = OrderedExam.from_stored(exams[exam_index]).with_result(
                results, result_date
            ).to_dict()
            consultation.ordered_exams = exams
            return ConsultationService._save(identity, consultation, ['ordered_exams'])

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @staticmethod
    def _transition_locked(identity, consultation, target_status, reason=None):
        """Transition a consultation already locked by the caller's transaction."""
        from_status = consultation.status

        try:
            consultation.transition_status(target_status)
        except InvalidTransition:
            metrics.consultation_transitions_total.labels(
                from_status=from_status, to_status=str(target_status), result='blocked'
            ).inc()
            log_consultation_transition(consultation, from_status, target_status, result='blocked')
            raise

        update_fields = ['status']
        if target_status == ConsultationStatusChoices.COMPLETED:
            missing = consultation.missing_required_fields()
            if missing:
                consultation.status = from_status
                metrics.consultation_completion_blocked_total.inc()
                log_completion_blocked(consultation, missing)
                raise IncompleteRecord(missing)
            consultation.completed_at = timezone.now()
            update_fields.append('completed_at')
        elif target_status == ConsultationStatusChoices.CANCELLED:
            consultation.cancellation_reason = (reason or '').strip() or None
            consultation.cancelled_by_id = identity.actor_id
            consultation.cancelled_at = timezone.now()
            update_fields += ['cancellation_reason', 'cancelled_by', 'cancelled_at']

        consultation.row_version += 1
        consultation.save(update_fields=update_fields + ['row_version', 'updated_at'])
        log_clinical_audit(
            identity.actor_id,
            consultation,
            AuditActionChoices.TRANSITION,
            from_status=from_status,
            to_status=target_status,
        )

        def record_success():
            metrics.consultation_transitions_total.labels(
                from_status=from_status, to_status=target_status, result='success'
            ).inc()
            log_consultation_transition(consultation, from_status, target_status)

        transaction.on_commit(record_success)
        return consultation

    @staticmethod
    @persistence_guard
    def transition(identity, consultation_id, target_status, reason=None) -> Consultation:
        """
        Apply a status change under a row lock.

        Legality first, then the completion gate: completing requires
        chief_complaint, history_of_present_illness and at least one diagnosis.
        """
        with transaction.atomic():
            consultation = ConsultationService._get_for_update(consultation_id)
            return ConsultationService._transition_locked(identity, consultation, target_status, reason)

    @staticmethod
    @persistence_guard
    def complete(identity, consultation_id, **closing_fields) -> Consultation:
        """
        Merge closing fields and complete in one transaction.

        If the completion gate fails the closing fields are rolled back too.
        Blank closing fields leave what is already documented in place.
        """
        supplied = {
            key: value for key, value in closing_fields.items()
            if value is not None and not (isinstance(value, str) and not value.strip())
        }
        fields = _clean_narrative(supplied)
        with transaction.atomic():
            consultation = ConsultationService._get_for_update(consultation_id)
            if fields:
                ConsultationService._ensure_editable(consultation)
                for key, value in fields.items():
                    setattr(consultation, key, value)
                ConsultationService._save(identity, consultation, sorted(fields))
            return ConsultationService._transition_locked(
                identity, consultation, ConsultationStatusChoices.COMPLETED
            )

    @staticmethod
    @persistence_guard
    def soft_delete(identity, consultation_id) -> Consultation:
        with transaction.atomic():
            consultation = ConsultationService._get_for_update(consultation_id)
            consultation.is_deleted = True
            consultation.deleted_at = timezone.now()
            ConsultationService._save(
                identity, consultation, ['is_deleted', 'deleted_at'], action=AuditActionChoices.DELETE
            )

        log_domain_event(
            'consultation_deleted',
            entity_type='Consultation',
            entity_id=str(consultation.id),
        )
        return consultation

    @staticmethod
    @persistence_guard
    def patient_summary(patient_id, clinic_id=None) -> Dict:
        """
        Totals, last consultation and the five most frequent diagnosis codes.

        With ``clinic_id`` only that clinic's consultations count.
        """
        patient = _get_patient(patient_id)
        if clinic_id and patient.clinic_id and str(patient.clinic_id) != str(clinic_id):
            raise NotFound('Patient', patient_id)
        consultations = Consultation.objects.filter(patient_id=patient_id, is_deleted=False)
        if clinic_id:
            consultations = consultations.filter(clinic_id=clinic_id)

        code_counts = Counter()
        descriptions = {}
        for diagnoses in consultations.values_list('diagnoses', flat=True):
            for diagnosis in diagnoses or []:
                code = diagnosis.get('code')
                if not code:
                    continue
                code_counts[code] += 1
                descriptions.setdefault(code, diagnosis.get('description'))

        return {
            'patient_id': str(patient_id),
            'total_consultations': consultations.count(),
            'completed_consultations': consultations.filter(
                status=ConsultationStatusChoices.COMPLETED
            ).count(),
            'last_consultation': consultations.order_by('-occurred_at').first(),
            'top_diagnoses': [
                {'code': code, 'description': descriptions[code], 'count': count}
                for code, count in code_counts.most_common(5)
            ],
        }
