"""
Domain events logging helpers.

Provides structured event logging for scheduling and consultation operations.
"""
from typing import Dict, Optional
from .logging import get_sanitized_logger, sanitize_dict

logger = get_sanitized_logger(__name__)


def log_domain_event(
    event_name: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    entity_ids: Optional[Dict[str, str]] = None,
    result: str = 'success',
    **extra_fields
):
    """
    Log a domain event with structured data.

    Args:
        event_name: Name of the event (e.g., 'appointment_booked')
        entity_type: Type of entity (e.g., 'Appointment', 'Consultation')
        entity_id: ID of primary entity
        entity_ids: Dictionary of related entity IDs
        result: Result of operation (success, blocked, failure)
        **extra_fields: Additional fields to log (will be sanitized)

    Example:
        log_domain_event(
            'appointment_booked',
            entity_type='Appointment',
            entity_id=str(appointment.id),
            entity_ids={'practitioner_id': str(appointment.practitioner_id)},
            booked_by='clinic',
        )
    """
    event_data = {
        'event': event_name,
        'result': result,
    }

    if entity_type:
        event_data['entity_type'] = entity_type

    if entity_id:
        event_data['entity_id'] = entity_id

    if entity_ids:
        event_data.update(entity_ids)

    event_data.update(sanitize_dict(extra_fields))

    if result in ['failure', 'error']:
        logger.error(f'Domain event: {event_name}', extra=event_data)
    elif result in ['warning', 'blocked', 'conflict']:
        logger.warning(f'Domain event: {event_name}', extra=event_data)
    else:
        logger.info(f'Domain event: {event_name}', extra=event_data)


def _appointment_ids(appointment):
    return {
        'appointment_id': str(appointment.id),
        'practitioner_id': str(appointment.practitioner_id),
        'patient_id': str(appointment.patient_id),
    }


def log_appointment_booked(appointment, **extra):
    """Log a successful booking."""
    log_domain_event(
        'appointment_booked',
        entity_type='Appointment',
        entity_id=str(appointment.id),
        entity_ids=_appointment_ids(appointment),
        result='success',
        date=appointment.date.isoformat(),
        start_time=appointment.start_time.strftime('%H:%M'),
        end_time=appointment.end_time.strftime('%H:%M'),
        booked_by=appointment.booked_by,
        **extra
    )


def log_slot_conflict(practitioner_id, date, start_time, end_time, operation='book', **extra):
    """Log a booking or reschedule rejected by an overlapping appointment."""
    log_domain_event(
        'slot_conflict',
        entity_type='Appointment',
        entity_ids={'practitioner_id': str(practitioner_id)},
        result='conflict',
        operation=operation,
        date=date.isoformat(),
        start_time=start_time.strftime('%H:%M'),
        end_time=end_time.strftime('%H:%M'),
        **extra
    )


def log_appointment_transition(appointment, from_status, to_status, result='success', **extra):
    """Log appointment status transition event."""
    log_domain_event(
        'appointment_transition',
        entity_type='Appointment',
        entity_id=str(appointment.id),
        entity_ids=_appointment_ids(appointment),
        result=result,
        from_status=from_status,
        to_status=to_status,
        **extra
    )


def log_appointment_rescheduled(appointment, previous_date, previous_start, **extra):
    log_domain_event(
        'appointment_rescheduled',
        entity_type='Appointment',
        entity_id=str(appointment.id),
        entity_ids=_appointment_ids(appointment),
        result='success',
        previous_date=previous_date.isoformat(),
        previous_start_time=previous_start.strftime('%H:%M'),
        date=appointment.date.isoformat(),
        start_time=appointment.start_time.strftime('%H:%M'),
        **extra
    )


def log_consultation_transition(consultation, from_status, to_status, result='success', **extra):
    """Log consultation status transition event."""
    log_domain_event(
        'consultation_transition',
        entity_type='Consultation',
        entity_id=str(consultation.id),
        entity_ids={
            'consultation_id': str(consultation.id),
            'appointment_id': str(consultation.appointment_id) if consultation.appointment_id else None,
        },
        result=result,
        from_status=from_status,
        to_status=to_status,
        **extra
    )


def log_completion_blocked(consultation, missing_fields):
    """Log a completion attempt rejected by the record completeness gate."""
    log_domain_event(
        'consultation_completion_blocked',
        entity_type='Consultation',
        entity_id=str(consultation.id),
        entity_ids={'consultation_id': str(consultation.id)},
        result='blocked',
        missing_fields=list(missing_fields),
    )
