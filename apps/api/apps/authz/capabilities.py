"""
Role to capability table.

Single source of truth for what each role may do in the scheduling and
consultation workflows. The scheduling facade and the DRF permission
classes both read from ROLE_CAPABILITIES; no call site keeps its own
role list.
"""
from django.db import models

from apps.authz.models import RoleChoices


class Capability(models.TextChoices):
    VIEW_AVAILABILITY = 'view_availability', 'View availability'
    BOOK_APPOINTMENT = 'book_appointment', 'Book appointment'
    VIEW_APPOINTMENTS = 'view_appointments', 'View appointments'
    MANAGE_APPOINTMENT = 'manage_appointment', 'Transition or reschedule appointment'
    CANCEL_APPOINTMENT = 'cancel_appointment', 'Cancel appointment'
    COUNT_APPOINTMENTS = 'count_appointments', 'Count appointments'
    DELETE_APPOINTMENT = 'delete_appointment', 'Delete appointment'
    START_ENCOUNTER = 'start_encounter', 'Start encounter'
    COMPLETE_APPOINTMENT = 'complete_appointment', 'Complete appointment'
    VIEW_CONSULTATIONS = 'view_consultations', 'View consultations'
    VIEW_CLINICAL_SUMMARY = 'view_clinical_summary', 'View patient clinical summary'
    CREATE_CONSULTATION = 'create_consultation', 'Create consultation'
    EDIT_CONSULTATION = 'edit_consultation', 'Edit consultation record'
    RECORD_EXAM_RESULT = 'record_exam_result', 'Record exam result'
    DELETE_CONSULTATION = 'delete_consultation', 'Delete consultation'


_STAFF_READ = {
    Capability.VIEW_AVAILABILITY,
    Capability.VIEW_APPOINTMENTS,
    Capability.VIEW_CONSULTATIONS,
}

ROLE_CAPABILITIES = {
    RoleChoices.ADMIN: frozenset(Capability),
    RoleChoices.PRACTITIONER: frozenset(_STAFF_READ | {
        Capability.BOOK_APPOINTMENT,
        Capability.MANAGE_APPOINTMENT,
        Capability.CANCEL_APPOINTMENT,
        Capability.COUNT_APPOINTMENTS,
        Capability.START_ENCOUNTER,
        Capability.COMPLETE_APPOINTMENT,
        Capability.VIEW_CLINICAL_SUMMARY,
        Capability.CREATE_CONSULTATION,
        Capability.EDIT_CONSULTATION,
        Capability.RECORD_EXAM_RESULT,
        Capability.DELETE_CONSULTATION,
    }),
    RoleChoices.RECEPTION: frozenset(_STAFF_READ | {
        Capability.BOOK_APPOINTMENT,
        Capability.MANAGE_APPOINTMENT,
        Capability.CANCEL_APPOINTMENT,
        Capability.RECORD_EXAM_RESULT,
    }),
    # Patient access is further scoped to the patient's own records
    RoleChoices.PATIENT: frozenset({
        Capability.VIEW_AVAILABILITY,
        Capability.BOOK_APPOINTMENT,
        Capability.VIEW_APPOINTMENTS,
        Capability.CANCEL_APPOINTMENT,
    }),
}


class CapabilityDenied(Exception):
    """Raised when none of the actor's roles grants the capability."""

    code = 'permission_denied'
    http_status = 403

    def __init__(self, capability, role=None):
        self.capability = capability
        self.role = role
        super().__init__(f"Role '{role or 'anonymous'}' may not {Capability(capability).label.lower()}")


def capabilities_for(roles):
    """Union of capabilities granted by an iterable of role names."""
    granted = set()
    for role in roles:
        granted |= ROLE_CAPABILITIES.get(role, frozenset())
    return frozenset(granted)


def has_capability(roles, capability):
    return capability in capabilities_for(roles)
