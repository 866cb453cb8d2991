"""
Scheduling facade.

Entry point for the booking and encounter journeys. Every call takes an
explicit IdentityContext and checks the capability it needs against the
central role table before touching the ledger or the consultation record.
"""
import logging

from django.db import transaction

from apps.authz.capabilities import Capability, CapabilityDenied
from apps.clinical.exceptions import NotFound, persistence_guard
from apps.clinical.models import (
    AppointmentStatusChoices,
    BookedByChoices,
    Consultation,
    ConsultationStatusChoices,
)
from apps.clinical.services import AppointmentLedger, ConsultationService

logger = logging.getLogger(__name__)


class SchedulingFacade:
    """
    Orchestrates SlotCalendar, AppointmentLedger and ConsultationService.

    Patients act only on their own records: other patients' appointments
    are reported as NotFound so their existence does not leak. Actors bound
    to a clinic see another clinic's records the same way; actors with no
    clinic are platform staff and see every clinic.
    """

    def __init__(self, ledger=AppointmentLedger, consultations=ConsultationService):
        self.ledger = ledger
        self.consultations = consultations

    # ------------------------------------------------------------------
    # Scoping helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _own_patient_or_deny(identity, patient_id, capability):
        if identity.is_patient and (not identity.patient_id or str(patient_id) != identity.patient_id):
            raise CapabilityDenied(capability, identity.role)

    @staticmethod
    def _clinic_for(identity, clinic_id=None):
        """Clinic an operation runs in: the actor's own unless they are unscoped."""
        if not identity.clinic_id:
            return clinic_id
        if clinic_id and str(clinic_id) != identity.clinic_id:
            raise NotFound('Clinic', clinic_id)
        return identity.clinic_id

    @staticmethod
    def _in_scope(identity, record):
        return not identity.clinic_id or str(record.clinic_id) == identity.clinic_id

    def _visible_appointment(self, identity, appointment_id):
        appointment = self.ledger.get(appointment_id)
        if not self._in_scope(identity, appointment):
            raise NotFound('Appointment', appointment_id)
        if identity.is_patient and str(appointment.patient_id) != identity.patient_id:
            raise NotFound('Appointment', appointment_id)
        return appointment

    def _visible_consultation(self, identity, consultation_id):
        consultation = self.consultations.get(consultation_id)
        if not self._in_scope(identity, consultation):
            raise NotFound('Consultation', consultation_id)
        return consultation

    def _check_appointment(self, identity, appointment_id):
        if identity.clinic_id or identity.is_patient:
            self._visible_appointment(identity, appointment_id)

    def _check_consultation(self, identity, consultation_id):
        if identity.clinic_id:
            self._visible_consultation(identity, consultation_id)

    # ------------------------------------------------------------------
    # Booking journey
    # ------------------------------------------------------------------

    def available_slots(self, identity, practitioner_id, date, granularity=None):
        identity.require(Capability.VIEW_AVAILABILITY)
        return self.ledger.free_slots(practitioner_id, date, granularity_minutes=granularity)

    def book_appointment(
        self,
        identity,
        practitioner_id,
        patient_id,
        date,
        interval,
        clinic_id=None,
        reason_for_visit=None,
        notes=None,
    ):
        """Book in status scheduled; booked_by follows the actor's role, the clinic the actor's."""
        identity.require(Capability.BOOK_APPOINTMENT)
        self._own_patient_or_deny(identity, patient_id, Capability.BOOK_APPOINTMENT)

        booked_by = BookedByChoices.PATIENT if identity.is_patient else BookedByChoices.CLINIC
        return self.ledger.book(
            identity,
            practitioner_id,
            patient_id,
            date,
            interval,
            booked_by=booked_by,
            clinic_id=self._clinic_for(identity, clinic_id),
            reason_for_visit=reason_for_visit,
            notes=notes,
        )

    def get_appointment(self, identity, appointment_id):
        identity.require(Capability.VIEW_APPOINTMENTS)
        return self._visible_appointment(identity, appointment_id)

    def list_appointments(
        self,
        identity,
        practitioner_id=None,
        patient_id=None,
        date=None,
        status=None,
        date_from=None,
        date_to=None,
    ):
        identity.require(Capability.VIEW_APPOINTMENTS)
        if identity.is_patient:
            if not identity.patient_id:
                return []
            patient_id = identity.patient_id
        return self.ledger.search(
            practitioner_id=practitioner_id,
            patient_id=patient_id,
            date=date,
            status=status,
            clinic_id=self._clinic_for(identity),
            date_from=date_from,
            date_to=date_to,
        )

    def todays_appointments(self, identity, practitioner_id=None):
        identity.require(Capability.VIEW_APPOINTMENTS)
        appointments = self.ledger.todays_appointments(
            practitioner_id=practitioner_id, clinic_id=self._clinic_for(identity)
        )
        if identity.is_patient:
            appointments = [a for a in appointments if str(a.patient_id) == identity.patient_id]
        return appointments

    def count_appointments(self, identity, clinic_id=None, status=None, practitioner_id=None):
        identity.require(Capability.COUNT_APPOINTMENTS)
        return self.ledger.count_by_status(
            clinic_id=self._clinic_for(identity, clinic_id), status=status, practitioner_id=practitioner_id
        )

    def transition_appointment(self, identity, appointment_id, target_status, reason=None):
        if target_status == AppointmentStatusChoices.CANCELLED:
            return self.cancel_appointment(identity, appointment_id, reason)
        if target_status == AppointmentStatusChoices.COMPLETED:
            return self.complete_appointment(identity, appointment_id)
        identity.require(Capability.MANAGE_APPOINTMENT)
        self._check_appointment(identity, appointment_id)
        return self.ledger.transition(identity, appointment_id, target_status, reason=reason)

    def reschedule_appointment(self, identity, appointment_id, new_date, new_interval):
        identity.require(Capability.MANAGE_APPOINTMENT)
        self._check_appointment(identity, appointment_id)
        return self.ledger.reschedule(identity, appointment_id, new_date, new_interval)

    def update_appointment(self, identity, appointment_id, changes):
        """Edit notes and reason for visit, or reassign the practitioner."""
        identity.require(Capability.MANAGE_APPOINTMENT)
        self._check_appointment(identity, appointment_id)
        return self.ledger.update(identity, appointment_id, changes)

    def cancel_appointment(self, identity, appointment_id, reason):
        """Cancel with a mandatory reason. Does not touch a linked consultation."""
        identity.require(Capability.CANCEL_APPOINTMENT)
        self._check_appointment(identity, appointment_id)
        return self.ledger.cancel(identity, appointment_id, reason)

    def complete_appointment(self, identity, appointment_id):
        """Explicit call; completing the consultation never completes the appointment."""
        identity.require(Capability.COMPLETE_APPOINTMENT)
        self._check_appointment(identity, appointment_id)
        return self.ledger.transition(identity, appointment_id, AppointmentStatusChoices.COMPLETED)

    def delete_appointment(self, identity, appointment_id):
        identity.require(Capability.DELETE_APPOINTMENT)
        self._check_appointment(identity, appointment_id)
        return self.ledger.soft_delete(identity, appointment_id)

    # ------------------------------------------------------------------
    # Encounter journey
    # ------------------------------------------------------------------

    @persistence_guard
    def start_encounter(self, identity, appointment_id):
        """
        Move the appointment to in_progress and open its consultation.

        Creates the consultation from the appointment when none exists,
        otherwise moves the existing one to in_progress. All or nothing.
        """
        identity.require(Capability.START_ENCOUNTER)
        self._check_appointment(identity, appointment_id)

        with transaction.atomic():
            appointment = self.ledger.transition(
                identity, appointment_id, AppointmentStatusChoices.IN_PROGRESS
            )
            existing = Consultation.objects.filter(
                appointment_id=appointment.id, is_deleted=False
            ).values_list('id', flat=True).first()

            if existing is None:
                consultation = self.consultations.create_from_appointment(identity, appointment.id)
                consultation_id = consultation.id
            else:
                consultation_id = existing

            consultation = self.consultations.transition(
                identity, consultation_id, ConsultationStatusChoices.IN_PROGRESS
            )

        logger.info(
            f"Encounter started for appointment {appointment.id}",
            extra={
                'event': 'encounter_started',
                'appointment_id': str(appointment.id),
                'consultation_id': str(consultation.id),
                'created_consultation': existing is None,
            }
        )
        return consultation

    def complete_encounter(
        self,
        identity,
        consultation_id,
        treatment_plan=None,
        clinical_notes=None,
        follow_up_date=None,
        follow_up_instructions=None,
    ):
        """Merge closing fields and complete the consultation. The appointment is left as is."""
        identity.require(Capability.EDIT_CONSULTATION)
        self._check_consultation(identity, consultation_id)
        return self.consultations.complete(
            identity,
            consultation_id,
            treatment_plan=treatment_plan,
            clinical_notes=clinical_notes,
            follow_up_date=follow_up_date,
            follow_up_instructions=follow_up_instructions,
        )

    def cancel_consultation(self, identity, consultation_id, reason=None):
        identity.require(Capability.EDIT_CONSULTATION)
        self._check_consultation(identity, consultation_id)
        return self.consultations.transition(
            identity, consultation_id, ConsultationStatusChoices.CANCELLED, reason=reason
        )

    def transition_consultation(self, identity, consultation_id, target_status, reason=None):
        identity.require(Capability.EDIT_CONSULTATION)
        self._check_consultation(identity, consultation_id)
        return self.consultations.transition(identity, consultation_id, target_status, reason=reason)

    # ------------------------------------------------------------------
    # Consultation record
    # ------------------------------------------------------------------

    def create_consultation(self, identity, patient_id, practitioner_id, clinic_id=None, **narrative):
        identity.require(Capability.CREATE_CONSULTATION)
        return self.consultations.create_standalone(
            identity,
            patient_id,
            practitioner_id,
            clinic_id=self._clinic_for(identity, clinic_id),
            **narrative
        )

    def create_consultation_from_appointment(self, identity, appointment_id, seed_fields=None):
        identity.require(Capability.CREATE_CONSULTATION)
        self._check_appointment(identity, appointment_id)
        return self.consultations.create_from_appointment(identity, appointment_id, seed_fields)

    def get_consultation(self, identity, consultation_id):
        identity.require(Capability.VIEW_CONSULTATIONS)
        return self._visible_consultation(identity, consultation_id)

    def find_consultation_by_appointment(self, identity, appointment_id):
        identity.require(Capability.VIEW_CONSULTATIONS)
        consultation = self.consultations.find_by_appointment(appointment_id)
        if not self._in_scope(identity, consultation):
            raise NotFound('Consultation for appointment', appointment_id)
        return consultation

    def list_consultations(
        self,
        identity,
        patient_id=None,
        practitioner_id=None,
        status=None,
        date_from=None,
        date_to=None,
    ):
        identity.require(Capability.VIEW_CONSULTATIONS)
        return self.consultations.search(
            patient_id=patient_id,
            practitioner_id=practitioner_id,
            status=status,
            clinic_id=self._clinic_for(identity),
            date_from=date_from,
            date_to=date_to,
        )

    def patient_summary(self, identity, patient_id):
        identity.require(Capability.VIEW_CLINICAL_SUMMARY)
        return self.consultations.patient_summary(patient_id, clinic_id=self._clinic_for(identity))

    def update_consultation(self, identity, consultation_id, patch):
        identity.require(Capability.EDIT_CONSULTATION)
        self._check_consultation(identity, consultation_id)
        return self.consultations.update(identity, consultation_id, patch)

    def add_entry(self, identity, consultation_id, collection, payload):
        identity.require(Capability.EDIT_CONSULTATION)
        self._check_consultation(identity, consultation_id)
        adders = {
            'diagnoses': self.consultations.add_diagnosis,
            'prescriptions': self.consultations.add_prescription,
            'ordered_exams': self.consultations.add_ordered_exam,
        }
        return adders[collection](identity, consultation_id, payload)

    def remove_entry(self, identity, consultation_id, collection, index):
        identity.require(Capability.EDIT_CONSULTATION)
        self._check_consultation(identity, consultation_id)
        return self.consultations.remove_entry(identity, consultation_id, collection, index)

    def record_exam_result(self, identity, consultation_id, exam_index, results, result_date=None):
        identity.require(Capability.RECORD_EXAM_RESULT)
        self._check_consultation(identity, consultation_id)
        return self.consultations.record_exam_result(
            identity, consultation_id, exam_index, results, result_date
        )

    def delete_consultation(self, identity, consultation_id):
        identity.require(Capability.DELETE_CONSULTATION)
        self._check_consultation(identity, consultation_id)
        return self.consultations.soft_delete(identity, consultation_id)


scheduling = SchedulingFacade()
