"""
Clinical API views: availability, appointments and consultations.

Views parse the request, resolve the caller's IdentityContext once and hand
both to the scheduling facade. Domain errors become JSON bodies of the form
{"error": ..., "code": ..., ...details} with the error's HTTP status.
"""
import logging

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.authz.capabilities import Capability, CapabilityDenied
from apps.authz.identity import IdentityContext
from apps.authz.permissions import CapabilityPermission
from apps.core.observability import metrics
from apps.clinical.exceptions import ClinicalDomainError, InvalidRequest
from apps.clinical.scheduling import scheduling
from apps.clinical.serializers import (
    AppointmentBookSerializer,
    AppointmentCancelSerializer,
    AppointmentQuerySerializer,
    AppointmentRescheduleSerializer,
    AppointmentSerializer,
    AppointmentUpdateSerializer,
    AvailabilityQuerySerializer,
    ConsultationCompleteSerializer,
    ConsultationCreateSerializer,
    ConsultationListSerializer,
    ConsultationQuerySerializer,
    ConsultationSerializer,
    ExamResultSerializer,
    PatientSummarySerializer,
    SlotSerializer,
    StatusChangeSerializer,
)

logger = logging.getLogger(__name__)

UUID_PATTERN = r'[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}'


class ClinicalAPIMixin:
    """Identity resolution and domain error mapping shared by clinical views."""

    permission_classes = [CapabilityPermission]

    @property
    def identity(self):
        if not hasattr(self, '_identity'):
            self._identity = IdentityContext.from_request(self.request)
        return self._identity

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        # JSON arrays and scalars parse fine but are never a valid command
        if request.method in ('POST', 'PUT', 'PATCH') and not isinstance(request.data, dict):
            raise InvalidRequest('Request body must be a JSON object')

    def handle_exception(self, exc):
        if isinstance(exc, ClinicalDomainError):
            if exc.http_status >= 500:
                metrics.exceptions_total.labels(
                    exception_type=exc.__class__.__name__,
                    location=self.__class__.__name__,
                ).inc()
                logger.error(
                    'Clinical store unavailable',
                    extra={'event': 'persistence_unavailable', 'path': self.request.path}
                )
            return Response(exc.as_dict(), status=exc.http_status)
        if isinstance(exc, CapabilityDenied):
            logger.warning(
                'Capability denied',
                extra={
                    'event': 'capability_denied',
                    'capability': str(exc.capability),
                    'role': exc.role,
                    'path': self.request.path,
                }
            )
            return Response({'error': str(exc), 'code': exc.code}, status=exc.http_status)
        return super().handle_exception(exc)

    @staticmethod
    def _validated(serializer_class, data):
        serializer = serializer_class(data=data)
        serializer.is_valid(raise_exception=True)
        return serializer.validated_data


# ============================================================================
# Availability
# ============================================================================

class PractitionerAvailabilityView(ClinicalAPIMixin, APIView):
    """
    GET /api/v1/clinical/practitioners/{id}/availability/?date=YYYY-MM-DD[&slot_duration=N]

    Free slots for the practitioner's working day. Cancelled and deleted
    appointments do not block a slot.
    """
    default_capability = Capability.VIEW_AVAILABILITY

    def get(self, request, practitioner_id):
        params = self._validated(AvailabilityQuerySerializer, request.query_params)
        calendar = scheduling.available_slots(
            self.identity,
            practitioner_id,
            params['date'],
            granularity=params.get('slot_duration'),
        )
        return Response({
            'practitioner_id': str(practitioner_id),
            'date': params['date'].isoformat(),
            'slot_duration': int(calendar.granularity.total_seconds() // 60),
            'slots': SlotSerializer(list(calendar), many=True).data,
        })


# ============================================================================
# Appointments
# ============================================================================

class AppointmentViewSet(ClinicalAPIMixin, viewsets.ViewSet):
    """
    Appointment ledger endpoints.

    Status changes go through /status/, /cancel/ and /start-encounter/ and
    time changes through /reschedule/. PATCH on the appointment itself edits
    visit details or reassigns the practitioner.
    """
    lookup_value_regex = UUID_PATTERN
    capability_map = {
        'list': Capability.VIEW_APPOINTMENTS,
        'retrieve': Capability.VIEW_APPOINTMENTS,
        'today': Capability.VIEW_APPOINTMENTS,
        'create': Capability.BOOK_APPOINTMENT,
        'destroy': Capability.DELETE_APPOINTMENT,
        'count': Capability.COUNT_APPOINTMENTS,
        'cancel': Capability.CANCEL_APPOINTMENT,
        'reschedule': Capability.MANAGE_APPOINTMENT,
        'partial_update': Capability.MANAGE_APPOINTMENT,
        'start_encounter': Capability.START_ENCOUNTER,
    }
    # change_status covers cancel/complete too; the facade picks the capability

    def list(self, request):
        params = self._validated(AppointmentQuerySerializer, request.query_params)
        appointments = scheduling.list_appointments(
            self.identity,
            practitioner_id=params.get('practitioner_id'),
            patient_id=params.get('patient_id'),
            date=params.get('date'),
            status=params.get('status'),
            date_from=params.get('date_from'),
            date_to=params.get('date_to'),
        )
        return Response(AppointmentSerializer(appointments, many=True).data)

    def create(self, request):
        data = self._validated(AppointmentBookSerializer, request.data)
        appointment = scheduling.book_appointment(
            self.identity,
            practitioner_id=data['practitioner_id'],
            patient_id=data['patient_id'],
            date=data['date'],
            interval=(data['start_time'], data['end_time']),
            clinic_id=data.get('clinic_id'),
            reason_for_visit=data.get('reason_for_visit'),
            notes=data.get('notes'),
        )
        return Response(AppointmentSerializer(appointment).data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        appointment = scheduling.get_appointment(self.identity, pk)
        return Response(AppointmentSerializer(appointment).data)

    def partial_update(self, request, pk=None):
        """Unknown fields reach the ledger untouched so it can reject them."""
        data = self._validated(AppointmentUpdateSerializer, request.data)
        changes = {key: data.get(key, request.data[key]) for key in request.data}
        appointment = scheduling.update_appointment(self.identity, pk, changes)
        return Response(AppointmentSerializer(appointment).data)

    def destroy(self, request, pk=None):
        scheduling.delete_appointment(self.identity, pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=['get'], url_path='today')
    def today(self, request):
        params = self._validated(AppointmentQuerySerializer, request.query_params)
        appointments = scheduling.todays_appointments(
            self.identity, practitioner_id=params.get('practitioner_id')
        )
        return Response(AppointmentSerializer(appointments, many=True).data)

    @action(detail=False, methods=['get'], url_path='count')
    def count(self, request):
        params = self._validated(AppointmentQuerySerializer, request.query_params)
        counts = scheduling.count_appointments(
            self.identity,
            clinic_id=params.get('clinic_id'),
            status=params.get('status'),
            practitioner_id=params.get('practitioner_id'),
        )
        return Response({'counts': counts, 'total': sum(counts.values())})

    @action(detail=True, methods=['patch'], url_path='status')
    def change_status(self, request, pk=None):
        """
        PATCH /api/v1/clinical/appointments/{id}/status/  {"status": "...", "reason": "..."}

        Allowed transitions:
        - scheduled -> confirmed | in_progress | cancelled | no_show
        - confirmed -> in_progress | cancelled | no_show
        - in_progress -> completed | cancelled
        """
        data = self._validated(StatusChangeSerializer, request.data)
        appointment = scheduling.transition_appointment(
            self.identity, pk, data['status'], reason=data.get('reason')
        )
        return Response(AppointmentSerializer(appointment).data)

    @action(detail=True, methods=['patch'], url_path='cancel')
    def cancel(self, request, pk=None):
        data = self._validated(AppointmentCancelSerializer, request.data)
        appointment = scheduling.cancel_appointment(
            self.identity, pk, data.get('cancellation_reason')
        )
        return Response(AppointmentSerializer(appointment).data)

    @action(detail=True, methods=['patch'], url_path='reschedule')
    def reschedule(self, request, pk=None):
        data = self._validated(AppointmentRescheduleSerializer, request.data)
        appointment = scheduling.reschedule_appointment(
            self.identity, pk, data['date'], (data['start_time'], data['end_time'])
        )
        return Response(AppointmentSerializer(appointment).data)

    @action(detail=True, methods=['post'], url_path='start-encounter')
    def start_encounter(self, request, pk=None):
        consultation = scheduling.start_encounter(self.identity, pk)
        return Response(ConsultationSerializer(consultation).data)


# ============================================================================
# Consultations
# ============================================================================

_COLLECTION_ROUTES = {
    'diagnoses': 'diagnoses',
    'prescriptions': 'prescriptions',
    'exams': 'ordered_exams',
}


class ConsultationViewSet(ClinicalAPIMixin, viewsets.ViewSet):
    """
    Consultation record endpoints.

    Clinical entries are ordered lists; DELETE .../{index}/ removes one entry
    and shifts the rest down.
    """
    lookup_value_regex = UUID_PATTERN
    capability_map = {
        'list': Capability.VIEW_CONSULTATIONS,
        'retrieve': Capability.VIEW_CONSULTATIONS,
        'by_appointment': Capability.VIEW_CONSULTATIONS,
        'patient_summary': Capability.VIEW_CLINICAL_SUMMARY,
        'create': Capability.CREATE_CONSULTATION,
        'from_appointment': Capability.CREATE_CONSULTATION,
        'partial_update': Capability.EDIT_CONSULTATION,
        'change_status': Capability.EDIT_CONSULTATION,
        'complete': Capability.EDIT_CONSULTATION,
        'diagnoses': Capability.EDIT_CONSULTATION,
        'remove_diagnosis': Capability.EDIT_CONSULTATION,
        'prescriptions': Capability.EDIT_CONSULTATION,
        'remove_prescription': Capability.EDIT_CONSULTATION,
        'exams': Capability.EDIT_CONSULTATION,
        'remove_exam': Capability.EDIT_CONSULTATION,
        'exam_result': Capability.RECORD_EXAM_RESULT,
        'destroy': Capability.DELETE_CONSULTATION,
    }

    def list(self, request):
        params = self._validated(ConsultationQuerySerializer, request.query_params)
        consultations = scheduling.list_consultations(
            self.identity,
            patient_id=params.get('patient_id'),
            practitioner_id=params.get('practitioner_id'),
            status=params.get('status'),
            date_from=params.get('date_from'),
            date_to=params.get('date_to'),
        )
        return Response(ConsultationListSerializer(consultations, many=True).data)

    def create(self, request):
        ids = self._validated(ConsultationCreateSerializer, request.data)
        narrative = {
            key: value for key, value in request.data.items()
            if key not in ConsultationCreateSerializer().fields
        }
        consultation = scheduling.create_consultation(
            self.identity,
            ids['patient_id'],
            ids['practitioner_id'],
            clinic_id=ids.get('clinic_id'),
            occurred_at=ids.get('occurred_at'),
            **narrative
        )
        return Response(ConsultationSerializer(consultation).data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        consultation = scheduling.get_consultation(self.identity, pk)
        return Response(ConsultationSerializer(consultation).data)

    def partial_update(self, request, pk=None):
        """Narrative patch; unknown fields are rejected."""
        consultation = scheduling.update_consultation(self.identity, pk, dict(request.data.items()))
        return Response(ConsultationSerializer(consultation).data)

    def destroy(self, request, pk=None):
        scheduling.delete_consultation(self.identity, pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=['post'], url_path=rf'from-appointment/(?P<appointment_id>{UUID_PATTERN})')
    def from_appointment(self, request, appointment_id=None):
        consultation = scheduling.create_consultation_from_appointment(
            self.identity, appointment_id, seed_fields=dict(request.data.items()) or None
        )
        return Response(ConsultationSerializer(consultation).data, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=['get'], url_path=rf'by-appointment/(?P<appointment_id>{UUID_PATTERN})')
    def by_appointment(self, request, appointment_id=None):
        consultation = scheduling.find_consultation_by_appointment(self.identity, appointment_id)
        return Response(ConsultationSerializer(consultation).data)

    @action(detail=False, methods=['get'], url_path=rf'patient/(?P<patient_id>{UUID_PATTERN})/summary')
    def patient_summary(self, request, patient_id=None):
        summary = scheduling.patient_summary(self.identity, patient_id)
        return Response(PatientSummarySerializer(summary).data)

    @action(detail=True, methods=['patch'], url_path='status')
    def change_status(self, request, pk=None):
        """
        PATCH /api/v1/clinical/consultations/{id}/status/  {"status": "...", "reason": "..."}

        Completing returns 422 with missing_fields until chief complaint,
        history of present illness and one diagnosis are recorded.
        """
        data = self._validated(StatusChangeSerializer, request.data)
        consultation = scheduling.transition_consultation(
            self.identity, pk, data['status'], reason=data.get('reason')
        )
        return Response(ConsultationSerializer(consultation).data)

    @action(detail=True, methods=['patch'], url_path='complete')
    def complete(self, request, pk=None):
        data = self._validated(ConsultationCompleteSerializer, request.data)
        consultation = scheduling.complete_encounter(self.identity, pk, **data)
        return Response(ConsultationSerializer(consultation).data)

    # Clinical entries -------------------------------------------------

    def _add(self, request, pk, route):
        consultation = scheduling.add_entry(
            self.identity, pk, _COLLECTION_ROUTES[route], dict(request.data.items())
        )
        return Response(ConsultationSerializer(consultation).data, status=status.HTTP_201_CREATED)

    def _remove(self, pk, route, index):
        consultation = scheduling.remove_entry(
            self.identity, pk, _COLLECTION_ROUTES[route], int(index)
        )
        return Response(ConsultationSerializer(consultation).data)

    @action(detail=True, methods=['post'], url_path='diagnoses')
    def diagnoses(self, request, pk=None):
        return self._add(request, pk, 'diagnoses')

    @action(detail=True, methods=['delete'], url_path=r'diagnoses/(?P<index>\d+)')
    def remove_diagnosis(self, request, pk=None, index=None):
        return self._remove(pk, 'diagnoses', index)

    @action(detail=True, methods=['post'], url_path='prescriptions')
    def prescriptions(self, request, pk=None):
        return self._add(request, pk, 'prescriptions')

    @action(detail=True, methods=['delete'], url_path=r'prescriptions/(?P<index>\d+)')
    def remove_prescription(self, request, pk=None, index=None):
        return self._remove(pk, 'prescriptions', index)

    @action(detail=True, methods=['post'], url_path='exams')
    def exams(self, request, pk=None):
        return self._add(request, pk, 'exams')

    @action(detail=True, methods=['delete'], url_path=r'exams/(?P<index>\d+)')
    def remove_exam(self, request, pk=None, index=None):
        return self._remove(pk, 'exams', index)

    @action(detail=True, methods=['patch'], url_path=r'exams/(?P<index>\d+)/result')
    def exam_result(self, request, pk=None, index=None):
        data = self._validated(ExamResultSerializer, request.data)
        consultation = scheduling.record_exam_result(
            self.identity, pk, int(index), data['results'], data.get('result_date')
        )
        return Response(ConsultationSerializer(consultation).data)
