"""
Clinical serializers.

Write serializers only check the request shape. The overlap check, the
state machines and the completion gate are enforced by the services.
"""
from rest_framework import serializers

from apps.clinical.models import Appointment, Consultation


# ============================================================================
# Appointments
# ============================================================================

class AppointmentSerializer(serializers.ModelSerializer):
    patient_id = serializers.UUIDField(read_only=True)
    practitioner_id = serializers.UUIDField(read_only=True)
    clinic_id = serializers.UUIDField(read_only=True, allow_null=True)
    consultation_id = serializers.UUIDField(read_only=True, allow_null=True)
    patient_name = serializers.SerializerMethodField()
    practitioner_name = serializers.CharField(source='practitioner.display_name', read_only=True)
    start_time = serializers.TimeField(format='%H:%M', read_only=True)
    end_time = serializers.TimeField(format='%H:%M', read_only=True)

    class Meta:
        model = Appointment
        fields = [
            'id',
            'clinic_id',
            'patient_id',
            'patient_name',
            'practitioner_id',
            'practitioner_name',
            'consultation_id',
            'date',
            'start_time',
            'end_time',
            'status',
            'booked_by',
            'reason_for_visit',
            'notes',
            'cancellation_reason',
            'cancelled_by',
            'cancelled_at',
            'row_version',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_patient_name(self, obj):
        return f"{obj.patient.first_name} {obj.patient.last_name}".strip()


class AppointmentBookSerializer(serializers.Serializer):
    patient_id = serializers.UUIDField()
    practitioner_id = serializers.UUIDField()
    clinic_id = serializers.UUIDField(required=False, allow_null=True)
    date = serializers.DateField()
    start_time = serializers.TimeField()
    end_time = serializers.TimeField()
    reason_for_visit = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class DateRangeQuerySerializer(serializers.Serializer):
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)

    def validate(self, attrs):
        if attrs.get('date_from') and attrs.get('date_to') and attrs['date_from'] > attrs['date_to']:
            raise serializers.ValidationError({'date_from': 'date_from must not be after date_to'})
        return attrs


class AppointmentQuerySerializer(DateRangeQuerySerializer):
    practitioner_id = serializers.UUIDField(required=False)
    patient_id = serializers.UUIDField(required=False)
    clinic_id = serializers.UUIDField(required=False)
    date = serializers.DateField(required=False)
    status = serializers.CharField(required=False)


class AppointmentUpdateSerializer(serializers.Serializer):
    """Visit details and practitioner reassignment. Time changes go through reschedule."""
    practitioner_id = serializers.UUIDField(required=False)
    reason_for_visit = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class StatusChangeSerializer(serializers.Serializer):
    """
    Unknown status values are passed through so the state machine
    rejects them with InvalidTransition.
    """
    status = serializers.CharField()
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class AppointmentCancelSerializer(serializers.Serializer):
    cancellation_reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class AppointmentRescheduleSerializer(serializers.Serializer):
    date = serializers.DateField()
    start_time = serializers.TimeField()
    end_time = serializers.TimeField()


# ============================================================================
# Availability
# ============================================================================

class AvailabilityQuerySerializer(serializers.Serializer):
    date = serializers.DateField()
    slot_duration = serializers.IntegerField(required=False)


class SlotSerializer(serializers.Serializer):
    start_time = serializers.TimeField(source='start', format='%H:%M')
    end_time = serializers.TimeField(source='end', format='%H:%M')


# ============================================================================
# Consultations
# ============================================================================

class ConsultationSerializer(serializers.ModelSerializer):
    patient_id = serializers.UUIDField(read_only=True)
    practitioner_id = serializers.UUIDField(read_only=True)
    clinic_id = serializers.UUIDField(read_only=True, allow_null=True)
    appointment_id = serializers.UUIDField(read_only=True, allow_null=True)
    practitioner_name = serializers.CharField(source='practitioner.display_name', read_only=True)
    missing_required_fields = serializers.SerializerMethodField()

    class Meta:
        model = Consultation
        fields = [
            'id',
            'clinic_id',
            'patient_id',
            'practitioner_id',
            'practitioner_name',
            'appointment_id',
            'occurred_at',
            'status',
            'chief_complaint',
            'history_of_present_illness',
            'past_medical_history',
            'family_history',
            'social_history',
            'allergies',
            'current_medications',
            'physical_examination',
            'diagnoses',
            'prescriptions',
            'ordered_exams',
            'treatment_plan',
            'clinical_notes',
            'follow_up_date',
            'follow_up_instructions',
            'completed_at',
            'cancellation_reason',
            'cancelled_by',
            'cancelled_at',
            'missing_required_fields',
            'row_version',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_missing_required_fields(self, obj):
        return obj.missing_required_fields()


class ConsultationListSerializer(serializers.ModelSerializer):
    """Lightweight list view: no narrative text."""
    patient_id = serializers.UUIDField(read_only=True)
    practitioner_id = serializers.UUIDField(read_only=True)
    appointment_id = serializers.UUIDField(read_only=True, allow_null=True)
    diagnosis_codes = serializers.SerializerMethodField()

    class Meta:
        model = Consultation
        fields = [
            'id',
            'patient_id',
            'practitioner_id',
            'appointment_id',
            'occurred_at',
            'status',
            'diagnosis_codes',
            'completed_at',
        ]
        read_only_fields = fields

    def get_diagnosis_codes(self, obj):
        return [d.get('code') for d in obj.diagnoses or []]


class ConsultationCreateSerializer(serializers.Serializer):
    """
    Standalone consultation. Narrative fields other than the ids are
    forwarded as-is; unknown keys are rejected by the service.
    """
    patient_id = serializers.UUIDField()
    practitioner_id = serializers.UUIDField()
    clinic_id = serializers.UUIDField(required=False, allow_null=True)
    occurred_at = serializers.DateTimeField(required=False)


class ConsultationQuerySerializer(DateRangeQuerySerializer):
    patient_id = serializers.UUIDField(required=False)
    practitioner_id = serializers.UUIDField(required=False)
    status = serializers.CharField(required=False)


class ConsultationCompleteSerializer(serializers.Serializer):
    treatment_plan = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    clinical_notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    follow_up_date = serializers.DateField(required=False, allow_null=True)
    follow_up_instructions = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class ExamResultSerializer(serializers.Serializer):
    results = serializers.CharField()
    result_date = serializers.DateField(required=False, allow_null=True)


class PatientSummarySerializer(serializers.Serializer):
    patient_id = serializers.UUIDField()
    total_consultations = serializers.IntegerField()
    completed_consultations = serializers.IntegerField()
    last_consultation = ConsultationListSerializer(allow_null=True)
    top_diagnoses = serializers.ListField(child=serializers.DictField())
