"""
HTTP contract of the clinical API.

Status codes and error bodies: 201 created, 409 slot conflict, 400
invalid transition / bad index, 422 incomplete record, 403 capability
denied, 404 hidden or missing records.
"""
from datetime import date, time

import pytest

from apps.clinical.models import Appointment
from apps.clinical.scheduling import scheduling

from .conftest import BOOKING_DATE

BASE = '/api/v1/clinical'


def booking_payload(practitioner, patient, start='09:00', end='09:30', **extra):
    payload = {
        'practitioner_id': str(practitioner.id),
        'patient_id': str(patient.id),
        'date': BOOKING_DATE.isoformat(),
        'start_time': start,
        'end_time': end,
        'reason_for_visit': 'Follow-up',
    }
    payload.update(extra)
    return payload


@pytest.mark.django_db
class TestAuthentication:

    def test_unauthenticated_rejected(self, api_client, practitioner):
        response = api_client.get(
            f'{BASE}/practitioners/{practitioner.id}/availability/',
            {'date': BOOKING_DATE.isoformat()},
        )

        assert response.status_code == 401

    def test_current_identity(self, patient_client, patient):
        response = patient_client.get('/api/v1/auth/me/')

        assert response.status_code == 200
        assert response.data['role'] == 'patient'
        assert response.data['patient_id'] == str(patient.id)
        assert response.data['clinic_id'] == str(patient.clinic_id)
        assert 'book_appointment' in response.data['capabilities']
        assert 'edit_consultation' not in response.data['capabilities']

    def test_practitioner_directory(self, patient_client, practitioner):
        response = patient_client.get('/api/v1/practitioners/')

        assert response.status_code == 200
        assert [p['id'] for p in response.data] == [str(practitioner.id)]

    def test_practitioner_directory_read_only(self, admin_client):
        response = admin_client.post('/api/v1/practitioners/', {'display_name': 'Dr. New'}, format='json')

        assert response.status_code == 403


@pytest.mark.django_db
class TestAvailabilityEndpoint:

    def test_slots_exclude_booked(self, reception_client, practitioner, book):
        book(time(8, 0), time(8, 30))

        response = reception_client.get(
            f'{BASE}/practitioners/{practitioner.id}/availability/',
            {'date': BOOKING_DATE.isoformat()},
        )

        assert response.status_code == 200
        assert response.data['slot_duration'] == 30
        assert response.data['slots'][0] == {'start_time': '08:30', 'end_time': '09:00'}
        assert len(response.data['slots']) == 23

    def test_invalid_slot_duration(self, reception_client, practitioner):
        response = reception_client.get(
            f'{BASE}/practitioners/{practitioner.id}/availability/',
            {'date': BOOKING_DATE.isoformat(), 'slot_duration': 0},
        )

        assert response.status_code == 400
        assert response.data['code'] == 'invalid_request'

    def test_oversized_slot_duration_is_rejected(self, reception_client, practitioner):
        response = reception_client.get(
            f'{BASE}/practitioners/{practitioner.id}/availability/',
            {'date': BOOKING_DATE.isoformat(), 'slot_duration': 10_000_000_000},
        )

        assert response.status_code == 400
        assert response.data['code'] == 'invalid_request'
        assert response.data['field'] == 'slot_duration'

    def test_missing_date(self, reception_client, practitioner):
        response = reception_client.get(f'{BASE}/practitioners/{practitioner.id}/availability/')

        assert response.status_code == 400

    def test_unknown_practitioner(self, reception_client):
        response = reception_client.get(
            f'{BASE}/practitioners/00000000-0000-0000-0000-000000000000/availability/',
            {'date': BOOKING_DATE.isoformat()},
        )

        assert response.status_code == 404
        assert response.data['code'] == 'not_found'


@pytest.mark.django_db
class TestAppointmentEndpoints:

    def test_book_returns_201(self, reception_client, practitioner, patient):
        response = reception_client.post(
            f'{BASE}/appointments/', booking_payload(practitioner, patient), format='json'
        )

        assert response.status_code == 201
        assert response.data['status'] == 'scheduled'
        assert response.data['booked_by'] == 'clinic'
        assert response.data['start_time'] == '09:00'
        assert response.data['practitioner_name'] == 'Dr. Test Practitioner'

    def test_double_booking_returns_409(self, reception_client, practitioner, patient, other_patient):
        first = reception_client.post(
            f'{BASE}/appointments/', booking_payload(practitioner, patient), format='json'
        )
        second = reception_client.post(
            f'{BASE}/appointments/',
            booking_payload(practitioner, other_patient, '09:15', '09:45'),
            format='json',
        )

        assert second.status_code == 409
        assert second.data['code'] == 'slot_conflict'
        assert second.data['conflicting_appointment_id'] == first.data['id']
        assert 'error' in second.data
        assert Appointment.objects.count() == 1

    def test_patient_self_booking(self, patient_client, practitioner, patient):
        response = patient_client.post(
            f'{BASE}/appointments/', booking_payload(practitioner, patient), format='json'
        )

        assert response.status_code == 201
        assert response.data['booked_by'] == 'patient'

    def test_patient_booking_for_other_patient_forbidden(self, patient_client, practitioner, other_patient):
        response = patient_client.post(
            f'{BASE}/appointments/', booking_payload(practitioner, other_patient), format='json'
        )

        assert response.status_code == 403
        assert response.data['code'] == 'permission_denied'

    def test_invalid_payload(self, reception_client, practitioner, patient):
        payload = booking_payload(practitioner, patient)
        payload['start_time'] = 'nine'

        response = reception_client.post(f'{BASE}/appointments/', payload, format='json')

        assert response.status_code == 400

    def test_list_filters_by_date(self, reception_client, book):
        book()

        response = reception_client.get(f'{BASE}/appointments/', {'date': BOOKING_DATE.isoformat()})

        assert response.status_code == 200
        assert len(response.data) == 1

    def test_patient_sees_other_appointment_as_404(self, patient_client, book, other_patient):
        theirs = book(for_patient=other_patient)

        response = patient_client.get(f'{BASE}/appointments/{theirs.id}/')

        assert response.status_code == 404

    def test_status_change(self, reception_client, book):
        appointment = book()

        response = reception_client.patch(
            f'{BASE}/appointments/{appointment.id}/status/', {'status': 'confirmed'}, format='json'
        )

        assert response.status_code == 200
        assert response.data['status'] == 'confirmed'
        assert response.data['row_version'] == 2

    def test_reception_cannot_complete_appointment(self, reception_client, book):
        appointment = book()

        response = reception_client.patch(
            f'{BASE}/appointments/{appointment.id}/status/', {'status': 'completed'}, format='json'
        )

        assert response.status_code == 403
        assert response.data['code'] == 'permission_denied'

    @pytest.mark.parametrize('body', [[], ['confirmed'], 'confirmed', 42])
    def test_non_object_body_rejected(self, reception_client, book, body):
        appointment = book()

        response = reception_client.patch(
            f'{BASE}/appointments/{appointment.id}/status/', body, format='json'
        )

        assert response.status_code == 400
        assert response.data['code'] == 'invalid_request'

    def test_array_booking_body_rejected(self, reception_client, practitioner, patient):
        response = reception_client.post(
            f'{BASE}/appointments/', [booking_payload(practitioner, patient)], format='json'
        )

        assert response.status_code == 400
        assert response.data['code'] == 'invalid_request'
        assert Appointment.objects.count() == 0

    def test_invalid_transition_returns_400(self, reception_client, book):
        appointment = book()

        response = reception_client.patch(
            f'{BASE}/appointments/{appointment.id}/status/', {'status': 'scheduled'}, format='json'
        )

        assert response.status_code == 400
        assert response.data['code'] == 'invalid_transition'
        assert response.data['current_status'] == 'scheduled'

    def test_cancel_requires_reason(self, reception_client, book):
        appointment = book()

        response = reception_client.patch(
            f'{BASE}/appointments/{appointment.id}/cancel/', {}, format='json'
        )

        assert response.status_code == 400

        response = reception_client.patch(
            f'{BASE}/appointments/{appointment.id}/cancel/',
            {'cancellation_reason': 'Patient travelling'},
            format='json',
        )

        assert response.status_code == 200
        assert response.data['status'] == 'cancelled'
        assert response.data['cancellation_reason'] == 'Patient travelling'

    def test_reschedule_conflict(self, reception_client, book, other_patient):
        book(time(11, 0), time(11, 30), for_patient=other_patient)
        appointment = book()

        response = reception_client.patch(
            f'{BASE}/appointments/{appointment.id}/reschedule/',
            {'date': BOOKING_DATE.isoformat(), 'start_time': '11:00', 'end_time': '11:30'},
            format='json',
        )

        assert response.status_code == 409

    def test_patch_updates_visit_details(self, reception_client, book):
        appointment = book()

        response = reception_client.patch(
            f'{BASE}/appointments/{appointment.id}/', {'notes': 'Wheelchair access'}, format='json'
        )

        assert response.status_code == 200
        assert response.data['notes'] == 'Wheelchair access'
        assert response.data['row_version'] == 2

    def test_patch_reassign_conflict_returns_409(self, reception_client, book, other_practitioner, other_patient):
        appointment = book()
        book(for_patient=other_patient, by_practitioner=other_practitioner)

        response = reception_client.patch(
            f'{BASE}/appointments/{appointment.id}/',
            {'practitioner_id': str(other_practitioner.id)},
            format='json',
        )

        assert response.status_code == 409
        assert response.data['code'] == 'slot_conflict'

    def test_patch_rejects_time_fields(self, reception_client, book):
        appointment = book()

        response = reception_client.patch(
            f'{BASE}/appointments/{appointment.id}/', {'start_time': '10:00'}, format='json'
        )

        assert response.status_code == 400
        assert response.data['code'] == 'invalid_request'

    def test_patient_cannot_patch(self, patient_client, book):
        appointment = book()

        response = patient_client.patch(
            f'{BASE}/appointments/{appointment.id}/', {'notes': 'x'}, format='json'
        )

        assert response.status_code == 403

    def test_list_filters_by_date_range(self, reception_client, book):
        book(on=date(2025, 3, 9))
        inside = book(on=BOOKING_DATE)

        response = reception_client.get(
            f'{BASE}/appointments/', {'date_from': '2025-03-10', 'date_to': '2025-03-11'}
        )

        assert response.status_code == 200
        assert [a['id'] for a in response.data] == [str(inside.id)]

    def test_inverted_date_range_returns_400(self, reception_client):
        response = reception_client.get(
            f'{BASE}/appointments/', {'date_from': '2025-03-11', 'date_to': '2025-03-10'}
        )

        assert response.status_code == 400
        assert 'date_from' in response.data

    def test_count(self, practitioner_client, book):
        book()

        response = practitioner_client.get(f'{BASE}/appointments/count/')

        assert response.status_code == 200
        assert response.data['counts']['scheduled'] == 1
        assert response.data['total'] == 1

    def test_count_forbidden_for_patient(self, patient_client):
        response = patient_client.get(f'{BASE}/appointments/count/')

        assert response.status_code == 403

    def test_delete(self, admin_client, book):
        appointment = book()

        response = admin_client.delete(f'{BASE}/appointments/{appointment.id}/')

        assert response.status_code == 204
        appointment.refresh_from_db()
        assert appointment.is_deleted is True

    def test_start_encounter(self, practitioner_client, book):
        appointment = book()

        response = practitioner_client.post(f'{BASE}/appointments/{appointment.id}/start-encounter/')

        assert response.status_code == 200
        assert response.data['status'] == 'in_progress'
        assert response.data['appointment_id'] == str(appointment.id)
        assert response.data['chief_complaint'] == 'Headache for three days'


@pytest.mark.django_db
class TestConsultationEndpoints:

    def test_create_standalone(self, practitioner_client, practitioner, patient):
        response = practitioner_client.post(
            f'{BASE}/consultations/',
            {
                'patient_id': str(patient.id),
                'practitioner_id': str(practitioner.id),
                'chief_complaint': 'Back pain',
            },
            format='json',
        )

        assert response.status_code == 201
        assert response.data['status'] == 'scheduled'
        assert response.data['chief_complaint'] == 'Back pain'

    def test_create_rejects_unknown_fields(self, practitioner_client, practitioner, patient):
        response = practitioner_client.post(
            f'{BASE}/consultations/',
            {
                'patient_id': str(patient.id),
                'practitioner_id': str(practitioner.id),
                'blood_type': 'O+',
            },
            format='json',
        )

        assert response.status_code == 400
        assert response.data['fields'] == ['blood_type']

    def test_reception_reads_but_cannot_edit_consultations(self, reception_client, consultation):
        response = reception_client.get(f'{BASE}/consultations/{consultation.id}/')

        assert response.status_code == 200

        response = reception_client.patch(
            f'{BASE}/consultations/{consultation.id}/', {'clinical_notes': 'x'}, format='json'
        )

        assert response.status_code == 403

    def test_patient_cannot_read_consultations(self, patient_client, consultation):
        response = patient_client.get(f'{BASE}/consultations/{consultation.id}/')

        assert response.status_code == 403

    def test_from_appointment_and_lookup(self, practitioner_client, book):
        appointment = book()

        created = practitioner_client.post(f'{BASE}/consultations/from-appointment/{appointment.id}/')
        found = practitioner_client.get(f'{BASE}/consultations/by-appointment/{appointment.id}/')
        duplicate = practitioner_client.post(f'{BASE}/consultations/from-appointment/{appointment.id}/')

        assert created.status_code == 201
        assert found.status_code == 200
        assert found.data['id'] == created.data['id']
        assert duplicate.status_code == 400

    def test_entries_and_completion_gate(self, practitioner_client, in_progress_consultation):
        url = f'{BASE}/consultations/{in_progress_consultation.id}'

        blocked = practitioner_client.patch(f'{url}/status/', {'status': 'completed'}, format='json')
        assert blocked.status_code == 422
        assert blocked.data['code'] == 'incomplete_record'
        assert blocked.data['missing_fields'] == [
            'chief_complaint', 'history_of_present_illness', 'diagnoses',
        ]

        response = practitioner_client.patch(
            f'{url}/',
            {'chief_complaint': 'Headache', 'history_of_present_illness': 'Since Monday'},
            format='json',
        )
        assert response.status_code == 200
        assert response.data['missing_required_fields'] == ['diagnoses']

        for code in ['R51', 'G43', 'J00']:
            response = practitioner_client.post(
                f'{url}/diagnoses/', {'code': code, 'description': code}, format='json'
            )
            assert response.status_code == 201

        response = practitioner_client.delete(f'{url}/diagnoses/1/')
        assert response.status_code == 200
        assert [d['code'] for d in response.data['diagnoses']] == ['R51', 'J00']

        response = practitioner_client.delete(f'{url}/diagnoses/5/')
        assert response.status_code == 400
        assert response.data['code'] == 'index_out_of_range'

        response = practitioner_client.patch(
            f'{url}/complete/', {'treatment_plan': 'Analgesics'}, format='json'
        )
        assert response.status_code == 200
        assert response.data['status'] == 'completed'
        assert response.data['treatment_plan'] == 'Analgesics'

        response = practitioner_client.patch(f'{url}/', {'clinical_notes': 'Late'}, format='json')
        assert response.status_code == 400
        assert response.data['code'] == 'invalid_transition'

    def test_array_bodies_rejected(self, practitioner_client, in_progress_consultation):
        url = f'{BASE}/consultations/{in_progress_consultation.id}'

        added = practitioner_client.post(
            f'{url}/diagnoses/', [{'code': 'R51', 'description': 'Headache'}], format='json'
        )
        patched = practitioner_client.patch(f'{url}/', ['chief_complaint'], format='json')

        assert added.status_code == 400
        assert added.data['code'] == 'invalid_request'
        assert patched.status_code == 400
        assert patched.data['code'] == 'invalid_request'
        in_progress_consultation.refresh_from_db()
        assert in_progress_consultation.diagnoses == []

    def test_exam_order_and_result(self, practitioner_client, reception_client, consultation):
        url = f'{BASE}/consultations/{consultation.id}'

        response = practitioner_client.post(
            f'{url}/exams/', {'name': 'Lipid panel', 'type': 'laboratory'}, format='json'
        )
        assert response.status_code == 201

        response = reception_client.patch(
            f'{url}/exams/0/result/',
            {'results': 'LDL 110 mg/dL', 'result_date': '2025-03-14'},
            format='json',
        )
        assert response.status_code == 200
        assert response.data['ordered_exams'][0]['results'] == 'LDL 110 mg/dL'
        assert response.data['ordered_exams'][0]['result_date'] == '2025-03-14'

    def test_prescriptions(self, practitioner_client, consultation):
        url = f'{BASE}/consultations/{consultation.id}'

        response = practitioner_client.post(
            f'{url}/prescriptions/',
            {'medication': 'Amoxicillin', 'dosage': '500mg', 'frequency': 'q8h', 'duration': '7 days'},
            format='json',
        )
        assert response.status_code == 201

        response = practitioner_client.delete(f'{url}/prescriptions/0/')
        assert response.status_code == 200
        assert response.data['prescriptions'] == []

    def test_patient_summary(self, practitioner_identity, practitioner_client, documented_consultation, patient):
        scheduling.complete_encounter(practitioner_identity, documented_consultation.id)

        response = practitioner_client.get(f'{BASE}/consultations/patient/{patient.id}/summary/')

        assert response.status_code == 200
        assert response.data['total_consultations'] == 1
        assert response.data['completed_consultations'] == 1
        assert response.data['top_diagnoses'] == [{'code': 'R51', 'description': 'Headache', 'count': 1}]
        assert response.data['last_consultation']['diagnosis_codes'] == ['R51']

    def test_list(self, practitioner_client, consultation, patient):
        response = practitioner_client.get(f'{BASE}/consultations/', {'patient_id': str(patient.id)})

        assert response.status_code == 200
        assert [c['id'] for c in response.data] == [str(consultation.id)]
