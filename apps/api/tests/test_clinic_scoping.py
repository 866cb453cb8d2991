"""
Clinic scoping.

Staff bound to a clinic, and patients registered by one, only see and
touch that clinic's appointments and consultations. Another clinic's
records answer NotFound. Users with no clinic are platform staff.
"""
from datetime import time

import pytest

from apps.authz.identity import IdentityContext
from apps.authz.models import RoleChoices
from apps.clinical.exceptions import NotFound
from apps.clinical.models import Appointment, AppointmentStatusChoices, Patient
from apps.clinical.scheduling import scheduling
from apps.core.models import Clinic

from .conftest import BOOKING_DATE, client_for, create_user_with_role

BASE = '/api/v1/clinical'


@pytest.fixture
def other_clinic(db):
    return Clinic.objects.create(name='Sede Arequipa', city='Arequipa', country_code='PE')


@pytest.fixture
def front_desk_user(clinic):
    return create_user_with_role('front.desk@test.com', RoleChoices.RECEPTION, clinic=clinic)


@pytest.fixture
def front_desk(front_desk_user):
    return IdentityContext.for_user(front_desk_user)


@pytest.fixture
def clinic_doctor(practitioner, clinic):
    practitioner.user.clinic = clinic
    practitioner.user.save(update_fields=['clinic'])
    return IdentityContext.for_user(practitioner.user)


@pytest.fixture
def foreign_patient(other_clinic):
    return Patient.objects.create(clinic=other_clinic, first_name='Rosa', last_name='Vega')


@pytest.fixture
def foreign_appointment(admin_identity, practitioner, foreign_patient, other_clinic):
    return scheduling.book_appointment(
        admin_identity,
        practitioner_id=practitioner.id,
        patient_id=foreign_patient.id,
        date=BOOKING_DATE,
        interval=(time(11, 0), time(11, 30)),
        clinic_id=other_clinic.id,
    )


@pytest.fixture
def foreign_consultation(admin_identity, practitioner, foreign_patient, other_clinic):
    return scheduling.create_consultation(
        admin_identity, foreign_patient.id, practitioner.id, clinic_id=other_clinic.id
    )


@pytest.mark.django_db
class TestIdentityClinic:

    def test_staff_take_clinic_from_account(self, front_desk, clinic):
        assert front_desk.clinic_id == str(clinic.id)

    def test_patient_takes_clinic_from_profile(self, patient_identity, clinic):
        assert patient_identity.clinic_id == str(clinic.id)

    def test_staff_without_clinic_are_unscoped(self, reception_identity):
        assert reception_identity.clinic_id is None

    def test_me_endpoint_reports_clinic(self, front_desk_user, clinic):
        response = client_for(front_desk_user).get('/api/v1/auth/me/')

        assert response.status_code == 200
        assert response.data['clinic_id'] == str(clinic.id)


@pytest.mark.django_db
class TestScopedBooking:

    def test_booking_defaults_to_actor_clinic(self, front_desk, practitioner, patient, clinic):
        appointment = scheduling.book_appointment(
            front_desk,
            practitioner_id=practitioner.id,
            patient_id=patient.id,
            date=BOOKING_DATE,
            interval=(time(9, 0), time(9, 30)),
        )

        assert appointment.clinic_id == clinic.id

    def test_booking_into_another_clinic_is_not_found(self, front_desk, practitioner, patient, other_clinic):
        with pytest.raises(NotFound):
            scheduling.book_appointment(
                front_desk,
                practitioner_id=practitioner.id,
                patient_id=patient.id,
                date=BOOKING_DATE,
                interval=(time(9, 0), time(9, 30)),
                clinic_id=other_clinic.id,
            )

        assert Appointment.objects.count() == 0

    def test_booking_another_clinics_patient_is_not_found(self, front_desk, practitioner, foreign_patient):
        with pytest.raises(NotFound) as exc_info:
            scheduling.book_appointment(
                front_desk,
                practitioner_id=practitioner.id,
                patient_id=foreign_patient.id,
                date=BOOKING_DATE,
                interval=(time(9, 0), time(9, 30)),
            )

        assert exc_info.value.as_dict()['code'] == 'not_found'
        assert Appointment.objects.count() == 0

    def test_platform_staff_book_in_any_clinic(self, foreign_appointment, other_clinic):
        assert foreign_appointment.clinic_id == other_clinic.id


@pytest.mark.django_db
class TestScopedAppointments:

    def test_other_clinic_appointment_is_not_found(self, front_desk, foreign_appointment):
        with pytest.raises(NotFound):
            scheduling.get_appointment(front_desk, foreign_appointment.id)

    @pytest.mark.parametrize('operation', ['cancel', 'confirm', 'reschedule', 'update'])
    def test_other_clinic_appointment_cannot_be_changed(self, front_desk, foreign_appointment, operation):
        calls = {
            'cancel': lambda: scheduling.cancel_appointment(front_desk, foreign_appointment.id, 'Moved'),
            'confirm': lambda: scheduling.transition_appointment(
                front_desk, foreign_appointment.id, AppointmentStatusChoices.CONFIRMED
            ),
            'reschedule': lambda: scheduling.reschedule_appointment(
                front_desk, foreign_appointment.id, BOOKING_DATE, (time(15, 0), time(15, 30))
            ),
            'update': lambda: scheduling.update_appointment(
                front_desk, foreign_appointment.id, {'notes': 'Call first'}
            ),
        }

        with pytest.raises(NotFound):
            calls[operation]()

        foreign_appointment.refresh_from_db()
        assert foreign_appointment.status == AppointmentStatusChoices.SCHEDULED
        assert foreign_appointment.row_version == 1

    def test_list_shows_own_clinic_only(self, front_desk, reception_identity, book, foreign_appointment):
        own = book()

        scoped = scheduling.list_appointments(front_desk)
        everything = scheduling.list_appointments(reception_identity)

        assert [a.id for a in scoped] == [own.id]
        assert {a.id for a in everything} == {own.id, foreign_appointment.id}

    def test_count_covers_own_clinic_only(self, clinic_doctor, book, foreign_appointment):
        book()

        counts = scheduling.count_appointments(clinic_doctor)

        assert counts['scheduled'] == 1

    def test_count_for_another_clinic_is_not_found(self, clinic_doctor, other_clinic):
        with pytest.raises(NotFound):
            scheduling.count_appointments(clinic_doctor, clinic_id=other_clinic.id)

    def test_today_shows_own_clinic_only(self, front_desk, book, foreign_appointment, monkeypatch):
        own = book()
        monkeypatch.setattr('django.utils.timezone.localdate', lambda: BOOKING_DATE)

        todays = scheduling.todays_appointments(front_desk)

        assert [a.id for a in todays] == [own.id]

    def test_api_returns_404_for_other_clinic(self, front_desk_user, foreign_appointment):
        response = client_for(front_desk_user).get(f'{BASE}/appointments/{foreign_appointment.id}/')

        assert response.status_code == 404
        assert response.data['code'] == 'not_found'


@pytest.mark.django_db
class TestScopedConsultations:

    def test_standalone_consultation_defaults_to_actor_clinic(self, clinic_doctor, practitioner, patient, clinic):
        consultation = scheduling.create_consultation(clinic_doctor, patient.id, practitioner.id)

        assert consultation.clinic_id == clinic.id

    def test_other_clinic_consultation_is_not_found(self, clinic_doctor, foreign_consultation):
        with pytest.raises(NotFound):
            scheduling.get_consultation(clinic_doctor, foreign_consultation.id)
        with pytest.raises(NotFound):
            scheduling.update_consultation(
                clinic_doctor, foreign_consultation.id, {'chief_complaint': 'Cough'}
            )

        foreign_consultation.refresh_from_db()
        assert foreign_consultation.chief_complaint == ''

    def test_list_shows_own_clinic_only(self, clinic_doctor, consultation, foreign_consultation):
        results = scheduling.list_consultations(clinic_doctor)

        assert [c.id for c in results] == [consultation.id]

    def test_other_clinic_patient_summary_is_not_found(self, clinic_doctor, foreign_patient):
        with pytest.raises(NotFound):
            scheduling.patient_summary(clinic_doctor, foreign_patient.id)

    def test_cannot_open_consultation_for_other_clinic_appointment(self, clinic_doctor, foreign_appointment):
        with pytest.raises(NotFound):
            scheduling.start_encounter(clinic_doctor, foreign_appointment.id)

        foreign_appointment.refresh_from_db()
        assert foreign_appointment.status == AppointmentStatusChoices.SCHEDULED
