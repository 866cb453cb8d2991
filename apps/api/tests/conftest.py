"""
Global test fixtures for pytest.

Provides reusable fixtures for API and service testing:
- Users and authenticated API clients by role
- Model instances (Clinic, Practitioner, Patient, Appointment, Consultation)
- IdentityContext objects for calling the scheduling facade directly
"""
from datetime import date, time

import pytest
from rest_framework.test import APIClient

from apps.authz.identity import IdentityContext
from apps.authz.models import User, Role, UserRole, Practitioner, RoleChoices
from apps.clinical.models import Patient
from apps.clinical.scheduling import scheduling
from apps.core.models import Clinic
from apps.core.observability.correlation import clear_request_context


# Monday
BOOKING_DATE = date(2025, 3, 10)


def create_user_with_role(email, role_name, **extra):
    """Helper function to create user with role"""
    user = User.objects.create_user(
        email=email,
        password='testpass123',
        is_active=True,
        **extra
    )
    role, _ = Role.objects.get_or_create(name=role_name)
    UserRole.objects.create(user=user, role=role)
    return user


def client_for(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture(autouse=True)
def _clean_request_context():
    yield
    clear_request_context()


# ============================================================================
# Model instances
# ============================================================================

@pytest.fixture
def clinic(db):
    return Clinic.objects.create(
        name='Test Clinic',
        address_line1='Av. Larco 123',
        city='Lima',
        country_code='PE',
    )


@pytest.fixture
def practitioner_user(db):
    return create_user_with_role('doctor@test.com', RoleChoices.PRACTITIONER)


@pytest.fixture
def practitioner(practitioner_user):
    return Practitioner.objects.create(
        user=practitioner_user,
        display_name='Dr. Test Practitioner',
        specialty='General Medicine',
    )


@pytest.fixture
def other_practitioner(db):
    user = create_user_with_role('other.doctor@test.com', RoleChoices.PRACTITIONER)
    return Practitioner.objects.create(user=user, display_name='Dr. Other')


@pytest.fixture
def admin_user(db):
    return create_user_with_role('admin@test.com', RoleChoices.ADMIN, is_staff=True)


@pytest.fixture
def reception_user(db):
    return create_user_with_role('reception@test.com', RoleChoices.RECEPTION)


@pytest.fixture
def patient_user(db):
    return create_user_with_role('patient@test.com', RoleChoices.PATIENT)


@pytest.fixture
def patient(clinic, patient_user):
    """Patient with a self-service login."""
    return Patient.objects.create(
        user=patient_user,
        clinic=clinic,
        first_name='Ana',
        last_name='Torres',
        birth_date=date(1990, 1, 1),
        sex='female',
    )


@pytest.fixture
def other_patient(clinic):
    """Staff-registered patient without a login."""
    return Patient.objects.create(
        clinic=clinic,
        first_name='Luis',
        last_name='Rojas',
    )


# ============================================================================
# Identities
# ============================================================================

@pytest.fixture
def admin_identity(admin_user):
    return IdentityContext.for_user(admin_user)


@pytest.fixture
def reception_identity(reception_user):
    return IdentityContext.for_user(reception_user)


@pytest.fixture
def practitioner_identity(practitioner):
    return IdentityContext.for_user(practitioner.user)


@pytest.fixture
def patient_identity(patient):
    return IdentityContext.for_user(patient.user)


# ============================================================================
# API Clients
# ============================================================================

@pytest.fixture
def api_client():
    """Unauthenticated DRF API client."""
    return APIClient()


@pytest.fixture
def admin_client(admin_user):
    return client_for(admin_user)


@pytest.fixture
def reception_client(reception_user):
    return client_for(reception_user)


@pytest.fixture
def practitioner_client(practitioner):
    return client_for(practitioner.user)


@pytest.fixture
def patient_client(patient):
    return client_for(patient.user)


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def book(reception_identity, practitioner, patient, clinic):
    """Book an appointment through the facade; defaults to 09:00-09:30 on BOOKING_DATE."""
    def _book(start=time(9, 0), end=time(9, 30), on=BOOKING_DATE, identity=None,
              for_patient=None, by_practitioner=None, reason_for_visit='Headache for three days'):
        return scheduling.book_appointment(
            identity or reception_identity,
            practitioner_id=(by_practitioner or practitioner).id,
            patient_id=(for_patient or patient).id,
            date=on,
            interval=(start, end),
            clinic_id=clinic.id,
            reason_for_visit=reason_for_visit,
        )
    return _book


@pytest.fixture
def consultation(practitioner_identity, practitioner, patient, clinic):
    """Standalone consultation in status scheduled."""
    return scheduling.create_consultation(
        practitioner_identity,
        patient.id,
        practitioner.id,
        clinic_id=clinic.id,
    )


@pytest.fixture
def in_progress_consultation(practitioner_identity, consultation):
    return scheduling.transition_consultation(
        practitioner_identity, consultation.id, 'in_progress'
    )


@pytest.fixture
def documented_consultation(practitioner_identity, in_progress_consultation):
    """In-progress consultation that passes the completion gate."""
    scheduling.update_consultation(
        practitioner_identity,
        in_progress_consultation.id,
        {
            'chief_complaint': 'Headache',
            'history_of_present_illness': 'Three days of frontal headache',
        },
    )
    return scheduling.add_entry(
        practitioner_identity,
        in_progress_consultation.id,
        'diagnoses',
        {'code': 'r51', 'description': 'Headache'},
    )
