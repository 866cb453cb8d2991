"""
Role capability table and identity resolution.
"""
import pytest

from apps.authz.capabilities import (
    ROLE_CAPABILITIES,
    Capability,
    CapabilityDenied,
    capabilities_for,
    has_capability,
)
from apps.authz.identity import IdentityContext
from apps.authz.models import RoleChoices

from .conftest import create_user_with_role


class TestCapabilityTable:

    def test_every_role_has_an_entry(self):
        assert set(ROLE_CAPABILITIES) == set(RoleChoices)

    def test_admin_has_everything(self):
        assert capabilities_for([RoleChoices.ADMIN]) == frozenset(Capability)

    @pytest.mark.parametrize('capability', [
        Capability.VIEW_AVAILABILITY,
        Capability.BOOK_APPOINTMENT,
        Capability.VIEW_APPOINTMENTS,
        Capability.CANCEL_APPOINTMENT,
    ])
    def test_patient_self_service(self, capability):
        assert has_capability([RoleChoices.PATIENT], capability)

    @pytest.mark.parametrize('capability', [
        Capability.MANAGE_APPOINTMENT,
        Capability.START_ENCOUNTER,
        Capability.VIEW_CONSULTATIONS,
        Capability.EDIT_CONSULTATION,
        Capability.COUNT_APPOINTMENTS,
    ])
    def test_patient_has_no_staff_capabilities(self, capability):
        assert not has_capability([RoleChoices.PATIENT], capability)

    def test_reception_books_but_does_not_document(self):
        assert has_capability([RoleChoices.RECEPTION], Capability.BOOK_APPOINTMENT)
        assert has_capability([RoleChoices.RECEPTION], Capability.RECORD_EXAM_RESULT)
        assert not has_capability([RoleChoices.RECEPTION], Capability.EDIT_CONSULTATION)
        assert not has_capability([RoleChoices.RECEPTION], Capability.START_ENCOUNTER)

    def test_only_admin_deletes_appointments(self):
        holders = {
            role for role, granted in ROLE_CAPABILITIES.items()
            if Capability.DELETE_APPOINTMENT in granted
        }
        assert holders == {RoleChoices.ADMIN}

    def test_multiple_roles_union(self):
        granted = capabilities_for([RoleChoices.RECEPTION, RoleChoices.PATIENT])

        assert Capability.MANAGE_APPOINTMENT in granted
        assert Capability.CANCEL_APPOINTMENT in granted

    def test_unknown_role_grants_nothing(self):
        assert capabilities_for(['marketing']) == frozenset()

    def test_denied_message_names_role_and_action(self):
        error = CapabilityDenied(Capability.START_ENCOUNTER, RoleChoices.RECEPTION)

        assert str(error) == "Role 'reception' may not start encounter"
        assert error.http_status == 403


@pytest.mark.django_db
class TestIdentityContext:

    def test_for_practitioner(self, practitioner):
        identity = IdentityContext.for_user(practitioner.user)

        assert identity.role == RoleChoices.PRACTITIONER
        assert identity.practitioner_id == str(practitioner.id)
        assert identity.patient_id is None
        assert not identity.is_patient

    def test_for_patient(self, patient):
        identity = IdentityContext.for_user(patient.user)

        assert identity.is_patient
        assert identity.patient_id == str(patient.id)

    def test_highest_role_is_primary(self, db):
        user = create_user_with_role('multi@test.com', RoleChoices.RECEPTION)
        admin = create_user_with_role('multi-admin@test.com', RoleChoices.ADMIN)
        user.user_roles.create(role=admin.user_roles.get().role)

        identity = IdentityContext.for_user(user)

        assert identity.role == RoleChoices.ADMIN
        assert identity.roles == (RoleChoices.ADMIN, RoleChoices.RECEPTION)

    def test_user_without_roles(self, db):
        from apps.authz.models import User

        user = User.objects.create_user(email='norole@test.com', password='x')
        identity = IdentityContext.for_user(user)

        assert identity.role is None
        assert not identity.can(Capability.VIEW_AVAILABILITY)
        with pytest.raises(CapabilityDenied):
            identity.require(Capability.VIEW_AVAILABILITY)

    def test_identity_is_immutable(self, practitioner_identity):
        with pytest.raises(AttributeError):
            practitioner_identity.role = RoleChoices.ADMIN
