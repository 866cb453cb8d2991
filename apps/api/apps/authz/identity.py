"""
Identity context passed explicitly into the scheduling core.

Derived once per request from the authenticated user. The core never
looks up the current user on its own.
"""
from dataclasses import dataclass, field
from typing import Optional, Tuple

from apps.authz.capabilities import CapabilityDenied, has_capability
from apps.authz.models import Practitioner, RoleChoices
from apps.core.observability import metrics
from apps.core.observability.correlation import bind_user_context

# Highest first; the primary role decides attribution such as booked_by
ROLE_PRECEDENCE = (
    RoleChoices.ADMIN,
    RoleChoices.PRACTITIONER,
    RoleChoices.RECEPTION,
    RoleChoices.PATIENT,
)


@dataclass(frozen=True)
class IdentityContext:
    actor_id: Optional[str]
    role: Optional[str]
    roles: Tuple[str, ...] = field(default_factory=tuple)
    practitioner_id: Optional[str] = None
    patient_id: Optional[str] = None
    # None for platform staff, who are not confined to one clinic
    clinic_id: Optional[str] = None

    @property
    def is_patient(self) -> bool:
        return self.role == RoleChoices.PATIENT

    def can(self, capability) -> bool:
        return has_capability(self.roles, capability)

    def require(self, capability):
        """Raise CapabilityDenied unless one of the actor's roles grants the capability."""
        if not self.can(capability):
            metrics.capability_denied_total.labels(
                role=self.role or 'anonymous',
                capability=str(capability),
            ).inc()
            raise CapabilityDenied(capability, self.role)

    @classmethod
    def for_user(cls, user):
        """
        Build the identity of an authenticated user from their roles and profiles.

        Staff take the clinic set on their account; patients the clinic that
        registered them.
        """
        from apps.clinical.models import Patient

        assigned = set(user.user_roles.values_list('role__name', flat=True))
        roles = tuple(role for role in ROLE_PRECEDENCE if role in assigned)

        practitioner_id = (
            Practitioner.objects.filter(user=user, is_active=True)
            .values_list('id', flat=True).first()
        )
        patient_id, patient_clinic_id = (
            Patient.objects.filter(user=user, is_deleted=False)
            .values_list('id', 'clinic_id').first()
        ) or (None, None)
        clinic_id = user.clinic_id or patient_clinic_id

        return cls(
            actor_id=str(user.id),
            role=roles[0] if roles else None,
            roles=roles,
            practitioner_id=str(practitioner_id) if practitioner_id else None,
            patient_id=str(patient_id) if patient_id else None,
            clinic_id=str(clinic_id) if clinic_id else None,
        )

    @classmethod
    def from_request(cls, request):
        """Resolve the identity for a DRF request and bind it to the logging context."""
        user = request.user
        if not user or not user.is_authenticated:
            return cls(actor_id=None, role=None)

        identity = cls.for_user(user)
        bind_user_context(identity.actor_id, identity.roles)
        return identity
