"""
DRF permissions backed by the role capability table.
"""
from rest_framework import permissions

from apps.authz.capabilities import Capability, has_capability


def _user_roles(request):
    return set(request.user.user_roles.values_list('role__name', flat=True))


class CapabilityPermission(permissions.BasePermission):
    """
    Gate a view action on a capability from ROLE_CAPABILITIES.

    Views declare ``capability_map = {'list': Capability.X, ...}``. Actions
    missing from the map fall back to ``default_capability``. The facade
    re-checks the same capability, so this class only turns obvious
    mismatches into an early 403.
    """

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        action = getattr(view, 'action', None)
        capability_map = getattr(view, 'capability_map', {})
        capability = capability_map.get(action, getattr(view, 'default_capability', None))
        if capability is None:
            return True

        return has_capability(_user_roles(request), capability)


class PractitionerPermission(permissions.BasePermission):
    """
    Practitioner directory is read-only over the API.

    Anyone who may look up availability may list practitioners; records are
    maintained through the Django admin.
    """

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        if request.method not in permissions.SAFE_METHODS:
            return False

        return has_capability(_user_roles(request), Capability.VIEW_AVAILABILITY)

    def has_object_permission(self, request, view, obj):
        return self.has_permission(request, view)
