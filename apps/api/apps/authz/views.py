"""
Authz views: practitioner directory and current identity.
"""
from rest_framework import viewsets, status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.authz.capabilities import capabilities_for
from apps.authz.identity import IdentityContext
from apps.authz.models import Practitioner
from apps.authz.permissions import PractitionerPermission
from apps.authz.serializers import IdentitySerializer, PractitionerSerializer


class PractitionerViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Endpoints:
    - GET /api/v1/practitioners/ - List active practitioners
    - GET /api/v1/practitioners/{id}/ - Practitioner detail

    Query parameters:
    - ?include_inactive=true - Include inactive practitioners (default: false)
    - ?specialty=... - Filter by specialty
    - ?q=search_term - Search by display_name
    """
    permission_classes = [PractitionerPermission]
    serializer_class = PractitionerSerializer

    def get_queryset(self):
        queryset = Practitioner.objects.select_related('user').all()

        include_inactive = self.request.query_params.get('include_inactive', 'false').lower() == 'true'
        if not include_inactive:
            queryset = queryset.filter(is_active=True)

        specialty = self.request.query_params.get('specialty')
        if specialty:
            queryset = queryset.filter(specialty__iexact=specialty)

        q = self.request.query_params.get('q')
        if q:
            queryset = queryset.filter(display_name__icontains=q)

        return queryset.order_by('display_name')


class CurrentIdentityView(APIView):
    """
    GET /api/v1/auth/me/ - Identity context of the authenticated user.

    The frontend uses ``capabilities`` to decide which actions to offer;
    the backend re-checks every one of them.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request):
        identity = IdentityContext.from_request(request)
        data = {
            'actor_id': identity.actor_id,
            'email': request.user.email,
            'role': identity.role,
            'roles': list(identity.roles),
            'capabilities': sorted(str(c) for c in capabilities_for(identity.roles)),
            'practitioner_id': identity.practitioner_id,
            'patient_id': identity.patient_id,
            'clinic_id': identity.clinic_id,
        }
        return Response(IdentitySerializer(data).data, status=status.HTTP_200_OK)
