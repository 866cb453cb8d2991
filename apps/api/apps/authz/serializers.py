"""
Authz serializers for Practitioner and the current identity.
"""
from rest_framework import serializers
from apps.authz.models import Practitioner


class PractitionerSerializer(serializers.ModelSerializer):
    """
    Practitioner directory entry.

    Used by reception and patients to pick a provider before asking
    for availability.
    """
    user_email = serializers.EmailField(source='user.email', read_only=True)

    class Meta:
        model = Practitioner
        fields = [
            'id',
            'user_email',
            'display_name',
            'specialty',
            'is_active',
            'created_at',
        ]
        read_only_fields = fields


class IdentitySerializer(serializers.Serializer):
    """Identity context resolved for the authenticated user."""
    actor_id = serializers.UUIDField()
    email = serializers.EmailField()
    role = serializers.CharField(allow_null=True)
    roles = serializers.ListField(child=serializers.CharField())
    capabilities = serializers.ListField(child=serializers.CharField())
    practitioner_id = serializers.UUIDField(allow_null=True)
    patient_id = serializers.UUIDField(allow_null=True)
    clinic_id = serializers.UUIDField(allow_null=True)
