"""
Core models: clinic
"""
import uuid
from django.db import models


class Clinic(models.Model):
    """
    Clinic that owns appointments and consultations.

    Fields:
    - id: UUID PK
    - name
    - address_line1: nullable
    - city: nullable
    - country_code: CHAR(2) nullable
    - timezone: default America/Lima
    - is_active: bool default true
    - created_at, updated_at
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    address_line1 = models.CharField(max_length=255, blank=True, null=True)
    city = models.CharField(max_length=100, blank=True, null=True)
    country_code = models.CharField(max_length=2, blank=True, null=True)
    timezone = models.CharField(max_length=64, default='America/Lima')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'clinic'
        verbose_name = 'Clinic'
        verbose_name_plural = 'Clinics'
        indexes = [
            models.Index(fields=['is_active'], name='idx_clinic_active'),
        ]

    def __str__(self):
        return self.name
