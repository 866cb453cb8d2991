"""
Clinical URLs - Availability, Appointments, Consultations
"""
from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import (
    AppointmentViewSet,
    ConsultationViewSet,
    PractitionerAvailabilityView,
)

router = DefaultRouter()
router.register(r'appointments', AppointmentViewSet, basename='appointment')
router.register(r'consultations', ConsultationViewSet, basename='consultation')

urlpatterns = [
    # Free slots for a practitioner's day
    path(
        'practitioners/<uuid:practitioner_id>/availability/',
        PractitionerAvailabilityView.as_view(),
        name='practitioner-availability'
    ),

    path('', include(router.urls)),
]
