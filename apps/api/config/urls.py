"""
URL configuration for the clinic scheduling project.
"""
from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import (
    SpectacularAPIView,
    SpectacularRedocView,
    SpectacularSwaggerView,
)
from apps.core.observability.health import HealthzView, ReadyzView

urlpatterns = [
    # Health checks (no auth required)
    path('healthz', HealthzView.as_view(), name='healthz'),
    path('readyz', ReadyzView.as_view(), name='readyz'),

    # Admin
    path('admin/', admin.site.urls),

    # Private API (authentication required)
    path('api/v1/', include('apps.authz.urls')),  # JWT, identity, practitioners
    path('api/v1/clinical/', include('apps.clinical.urls')),  # Availability, appointments, consultations

    # API Schema
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/schema/swagger-ui/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
    path('api/schema/redoc/', SpectacularRedocView.as_view(url_name='schema'), name='redoc'),
]
