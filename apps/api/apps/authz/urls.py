"""
Authz URLs - Practitioners, JWT tokens and current identity
"""
from django.urls import path, include
from rest_framework.routers import DefaultRouter
from rest_framework_simplejwt.views import (
    TokenObtainPairView,
    TokenRefreshView,
    TokenVerifyView,
)

from .views import CurrentIdentityView, PractitionerViewSet

router = DefaultRouter()
router.register(r'practitioners', PractitionerViewSet, basename='practitioner')

urlpatterns = [
    path('auth/token/', TokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('auth/token/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
    path('auth/token/verify/', TokenVerifyView.as_view(), name='token_verify'),
    path('auth/me/', CurrentIdentityView.as_view(), name='auth-me'),
    path('', include(router.urls)),
]
