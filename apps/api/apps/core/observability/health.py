"""
Health check endpoints.

/healthz reports liveness and build info; /readyz verifies the database.
"""
from django.http import JsonResponse
from django.views import View
from django.db import connection
from django.db.utils import DatabaseError
from django.conf import settings

from .logging import get_sanitized_logger

logger = get_sanitized_logger(__name__)


class HealthzView(View):
    """
    Liveness check. Does not touch dependencies.
    """

    def get(self, request):
        health_data = {
            'status': 'ok',
            'service': 'clinic-scheduling-api',
            'version': getattr(settings, 'VERSION', 'unknown'),
        }

        commit_hash = getattr(settings, 'COMMIT_HASH', None)
        if commit_hash:
            health_data['commit'] = commit_hash

        return JsonResponse(health_data, status=200)


class ReadyzView(View):
    """
    Readiness check.

    Returns 503 until the scheduling database answers.
    """

    def get(self, request):
        checks = {
            'database': self._check_database(),
        }

        all_healthy = all(checks.values())

        response_data = {
            'status': 'ready' if all_healthy else 'not_ready',
            'checks': checks,
        }

        return JsonResponse(response_data, status=200 if all_healthy else 503)

    def _check_database(self):
        try:
            with connection.cursor() as cursor:
                cursor.execute('SELECT 1')
                return True
        except DatabaseError as e:
            logger.error(
                'Database health check failed',
                extra={
                    'event': 'health_check_failed',
                    'check': 'database',
                    'error': str(e)
                }
            )
            return False
