"""
Tests for observability layer.

Validates that metrics, logs, and events are emitted correctly
without logging PHI/PII.
"""
import json
import logging
from datetime import time
from unittest.mock import Mock, patch

import pytest
from django.db import OperationalError
from prometheus_client import REGISTRY

from apps.core.observability.correlation import (
    RequestCorrelationMiddleware,
    bind_user_context,
    get_request_id,
    get_user_id,
)
from apps.core.observability.events import log_domain_event, log_completion_blocked
from apps.core.observability.logging import (
    CorrelationFilter,
    SanitizedJSONFormatter,
    sanitize_dict,
)
from apps.authz.capabilities import CapabilityDenied
from apps.clinical.exceptions import (
    IncompleteRecord,
    InvalidTransition,
    PersistenceUnavailable,
    SlotConflict,
    persistence_guard,
)
from apps.clinical.scheduling import scheduling


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestRequestCorrelation:
    """Test request correlation middleware."""

    def test_generates_request_id_if_missing(self):
        middleware = RequestCorrelationMiddleware(lambda r: Mock(status_code=200))
        request = Mock(META={}, path='/api/test', method='GET')
        request.user = Mock(is_authenticated=False)

        middleware.process_request(request)

        assert request.request_id
        assert get_request_id() == request.request_id

    def test_propagates_existing_request_id(self):
        middleware = RequestCorrelationMiddleware(lambda r: Mock(status_code=200))
        request = Mock(META={'HTTP_X_REQUEST_ID': 'req-123'}, path='/api/test', method='GET')
        request.user = Mock(is_authenticated=False)

        middleware.process_request(request)

        assert request.request_id == 'req-123'

    def test_response_carries_request_id_and_clears_context(self):
        middleware = RequestCorrelationMiddleware(lambda r: Mock(status_code=200))
        request = Mock(META={}, path='/api/test', method='GET', request_id='req-456', start_time=0)
        response = Mock(status_code=200)
        headers = {}
        response.__setitem__ = Mock(side_effect=headers.__setitem__)
        bind_user_context('user-1', ['reception'])

        middleware.process_response(request, response)

        assert headers['X-Request-ID'] == 'req-456'
        assert get_user_id() is None


class TestSanitization:
    """Test PHI/PII sanitization."""

    def test_sanitize_dict_redacts_clinical_narrative(self):
        data = {
            'consultation_id': 'c-1',
            'chief_complaint': 'Chest pain',
            'history_of_present_illness': 'Two days',
            'reason_for_visit': 'Pain',
            'first_name': 'Ana',
            'status': 'in_progress',
        }

        sanitized = sanitize_dict(data)

        assert sanitized['consultation_id'] == 'c-1'
        assert sanitized['status'] == 'in_progress'
        assert sanitized['chief_complaint'] == '[REDACTED]'
        assert sanitized['history_of_present_illness'] == '[REDACTED]'
        assert sanitized['reason_for_visit'] == '[REDACTED]'
        assert sanitized['first_name'] == '[REDACTED]'

    def test_sanitize_nested(self):
        data = {'appointment': {'id': 'a-1', 'notes': 'Prefers mornings'}, 'items': [{'allergies': 'Latex'}]}

        sanitized = sanitize_dict(data)

        assert sanitized['appointment'] == {'id': 'a-1', 'notes': '[REDACTED]'}
        assert sanitized['items'] == [{'allergies': '[REDACTED]'}]

    def test_json_formatter_redacts_extra_fields(self):
        record = logging.LogRecord('apps.test', logging.INFO, __file__, 1, 'Booked', None, None)
        record.event = 'appointment_booked'
        record.reason_for_visit = 'Migraine'
        record.payload = {'cancellation_reason': 'Moved abroad', 'appointment_id': 'a-1'}
        CorrelationFilter().filter(record)

        output = json.loads(SanitizedJSONFormatter().format(record))

        assert output['event'] == 'appointment_booked'
        assert output['reason_for_visit'] == '[REDACTED]'
        assert output['payload'] == {'cancellation_reason': '[REDACTED]', 'appointment_id': 'a-1'}
        assert output['request_id'] == '-'
        assert 'Migraine' not in json.dumps(output)


class TestDomainEvents:

    @patch('apps.core.observability.events.logger')
    def test_log_domain_event_structure(self, mock_logger):
        log_domain_event(
            'appointment_booked',
            entity_type='Appointment',
            entity_id='a-1',
            entity_ids={'practitioner_id': 'p-1'},
            notes='Bring previous results',
        )

        extra = mock_logger.info.call_args[1]['extra']
        assert extra['event'] == 'appointment_booked'
        assert extra['entity_id'] == 'a-1'
        assert extra['practitioner_id'] == 'p-1'
        assert extra['notes'] == '[REDACTED]'

    @patch('apps.core.observability.events.logger')
    def test_conflicts_log_as_warning(self, mock_logger):
        log_domain_event('slot_conflict', result='conflict')

        mock_logger.warning.assert_called_once()
        mock_logger.info.assert_not_called()

    @patch('apps.core.observability.events.logger')
    def test_completion_blocked_logs_field_names_only(self, mock_logger):
        consultation = Mock(id='c-1')

        log_completion_blocked(consultation, ['chief_complaint', 'diagnoses'])

        extra = mock_logger.warning.call_args[1]['extra']
        assert extra['missing_fields'] == ['chief_complaint', 'diagnoses']
        assert extra['result'] == 'blocked'


@pytest.mark.django_db
class TestMetricsEmission:

    def test_booking_and_conflict_counters(self, book):
        booked_before = sample('appointment_bookings_total', result='success')
        conflicts_before = sample('appointment_slot_conflicts_total', operation='book')

        book()
        with pytest.raises(SlotConflict):
            book(time(9, 15), time(9, 45))

        assert sample('appointment_bookings_total', result='success') == booked_before + 1
        assert sample('appointment_slot_conflicts_total', operation='book') == conflicts_before + 1

    def test_completion_blocked_counter(self, practitioner_identity, in_progress_consultation):
        before = sample('consultation_completion_blocked_total')

        with pytest.raises(IncompleteRecord):
            scheduling.complete_encounter(practitioner_identity, in_progress_consultation.id)

        assert sample('consultation_completion_blocked_total') == before + 1

    def test_capability_denied_counter(self, patient_identity):
        before = sample('capability_denied_total', role='patient', capability='count_appointments')

        with pytest.raises(CapabilityDenied):
            scheduling.count_appointments(patient_identity)

        assert sample('capability_denied_total', role='patient', capability='count_appointments') == before + 1

    def test_committed_transition_is_counted(
        self, book, reception_identity, django_capture_on_commit_callbacks
    ):
        appointment = book()
        labels = dict(from_status='scheduled', to_status='confirmed', result='success')
        before = sample('appointment_transitions_total', **labels)

        with django_capture_on_commit_callbacks(execute=True) as callbacks:
            scheduling.transition_appointment(reception_identity, appointment.id, 'confirmed')

        assert len(callbacks) == 1
        assert sample('appointment_transitions_total', **labels) == before + 1

    def test_rolled_back_encounter_counts_nothing(
        self, book, practitioner_identity, django_capture_on_commit_callbacks
    ):
        appointment = book()
        existing = scheduling.create_consultation_from_appointment(practitioner_identity, appointment.id)
        scheduling.cancel_consultation(practitioner_identity, existing.id)
        labels = dict(from_status='scheduled', to_status='in_progress', result='success')
        before = sample('appointment_transitions_total', **labels)

        with django_capture_on_commit_callbacks(execute=True) as callbacks:
            with pytest.raises(InvalidTransition):
                scheduling.start_encounter(practitioner_identity, appointment.id)

        assert callbacks == []
        assert sample('appointment_transitions_total', **labels) == before


class TestPersistenceGuard:

    def test_operational_error_becomes_persistence_unavailable(self):
        @persistence_guard
        def flaky():
            raise OperationalError('connection refused')

        with pytest.raises(PersistenceUnavailable) as exc_info:
            flaky()

        assert exc_info.value.http_status == 503
        assert exc_info.value.as_dict()['code'] == 'persistence_unavailable'

    def test_domain_errors_pass_through(self):
        @persistence_guard
        def conflicting():
            raise SlotConflict()

        with pytest.raises(SlotConflict):
            conflicting()


@pytest.mark.django_db
class TestHealthEndpoints:

    def test_healthz(self, api_client):
        response = api_client.get('/healthz')

        assert response.status_code == 200
        assert response.json()['status'] == 'ok'

    def test_readyz(self, api_client):
        response = api_client.get('/readyz')

        assert response.status_code == 200
        assert response.json()['checks'] == {'database': True}
