"""
Structured logging with PHI/PII protection.

Provides filters, formatters, and helpers for safe logging.
"""
import logging
import json
from datetime import datetime, timezone
from .correlation import get_request_id, get_user_id, get_user_roles


# Fields that should NEVER be logged (PHI/PII)
SENSITIVE_FIELDS = {
    'password',
    'token',
    'secret',
    'api_key',
    'chief_complaint',
    'history_of_present_illness',
    'past_medical_history',
    'family_history',
    'social_history',
    'allergies',
    'current_medications',
    'physical_examination',
    'treatment_plan',
    'clinical_notes',
    'follow_up_instructions',
    'reason_for_visit',
    'cancellation_reason',
    'reason',
    'notes',
    'first_name',
    'last_name',
    'email',
    'phone',
    'birth_date',
}

# Attributes every LogRecord carries; never copied as extra fields
_RESERVED_RECORD_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'taskName',
    'exc_info', 'exc_text', 'stack_info', 'message', 'asctime',
}


class CorrelationFilter(logging.Filter):
    """
    Logging filter that injects correlation context into log records.
    """

    def filter(self, record):
        """Add correlation fields to log record."""
        record.request_id = get_request_id() or '-'
        record.user_id = getattr(record, 'user_id', None) or get_user_id() or '-'
        record.user_roles = ','.join(get_user_roles()) or '-'
        return True


class SanitizedJSONFormatter(logging.Formatter):
    """
    JSON formatter that sanitizes sensitive fields.
    """

    def format(self, record):
        """Format log record as JSON with sanitized fields."""
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'request_id': getattr(record, 'request_id', '-'),
            'user_id': getattr(record, 'user_id', '-'),
            'user_roles': getattr(record, 'user_roles', '-'),
        }

        # Add extra fields (from extra={} in logging calls)
        for key, value in record.__dict__.items():
            if key in log_data or key.startswith('_') or key in _RESERVED_RECORD_ATTRS:
                continue
            if key.lower() in SENSITIVE_FIELDS:
                log_data[key] = '[REDACTED]'
            else:
                log_data[key] = self._sanitize_value(value)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)

    def _sanitize_value(self, value):
        """Sanitize a value recursively."""
        if isinstance(value, dict):
            return sanitize_dict(value)
        elif isinstance(value, (list, tuple)):
            return [self._sanitize_value(v) for v in value]
        else:
            return value


def get_sanitized_logger(name):
    """
    Get a logger with correlation filter applied.

    Usage:
        logger = get_sanitized_logger(__name__)
        logger.info('Event', extra={'event': 'appointment_booked', 'appointment_id': str(appt.id)})
    """
    logger = logging.getLogger(name)

    if not any(isinstance(f, CorrelationFilter) for f in logger.filters):
        logger.addFilter(CorrelationFilter())

    return logger


def sanitize_dict(data):
    """
    Sanitize a dictionary by redacting sensitive fields.

    Args:
        data: Dictionary to sanitize

    Returns:
        Sanitized copy of dictionary
    """
    if not isinstance(data, dict):
        return data

    sanitized = {}
    for key, value in data.items():
        if str(key).lower() in SENSITIVE_FIELDS:
            sanitized[key] = '[REDACTED]'
        elif isinstance(value, dict):
            sanitized[key] = sanitize_dict(value)
        elif isinstance(value, (list, tuple)):
            sanitized[key] = [
                sanitize_dict(v) if isinstance(v, dict) else v
                for v in value
            ]
        else:
            sanitized[key] = value

    return sanitized
