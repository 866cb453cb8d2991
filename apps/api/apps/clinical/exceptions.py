"""
Clinical domain errors.

Each error carries a stable ``code`` and the HTTP status the API layer maps
it to. Every failure is scoped to the single operation that raised it.
"""
from functools import wraps

from django.db import InterfaceError, OperationalError


class ClinicalDomainError(Exception):
    code = 'clinical_error'
    http_status = 400

    def __init__(self, message=None, **details):
        self.message = message or self.default_message()
        self.details = details
        super().__init__(self.message)

    def default_message(self):
        return 'Clinical operation failed'

    def as_dict(self):
        payload = {'error': self.message, 'code': self.code}
        payload.update(self.details)
        return payload


class SlotConflict(ClinicalDomainError):
    """The requested interval overlaps a non-cancelled appointment. Re-fetch slots and retry."""
    code = 'slot_conflict'
    http_status = 409

    def default_message(self):
        return 'The requested time slot is no longer available'


class InvalidTransition(ClinicalDomainError):
    code = 'invalid_transition'
    http_status = 400

    def __init__(self, current_status, target_status, message=None, **details):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            message or f"Transition not allowed: {current_status} -> {target_status}",
            current_status=current_status,
            target_status=target_status,
            **details
        )


class IncompleteRecord(ClinicalDomainError):
    """Completion gate failed; the listed fields must be documented first."""
    code = 'incomplete_record'
    http_status = 422

    def __init__(self, missing_fields, message=None):
        self.missing_fields = list(missing_fields)
        super().__init__(
            message or 'Consultation is missing required documentation: ' + ', '.join(self.missing_fields),
            missing_fields=self.missing_fields,
        )


class IndexOutOfRange(ClinicalDomainError):
    code = 'index_out_of_range'
    http_status = 400

    def __init__(self, collection, index, size):
        super().__init__(
            f"{collection} index {index} out of range (size {size})",
            collection=collection,
            index=index,
            size=size,
        )


class NotFound(ClinicalDomainError):
    code = 'not_found'
    http_status = 404

    def __init__(self, entity, entity_id):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=str(entity_id))


class InvalidRequest(ClinicalDomainError):
    code = 'invalid_request'
    http_status = 400

    def default_message(self):
        return 'Invalid request'


class PersistenceUnavailable(ClinicalDomainError):
    """Database unreachable. Transient; callers may retry with backoff."""
    code = 'persistence_unavailable'
    http_status = 503

    def default_message(self):
        return 'Clinical records are temporarily unavailable'


def persistence_guard(func):
    """Re-raise database connectivity failures as PersistenceUnavailable."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (OperationalError, InterfaceError) as exc:
            raise PersistenceUnavailable(detail=exc.__class__.__name__) from exc
    return wrapper
