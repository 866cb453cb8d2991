"""
Metrics instrumentation wrapper.

Prometheus counters and histograms for the scheduling service.
"""
from prometheus_client import Counter, Histogram


class MetricsRegistry:
    """
    Central metrics registry for the clinic scheduling service.

    Provides typed access to all application metrics.
    """

    def __init__(self):
        """Initialize metrics registry."""
        self._setup_metrics()

    def _create_counter(self, name, description, labels=None):
        """Create a counter metric."""
        return Counter(name, description, labels or [])

    def _create_histogram(self, name, description, labels=None, buckets=None):
        """Create a histogram metric."""
        if buckets:
            return Histogram(name, description, labels or [], buckets=buckets)
        return Histogram(name, description, labels or [])

    def _setup_metrics(self):
        """Setup all application metrics."""

        # ===================================================================
        # HTTP Metrics
        # ===================================================================
        self.exceptions_total = self._create_counter(
            'exceptions_total',
            'Total exceptions',
            ['exception_type', 'location']
        )

        # ===================================================================
        # Scheduling Metrics
        # ===================================================================
        self.appointment_bookings_total = self._create_counter(
            'appointment_bookings_total',
            'Appointment booking attempts',
            ['result']  # success, conflict, failure
        )

        self.appointment_slot_conflicts_total = self._create_counter(
            'appointment_slot_conflicts_total',
            'Bookings or reschedules rejected by an overlapping appointment',
            ['operation']  # book, reschedule
        )

        self.appointment_transitions_total = self._create_counter(
            'appointment_transitions_total',
            'Appointment status transitions',
            ['from_status', 'to_status', 'result']
        )

        self.availability_duration_seconds = self._create_histogram(
            'availability_duration_seconds',
            'Duration of free slot computation',
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5]
        )

        # ===================================================================
        # Clinical Metrics
        # ===================================================================
        self.consultation_transitions_total = self._create_counter(
            'consultation_transitions_total',
            'Consultation status transitions',
            ['from_status', 'to_status', 'result']
        )

        self.consultation_completion_blocked_total = self._create_counter(
            'consultation_completion_blocked_total',
            'Completions rejected by the record completeness gate'
        )

        self.clinical_auditlog_created_total = self._create_counter(
            'clinical_auditlog_created_total',
            'Clinical audit logs created',
            ['model', 'action']
        )

        self.capability_denied_total = self._create_counter(
            'capability_denied_total',
            'Operations rejected by the role capability table',
            ['role', 'capability']
        )


# Global metrics instance
metrics = MetricsRegistry()
