"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Booking metrics
booking_attempts = Counter(
    'booking_attempts_total',
    'Total booking attempts',
    ['status']  # success, duplicate, full, not_bookable, not_found, error
)

booking_transitions = Counter(
    'booking_transitions_total',
    'Booking state transitions out of CONFIRMED',
    ['to_status']  # CANCELLED, COMPLETED, NO_SHOW
)

booking_latency = Histogram(
    'booking_latency_seconds',
    'Booking reservation latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

# Admission control metrics
admission_requests = Counter(
    'admission_requests_total',
    'Total admission gate decisions',
    ['result']  # admitted, rejected
)

# Payment metrics
payment_events = Counter(
    'payment_events_total',
    'Inbound payment processor notifications',
    ['event_type', 'outcome']  # inserted, already_seen, reclaimed
)

purchase_transitions = Counter(
    'purchase_transitions_total',
    'Purchase status transitions',
    ['to_status']
)

credits_issued = Counter(
    'credits_issued_total',
    'Credits added to user balances by completed purchases'
)

credits_refunded = Counter(
    'credits_refunded_total',
    'Credits removed from user balances by refunds'
)

# Storage metrics
storage_errors = Counter(
    'storage_errors_total',
    'Ledger store operations aborted by connectivity or pool errors'
)

# Redis metrics
redis_connection_errors = Counter(
    'redis_connection_errors_total',
    'Redis connection errors'
)

redis_circuit_breaker_open = Gauge(
    'redis_circuit_breaker_open',
    'Redis circuit breaker state (1=open, 0=closed)'
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# Convenience functions for instrumentation
def record_booking_attempt(status: str):
    """Record booking attempt outcome."""
    booking_attempts.labels(status=status).inc()


def record_booking_transition(to_status: str, count: int = 1):
    if count:
        booking_transitions.labels(to_status=to_status).inc(count)


def record_admission(admitted: bool):
    """Record admission gate decision."""
    result = "admitted" if admitted else "rejected"
    admission_requests.labels(result=result).inc()


def record_payment_event(event_type: str, outcome: str):
    payment_events.labels(event_type=event_type, outcome=outcome).inc()


def record_purchase_transition(to_status: str):
    purchase_transitions.labels(to_status=to_status).inc()
