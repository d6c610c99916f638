"""
Prometheus metrics endpoint.

Exposes request and webhook delivery metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

router = APIRouter(tags=["metrics"])

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Webhook Delivery Metrics
# ============================================

webhook_deliveries = Counter(
    'webhook_deliveries_total',
    'Webhook triggers by final outcome',
    ['status']
)

webhook_delivery_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Outbound webhook POST attempts',
    ['outcome']
)

webhook_delivery_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Wall-clock time from first attempt to final outcome',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Silent audit trail gaps: log insert or counter update failed
webhook_audit_write_failures = Counter(
    'webhook_audit_write_failures_total',
    'Failed writes of delivery logs or counters',
    ['kind']
)

AUDIT_FAILURE_KINDS = ("log", "counters", "transaction")


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Called by the logging middleware after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_delivery_attempt(outcome: str):
    """Record one outbound POST (success, http_error, timeout, transport_error)."""
    webhook_delivery_attempts.labels(outcome=outcome).inc()


def track_delivery(success: bool, duration_seconds: float):
    """Record the final outcome of a trigger."""
    webhook_deliveries.labels(status="success" if success else "failed").inc()
    webhook_delivery_duration.observe(duration_seconds)


def track_audit_write_failure(kind: str):
    """Record a swallowed audit write failure."""
    webhook_audit_write_failures.labels(kind=kind).inc()


def audit_write_failure_totals() -> dict[str, int]:
    """Audit write failures since process start, by kind."""
    totals = {}
    for kind in AUDIT_FAILURE_KINDS:
        value = REGISTRY.get_sample_value(
            'webhook_audit_write_failures_total', {'kind': kind}
        )
        totals[kind] = int(value or 0)
    return totals


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
