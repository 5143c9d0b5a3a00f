"""
Prometheus Metrics Registry

Provides Prometheus-compatible metrics for:
- Push notification deliveries per provider
- Push delivery latency
- OAuth access token refreshes
- Tenant dispatch requests
"""
import logging

from prometheus_client import (
    Counter, Histogram,
    CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)

logger = logging.getLogger(__name__)

# Create a custom registry to avoid conflicts with default registry
REGISTRY = CollectorRegistry()

# ============================================================================
# Push Notification Metrics
# ============================================================================

push_notifications_sent_total = Counter(
    'push_notifications_sent_total',
    'Total push notifications sent',
    ['provider', 'status'],  # status: success, failure
    registry=REGISTRY
)

push_notification_duration_seconds = Histogram(
    'push_notification_duration_seconds',
    'Push notification send call duration in seconds',
    ['provider'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY
)

push_token_refresh_total = Counter(
    'push_token_refresh_total',
    'OAuth access token refreshes',
    ['provider', 'status'],
    registry=REGISTRY
)

push_dispatch_total = Counter(
    'push_dispatch_total',
    'Tenant dispatch requests by target type and outcome',
    ['provider', 'target_type', 'outcome'],  # outcome: sent, failed, no_recipients, not_configured
    registry=REGISTRY
)


def record_push_notification_sent(
    provider: str,
    status: str,
    count: int = 1,
    duration_seconds: float = 0.0,
):
    """
    Record push notification delivery metrics.

    Args:
        provider: Provider type value (onesignal, firebase, webpush)
        status: Delivery status (success, failure)
        count: Number of recipients with this status
        duration_seconds: Duration of the send call
    """
    if count > 0:
        push_notifications_sent_total.labels(provider=provider, status=status).inc(count)
    if duration_seconds > 0:
        push_notification_duration_seconds.labels(provider=provider).observe(duration_seconds)


def record_token_refresh(provider: str, status: str):
    """
    Record an OAuth access token refresh attempt.

    Args:
        provider: Provider type value
        status: success or failure
    """
    push_token_refresh_total.labels(provider=provider, status=status).inc()


def record_dispatch(provider: str, target_type: str, outcome: str):
    """Record a tenant-level dispatch request."""
    push_dispatch_total.labels(
        provider=provider, target_type=target_type, outcome=outcome
    ).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get Prometheus content type header value."""
    return CONTENT_TYPE_LATEST
