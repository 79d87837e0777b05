"""
Prometheus metrics for the synchronization engine.

This module provides:
- Transport request counter (operation, outcome)
- Transport latency histogram (operation)
- Poll tick counter (outcome)
- Optimistic mutation counter (kind, result)
- Profile cache lookup counter (result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

# outcome: ok, transient, permission
transport_requests_total = Counter(
    "chatsync_transport_requests_total",
    "Total requests issued to the message API",
    labelnames=["operation", "outcome"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
transport_latency_seconds = Histogram(
    "chatsync_transport_latency_seconds",
    "Message API request latency in seconds",
    labelnames=["operation"]
)

poll_ticks_total = Counter(
    "chatsync_poll_ticks_total",
    "Total poll ticks by outcome",
    labelnames=["outcome"]
)

# kind: send, delete
# result: confirmed, failed, rolled_back, deduplicated
optimistic_mutations_total = Counter(
    "chatsync_optimistic_mutations_total",
    "Optimistic mutation reconciliations",
    labelnames=["kind", "result"]
)

# result: hit, miss, expired
profile_cache_lookups_total = Counter(
    "chatsync_profile_cache_lookups_total",
    "Profile cache lookups",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_transport_request(operation: str, outcome: str, latency_seconds: float) -> None:
    """
    Record one Transport Client call.

    Args:
        operation: fetch_messages, send_message, delete_message, mark_read, fetch_profiles
        outcome: ok, transient or permission
        latency_seconds: time spent waiting for the response
    """
    transport_requests_total.labels(operation=operation, outcome=outcome).inc()
    transport_latency_seconds.labels(operation=operation).observe(latency_seconds)


def record_poll_tick(outcome: str) -> None:
    poll_ticks_total.labels(outcome=outcome).inc()


def record_mutation(kind: str, result: str) -> None:
    optimistic_mutations_total.labels(kind=kind, result=result).inc()


def record_cache_lookup(result: str) -> None:
    profile_cache_lookups_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()
