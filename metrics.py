"""
Prometheus Metrics - observability instrumentation for the error explainer.

RESPONSIBILITY:
    Define and expose metrics for monitoring request traffic, cache tiers,
    provider health and the circuit breaker. Follows RED methodology:
    Rate, Errors, Duration.

FAILURE POLICY:
    Recording a metric must never break the request that triggered it.
    Every helper logs and swallows its own errors.

CARDINALITY:
    Labels create separate time series. Only bounded label values are used
    here (endpoints, tiers, provider ids, outcomes). Error codes and client
    identities are never labels.
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, REGISTRY

logger = logging.getLogger(__name__)


# =============================================================================
# RED METRICS (Rate, Errors, Duration)
# =============================================================================

explainer_requests_total = Counter(
    "explainer_requests_total",
    "Total HTTP requests to the explainer API",
    labelnames=["endpoint", "status"],
)

explainer_request_duration_seconds = Histogram(
    "explainer_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["endpoint"],
    buckets=[
        0.005,  # in-memory cache hits
        0.01,
        0.05,   # persistent cache hits
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,    # typical provider call
        10.0,   # processing deadline
        30.0,
        float("inf"),
    ],
)


# =============================================================================
# CACHE METRICS
# =============================================================================

# tier: persistent | memory, outcome: hit | miss | error
explainer_cache_lookups_total = Counter(
    "explainer_cache_lookups_total",
    "Cache lookups by tier and outcome",
    labelnames=["tier", "outcome"],
)

explainer_cache_primary_healthy = Gauge(
    "explainer_cache_primary_healthy",
    "1 while the persistent cache tier is serving, 0 while degraded to memory",
)


# =============================================================================
# PROVIDER / FALLBACK METRICS
# =============================================================================

# outcome: success | failure | skipped
explainer_provider_calls_total = Counter(
    "explainer_provider_calls_total",
    "Provider invocations by provider id and outcome",
    labelnames=["provider", "outcome"],
)

# source: cache | ai | static
explainer_explanations_total = Counter(
    "explainer_explanations_total",
    "Explanations returned, by source",
    labelnames=["source"],
)

# 0 = closed, 1 = half_open, 2 = open
explainer_circuit_state = Gauge(
    "explainer_circuit_state",
    "Circuit breaker state (0 closed, 1 half_open, 2 open)",
)

CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


# =============================================================================
# RATE LIMIT METRICS
# =============================================================================

explainer_rate_limit_denied_total = Counter(
    "explainer_rate_limit_denied_total",
    "Requests denied by a rate limiter",
    labelnames=["limiter"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def record_request(endpoint: str, status: int, duration_seconds: float) -> None:
    """
    Record request metrics (counter + duration histogram).

    Called from the HTTP middleware after each request completes.
    """
    try:
        explainer_requests_total.labels(endpoint=endpoint, status=str(status)).inc()
        explainer_request_duration_seconds.labels(endpoint=endpoint).observe(duration_seconds)
    except Exception as e:
        logger.warning(f"Failed to record request metric: {e}")


def record_cache_lookup(tier: str, outcome: str) -> None:
    if tier not in ("persistent", "memory") or outcome not in ("hit", "miss", "error"):
        logger.warning(f"Invalid cache lookup labels: tier={tier} outcome={outcome}")
        return
    try:
        explainer_cache_lookups_total.labels(tier=tier, outcome=outcome).inc()
    except Exception as e:
        logger.warning(f"Failed to record cache metric: {e}")


def record_cache_tier_health(healthy: bool) -> None:
    try:
        explainer_cache_primary_healthy.set(1 if healthy else 0)
    except Exception as e:
        logger.warning(f"Failed to record cache tier metric: {e}")


def record_provider_call(provider: str, outcome: str) -> None:
    try:
        explainer_provider_calls_total.labels(provider=provider, outcome=outcome).inc()
    except Exception as e:
        logger.warning(f"Failed to record provider metric: {e}")


def record_explanation(source: str) -> None:
    try:
        explainer_explanations_total.labels(source=source).inc()
    except Exception as e:
        logger.warning(f"Failed to record explanation metric: {e}")


def record_circuit_state(state: str) -> None:
    """Record breaker state by its enum value ("closed", "half_open", "open")."""
    value = CIRCUIT_STATE_VALUES.get(state)
    if value is None:
        logger.warning(f"Invalid circuit state: {state}")
        return
    try:
        explainer_circuit_state.set(value)
    except Exception as e:
        logger.warning(f"Failed to record circuit metric: {e}")


def record_rate_limit_denied(limiter: str) -> None:
    try:
        explainer_rate_limit_denied_total.labels(limiter=limiter).inc()
    except Exception as e:
        logger.warning(f"Failed to record rate limit metric: {e}")


__all__ = [
    "explainer_requests_total",
    "explainer_request_duration_seconds",
    "explainer_cache_lookups_total",
    "explainer_cache_primary_healthy",
    "explainer_provider_calls_total",
    "explainer_explanations_total",
    "explainer_circuit_state",
    "explainer_rate_limit_denied_total",
    "record_request",
    "record_cache_lookup",
    "record_cache_tier_health",
    "record_provider_call",
    "record_explanation",
    "record_circuit_state",
    "record_rate_limit_denied",
    "REGISTRY",
]
