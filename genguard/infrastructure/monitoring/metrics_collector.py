#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides metrics collection for the generation core:
- Circuit breaker state, failure tokens and adaptive timeout
- Generation latency histogram and failures by kind
- Job transitions by status, in-flight jobs and worker poll backoff
- Probe outcomes and probe spend
- Dead-letter size and surfaced-to-ops alerts

Architectural Decision: prometheus-client for industry-standard metrics
- Compatible with Grafana dashboards
- Efficient storage and aggregation
- Histogram buckets sized for slow image generation calls
"""


from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from genguard.core.config.settings import get_settings
from genguard.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

# Circuit breaker metrics
CIRCUIT_BREAKER_STATE = Gauge(
    'genguard_circuit_breaker_state',
    'Generation breaker state (0=closed, 1=half-open, 2=open)'
)

CIRCUIT_BREAKER_TOKENS = Gauge(
    'genguard_circuit_breaker_tokens',
    'Failure tokens currently held by the breaker'
)

GENERATION_FAILURES = Counter(
    'genguard_generation_failures_total',
    'Recorded generation failures',
    ['kind']
)

ADAPTIVE_TIMEOUT = Gauge(
    'genguard_adaptive_timeout_seconds',
    'Current adaptive generation timeout'
)

GENERATION_LATENCY = Histogram(
    'genguard_generation_latency_seconds',
    'Latency of successful generation calls',
    buckets=(1.0, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0, 75.0, 90.0, 120.0)
)

# Queue metrics
JOB_TRANSITIONS = Counter(
    'genguard_job_transitions_total',
    'Job status transitions',
    ['status']
)

JOBS_IN_FLIGHT = Gauge(
    'genguard_jobs_in_flight',
    'Jobs currently executing in this worker'
)

WORKER_BACKOFF = Gauge(
    'genguard_worker_poll_backoff_seconds',
    'Current worker poll backoff while the breaker is open'
)

# Recovery probe metrics
PROBES = Counter(
    'genguard_recovery_probes_total',
    'Recovery probes by outcome',
    ['outcome']  # success, failure, skipped_budget
)

PROBE_SPEND = Counter(
    'genguard_recovery_probe_spend_usd_total',
    'Estimated spend on recovery probes'
)

# Dead letter metrics
DEAD_LETTER_SIZE = Gauge(
    'genguard_dead_letter_size',
    'Jobs currently quarantined in the dead-letter store'
)

DEAD_LETTER_SURFACED = Counter(
    'genguard_dead_letter_surfaced_total',
    'Dead-letter jobs surfaced to operators'
)

# API metrics
API_ERRORS = Counter(
    'genguard_api_errors_total',
    'Errors returned by the API',
    ['error_type', 'source']
)

APP_INFO = Info(
    'genguard_app',
    'Application information'
)


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = get_metrics_collector()
        metrics.set_circuit_state("open")
        metrics.record_job_transition("completed")
        output = metrics.get_prometheus_metrics()
    """

    def __init__(self):
        """Initialize metrics collector."""
        self.settings = get_settings()

        APP_INFO.info({
            'version': self.settings.app.APP_VERSION,
            'environment': self.settings.app.ENVIRONMENT,
            'app_name': self.settings.app.APP_NAME
        })

        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # Circuit Breaker Metrics
    # =========================================================================

    def set_circuit_state(self, state: str) -> None:
        """Set circuit breaker state."""
        state_value = {"closed": 0, "half-open": 1, "open": 2}.get(state, 0)
        CIRCUIT_BREAKER_STATE.set(state_value)

    def set_circuit_tokens(self, tokens: int) -> None:
        CIRCUIT_BREAKER_TOKENS.set(tokens)

    def record_generation_failure(self, kind: str) -> None:
        """Record a generation failure by kind."""
        GENERATION_FAILURES.labels(kind=kind).inc()

    def record_generation_latency(self, duration_seconds: float) -> None:
        GENERATION_LATENCY.observe(duration_seconds)

    def set_adaptive_timeout(self, timeout_seconds: float) -> None:
        ADAPTIVE_TIMEOUT.set(timeout_seconds)

    # =========================================================================
    # Queue Metrics
    # =========================================================================

    def record_job_transition(self, status: str) -> None:
        """Record a job entering ``status``."""
        JOB_TRANSITIONS.labels(status=status).inc()

    def set_jobs_in_flight(self, count: int) -> None:
        JOBS_IN_FLIGHT.set(count)

    def set_worker_backoff(self, delay_seconds: float) -> None:
        WORKER_BACKOFF.set(delay_seconds)

    # =========================================================================
    # Recovery Probe Metrics
    # =========================================================================

    def record_probe(self, outcome: str) -> None:
        PROBES.labels(outcome=outcome).inc()

    def record_probe_spend(self, cost: float) -> None:
        PROBE_SPEND.inc(cost)

    # =========================================================================
    # Dead Letter Metrics
    # =========================================================================

    def set_dead_letter_size(self, size: int) -> None:
        DEAD_LETTER_SIZE.set(size)

    def record_dead_letter_surfaced(self) -> None:
        DEAD_LETTER_SURFACED.inc()

    # =========================================================================
    # API Metrics
    # =========================================================================

    def record_error(self, error_type: str, source: str) -> None:
        API_ERRORS.labels(error_type=error_type, source=source).inc()

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        """
        Get Prometheus metrics output.

        Returns:
            bytes: Prometheus text format metrics
        """
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        """Get Prometheus content type."""
        return CONTENT_TYPE_LATEST


# Global metrics collector
_metrics: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
