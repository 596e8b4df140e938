"""Monitoring: Prometheus metrics, telemetry recording and the worker status board."""

from genguard.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)
from genguard.infrastructure.monitoring.status_board import WorkerStatusBoard
from genguard.infrastructure.monitoring.telemetry import (
    LoggingTelemetrySink,
    TelemetryRecorder,
)

__all__ = [
    "MetricsCollector",
    "get_metrics_collector",
    "WorkerStatusBoard",
    "LoggingTelemetrySink",
    "TelemetryRecorder",
]
