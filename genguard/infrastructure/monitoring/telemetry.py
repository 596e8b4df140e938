"""
Telemetry Recording

Fire-and-forget telemetry for breaker, probe, dead-letter and queue events.

``TelemetryRecorder.record()`` never raises and never blocks the caller: a
synchronous sink is called inline, a coroutine sink is scheduled as a task on
the running loop. Sink failures are logged and dropped.
"""

import asyncio
import inspect
import time
from collections.abc import Callable
from typing import Any

from genguard.core.config.constants import TelemetryCategory, TelemetrySeverity
from genguard.core.interfaces.ports import TelemetryEvent, TelemetrySink
from genguard.core.logging.logger import get_logger

logger = get_logger(__name__)


class LoggingTelemetrySink:
    """Default sink: writes each event as a structured log line."""

    _LEVELS = {
        TelemetrySeverity.INFO: "info",
        TelemetrySeverity.WARNING: "warning",
        TelemetrySeverity.ERROR: "error",
        TelemetrySeverity.CRITICAL: "critical",
    }

    def record_event(self, event: TelemetryEvent) -> None:
        log = getattr(logger, self._LEVELS.get(event.severity, "info"))
        log(
            "Telemetry event",
            telemetry_event=event.event,
            category=event.category.value,
            severity=event.severity.value,
            **event.metrics,
        )


class TelemetryRecorder:
    """
    Isolates the core from its telemetry sink.

    Usage:
        telemetry = TelemetryRecorder(LoggingTelemetrySink())
        telemetry.record(
            "circuit_breaker_opened",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.ERROR,
            tokens=5,
        )
    """

    def __init__(self, sink: TelemetrySink | None = None, clock: Callable[[], float] = time.time):
        self._sink = sink or LoggingTelemetrySink()
        self._clock = clock
        self._pending: set[asyncio.Task] = set()

    def record(
        self,
        event: str,
        category: TelemetryCategory,
        severity: TelemetrySeverity = TelemetrySeverity.INFO,
        **metrics: Any,
    ) -> None:
        telemetry_event = TelemetryEvent(
            event=event,
            category=category,
            severity=severity,
            timestamp=self._clock(),
            metrics=metrics,
        )
        try:
            result = self._sink.record_event(telemetry_event)
            if inspect.isawaitable(result):
                self._schedule(result, event)
        except Exception as e:
            logger.warning(
                "Telemetry sink failed",
                telemetry_event=event,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _schedule(self, awaitable, event: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to run the coroutine on; close it so it is not left unawaited
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning("Telemetry dropped, no running event loop", telemetry_event=event)
            return

        task = loop.create_task(self._guard(awaitable, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _guard(awaitable, event: str) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.warning(
                "Telemetry sink failed",
                telemetry_event=event,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def flush(self) -> None:
        """Wait for scheduled sink coroutines (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
