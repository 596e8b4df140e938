"""
Recovery Orchestrator

Issues synthetic, low-cost probe generations while the breaker is not closed,
so recovery is detected without waiting for organic traffic.

STAGE-RP: Recovery probes
-------------------------
RP.1: Scheduling. A probe runs ``RECOVERY_PROBE_INTERVAL_SECONDS`` times a jitter
      factor drawn from ``[1 - J, 1 + J]`` after the breaker opens (or after the
      previous probe), so several instances do not probe in lockstep.
RP.2: Execution. Before a probe, the cost estimate is checked against the
      trailing-hour ledger and reserved. Over budget, the probe is skipped and
      retried after ``RECOVERY_BUDGET_RETRY_SECONDS``.

Probe outcomes are recorded through the health tracker's normal path. The
orchestrator only owns its budget ledger and the batch-size hint that admission
control uses to ramp organic traffic back up (doubling per success, capped at
5, reset to 1 on failure).
"""

import asyncio
import random
import threading
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from genguard.core.config.constants import (
    BUDGET_WINDOW_SECONDS,
    MAX_RECOVERY_BATCH_SIZE,
    PROBE_PROMPTS,
    CircuitState,
    Stage,
    TelemetryCategory,
    TelemetrySeverity,
)
from genguard.core.config.settings import RecoverySettings, get_settings
from genguard.core.logging.logger import get_logger, log_stage
from genguard.core.models.outcome import GenerationSuccess
from genguard.core.resilience.generation_gateway import GenerationGateway
from genguard.core.resilience.health_tracker import HealthTracker
from genguard.infrastructure.monitoring.metrics_collector import get_metrics_collector
from genguard.infrastructure.monitoring.telemetry import TelemetryRecorder

logger = get_logger(__name__)

# Float slack so 25 probes at $0.04 fit a $1.00 budget
_BUDGET_EPSILON = 1e-9


class RecoveryOrchestrator:
    """
    Jittered, budget-capped recovery probing.

    Usage:
        orchestrator = RecoveryOrchestrator(tracker, gateway, settings.recovery)
        orchestrator.start_monitoring()
        ...
        await orchestrator.stop()
    """

    def __init__(
        self,
        health: HealthTracker,
        gateway: GenerationGateway,
        settings: RecoverySettings | None = None,
        *,
        max_batch_size: int = MAX_RECOVERY_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        telemetry: TelemetryRecorder | None = None,
        metrics=None,
    ):
        self.settings = settings or get_settings().recovery
        self._health = health
        self._gateway = gateway
        self._max_batch_size = max_batch_size
        self._clock = clock
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._telemetry = telemetry or TelemetryRecorder(clock=clock)
        self._metrics = metrics or get_metrics_collector()

        self._ledger: deque[tuple[float, float]] = deque()
        self._ledger_lock = threading.Lock()

        self._batch_size = 1
        self._probe_attempts = 0
        self._probe_successes = 0
        self._total_estimated_cost = 0.0
        self._probing = False
        self._next_probe_time = 0.0

        self._timer_task: asyncio.Task | None = None
        self._active_task: asyncio.Task | None = None
        self._monitor_task: asyncio.Task | None = None

        health.add_open_listener(self._on_breaker_open)

    # =========================================================================
    # Budget
    # =========================================================================

    def _prune_ledger(self, now: float) -> float:
        """Drop entries older than the budget window and return the remaining spend."""
        cutoff = now - BUDGET_WINDOW_SECONDS
        while self._ledger and self._ledger[0][0] <= cutoff:
            self._ledger.popleft()
        return sum(cost for _, cost in self._ledger)

    def hourly_spend(self) -> float:
        with self._ledger_lock:
            return self._prune_ledger(self._clock())

    def is_within_budget(self) -> bool:
        """Whether one more probe fits under the trailing-hour budget."""
        return (
            self.hourly_spend() + self.settings.RECOVERY_PROBE_COST
            <= self.settings.RECOVERY_HOURLY_BUDGET + _BUDGET_EPSILON
        )

    def _reserve_budget(self) -> bool:
        """Check and record one probe's cost in a single step."""
        cost = self.settings.RECOVERY_PROBE_COST
        with self._ledger_lock:
            now = self._clock()
            spent = self._prune_ledger(now)
            if spent + cost > self.settings.RECOVERY_HOURLY_BUDGET + _BUDGET_EPSILON:
                return False
            self._ledger.append((now, cost))
            self._total_estimated_cost += cost
        self._metrics.record_probe_spend(cost)
        return True

    def budget_remaining(self) -> float:
        return max(0.0, self.settings.RECOVERY_HOURLY_BUDGET - self.hourly_spend())

    # =========================================================================
    # Scheduling
    # =========================================================================

    def get_recovery_batch_size(self) -> int:
        return self._batch_size

    @property
    def probe_pending(self) -> bool:
        return self._probing or (self._timer_task is not None and not self._timer_task.done())

    def _jittered_delay(self) -> float:
        jitter = self.settings.RECOVERY_PROBE_JITTER
        return self.settings.RECOVERY_PROBE_INTERVAL_SECONDS * self._rng.uniform(1 - jitter, 1 + jitter)

    def schedule_probe(self, delay: float | None = None) -> bool:
        """
        Schedule the next probe.

        STAGE-RP.1: Probe scheduling

        Returns:
            True if a probe was scheduled; False when the breaker is closed, a probe
            is already pending, or there is no running event loop.
        """
        if self.probe_pending:
            return False
        if self._health.get_current_state() == CircuitState.CLOSED:
            return False

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, probe left to the monitor", stage=Stage.PROBE_SCHEDULE.value)
            return False

        delay = self._jittered_delay() if delay is None else delay
        self._next_probe_time = self._clock() + delay
        self._timer_task = loop.create_task(self._run_after(delay))

        logger.info(
            "Recovery probe scheduled",
            stage=Stage.PROBE_SCHEDULE.value,
            delay_seconds=round(delay, 3),
            next_probe_time=self._next_probe_time,
        )
        self._telemetry.record(
            "recovery_probe_scheduled",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.INFO,
            delay_seconds=delay,
            next_probe_time=self._next_probe_time,
        )
        return True

    async def _run_after(self, delay: float) -> None:
        await self._sleep(delay)
        # The timer is consumed; the probe may schedule its successor
        self._timer_task = None
        self._active_task = asyncio.current_task()
        try:
            await self.execute_probe()
        except Exception as e:
            logger.error(
                "Recovery probe crashed",
                stage=Stage.PROBE_EXECUTE.value,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
        finally:
            if self._active_task is asyncio.current_task():
                self._active_task = None

    def _on_breaker_open(self) -> None:
        self._batch_size = 1
        self.schedule_probe()

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_probe(self) -> bool | None:
        """
        Run one probe now.

        STAGE-RP.2: Probe execution

        Returns:
            True/False for probe success/failure, None when no probe was issued.
        """
        if self._health.get_current_state() == CircuitState.CLOSED:
            logger.info("Breaker closed, probe cancelled", stage=Stage.PROBE_EXECUTE.value)
            self._next_probe_time = 0.0
            return None

        if not self._reserve_budget():
            hourly = self.hourly_spend()
            logger.warning(
                "Probe budget exhausted, skipping probe",
                stage=Stage.PROBE_EXECUTE.value,
                hourly_spend=round(hourly, 4),
                budget=self.settings.RECOVERY_HOURLY_BUDGET,
            )
            self._metrics.record_probe("skipped_budget")
            self._telemetry.record(
                "probe_budget_exceeded",
                TelemetryCategory.SYSTEM,
                TelemetrySeverity.WARNING,
                hourly_spend=hourly,
                budget_limit=self.settings.RECOVERY_HOURLY_BUDGET,
            )
            self.schedule_probe(delay=self.settings.RECOVERY_BUDGET_RETRY_SECONDS)
            return None

        self._probing = True
        try:
            succeeded = await self._probe_once()
        finally:
            self._probing = False

        if succeeded:
            self._on_probe_success()
        else:
            self._on_probe_failure()
        return succeeded

    async def _probe_once(self) -> bool:
        self._probe_attempts += 1
        probe_id = f"probe-{uuid.uuid4()}"
        prompt = self._rng.choice(PROBE_PROMPTS)
        timeout = min(self._health.get_timeout(), self.settings.RECOVERY_PROBE_TIMEOUT_SECONDS)

        log_stage(
            logger,
            Stage.PROBE_EXECUTE.value,
            "Executing recovery probe",
            probe_id=probe_id,
            attempt_number=self._probe_attempts,
            batch_size=self._batch_size,
            timeout_seconds=timeout,
        )
        self._telemetry.record(
            "recovery_probe_start",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.INFO,
            attempt_number=self._probe_attempts,
            batch_size=self._batch_size,
        )

        self._health.register_job(probe_id, is_probe=True)
        outcome = await self._gateway.attempt(prompt, timeout_seconds=timeout, is_probe=True)

        if isinstance(outcome, GenerationSuccess):
            self._health.record_success(outcome.latency_seconds, probe_id)
            self._probe_successes += 1
            return True

        self._health.record_failure(outcome.kind, probe_id)
        return False

    def _success_rate(self) -> float:
        return self._probe_successes / self._probe_attempts if self._probe_attempts else 0.0

    def _on_probe_success(self) -> None:
        old_batch_size = self._batch_size
        self._batch_size = min(self._batch_size * 2, self._max_batch_size)
        self._metrics.record_probe("success")

        logger.info(
            "Recovery probe succeeded",
            stage=Stage.PROBE_EXECUTE.value,
            old_batch_size=old_batch_size,
            new_batch_size=self._batch_size,
        )
        self._telemetry.record(
            "recovery_probe_success",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.INFO,
            old_batch_size=old_batch_size,
            new_batch_size=self._batch_size,
            success_rate=self._success_rate(),
        )

        if self._health.get_current_state() == CircuitState.CLOSED:
            logger.info(
                "Generation fully recovered, probing stopped",
                stage=Stage.PROBE_EXECUTE.value,
                total_probes=self._probe_attempts,
                successful_probes=self._probe_successes,
            )
            self._telemetry.record(
                "generation_fully_recovered",
                TelemetryCategory.SYSTEM,
                TelemetrySeverity.INFO,
                total_probes=self._probe_attempts,
                successful_probes=self._probe_successes,
                total_cost=self._total_estimated_cost,
            )
            self.reset()
        else:
            self.schedule_probe()

    def _on_probe_failure(self) -> None:
        self._batch_size = 1
        self._metrics.record_probe("failure")
        logger.warning(
            "Recovery probe failed",
            stage=Stage.PROBE_EXECUTE.value,
            attempt_number=self._probe_attempts,
        )
        self._telemetry.record(
            "recovery_probe_failed",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.WARNING,
            attempt_number=self._probe_attempts,
            success_rate=self._success_rate(),
        )
        self.schedule_probe()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def reset(self) -> None:
        """Forget the current recovery episode. The budget ledger is kept."""
        self._cancel_timer()
        self._batch_size = 1
        self._probe_attempts = 0
        self._probe_successes = 0
        self._next_probe_time = 0.0
        logger.info("Recovery orchestrator reset", stage=Stage.PROBE_SCHEDULE.value)

    def _cancel_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def start_monitoring(self) -> None:
        """Check the breaker every ``RECOVERY_MONITOR_INTERVAL_SECONDS`` and schedule probes."""
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.get_running_loop().create_task(self._monitor_loop())

    async def _monitor_loop(self) -> None:
        while True:
            await self._sleep(self.settings.RECOVERY_MONITOR_INTERVAL_SECONDS)
            try:
                self.check_breaker()
            except Exception as e:
                logger.error(
                    "Recovery monitor check failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def check_breaker(self) -> bool:
        """One monitor tick: schedule a probe if the breaker is not closed and none is pending."""
        state = self._health.get_current_state()
        if state != CircuitState.CLOSED and not self.probe_pending:
            return self.schedule_probe()
        return False

    async def stop(self) -> None:
        """Cancel the monitor loop and any pending probe timer."""
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._monitor_task, self._timer_task, self._active_task)
            if task is not None and task is not current
        ]
        self._monitor_task = None
        self._timer_task = None
        self._active_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Recovery orchestrator stopped", stage=Stage.PROBE_SCHEDULE.value)

    def get_status(self) -> dict[str, Any]:
        return {
            "is_probing": self._probing,
            "probe_pending": self.probe_pending,
            "batch_size": self._batch_size,
            "probe_attempts": self._probe_attempts,
            "probe_successes": self._probe_successes,
            "success_rate": self._success_rate(),
            "estimated_cost": round(self._total_estimated_cost, 6),
            "hourly_spend": round(self.hourly_spend(), 6),
            "next_probe_time": self._next_probe_time,
            "budget_remaining": round(self.budget_remaining(), 6),
        }
