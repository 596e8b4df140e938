"""
Adaptive Circuit Breaker for the External Generation API.

This module implements the process-wide health tracker that decides whether the
worker may call the slow, expensive image-generation API at all.

MECHANISM OF ACTION:
-------------------
1.  **Token Bucket**:
    Every recorded failure adds one token, every success removes one (floor 0).
    Tokens decay by one per ``HEALTH_REFILL_SECONDS`` of elapsed time. Decay is
    computed lazily from the time since the last refill, so no timer is needed.

2.  **Sliding Window**:
    The last ``HEALTH_WINDOW_SIZE`` outcomes are kept. Once at least
    ``HEALTH_WINDOW_MIN_SAMPLES`` are present, a failure rate at or above
    ``HEALTH_WINDOW_FAILURE_RATE`` trips the breaker even with few tokens.

3.  **State Transitions**:
    - **CLOSED**: all generations admitted.
      - Trips to OPEN when tokens reach ``HEALTH_OPEN_TOKENS`` or the window rule fires.
    - **OPEN**: nothing admitted for the first half of ``HEALTH_OPEN_DURATION_SECONDS``.
    - **HALF-OPEN**: second half of the open period; each admission check is an
      independent Bernoulli trial at ``HEALTH_HALF_OPEN_SAMPLE_RATE``.
      - ``HEALTH_RECOVERY_SUCCESS_COUNT`` consecutive successes close the breaker.
      - Any failure resets the success streak and the recovery batch size to 1;
        the open deadline is not extended.
    - When the open deadline passes without recovery, the breaker reads CLOSED.

4.  **Adaptive Timeout**:
    ``get_timeout() = clamp(P95 + buffer, min, max)`` over the last hour of
    successful latencies.

5.  **Job Registration**:
    ``register_job`` records a deadline of ``timeout + HEALTH_JOB_DEADLINE_BUFFER_SECONDS``.
    Results recorded after a job expired, or recorded twice, are no-ops, which is
    how late results from jobs already retried elsewhere are kept out of the stats.

All mutations run under one ``threading.Lock`` so readers never observe a token
count and window that disagree. Each process owns its own instance.
"""

import math
import random
import threading
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from genguard.core.config.constants import (
    CircuitState,
    FailureKind,
    Stage,
    TelemetryCategory,
    TelemetrySeverity,
)
from genguard.core.config.settings import HealthSettings, get_settings
from genguard.core.logging.logger import get_logger
from genguard.core.resilience.rolling_stats import RollingStats
from genguard.infrastructure.monitoring.metrics_collector import get_metrics_collector
from genguard.infrastructure.monitoring.telemetry import TelemetryRecorder

logger = get_logger(__name__)

# Ids of jobs that already reported an outcome or expired
_FINISHED_JOB_MEMORY = 10_000
_TIMEOUT_CHANGE_THRESHOLD_SECONDS = 5.0


@dataclass
class ActiveJob:
    id: str
    started_at: float
    expires_at: float
    is_probe: bool = False


class HealthTracker:
    """
    Token-bucket plus sliding-window circuit breaker.

    Usage:
        tracker = HealthTracker(settings.health)
        if tracker.should_attempt_generation():
            tracker.register_job(job.id)
            ...
            tracker.record_success(latency, job.id)
    """

    def __init__(
        self,
        settings: HealthSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
        telemetry: TelemetryRecorder | None = None,
        metrics=None,
    ):
        self.settings = settings or get_settings().health
        self._clock = clock
        self._rng = rng or random.Random()
        self._telemetry = telemetry or TelemetryRecorder(clock=clock)
        self._metrics = metrics or get_metrics_collector()
        self._lock = threading.Lock()

        self._stats = RollingStats(
            window_seconds=self.settings.HEALTH_STATS_WINDOW_SECONDS,
            default_value=self.settings.HEALTH_DEFAULT_LATENCY_SECONDS,
            clock=clock,
        )

        now = clock()
        # Breaker state
        self._tokens = 0
        self._last_refill = now
        self._open_until = 0.0
        self._opened_at = 0.0
        self._window: deque[bool] = deque(maxlen=self.settings.HEALTH_WINDOW_SIZE)
        self._recovery_successes = 0
        self._recovery_batch_size = self.settings.HEALTH_MAX_RECOVERY_BATCH_SIZE
        self._last_state = CircuitState.CLOSED
        self._last_timeout: float | None = None

        # Counters
        self._consecutive_failures = 0
        self._last_failure_time = 0.0
        self._total_failures = 0
        self._total_timeouts = 0
        self._total_successes = 0

        # Job tracking
        self._active_jobs: dict[str, ActiveJob] = {}
        self._finished_jobs: OrderedDict[str, None] = OrderedDict()

        self._open_listeners: list[Callable[[], Any]] = []

        self._metrics.set_circuit_state(CircuitState.CLOSED.value)
        self._metrics.set_circuit_tokens(0)

        logger.info(
            "Health tracker initialized",
            stage="CB.0",
            open_tokens=self.settings.HEALTH_OPEN_TOKENS,
            refill_seconds=self.settings.HEALTH_REFILL_SECONDS,
            open_duration_seconds=self.settings.HEALTH_OPEN_DURATION_SECONDS,
        )

    # =========================================================================
    # State
    # =========================================================================

    def add_open_listener(self, callback: Callable[[], Any]) -> None:
        """Register a callback invoked (outside the lock) each time the breaker trips."""
        self._open_listeners.append(callback)

    def get_current_state(self) -> CircuitState:
        with self._lock:
            now = self._clock()
            self._refill(now)
            return self._sync_state(now)

    def is_healthy(self) -> bool:
        return self.get_current_state() == CircuitState.CLOSED

    def current_budget(self) -> int:
        """Failure tokens left before the token rule trips the breaker."""
        with self._lock:
            self._refill(self._clock())
            return max(0, self.settings.HEALTH_OPEN_TOKENS - self._tokens)

    @property
    def tokens(self) -> int:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    @property
    def consecutive_recovery_successes(self) -> int:
        return self._recovery_successes

    def get_recovery_batch_size(self) -> int:
        with self._lock:
            self._sync_state(self._clock())
            return self._recovery_batch_size

    def should_attempt_generation(self) -> bool:
        """
        Admission decision.

        STAGE-CB.1: Admission check

        CLOSED always admits, OPEN never does, HALF-OPEN admits a sampled fraction.
        """
        with self._lock:
            now = self._clock()
            self._refill(now)
            state = self._sync_state(now)

            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.OPEN:
                return False

            admitted = self._rng.random() < self.settings.HEALTH_HALF_OPEN_SAMPLE_RATE
            batch_size = self._recovery_batch_size

        if admitted:
            self._telemetry.record(
                "half_open_sample_allowed",
                TelemetryCategory.SYSTEM,
                TelemetrySeverity.INFO,
                batch_size=batch_size,
            )
        return admitted

    # =========================================================================
    # Adaptive Timeout
    # =========================================================================

    def get_timeout(self) -> float:
        """Adaptive generation timeout in seconds, always within the configured bounds."""
        with self._lock:
            timeout, p95 = self._compute_timeout()
            previous = self._last_timeout
            self._last_timeout = timeout

        self._metrics.set_adaptive_timeout(timeout)
        if previous is not None and abs(timeout - previous) > _TIMEOUT_CHANGE_THRESHOLD_SECONDS:
            self._telemetry.record(
                "adaptive_timeout_changed",
                TelemetryCategory.SYSTEM,
                TelemetrySeverity.INFO,
                old_timeout=previous,
                new_timeout=timeout,
                p95_latency=p95,
            )
        return timeout

    def _compute_timeout(self) -> tuple[float, float]:
        p95 = self._stats.percentile(95)
        raw = p95 + self.settings.HEALTH_TIMEOUT_BUFFER_SECONDS
        if not math.isfinite(raw):
            raw = self.settings.HEALTH_MAX_TIMEOUT_SECONDS
        timeout = max(
            self.settings.HEALTH_MIN_TIMEOUT_SECONDS,
            min(self.settings.HEALTH_MAX_TIMEOUT_SECONDS, raw),
        )
        return timeout, p95

    # =========================================================================
    # Job Lifecycle
    # =========================================================================

    def register_job(self, job_id: str, is_probe: bool = False) -> float:
        """
        Record an expected-completion deadline for a job attempt.

        Returns:
            The absolute deadline after which a result for ``job_id`` is stale.
        """
        timeout = self.get_timeout()
        with self._lock:
            now = self._clock()
            expires_at = now + timeout + self.settings.HEALTH_JOB_DEADLINE_BUFFER_SECONDS
            self._active_jobs[job_id] = ActiveJob(
                id=job_id, started_at=now, expires_at=expires_at, is_probe=is_probe
            )
            self._finished_jobs.pop(job_id, None)

        logger.debug(
            "Job registered with health tracker",
            stage=Stage.HEALTH_ADMISSION.value,
            job_id=job_id,
            is_probe=is_probe,
            expires_at=expires_at,
        )
        return expires_at

    def is_job_valid(self, job_id: str) -> bool:
        """Whether a result arriving now for ``job_id`` should still be honoured."""
        with self._lock:
            job = self._active_jobs.get(job_id)
            return job is not None and self._clock() < job.expires_at

    def cleanup_expired_jobs(self) -> int:
        """Drop registrations whose deadline passed. Returns how many were dropped."""
        with self._lock:
            now = self._clock()
            expired = [job for job in self._active_jobs.values() if now >= job.expires_at]
            for job in expired:
                self._finish_job(job.id)

        for job in expired:
            self._telemetry.record(
                "late_result_dropped",
                TelemetryCategory.SYSTEM,
                TelemetrySeverity.INFO,
                job_id=job.id,
                was_probe=job.is_probe,
            )
        if expired:
            logger.info("Expired job registrations dropped", count=len(expired))
        return len(expired)

    def _claim_outcome(self, job_id: str | None, now: float) -> ActiveJob | None | bool:
        """
        Resolve the registration an outcome belongs to.

        Returns False when the outcome must be ignored, otherwise the registration
        (or None for ids that were never registered).
        """
        if job_id is None:
            return None
        if job_id in self._finished_jobs:
            return False
        job = self._active_jobs.get(job_id)
        if job is not None and now >= job.expires_at:
            self._finish_job(job_id)
            return False
        self._finish_job(job_id)
        return job

    def _finish_job(self, job_id: str) -> None:
        self._active_jobs.pop(job_id, None)
        self._finished_jobs[job_id] = None
        self._finished_jobs.move_to_end(job_id)
        while len(self._finished_jobs) > _FINISHED_JOB_MEMORY:
            self._finished_jobs.popitem(last=False)

    # =========================================================================
    # Outcome Recording
    # =========================================================================

    def record_success(self, latency_seconds: float, job_id: str | None = None) -> bool:
        """
        Record a successful generation.

        STAGE-CB.2: Record outcome

        Returns:
            False if the outcome was ignored because the job already finished or expired.
        """
        with self._lock:
            now = self._clock()
            job = self._claim_outcome(job_id, now)
            if job is False:
                ignored = True
            else:
                ignored = False
                self._refill(now)
                state_before = self._sync_state(now)

                self._total_successes += 1
                self._consecutive_failures = 0
                self._tokens = max(0, self._tokens - 1)
                self._window.append(True)
                self._stats.add_sample(latency_seconds)

                if state_before == CircuitState.HALF_OPEN:
                    self._recovery_successes += 1
                    self._recovery_batch_size = min(
                        self._recovery_batch_size * 2,
                        self.settings.HEALTH_MAX_RECOVERY_BATCH_SIZE,
                    )
                    if self._recovery_successes >= self.settings.HEALTH_RECOVERY_SUCCESS_COUNT:
                        self._close(now)

                state_after = self._sync_state(now)
                tokens = self._tokens
                recovery_successes = self._recovery_successes
                was_probe = bool(job and job.is_probe)

        if ignored:
            self._report_ignored(job_id, "success")
            return False

        self._metrics.record_generation_latency(latency_seconds)
        self._metrics.set_circuit_tokens(tokens)
        self._telemetry.record(
            "generation_success",
            TelemetryCategory.GENERATION,
            TelemetrySeverity.INFO,
            latency_seconds=latency_seconds,
            job_id=job_id,
            breaker_state=state_after.value,
            recovery_successes=recovery_successes,
            was_probe=was_probe,
        )
        return True

    def record_failure(self, kind: FailureKind, job_id: str | None = None) -> bool:
        """
        Record a failed generation of the given kind.

        Every kind counts identically towards the breaker.

        Returns:
            False if the outcome was ignored because the job already finished or expired.
        """
        kind = FailureKind(kind)
        tripped = False
        with self._lock:
            now = self._clock()
            job = self._claim_outcome(job_id, now)
            if job is False:
                ignored = True
            else:
                ignored = False
                self._refill(now)
                state_before = self._sync_state(now)

                if self._tokens == 0:
                    self._last_refill = now
                self._tokens += 1
                self._window.append(False)
                self._total_failures += 1
                if kind == FailureKind.TIMEOUT:
                    self._total_timeouts += 1
                self._consecutive_failures += 1
                self._last_failure_time = now

                if state_before == CircuitState.CLOSED:
                    reason = self._trip_reason()
                    if reason is not None:
                        self._open(now, reason)
                        tripped = True
                elif state_before == CircuitState.HALF_OPEN:
                    self._recovery_successes = 0
                    self._recovery_batch_size = 1

                state_after = self._sync_state(now)
                tokens = self._tokens
                consecutive = self._consecutive_failures
                was_probe = bool(job and job.is_probe)

        if ignored:
            self._report_ignored(job_id, "failure")
            return False

        self._metrics.record_generation_failure(kind.value)
        self._metrics.set_circuit_tokens(tokens)
        self._telemetry.record(
            "generation_failure",
            TelemetryCategory.GENERATION,
            TelemetrySeverity.ERROR,
            job_id=job_id,
            failure_kind=kind.value,
            consecutive_failures=consecutive,
            tokens=tokens,
            breaker_state=state_after.value,
            was_probe=was_probe,
        )
        if tripped:
            self._notify_open()
        return True

    def _report_ignored(self, job_id: str | None, outcome: str) -> None:
        logger.info(
            "Outcome ignored for finished or expired job",
            stage=Stage.HEALTH_RECORD.value,
            job_id=job_id,
            outcome=outcome,
        )
        self._telemetry.record(
            "late_result_dropped",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.INFO,
            job_id=job_id,
            outcome=outcome,
        )

    # =========================================================================
    # Metrics
    # =========================================================================

    def get_health_metrics(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._refill(now)
            state = self._sync_state(now)
            attempts = self._total_successes + self._total_failures
            oldest_age = max((now - job.started_at for job in self._active_jobs.values()), default=0.0)
            return {
                "state": state.value,
                "tokens": self._tokens,
                "consecutive_failures": self._consecutive_failures,
                "last_failure_time": self._last_failure_time,
                "total_failures": self._total_failures,
                "total_timeouts": self._total_timeouts,
                "total_successes": self._total_successes,
                "total_attempts": attempts,
                "success_rate": self._total_successes / attempts if attempts else 1.0,
                "p50_latency": self._stats.percentile(50),
                "p95_latency": self._stats.percentile(95),
                "p99_latency": self._stats.percentile(99),
                "active_jobs": len(self._active_jobs),
                "oldest_job_age": oldest_age,
                "recovery_batch_size": self._recovery_batch_size,
                "consecutive_recovery_successes": self._recovery_successes,
                "open_until": self._open_until,
            }

    def get_metrics(self) -> dict[str, Any]:
        full = self.get_health_metrics()
        keys = (
            "success_rate",
            "p50_latency",
            "p95_latency",
            "p99_latency",
            "total_timeouts",
            "total_successes",
        )
        return {key: full[key] for key in keys}

    # =========================================================================
    # Internals (caller holds the lock)
    # =========================================================================

    def _refill(self, now: float) -> None:
        """Lazily decay failure tokens by elapsed refill intervals."""
        if self._tokens == 0:
            self._last_refill = now
            return

        elapsed = now - self._last_refill
        removed = int(elapsed // self.settings.HEALTH_REFILL_SECONDS)
        if removed <= 0:
            return

        self._tokens = max(0, self._tokens - removed)
        self._last_refill += removed * self.settings.HEALTH_REFILL_SECONDS
        if self._tokens == 0:
            self._last_refill = now

        self._telemetry.record(
            "circuit_breaker_token_decay",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.INFO,
            tokens_removed=removed,
            tokens_remaining=self._tokens,
        )

    def _state_at(self, now: float) -> CircuitState:
        if now > self._open_until:
            return CircuitState.CLOSED
        if now - self._opened_at >= self.settings.HEALTH_OPEN_DURATION_SECONDS / 2:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def _sync_state(self, now: float) -> CircuitState:
        """Compute the current state and account for time-driven transitions."""
        state = self._state_at(now)
        if state != self._last_state:
            previous = self._last_state
            self._last_state = state
            if state == CircuitState.CLOSED and previous != CircuitState.CLOSED:
                # Open period lapsed without enough recovery successes
                self._reset_recovery()
            self._log_transition(previous, state)
        return state

    def _trip_reason(self) -> str | None:
        if self._tokens >= self.settings.HEALTH_OPEN_TOKENS:
            return "tokens"
        samples = len(self._window)
        if samples >= self.settings.HEALTH_WINDOW_MIN_SAMPLES:
            failures = sum(1 for ok in self._window if not ok)
            if failures / samples >= self.settings.HEALTH_WINDOW_FAILURE_RATE:
                return "failure_rate"
        return None

    def _open(self, now: float, reason: str) -> None:
        self._opened_at = now
        self._open_until = now + self.settings.HEALTH_OPEN_DURATION_SECONDS
        self._recovery_successes = 0
        self._recovery_batch_size = 1

        logger.warning(
            "Circuit breaker opened",
            stage=Stage.HEALTH_TRANSITION.value,
            reason=reason,
            tokens=self._tokens,
            window_samples=len(self._window),
            consecutive_failures=self._consecutive_failures,
            open_until=self._open_until,
        )
        self._telemetry.record(
            "circuit_breaker_opened",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.WARNING,
            reason=reason,
            duration_seconds=self.settings.HEALTH_OPEN_DURATION_SECONDS,
            tokens=self._tokens,
            consecutive_failures=self._consecutive_failures,
        )

    def _close(self, now: float) -> None:
        self._open_until = 0.0
        self._opened_at = 0.0
        self._tokens = 0
        self._last_refill = now
        self._reset_recovery()

        logger.info(
            "Circuit breaker closed after recovery",
            stage=Stage.HEALTH_TRANSITION.value,
            recovery_success_count=self.settings.HEALTH_RECOVERY_SUCCESS_COUNT,
        )
        self._telemetry.record(
            "circuit_breaker_closed",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.INFO,
        )

    def _reset_recovery(self) -> None:
        self._recovery_successes = 0
        self._recovery_batch_size = self.settings.HEALTH_MAX_RECOVERY_BATCH_SIZE
        self._window.clear()

    def _log_transition(self, previous: CircuitState, state: CircuitState) -> None:
        self._metrics.set_circuit_state(state.value)
        logger.info(
            "Circuit breaker state changed",
            stage=Stage.HEALTH_TRANSITION.value,
            previous_state=previous.value,
            new_state=state.value,
        )

    def _notify_open(self) -> None:
        for callback in list(self._open_listeners):
            try:
                callback()
            except Exception as e:
                logger.error(
                    "Breaker open listener failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
