"""
Queue Worker - Breaker-Aware Generation Executor

Polls the durable job store, claims pending jobs with an optimistic
compare-and-swap on ``version`` and executes them through the generation
gateway, feeding every outcome back into the health tracker.

Architecture:
    QueueWorker (Public API)
        ├── PollLoop (Admission, claiming, dispatch, drain)
        ├── JobProcessor (Per-job pipeline and failure boundary)
        ├── RetryStrategy (Backoff and retry-or-dead-letter routing)
        ├── CreditGuard (Deduct once, refund at most once)
        └── JobWriter (Version-checked writes retried with tenacity)

Flow:
    1. Ask the health tracker for admission; back off while the breaker is open
    2. Reserve a concurrency slot, then claim the row (pending -> processing)
    3. Deduct credit with idempotency key ``{job_id}:{retry_count}``
    4. Register the job deadline and call the generation function
    5. Discard the result if the deadline already passed
    6. Persist completed / pending (retry) / dead_letter and record the outcome
    7. Refund credit on every failure path

Multiple worker processes may run against the same store; the claim CAS is the
only coordination between them.
"""

import asyncio
import os
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from genguard.core.config.constants import (
    MAX_RECOVERY_BATCH_SIZE,
    MESSAGE_INSUFFICIENT_CREDITS,
    STORE_WRITE_ATTEMPTS,
    STORE_WRITE_BASE_DELAY,
    STORE_WRITE_MAX_DELAY,
    CircuitState,
    JobEventType,
    JobStatus,
    Stage,
    TelemetryCategory,
    TelemetrySeverity,
)
from genguard.core.config.settings import Settings, get_settings
from genguard.core.exceptions.queue import (
    ConcurrencyLimitError,
    InsufficientCreditsError,
    JobStoreError,
    UserConcurrencyLimitError,
)
from genguard.core.interfaces.ports import CreditController, JobStore, PromptBuilder
from genguard.core.logging.logger import clear_job_id, get_logger, set_job_id
from genguard.core.models.job import Job
from genguard.core.models.outcome import GenerationFailure, GenerationOutcome
from genguard.core.resilience.concurrency_limiter import ConcurrencyLimiter
from genguard.core.resilience.dead_letter_store import DeadLetterStore
from genguard.core.resilience.generation_gateway import GenerationGateway
from genguard.core.resilience.health_tracker import HealthTracker
from genguard.infrastructure.monitoring.metrics_collector import get_metrics_collector
from genguard.infrastructure.monitoring.telemetry import TelemetryRecorder
from genguard.infrastructure.notifications.notifier import JobNotifier

logger = get_logger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class WorkerConfig:
    """
    Worker configuration parameters.

    Attributes:
        worker_id: Identity written to ``claimed_by`` on every claim; unique
            per process when built from settings
        poll_interval_seconds: Delay between poll cycles
        max_concurrent_jobs: Global in-flight cap
        max_jobs_per_user: Per-user in-flight cap
        batch_size: Pending rows fetched per poll
        initial_backoff_seconds: First retry delay and first open-breaker backoff
        backoff_multiplier: Growth factor for both backoffs
        max_backoff_seconds: Cap for both backoffs
        shutdown_timeout_seconds: How long stop waits for in-flight jobs
        deadline_buffer_seconds: Added to the adaptive timeout for the claim lease
        credit_cost: Credits deducted per attempt
    """
    worker_id: str = "worker"
    poll_interval_seconds: float = 5.0
    max_concurrent_jobs: int = 3
    max_jobs_per_user: int = 2
    batch_size: int = 5
    initial_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 32.0
    shutdown_timeout_seconds: float = 120.0
    deadline_buffer_seconds: float = 30.0
    credit_cost: int = 1
    store_write_attempts: int = STORE_WRITE_ATTEMPTS
    store_write_base_delay: float = STORE_WRITE_BASE_DELAY
    store_write_max_delay: float = STORE_WRITE_MAX_DELAY

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkerConfig":
        worker = settings.worker
        return cls(
            worker_id=f"{worker.WORKER_ID}:{os.getpid()}:{uuid.uuid4().hex[:8]}",
            poll_interval_seconds=worker.WORKER_POLL_INTERVAL_SECONDS,
            max_concurrent_jobs=worker.WORKER_MAX_CONCURRENT_JOBS,
            max_jobs_per_user=worker.WORKER_MAX_JOBS_PER_USER,
            batch_size=worker.WORKER_BATCH_SIZE,
            initial_backoff_seconds=worker.WORKER_INITIAL_BACKOFF_SECONDS,
            backoff_multiplier=worker.WORKER_BACKOFF_MULTIPLIER,
            max_backoff_seconds=worker.WORKER_MAX_BACKOFF_SECONDS,
            shutdown_timeout_seconds=worker.WORKER_SHUTDOWN_TIMEOUT_SECONDS,
            deadline_buffer_seconds=settings.health.HEALTH_JOB_DEADLINE_BUFFER_SECONDS,
            credit_cost=settings.credits.CREDITS_COST_PER_JOB,
        )


def default_prompt_builder(payload: dict[str, Any]) -> str:
    """Use ``payload["prompt"]`` verbatim."""
    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValueError("Job payload has no prompt")
    return prompt


@dataclass
class ProcessingContext:
    """
    State for one execution attempt of a claimed job.

    Attributes:
        job: The claimed row (its version is the CAS predicate for every write)
        started_at: Wall-clock start of the attempt
        charged: Credit was deducted for this attempt
        refunded: The deduction has been refunded
    """
    job: Job
    started_at: float = field(default_factory=time.time)
    charged: bool = False
    refunded: bool = False

    @property
    def idempotency_key(self) -> str:
        return f"{self.job.id}:{self.job.retry_count}"


# =============================================================================
# LAYER 1: PERSISTENCE
# Version-checked writes with transient-error retries
# =============================================================================

class JobWriter:
    """
    Applies conditional updates to job rows.

    A ``None`` result means the row changed underneath us (another worker
    reaped or reprocessed it); callers abandon the transition.
    """

    def __init__(self, store: JobStore, config: WorkerConfig):
        self._store = store
        self._config = config

    async def update(self, job: Job, changes: dict[str, Any]) -> Job | None:
        @retry(
            stop=stop_after_attempt(self._config.store_write_attempts),
            wait=wait_exponential_jitter(
                initial=self._config.store_write_base_delay,
                max=self._config.store_write_max_delay,
            ),
            retry=retry_if_exception_type(JobStoreError),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                "Job write failed, retrying",
                stage=Stage.QUEUE_FINALIZE.value,
                job_id=job.id,
                attempt=retry_state.attempt_number,
                delay=round(retry_state.idle_for, 3),
            ),
        )
        async def _write() -> Job | None:
            return await self._store.update_if_version(job.id, job.version, changes)

        updated = await _write()
        if updated is None:
            logger.warning(
                "Job changed concurrently, write abandoned",
                stage=Stage.QUEUE_FINALIZE.value,
                job_id=job.id,
                expected_version=job.version,
                target_status=str(changes.get("status")),
            )
        return updated


# =============================================================================
# LAYER 2: CREDITS
# =============================================================================

class CreditGuard:
    """
    Deducts one attempt's credit and refunds it at most once.

    Both calls use the attempt's idempotency key, so a repeated call after a
    crash is absorbed by the billing collaborator.
    """

    def __init__(self, credits: CreditController, cost: int):
        self._credits = credits
        self._cost = cost

    async def deduct(self, ctx: ProcessingContext) -> None:
        """
        Raises:
            InsufficientCreditsError: The user cannot pay for this attempt
        """
        if self._cost <= 0:
            return

        result = await self._credits.deduct(ctx.job.user_id, self._cost, ctx.idempotency_key)
        if not result.success:
            raise InsufficientCreditsError(
                MESSAGE_INSUFFICIENT_CREDITS,
                job_id=ctx.job.id,
                details={"user_id": ctx.job.user_id, "reason": result.reason},
            )
        ctx.charged = True

    async def refund(self, ctx: ProcessingContext, reason: str, *, force: bool = False) -> None:
        """
        Return the attempt's credit.

        ``force`` refunds without a known deduction in this process (an attempt
        interrupted in an earlier incarnation); the key makes it a no-op when
        nothing was deducted.
        """
        if self._cost <= 0 or ctx.refunded or not (ctx.charged or force):
            return

        ctx.refunded = True
        try:
            await self._credits.refund(ctx.job.user_id, self._cost, reason, ctx.idempotency_key)
            logger.info(
                "Credit refunded",
                job_id=ctx.job.id,
                user_id=ctx.job.user_id,
                idempotency_key=ctx.idempotency_key,
                reason=reason,
            )
        except Exception as e:
            # Cleanup path: the job must still reach a terminal state
            logger.error(
                "Credit refund failed",
                job_id=ctx.job.id,
                user_id=ctx.job.user_id,
                idempotency_key=ctx.idempotency_key,
                error=str(e),
                error_type=type(e).__name__,
            )


# =============================================================================
# LAYER 3: RETRY STRATEGY
# Exponential backoff via not_before, dead-letter on exhaustion
# =============================================================================

class RetryStrategy:
    """
    Routes a failed attempt to ``pending`` (retry) or ``dead_letter``.

    Algorithm:
        - Failure n (n <= max_retries): retry_count = n,
          not_before = now + min(initial * multiplier^(n-1), max_backoff)
        - Failure max_retries + 1: dead_letter, quarantined in the DeadLetterStore

    Retries are pushed back by ``not_before`` rather than by lowering
    ``priority``, so fresh jobs are never starved.
    """

    def __init__(
        self,
        writer: JobWriter,
        dead_letters: DeadLetterStore,
        notifier: JobNotifier,
        config: WorkerConfig,
        *,
        clock: Callable[[], float],
        telemetry: TelemetryRecorder,
        metrics,
    ):
        self._writer = writer
        self._dead_letters = dead_letters
        self._notifier = notifier
        self._config = config
        self._clock = clock
        self._telemetry = telemetry
        self._metrics = metrics

    def should_retry(self, job: Job) -> bool:
        return job.retry_count < job.max_retries and self._dead_letters.should_retry_job(job.id)

    def calculate_backoff_delay(self, retry_count: int) -> float:
        """
        Delay before retry number ``retry_count`` (1-indexed) becomes eligible.

        Example (defaults):
            retry_count=1: 1s
            retry_count=2: 2s
            retry_count=3: 4s
            retry_count=7: 32s (capped)
        """
        exponent = max(retry_count - 1, 0)
        delay = self._config.initial_backoff_seconds * (self._config.backoff_multiplier ** exponent)
        return min(delay, self._config.max_backoff_seconds)

    async def handle_failure(self, job: Job, reason: str, detail: str) -> Job | None:
        """
        Apply the retry-or-dead-letter transition for a failed attempt.

        Returns:
            The updated row, or None if the row changed concurrently
        """
        if self.should_retry(job):
            return await self._schedule_retry(job, reason, detail)
        return await self._dead_letter(job, reason, detail)

    async def _schedule_retry(self, job: Job, reason: str, detail: str) -> Job | None:
        retry_count = job.retry_count + 1
        delay = self.calculate_backoff_delay(retry_count)
        updated = await self._writer.update(
            job,
            {
                "status": JobStatus.PENDING,
                "retry_count": retry_count,
                "not_before": self._clock() + delay,
                "error_message": detail,
                "failure_reason": reason,
                "started_at": None,
                "claimed_by": None,
                "lease_expires_at": None,
            },
        )
        if updated is None:
            return None

        logger.info(
            "Job retry scheduled",
            stage=Stage.QUEUE_FINALIZE.value,
            job_id=job.id,
            retry_count=retry_count,
            max_retries=job.max_retries,
            delay_seconds=delay,
            reason=reason,
        )
        self._metrics.record_job_transition(JobStatus.PENDING.value)
        self._telemetry.record(
            "job_retry_scheduled",
            TelemetryCategory.QUEUE,
            TelemetrySeverity.WARNING,
            job_id=job.id,
            user_id=job.user_id,
            retry_count=retry_count,
            backoff_delay=delay,
            reason=reason,
        )
        await self._notifier.publish(JobEventType.RETRY_SCHEDULED, updated, reason=reason)
        return updated

    async def _dead_letter(self, job: Job, reason: str, detail: str) -> Job | None:
        updated = await self._writer.update(
            job,
            {
                "status": JobStatus.DEAD_LETTER,
                "error_message": detail,
                "failure_reason": reason,
                "completed_at": self._clock(),
                "claimed_by": None,
                "lease_expires_at": None,
            },
        )
        if updated is None:
            return None

        self._dead_letters.add_failed_job(
            job.id,
            job.prompt,
            job.user_id,
            job.session_id,
            reason,
            detail,
            attempt_count=job.attempt_count,
        )
        logger.warning(
            "Job moved to dead letter",
            stage=Stage.QUEUE_FINALIZE.value,
            job_id=job.id,
            attempts=job.attempt_count,
            reason=reason,
        )
        self._metrics.record_job_transition(JobStatus.DEAD_LETTER.value)
        self._telemetry.record(
            "job_dead_letter",
            TelemetryCategory.QUEUE,
            TelemetrySeverity.ERROR,
            job_id=job.id,
            user_id=job.user_id,
            retry_count=job.retry_count,
            reason=reason,
            error=detail,
        )
        await self._notifier.publish(
            JobEventType.FAILED, updated, error=detail, moved_to_dead_letter=True
        )
        return updated


# =============================================================================
# LAYER 4: JOB PROCESSING
# Per-job pipeline; every error ends in a state transition
# =============================================================================

class JobProcessor:
    """
    Executes one claimed job.

    Responsibility:
        Credit deduction, deadline registration, the generation call, the
        stale-result guard, finalisation and outcome recording.

    Nothing raised inside ``process`` escapes except cancellation; an
    unexpected error refunds the credit and routes the job through the
    retry strategy like any other failed attempt.
    """

    def __init__(
        self,
        health: HealthTracker,
        gateway: GenerationGateway,
        credit_guard: CreditGuard,
        writer: JobWriter,
        retry_strategy: RetryStrategy,
        notifier: JobNotifier,
        *,
        prompt_builder: PromptBuilder = default_prompt_builder,
        clock: Callable[[], float],
        telemetry: TelemetryRecorder,
        metrics,
    ):
        self._health = health
        self._gateway = gateway
        self._credit_guard = credit_guard
        self._writer = writer
        self._retry = retry_strategy
        self._notifier = notifier
        self._prompt_builder = prompt_builder
        self._clock = clock
        self._telemetry = telemetry
        self._metrics = metrics

    async def process(self, job: Job) -> None:
        ctx = ProcessingContext(job=job, started_at=self._clock())
        token = set_job_id(job.id)
        try:
            await self._execute(ctx)
        except InsufficientCreditsError as e:
            await self._reject_for_credits(ctx, e)
        except Exception as e:
            logger.error(
                "Unexpected error processing job",
                stage=Stage.QUEUE_EXECUTE.value,
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self._recover_from_error(ctx, e)
        finally:
            clear_job_id(token)

    async def handle_interrupted(self, job: Job) -> None:
        """
        Route a ``processing`` row whose worker went away.

        The breaker is not touched: the attempt never produced an outcome.
        """
        ctx = ProcessingContext(job=job, started_at=self._clock())
        token = set_job_id(job.id)
        try:
            logger.warning(
                "Recovering interrupted job",
                stage=Stage.QUEUE_RECOVERY.value,
                job_id=job.id,
                claimed_by=job.claimed_by,
                lease_expires_at=job.lease_expires_at,
            )
            await self._credit_guard.refund(ctx, "Attempt interrupted", force=True)
            updated = await self._retry.handle_failure(
                job, "interrupted", "Worker stopped before the job finished"
            )
            if updated is not None:
                self._telemetry.record(
                    "job_recovered",
                    TelemetryCategory.QUEUE,
                    TelemetrySeverity.WARNING,
                    job_id=job.id,
                    user_id=job.user_id,
                    status=updated.status.value,
                )
        finally:
            clear_job_id(token)

    async def _execute(self, ctx: ProcessingContext) -> None:
        job = ctx.job
        prompt = self._prompt_builder(job.payload)
        await self._credit_guard.deduct(ctx)

        timeout = self._health.get_timeout()
        self._health.register_job(job.id)
        logger.info(
            "Job started",
            stage=Stage.QUEUE_EXECUTE.value,
            job_id=job.id,
            user_id=job.user_id,
            attempt=job.attempt_count,
            timeout_seconds=timeout,
        )

        outcome = await self._gateway.attempt(prompt, timeout_seconds=timeout)

        if not self._health.is_job_valid(job.id):
            await self._discard_stale(ctx, outcome)
        elif outcome.ok:
            await self._complete(ctx, outcome)
        else:
            await self._fail(ctx, outcome)

    async def _complete(self, ctx: ProcessingContext, outcome: GenerationOutcome) -> None:
        job = ctx.job
        self._health.record_success(outcome.latency_seconds, job.id)

        now = self._clock()
        updated = await self._writer.update(
            job,
            {
                "status": JobStatus.COMPLETED,
                "result": outcome.result,
                "error_message": None,
                "completed_at": now,
                "claimed_by": None,
                "lease_expires_at": None,
            },
        )
        if updated is None:
            await self._credit_guard.refund(ctx, "Result discarded after concurrent update")
            return

        duration = now - ctx.started_at
        logger.info(
            "Job completed",
            stage=Stage.QUEUE_FINALIZE.value,
            job_id=job.id,
            duration_seconds=round(duration, 3),
            latency_seconds=round(outcome.latency_seconds, 3),
        )
        self._metrics.record_job_transition(JobStatus.COMPLETED.value)
        self._telemetry.record(
            "job_completed",
            TelemetryCategory.QUEUE,
            TelemetrySeverity.INFO,
            job_id=job.id,
            user_id=job.user_id,
            duration=duration,
        )
        await self._notifier.publish(JobEventType.COMPLETED, updated, result=outcome.result)

    async def _fail(self, ctx: ProcessingContext, outcome: GenerationFailure) -> None:
        job = ctx.job
        self._health.record_failure(outcome.kind, job.id)
        logger.warning(
            "Job attempt failed",
            stage=Stage.QUEUE_EXECUTE.value,
            job_id=job.id,
            failure_kind=outcome.kind.value,
            attempt=job.attempt_count,
            error=outcome.message,
        )
        await self._credit_guard.refund(ctx, f"Generation failed: {outcome.kind.value}")
        await self._retry.handle_failure(job, outcome.kind.value, outcome.message)

    async def _discard_stale(self, ctx: ProcessingContext, outcome: GenerationOutcome) -> None:
        job = ctx.job
        logger.warning(
            "Late generation result discarded",
            stage=Stage.QUEUE_EXECUTE.value,
            job_id=job.id,
            outcome_ok=outcome.ok,
            latency_seconds=round(outcome.latency_seconds, 3),
        )
        self._telemetry.record(
            "late_result_discarded",
            TelemetryCategory.QUEUE,
            TelemetrySeverity.WARNING,
            job_id=job.id,
            user_id=job.user_id,
        )
        await self._credit_guard.refund(ctx, "Result arrived after job deadline")
        await self._retry.handle_failure(
            job, "stale_result", "Generation finished after the job deadline"
        )

    async def _reject_for_credits(self, ctx: ProcessingContext, error: InsufficientCreditsError) -> None:
        job = ctx.job
        updated = await self._writer.update(
            job,
            {
                "status": JobStatus.FAILED,
                "error_message": MESSAGE_INSUFFICIENT_CREDITS,
                "completed_at": self._clock(),
                "claimed_by": None,
                "lease_expires_at": None,
            },
        )
        if updated is None:
            return

        logger.warning(
            "Job rejected for insufficient credits",
            stage=Stage.QUEUE_EXECUTE.value,
            job_id=job.id,
            user_id=job.user_id,
            reason=error.details.get("reason"),
        )
        self._metrics.record_job_transition(JobStatus.FAILED.value)
        self._telemetry.record(
            "job_insufficient_credits",
            TelemetryCategory.QUEUE,
            TelemetrySeverity.WARNING,
            job_id=job.id,
            user_id=job.user_id,
        )
        await self._notifier.publish(JobEventType.FAILED, updated, error=MESSAGE_INSUFFICIENT_CREDITS)

    async def _recover_from_error(self, ctx: ProcessingContext, error: Exception) -> None:
        await self._credit_guard.refund(ctx, "Processing error")
        try:
            await self._retry.handle_failure(ctx.job, "internal_error", str(error) or type(error).__name__)
        except Exception as e:
            # Row stays processing; lease expiry hands it to the reaper
            logger.error(
                "Failed to route job after processing error",
                stage=Stage.QUEUE_FINALIZE.value,
                job_id=ctx.job.id,
                error=str(e),
                error_type=type(e).__name__,
            )


# =============================================================================
# LAYER 5: POLL LOOP
# Admission, claiming and dispatch
# =============================================================================

class PollLoop:
    """
    Runs poll cycles until stopped.

    Admission per cycle:
        - Breaker OPEN: skip the cycle, poll backoff doubles (capped)
        - Breaker HALF_OPEN and not sampled: skip the cycle
        - Otherwise: backoff resets, claim up to the effective capacity

    Effective capacity is the global cap while closed, otherwise
    min(global cap, recovery batch size clamped to 1..5).
    """

    def __init__(
        self,
        store: JobStore,
        health: HealthTracker,
        limiter: ConcurrencyLimiter,
        processor: JobProcessor,
        config: WorkerConfig,
        *,
        orchestrator=None,
        clock: Callable[[], float],
        telemetry: TelemetryRecorder,
        metrics,
    ):
        self._store = store
        self._health = health
        self._limiter = limiter
        self._processor = processor
        self._config = config
        self._orchestrator = orchestrator
        self._clock = clock
        self._telemetry = telemetry
        self._metrics = metrics
        self._tasks: dict[str, asyncio.Task] = {}
        self._claimed: dict[str, Job] = {}
        self._backoff = 0.0
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def backoff_delay(self) -> float:
        return self._backoff

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def effective_capacity(self) -> int:
        if self._health.get_current_state() == CircuitState.CLOSED:
            return self._config.max_concurrent_jobs

        if self._orchestrator is not None:
            batch = self._orchestrator.get_recovery_batch_size()
        else:
            batch = self._health.get_recovery_batch_size()
        batch = max(1, min(batch, MAX_RECOVERY_BATCH_SIZE))
        return min(self._config.max_concurrent_jobs, batch)

    async def run(self) -> None:
        self._running = True
        self._shutdown_event.clear()
        logger.info(
            "Poll loop started",
            worker_id=self._config.worker_id,
            poll_interval_seconds=self._config.poll_interval_seconds,
            max_concurrent_jobs=self._config.max_concurrent_jobs,
        )

        while self._running and not self._shutdown_event.is_set():
            try:
                delay = await self.poll_once()
            except asyncio.CancelledError:
                logger.info("Poll loop cancelled", worker_id=self._config.worker_id)
                break
            except Exception as e:
                logger.error(
                    "Poll cycle failed",
                    worker_id=self._config.worker_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                self._telemetry.record(
                    "worker_poll_error",
                    TelemetryCategory.QUEUE,
                    TelemetrySeverity.ERROR,
                    error=str(e),
                )
                delay = self._config.poll_interval_seconds
            await self._wait(delay)

        self._running = False
        logger.info("Poll loop stopped", worker_id=self._config.worker_id)

    def stop(self) -> None:
        self._running = False
        self._shutdown_event.set()

    async def _wait(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def poll_once(self) -> float:
        """
        Run one poll cycle.

        Returns:
            Seconds to wait before the next cycle
        """
        self._health.cleanup_expired_jobs()
        await self.reap_expired_leases()

        if not self._health.should_attempt_generation():
            if self._health.get_current_state() == CircuitState.OPEN:
                return self._back_off()
            logger.debug("Half-open cycle not sampled", stage=Stage.HEALTH_ADMISSION.value)
            return self._config.poll_interval_seconds

        if self._backoff:
            self._backoff = 0.0
            self._metrics.set_worker_backoff(0.0)

        await self._claim_batch()
        return self._config.poll_interval_seconds

    def _back_off(self) -> float:
        if self._backoff:
            self._backoff = min(
                self._backoff * self._config.backoff_multiplier,
                self._config.max_backoff_seconds,
            )
        else:
            self._backoff = self._config.initial_backoff_seconds
        self._metrics.set_worker_backoff(self._backoff)

        logger.info(
            "Circuit breaker open, pausing worker",
            stage=Stage.HEALTH_ADMISSION.value,
            backoff_seconds=self._backoff,
        )
        self._telemetry.record(
            "worker_paused_breaker_open",
            TelemetryCategory.QUEUE,
            TelemetrySeverity.WARNING,
            backoff_delay=self._backoff,
        )
        return max(self._backoff, self._config.poll_interval_seconds)

    async def _claim_batch(self) -> None:
        """
        Claim pending jobs until the effective capacity is used up.

        Rows whose user is at the per-user cap stay pending and are paged
        past, so one user's backlog cannot hide other users' jobs while
        slots are free. Claimed rows leave the pending order; skipped rows
        do not, so the next page starts ``skipped`` rows in.
        """
        capacity = self.effective_capacity()
        if self._limiter.available(capacity) <= 0:
            logger.debug("No available slots, skipping poll", capacity=capacity)
            return

        now = self._clock()
        skipped = 0
        seen: set[str] = set()
        while self._limiter.available(capacity) > 0 and not self._shutdown_event.is_set():
            jobs = await self._store.fetch_pending(self._config.batch_size, now, offset=skipped)
            fresh = [job for job in jobs if job.id not in seen]
            if not fresh:
                return

            logger.debug("Pending jobs fetched", count=len(fresh), capacity=capacity, offset=skipped)
            for job in fresh:
                if self._shutdown_event.is_set():
                    return
                seen.add(job.id)
                try:
                    await self._limiter.acquire(job.user_id, job.id, capacity)
                except UserConcurrencyLimitError:
                    skipped += 1
                    continue
                except ConcurrencyLimitError:
                    return

                claimed = await self._claim(job, now)
                if claimed is None:
                    await self._limiter.release(job.id)
                    continue
                self._dispatch(claimed)

            if len(jobs) < self._config.batch_size:
                return

    async def _claim(self, job: Job, now: float) -> Job | None:
        lease_expires_at = now + self._health.get_timeout() + self._config.deadline_buffer_seconds
        try:
            claimed = await self._store.claim(
                job.id, job.version, self._config.worker_id, lease_expires_at, now
            )
        except Exception:
            await self._limiter.release(job.id)
            raise

        if claimed is None:
            logger.debug(
                "Job already claimed by another worker",
                stage=Stage.QUEUE_CLAIM.value,
                job_id=job.id,
                version=job.version,
            )
            return None

        logger.info(
            "Job claimed",
            stage=Stage.QUEUE_CLAIM.value,
            job_id=claimed.id,
            user_id=claimed.user_id,
            priority=claimed.priority,
            retry_count=claimed.retry_count,
        )
        self._metrics.record_job_transition(JobStatus.PROCESSING.value)
        return claimed

    def _dispatch(self, job: Job) -> None:
        task = asyncio.create_task(self._run_job(job), name=f"genguard-job-{job.id}")
        self._tasks[job.id] = task
        self._claimed[job.id] = job
        self._metrics.set_jobs_in_flight(len(self._tasks))

    async def _run_job(self, job: Job) -> None:
        try:
            await self._processor.process(job)
        finally:
            self._tasks.pop(job.id, None)
            self._claimed.pop(job.id, None)
            await self._limiter.release(job.id)
            self._metrics.set_jobs_in_flight(len(self._tasks))

    async def reap_expired_leases(self) -> int:
        """
        Route ``processing`` rows whose lease lapsed and that this worker is not running.

        A live lease is never reaped, whoever holds it: another process may
        still be generating.
        """
        now = self._clock()
        reaped = 0
        for job in await self._store.list_by_status(JobStatus.PROCESSING):
            if job.id in self._tasks:
                continue
            if job.lease_expires_at is None or job.lease_expires_at < now:
                await self._processor.handle_interrupted(job)
                reaped += 1
        return reaped

    async def drain(self, timeout: float) -> None:
        """
        Wait for in-flight jobs; cancel whatever is still running after ``timeout``.

        Cancelled jobs are routed like any interrupted attempt (refund, then
        retry or dead letter) when their row is still the one this worker claimed.
        """
        tasks = list(self._tasks.values())
        if not tasks:
            return

        logger.info("Waiting for active jobs", count=len(tasks), timeout_seconds=timeout)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if not pending:
            return

        cancelled = [
            self._claimed[job_id]
            for job_id, task in self._tasks.items()
            if task in pending and job_id in self._claimed
        ]
        logger.warning(
            "Shutdown timeout reached, cancelling active jobs",
            count=len(pending),
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for claimed in cancelled:
            current = await self._store.get(claimed.id)
            if (
                current is not None
                and current.status == JobStatus.PROCESSING
                and current.version == claimed.version
            ):
                await self._processor.handle_interrupted(current)


# =============================================================================
# LAYER 6: PUBLIC API
# =============================================================================

class QueueWorker:
    """
    Background worker that executes queued generation jobs.

    Usage:
        worker = QueueWorker(store, health, gateway, credits, dead_letters,
                             orchestrator=orchestrator)
        task = asyncio.create_task(worker.start())   # runs until stopped
        ...
        worker.stop()
        await task                                   # drains in-flight jobs

    Lifecycle:
        1. start() recovers rows left ``processing`` by an earlier incarnation
        2. The poll loop runs until stop() is called
        3. In-flight jobs get up to the shutdown timeout to finish
    """

    def __init__(
        self,
        store: JobStore,
        health: HealthTracker,
        gateway: GenerationGateway,
        credits: CreditController,
        dead_letters: DeadLetterStore,
        settings: Settings | None = None,
        *,
        config: WorkerConfig | None = None,
        orchestrator=None,
        notifier: JobNotifier | None = None,
        limiter: ConcurrencyLimiter | None = None,
        prompt_builder: PromptBuilder = default_prompt_builder,
        clock: Callable[[], float] = time.time,
        telemetry: TelemetryRecorder | None = None,
        metrics=None,
    ):
        self._config = config or WorkerConfig.from_settings(settings or get_settings())
        self._store = store
        self._health = health
        self._clock = clock
        self._telemetry = telemetry or TelemetryRecorder(clock=clock)
        self._metrics = metrics or get_metrics_collector()
        notifier = notifier or JobNotifier()

        self._limiter = limiter or ConcurrencyLimiter(
            self._config.max_concurrent_jobs, self._config.max_jobs_per_user
        )
        writer = JobWriter(store, self._config)
        self.retry_strategy = RetryStrategy(
            writer,
            dead_letters,
            notifier,
            self._config,
            clock=clock,
            telemetry=self._telemetry,
            metrics=self._metrics,
        )
        self._processor = JobProcessor(
            health,
            gateway,
            CreditGuard(credits, self._config.credit_cost),
            writer,
            self.retry_strategy,
            notifier,
            prompt_builder=prompt_builder,
            clock=clock,
            telemetry=self._telemetry,
            metrics=self._metrics,
        )
        self._loop = PollLoop(
            store,
            health,
            self._limiter,
            self._processor,
            self._config,
            orchestrator=orchestrator,
            clock=clock,
            telemetry=self._telemetry,
            metrics=self._metrics,
        )

    @property
    def config(self) -> WorkerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._loop.is_running

    async def start(self) -> None:
        """Recover orphans, then poll until stop() is called. Blocks."""
        logger.info("Worker starting", worker_id=self._config.worker_id)
        self._telemetry.record(
            "worker_started",
            TelemetryCategory.QUEUE,
            TelemetrySeverity.INFO,
            worker_id=self._config.worker_id,
        )
        await self.recover_orphans()

        try:
            await self._loop.run()
        finally:
            await self._loop.drain(self._config.shutdown_timeout_seconds)
            logger.info("Worker stopped", worker_id=self._config.worker_id)
            self._telemetry.record(
                "worker_stopped",
                TelemetryCategory.QUEUE,
                TelemetrySeverity.INFO,
                worker_id=self._config.worker_id,
            )

    def stop(self) -> None:
        """Signal the poll loop to exit; start() returns once in-flight jobs drain."""
        logger.info("Worker stop requested", worker_id=self._config.worker_id)
        self._loop.stop()

    async def run_once(self) -> float:
        """Run a single poll cycle; returns the delay the loop would wait."""
        return await self._loop.poll_once()

    async def wait_idle(self) -> None:
        """Wait for every dispatched job to finish."""
        await self._loop.drain(self._config.shutdown_timeout_seconds)

    async def recover_orphans(self) -> int:
        """
        Route ``processing`` rows whose lease has lapsed, whoever claimed them.

        Each process gets its own ``worker_id``, so a row with a live lease
        always belongs to a running worker and is left alone.

        STAGE-Q.5: Orphan recovery
        """
        recovered = await self._loop.reap_expired_leases()

        if recovered:
            logger.warning(
                "Interrupted jobs recovered",
                stage=Stage.QUEUE_RECOVERY.value,
                worker_id=self._config.worker_id,
                count=recovered,
            )
        return recovered

    def get_metrics(self) -> dict[str, Any]:
        return {
            "worker_id": self._config.worker_id,
            "running": self._loop.is_running,
            "in_flight": self._loop.in_flight,
            "effective_capacity": self._loop.effective_capacity(),
            "backoff_delay": self._loop.backoff_delay,
            "breaker_state": self._health.get_current_state().value,
            "limiter": self._limiter.get_stats(),
        }
