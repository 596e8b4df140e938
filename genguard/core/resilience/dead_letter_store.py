"""
Dead-Letter Store

Bounded, TTL-evicting quarantine for jobs that exhausted their retries.

STAGE-DLQ: Dead-letter quarantine
----------------------------------
- Upsert on repeat failures of the same job id (error history is appended)
- Oldest ``first_failure_time`` entry evicted when a new job arrives at capacity
- Entries expire ``DLQ_JOB_EXPIRY_SECONDS`` after their last failure
- Jobs reaching ``DLQ_MAX_ATTEMPTS`` are surfaced to operators once per crossing

The store is an operator-facing view; the job row in the persistent store stays
the source of truth for job status.
"""

import asyncio
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from typing import Any

from genguard.core.config.constants import Stage, TelemetryCategory, TelemetrySeverity
from genguard.core.config.settings import DeadLetterSettings, get_settings
from genguard.core.logging.logger import get_logger
from genguard.core.models.job import Job
from genguard.infrastructure.monitoring.metrics_collector import get_metrics_collector
from genguard.infrastructure.monitoring.telemetry import TelemetryRecorder

logger = get_logger(__name__)


@dataclass
class DeadLetterError:
    timestamp: float
    reason: str
    detail: str | None = None


@dataclass
class DeadLetterJob:
    id: str
    prompt: str
    user_id: str
    session_id: str | None
    attempt_count: int
    max_attempts: int
    first_failure_time: float
    last_failure_time: float
    errors: list[DeadLetterError] = field(default_factory=list)
    surfaced: bool = False

    @property
    def is_critical(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["is_critical"] = self.is_critical
        return data


class DeadLetterStore:
    """
    In-process registry of permanently failing jobs.

    Usage:
        store = DeadLetterStore(settings.dead_letter)
        store.add_failed_job(job.id, prompt, job.user_id, job.session_id, "timeout", attempt_count=4)
        if not store.should_retry_job(job.id):
            ...
    """

    def __init__(
        self,
        settings: DeadLetterSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
        telemetry: TelemetryRecorder | None = None,
        metrics=None,
    ):
        self.settings = settings or get_settings().dead_letter
        self._clock = clock
        self._telemetry = telemetry or TelemetryRecorder(clock=clock)
        self._metrics = metrics or get_metrics_collector()
        self._jobs: dict[str, DeadLetterJob] = {}
        self._lock = threading.Lock()
        self._cleanup_task: asyncio.Task | None = None

    @property
    def max_attempts(self) -> int:
        return self.settings.DLQ_MAX_ATTEMPTS

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def add_failed_job(
        self,
        job_id: str,
        prompt: str,
        user_id: str,
        session_id: str | None,
        reason: str,
        detail: str | None = None,
        attempt_count: int = 1,
    ) -> DeadLetterJob:
        """
        Insert or update a quarantined job.

        STAGE-DLQ.1: Quarantine
        """
        evicted: DeadLetterJob | None = None
        surface = False
        with self._lock:
            now = self._clock()
            error = DeadLetterError(timestamp=now, reason=reason, detail=detail)
            entry = self._jobs.get(job_id)

            if entry is not None:
                entry.attempt_count = attempt_count
                entry.last_failure_time = now
                entry.errors.append(error)
            else:
                if len(self._jobs) >= self.settings.DLQ_MAX_SIZE:
                    evicted = min(self._jobs.values(), key=lambda job: job.first_failure_time)
                    del self._jobs[evicted.id]
                entry = DeadLetterJob(
                    id=job_id,
                    prompt=prompt,
                    user_id=user_id,
                    session_id=session_id,
                    attempt_count=attempt_count,
                    max_attempts=self.settings.DLQ_MAX_ATTEMPTS,
                    first_failure_time=now,
                    last_failure_time=now,
                    errors=[error],
                )
                self._jobs[job_id] = entry

            if entry.is_critical and not entry.surfaced:
                entry.surfaced = True
                surface = True
            elif not entry.is_critical:
                entry.surfaced = False

            size = len(self._jobs)

        if evicted is not None:
            logger.warning(
                "Dead-letter store full, evicted oldest job",
                stage=Stage.DEAD_LETTER.value,
                evicted_job_id=evicted.id,
                max_size=self.settings.DLQ_MAX_SIZE,
            )

        logger.info(
            "Job added to dead-letter store",
            stage=Stage.DEAD_LETTER.value,
            job_id=job_id,
            attempt_count=attempt_count,
            reason=reason,
            dlq_size=size,
        )
        self._metrics.set_dead_letter_size(size)
        self._telemetry.record(
            "dlq_job_added",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.ERROR if entry.is_critical else TelemetrySeverity.WARNING,
            job_id=job_id,
            user_id=user_id,
            attempt_count=attempt_count,
            failure_reason=reason,
            dlq_size=size,
        )
        if surface:
            self._surface_to_ops(entry)
        return entry

    def _surface_to_ops(self, entry: DeadLetterJob) -> None:
        now = self._clock()
        logger.error(
            "Job exceeded max attempts, surfaced to operators",
            stage=Stage.DEAD_LETTER.value,
            job_id=entry.id,
            user_id=entry.user_id,
            session_id=entry.session_id,
            attempt_count=entry.attempt_count,
        )
        self._metrics.record_dead_letter_surfaced()
        self._telemetry.record(
            "dlq_job_max_attempts",
            TelemetryCategory.SYSTEM,
            TelemetrySeverity.CRITICAL,
            job_id=entry.id,
            user_id=entry.user_id,
            session_id=entry.session_id or "none",
            attempt_count=entry.attempt_count,
            first_failure_age_seconds=now - entry.first_failure_time,
            error_reasons=",".join(error.reason for error in entry.errors),
        )

    def should_retry_job(self, job_id: str) -> bool:
        """Absent jobs may be retried; present ones until they reach max attempts."""
        with self._lock:
            entry = self._jobs.get(job_id)
            return entry is None or entry.attempt_count < self.settings.DLQ_MAX_ATTEMPTS

    def get_attempt_count(self, job_id: str) -> int:
        with self._lock:
            entry = self._jobs.get(job_id)
            return entry.attempt_count if entry else 0

    def get(self, job_id: str) -> DeadLetterJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def remove(self, job_id: str) -> bool:
        with self._lock:
            removed = self._jobs.pop(job_id, None) is not None
            size = len(self._jobs)
        if removed:
            self._metrics.set_dead_letter_size(size)
        return removed

    def cleanup_expired(self) -> int:
        """Remove entries whose last failure is older than the expiry."""
        with self._lock:
            now = self._clock()
            expired = [
                job_id
                for job_id, entry in self._jobs.items()
                if now - entry.last_failure_time > self.settings.DLQ_JOB_EXPIRY_SECONDS
            ]
            for job_id in expired:
                del self._jobs[job_id]
            remaining = len(self._jobs)

        if expired:
            logger.info(
                "Expired dead-letter jobs removed",
                stage=Stage.DEAD_LETTER.value,
                expired_count=len(expired),
                remaining_count=remaining,
            )
            self._metrics.set_dead_letter_size(remaining)
            self._telemetry.record(
                "dlq_cleanup",
                TelemetryCategory.SYSTEM,
                TelemetrySeverity.INFO,
                expired_count=len(expired),
                remaining_count=remaining,
            )
        return len(expired)

    def restore(self, jobs: Iterable[Job]) -> int:
        """
        Replace the contents with entries rebuilt from ``dead_letter`` rows.

        Used by processes that do not run the worker: the store rows are the
        shared record, this process never saw the failures itself. Rows past
        the expiry are skipped and only the newest ``DLQ_MAX_SIZE`` are kept.
        Rebuilt entries carry one error (the last one) and are not surfaced
        again.
        """
        now = self._clock()
        entries: dict[str, DeadLetterJob] = {}
        for job in jobs:
            failed_at = job.completed_at if job.completed_at is not None else job.created_at
            if now - failed_at > self.settings.DLQ_JOB_EXPIRY_SECONDS:
                continue
            entry = DeadLetterJob(
                id=job.id,
                prompt=job.prompt,
                user_id=job.user_id,
                session_id=job.session_id,
                attempt_count=job.attempt_count,
                max_attempts=self.settings.DLQ_MAX_ATTEMPTS,
                first_failure_time=failed_at,
                last_failure_time=failed_at,
                errors=[
                    DeadLetterError(
                        timestamp=failed_at,
                        reason=job.failure_reason or "unknown",
                        detail=job.error_message,
                    )
                ],
            )
            entry.surfaced = entry.is_critical
            entries[job.id] = entry

        newest = sorted(entries.values(), key=lambda e: e.first_failure_time, reverse=True)
        newest = newest[: self.settings.DLQ_MAX_SIZE]
        with self._lock:
            self._jobs = {entry.id: entry for entry in newest}
            size = len(self._jobs)

        self._metrics.set_dead_letter_size(size)
        logger.debug("Dead-letter store restored", stage=Stage.DEAD_LETTER.value, dlq_size=size)
        return size

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            entries = list(self._jobs.values())

        total = len(entries)
        return {
            "total_jobs": total,
            "critical_jobs": sum(1 for entry in entries if entry.is_critical),
            "oldest_job_age": max((now - e.first_failure_time for e in entries), default=None),
            "avg_attempts": sum(e.attempt_count for e in entries) / total if total else 0.0,
        }

    def get_jobs_for_ops(self, limit: int = 10) -> list[DeadLetterJob]:
        """Critical jobs first, then by attempt count (desc), then oldest first."""
        with self._lock:
            entries = list(self._jobs.values())
        entries.sort(
            key=lambda e: (not e.is_critical, -e.attempt_count, e.first_failure_time)
        )
        return entries[: max(0, limit)]

    # =========================================================================
    # Periodic cleanup
    # =========================================================================

    def start_cleanup(self) -> None:
        """Run ``cleanup_expired`` every ``DLQ_CLEANUP_INTERVAL_SECONDS`` on the running loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.DLQ_CLEANUP_INTERVAL_SECONDS)
            try:
                self.cleanup_expired()
            except Exception as e:
                logger.error(
                    "Dead-letter cleanup failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def stop(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
