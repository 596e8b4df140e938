"""
Job Queue

Caller-facing side of the durable generation queue: enqueue, status lookup and
operator reprocessing of dead-lettered jobs. Execution lives in the worker.

STAGE-Q.1: Enqueue
------------------
Rows are written to the injected ``JobStore`` as ``pending``; the store is the
only source of truth for job status.
"""

import time
from collections.abc import Callable, Iterable
from typing import Any

from genguard.core.config.constants import (
    PRE_GENERATION_PRIORITY,
    REPROCESS_PRIORITY,
    JobEventType,
    JobStatus,
    Stage,
    TelemetryCategory,
    TelemetrySeverity,
)
from genguard.core.config.settings import WorkerSettings, get_settings
from genguard.core.exceptions.queue import JobNotFoundError
from genguard.core.interfaces.ports import JobStore
from genguard.core.logging.logger import get_logger
from genguard.core.models.job import Job, JobStatusView
from genguard.core.resilience.dead_letter_store import DeadLetterStore
from genguard.infrastructure.monitoring.metrics_collector import get_metrics_collector
from genguard.infrastructure.monitoring.telemetry import TelemetryRecorder
from genguard.infrastructure.notifications.notifier import JobNotifier

logger = get_logger(__name__)


class JobQueue:
    """
    Enqueue and inspect generation jobs.

    Usage:
        queue = JobQueue(store, dead_letters)
        job_id = await queue.enqueue_job("user-1", {"prompt": "..."}, priority=100)
        view = await queue.get_job_status(job_id)
    """

    def __init__(
        self,
        store: JobStore,
        dead_letters: DeadLetterStore,
        settings: WorkerSettings | None = None,
        *,
        notifier: JobNotifier | None = None,
        clock: Callable[[], float] = time.time,
        telemetry: TelemetryRecorder | None = None,
        metrics=None,
    ):
        self.settings = settings or get_settings().worker
        self._store = store
        self._dead_letters = dead_letters
        self._notifier = notifier or JobNotifier()
        self._clock = clock
        self._telemetry = telemetry or TelemetryRecorder(clock=clock)
        self._metrics = metrics or get_metrics_collector()

    async def enqueue_job(
        self,
        user_id: str,
        payload: dict[str, Any],
        priority: int = 0,
        *,
        session_id: str | None = None,
        max_retries: int | None = None,
    ) -> str:
        """
        Persist a new pending job.

        STAGE-Q.1: Enqueue

        Returns:
            The new job id
        """
        now = self._clock()
        job = Job(
            user_id=user_id,
            session_id=session_id,
            payload=payload,
            priority=priority,
            max_retries=self.settings.WORKER_DEFAULT_MAX_RETRIES if max_retries is None else max_retries,
            created_at=now,
            not_before=now,
        )
        try:
            await self._store.create(job)
        except Exception as e:
            logger.error(
                "Failed to enqueue job",
                stage=Stage.QUEUE_ENQUEUE.value,
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._telemetry.record(
                "job_enqueue_failed",
                TelemetryCategory.QUEUE,
                TelemetrySeverity.ERROR,
                user_id=user_id,
                error=str(e),
            )
            raise

        logger.info(
            "Job enqueued",
            stage=Stage.QUEUE_ENQUEUE.value,
            job_id=job.id,
            user_id=user_id,
            priority=priority,
        )
        self._metrics.record_job_transition(JobStatus.PENDING.value)
        self._telemetry.record(
            "job_enqueued",
            TelemetryCategory.QUEUE,
            TelemetrySeverity.INFO,
            job_id=job.id,
            user_id=user_id,
            priority=priority,
        )
        await self._notifier.publish(JobEventType.QUEUED, job)
        return job.id

    async def enqueue_pre_generation_jobs(
        self,
        user_id: str,
        session_id: str,
        payloads: Iterable[dict[str, Any]],
        reason: str = "Pool coverage threshold",
    ) -> list[str]:
        """Queue background jobs below every organic request."""
        job_ids = []
        for payload in payloads:
            tagged = {**payload, "is_pre_generation": True, "pre_generation_reason": reason}
            job_ids.append(
                await self.enqueue_job(
                    user_id, tagged, PRE_GENERATION_PRIORITY, session_id=session_id
                )
            )

        self._telemetry.record(
            "pre_generation_jobs_enqueued",
            TelemetryCategory.QUEUE,
            TelemetrySeverity.INFO,
            count=len(job_ids),
            user_id=user_id,
            session_id=session_id,
            reason=reason,
        )
        return job_ids

    async def get_job(self, job_id: str) -> Job:
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError("Job not found", job_id=job_id)
        return job

    async def get_job_status(self, job_id: str) -> JobStatusView:
        """
        Caller-facing status.

        Dead-lettered jobs carry a "please retry later" message instead of
        looking pending forever.

        Raises:
            JobNotFoundError: Unknown job id
        """
        return JobStatusView.from_job(await self.get_job(job_id))

    async def reprocess_dead_letter_jobs(self, limit: int = 10) -> list[str]:
        """
        Operator action: give dead-lettered jobs a fresh retry budget.

        Each row goes back to ``pending`` with ``retry_count`` 0 and priority 10,
        and leaves the dead-letter store. Rows changed concurrently are skipped.
        """
        reprocessed = []
        now = self._clock()
        for job in await self._store.list_by_status(JobStatus.DEAD_LETTER, limit):
            updated = await self._store.update_if_version(
                job.id,
                job.version,
                {
                    "status": JobStatus.PENDING,
                    "retry_count": 0,
                    "priority": REPROCESS_PRIORITY,
                    "error_message": None,
                    "failure_reason": None,
                    "not_before": now,
                    "claimed_by": None,
                    "lease_expires_at": None,
                    "completed_at": None,
                },
            )
            if updated is None:
                continue

            self._dead_letters.remove(job.id)
            reprocessed.append(job.id)
            logger.info(
                "Dead-letter job reprocessed",
                stage=Stage.QUEUE_ENQUEUE.value,
                job_id=job.id,
                user_id=job.user_id,
            )
            self._metrics.record_job_transition(JobStatus.PENDING.value)
            self._telemetry.record(
                "dead_letter_reprocessed",
                TelemetryCategory.QUEUE,
                TelemetrySeverity.INFO,
                job_id=job.id,
                user_id=job.user_id,
            )
            await self._notifier.publish(JobEventType.QUEUED, updated, reprocessed=True)
        return reprocessed

    async def sync_dead_letters(self) -> int:
        """Rebuild the local dead-letter view from the store's ``dead_letter`` rows."""
        return self._dead_letters.restore(await self._store.list_by_status(JobStatus.DEAD_LETTER))

    async def get_metrics(self) -> dict[str, Any]:
        return {
            "jobs_by_status": await self._store.count_by_status(),
            "dead_letter": self._dead_letters.get_stats(),
        }
