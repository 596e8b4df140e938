"""
Concurrency Limiter for In-Flight Generation Jobs.

This module bounds how many jobs one worker process executes at once:
- Global in-flight cap (the caller may pass a lower effective capacity while
  the breaker is recovering)
- Per-user cap so one user cannot starve the others
- Slot reservation before the job is claimed, released on every exit path

STAGE-Q.2: Slot reservation
---------------------------
Q.2.1: Capacity check
Q.2.2: Per-user check
Q.2.3: Reserve
Q.2.4: Release
"""

import asyncio

from genguard.core.config.constants import MAX_CONCURRENT_JOBS, MAX_JOBS_PER_USER
from genguard.core.exceptions.queue import ConcurrencyLimitError, UserConcurrencyLimitError
from genguard.core.logging.logger import get_logger

logger = get_logger(__name__)


class ConcurrencyLimiter:
    """
    Process-local slot accounting for running jobs.

    Usage:
        limiter = ConcurrencyLimiter(max_concurrent=3, max_per_user=2)
        await limiter.acquire(job.user_id, job.id, capacity=2)
        try:
            await run(job)
        finally:
            await limiter.release(job.id)
    """

    def __init__(
        self,
        max_concurrent: int = MAX_CONCURRENT_JOBS,
        max_per_user: int = MAX_JOBS_PER_USER,
    ):
        self.max_concurrent = max_concurrent
        self.max_per_user = max_per_user
        self._user_counts: dict[str, int] = {}
        self._slots: dict[str, str] = {}  # job_id -> user_id
        self._lock = asyncio.Lock()

    @property
    def in_flight(self) -> int:
        return len(self._slots)

    def user_count(self, user_id: str) -> int:
        return self._user_counts.get(user_id, 0)

    def available(self, capacity: int | None = None) -> int:
        limit = self.max_concurrent if capacity is None else min(capacity, self.max_concurrent)
        return max(0, limit - self.in_flight)

    async def acquire(self, user_id: str, job_id: str, capacity: int | None = None) -> None:
        """
        Reserve a slot for ``job_id``.

        Raises:
            ConcurrencyLimitError: No slot left under the effective capacity
            UserConcurrencyLimitError: ``user_id`` already holds its maximum
        """
        limit = self.max_concurrent if capacity is None else min(capacity, self.max_concurrent)
        async with self._lock:
            if job_id in self._slots:
                return

            if len(self._slots) >= limit:
                logger.debug(
                    "Worker at capacity",
                    stage="Q.2.1",
                    job_id=job_id,
                    in_flight=len(self._slots),
                    capacity=limit,
                )
                raise ConcurrencyLimitError(
                    "Worker is at its concurrent job limit",
                    job_id=job_id,
                    details={"current": len(self._slots), "max": limit},
                )

            user_count = self._user_counts.get(user_id, 0)
            if user_count >= self.max_per_user:
                logger.debug(
                    "User concurrent job limit reached",
                    stage="Q.2.2",
                    job_id=job_id,
                    user_id=user_id,
                    user_count=user_count,
                )
                raise UserConcurrencyLimitError(
                    user_id=user_id,
                    limit=self.max_per_user,
                    job_id=job_id,
                    details={"current": user_count},
                )

            self._slots[job_id] = user_id
            self._user_counts[user_id] = user_count + 1
            logger.debug(
                "Job slot reserved",
                stage="Q.2.3",
                job_id=job_id,
                user_id=user_id,
                in_flight=len(self._slots),
            )

    async def release(self, job_id: str) -> None:
        async with self._lock:
            user_id = self._slots.pop(job_id, None)
            if user_id is None:
                return
            remaining = self._user_counts.get(user_id, 1) - 1
            if remaining <= 0:
                self._user_counts.pop(user_id, None)
            else:
                self._user_counts[user_id] = remaining
            logger.debug("Job slot released", stage="Q.2.4", job_id=job_id, in_flight=len(self._slots))

    def get_stats(self) -> dict:
        return {
            "in_flight": self.in_flight,
            "max_concurrent": self.max_concurrent,
            "max_per_user": self.max_per_user,
            "users": dict(self._user_counts),
        }
