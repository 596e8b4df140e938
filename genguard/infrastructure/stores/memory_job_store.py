"""
In-Memory Job Store

Single-process ``JobStore`` implementation. Every operation runs under one
``asyncio.Lock`` so ``claim`` and ``update_if_version`` are atomic with respect
to other coroutines. Jobs are copied in and out so callers never hold a
reference to the stored row.
"""

import asyncio
from typing import Any

from genguard.core.config.constants import JobStatus
from genguard.core.exceptions.queue import JobStoreError
from genguard.core.models.job import Job


class InMemoryJobStore:
    """
    Dict-backed job store.

    Usage:
        store = InMemoryJobStore()
        await store.create(job)
        claimed = await store.claim(job.id, job.version, "worker-1", lease, now)
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise JobStoreError("Job already exists", job_id=job.id)
            self._jobs[job.id] = job.model_copy(deep=True)
            return job.model_copy(deep=True)

    async def get(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def fetch_pending(self, limit: int, now: float, offset: int = 0) -> list[Job]:
        async with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.PENDING and job.not_before <= now
            ]
            eligible.sort(key=lambda job: (-job.priority, job.created_at))
            return [job.model_copy(deep=True) for job in eligible[offset : offset + max(0, limit)]]

    async def claim(
        self,
        job_id: str,
        expected_version: int,
        worker_id: str,
        lease_expires_at: float,
        now: float,
    ) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.version != expected_version or job.status != JobStatus.PENDING:
                return None
            claimed = job.model_copy(
                update={
                    "status": JobStatus.PROCESSING,
                    "started_at": now,
                    "claimed_by": worker_id,
                    "lease_expires_at": lease_expires_at,
                    "version": job.version + 1,
                },
                deep=True,
            )
            self._jobs[job_id] = claimed
            return claimed.model_copy(deep=True)

    async def update_if_version(
        self, job_id: str, expected_version: int, changes: dict[str, Any]
    ) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.version != expected_version:
                return None
            updated = job.model_copy(
                update={**changes, "version": job.version + 1}, deep=True
            )
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def list_by_status(self, status: JobStatus, limit: int | None = None) -> list[Job]:
        async with self._lock:
            jobs = sorted(
                (job for job in self._jobs.values() if job.status == status),
                key=lambda job: job.created_at,
            )
            if limit is not None:
                jobs = jobs[: max(0, limit)]
            return [job.model_copy(deep=True) for job in jobs]

    async def count_by_status(self) -> dict[str, int]:
        async with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return counts
