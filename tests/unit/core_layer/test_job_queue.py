"""
Unit Tests for JobQueue

Tests enqueueing, pre-generation priority, status views and operator
reprocessing of dead-lettered jobs.
"""

from unittest.mock import AsyncMock

import pytest

from genguard.core.config.constants import MESSAGE_DEAD_LETTER, JobStatus
from genguard.core.exceptions import JobNotFoundError, JobStoreError
from genguard.core.resilience.job_queue import JobQueue


@pytest.mark.unit
class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_persists_pending_job(self, queue, store, clock, notifier, telemetry_sink):
        job_id = await queue.enqueue_job("user-1", {"prompt": "a red bicycle"}, priority=100, session_id="s-1")

        job = await store.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.priority == 100
        assert job.session_id == "s-1"
        assert job.retry_count == 0
        assert job.max_retries == 3
        assert job.version == 0
        assert job.created_at == clock()
        assert job.not_before == clock()
        assert notifier.types() == ["job_queued"]
        assert "job_enqueued" in telemetry_sink.names()

    @pytest.mark.asyncio
    async def test_enqueue_with_custom_max_retries(self, queue, store):
        job_id = await queue.enqueue_job("user-1", {"prompt": "x"}, max_retries=0)
        assert (await store.get(job_id)).max_retries == 0

    @pytest.mark.asyncio
    async def test_enqueue_store_failure_propagates(self, dead_letters, settings, clock, telemetry, metrics, telemetry_sink):
        store = AsyncMock()
        store.create.side_effect = JobStoreError("redis down")
        queue = JobQueue(store, dead_letters, settings.worker, clock=clock, telemetry=telemetry, metrics=metrics)

        with pytest.raises(JobStoreError):
            await queue.enqueue_job("user-1", {"prompt": "x"})
        assert "job_enqueue_failed" in telemetry_sink.names()

    @pytest.mark.asyncio
    async def test_pre_generation_jobs_are_low_priority_and_tagged(self, queue, store):
        job_ids = await queue.enqueue_pre_generation_jobs(
            "user-1", "session-1", [{"prompt": "a"}, {"prompt": "b"}], reason="pool low"
        )

        assert len(job_ids) == 2
        for job_id in job_ids:
            job = await store.get(job_id)
            assert job.priority == -10
            assert job.session_id == "session-1"
            assert job.payload["is_pre_generation"] is True
            assert job.payload["pre_generation_reason"] == "pool low"


@pytest.mark.unit
class TestStatus:
    @pytest.mark.asyncio
    async def test_status_of_pending_job(self, queue):
        job_id = await queue.enqueue_job("user-1", {"prompt": "x"})

        view = await queue.get_job_status(job_id)

        assert view.job_id == job_id
        assert view.status == JobStatus.PENDING
        assert view.message is None
        assert view.result is None

    @pytest.mark.asyncio
    async def test_unknown_job_raises(self, queue):
        with pytest.raises(JobNotFoundError) as exc_info:
            await queue.get_job_status("missing")
        assert exc_info.value.job_id == "missing"

    @pytest.mark.asyncio
    async def test_dead_letter_status_carries_retry_later_message(self, queue, store):
        job_id = await queue.enqueue_job("user-1", {"prompt": "x"})
        job = await store.get(job_id)
        await store.update_if_version(job_id, job.version, {"status": JobStatus.DEAD_LETTER})

        view = await queue.get_job_status(job_id)

        assert view.status == JobStatus.DEAD_LETTER
        assert view.message == MESSAGE_DEAD_LETTER

    @pytest.mark.asyncio
    async def test_result_only_exposed_when_completed(self, queue, store):
        job_id = await queue.enqueue_job("user-1", {"prompt": "x"})
        job = await store.get(job_id)
        await store.update_if_version(job_id, job.version, {"status": JobStatus.COMPLETED, "result": "url"})

        assert (await queue.get_job_status(job_id)).result == "url"


@pytest.mark.unit
class TestReprocess:
    async def _dead_letter(self, queue, store, dead_letters, prompt="x"):
        job_id = await queue.enqueue_job("user-1", {"prompt": prompt})
        job = await store.get(job_id)
        await store.update_if_version(
            job_id,
            job.version,
            {"status": JobStatus.DEAD_LETTER, "retry_count": 3, "error_message": "timeout"},
        )
        dead_letters.add_failed_job(job_id, prompt, "user-1", None, "timeout", attempt_count=4)
        return job_id

    @pytest.mark.asyncio
    async def test_reprocess_resets_job(self, queue, store, dead_letters, notifier):
        job_id = await self._dead_letter(queue, store, dead_letters)

        reprocessed = await queue.reprocess_dead_letter_jobs()

        assert reprocessed == [job_id]
        job = await store.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 0
        assert job.priority == 10
        assert job.error_message is None
        assert job_id not in dead_letters
        assert notifier.sent[-1][2]["reprocessed"] is True

    @pytest.mark.asyncio
    async def test_reprocess_respects_limit(self, queue, store, dead_letters, clock):
        for i in range(3):
            await self._dead_letter(queue, store, dead_letters, prompt=f"p{i}")
            clock.advance(1)

        assert len(await queue.reprocess_dead_letter_jobs(limit=2)) == 2
        counts = await store.count_by_status()
        assert counts["dead_letter"] == 1
        assert counts["pending"] == 2

    @pytest.mark.asyncio
    async def test_reprocess_nothing(self, queue):
        assert await queue.reprocess_dead_letter_jobs() == []

    @pytest.mark.asyncio
    async def test_sync_dead_letters_mirrors_store(self, queue, store, dead_letters):
        job_id = await queue.enqueue_job("user-1", {"prompt": "x"})
        job = await store.get(job_id)
        await store.update_if_version(
            job_id, job.version, {"status": JobStatus.DEAD_LETTER, "failure_reason": "timeout"}
        )
        dead_letters.add_failed_job("gone", "y", "user-2", None, "quota")

        assert await queue.sync_dead_letters() == 1

        assert job_id in dead_letters
        assert "gone" not in dead_letters

    @pytest.mark.asyncio
    async def test_reprocess_clears_failure_reason(self, queue, store, dead_letters):
        job_id = await self._dead_letter(queue, store, dead_letters)
        job = await store.get(job_id)
        await store.update_if_version(job_id, job.version, {"failure_reason": "timeout"})

        await queue.reprocess_dead_letter_jobs()

        assert (await store.get(job_id)).failure_reason is None

    @pytest.mark.asyncio
    async def test_metrics(self, queue, dead_letters):
        await queue.enqueue_job("user-1", {"prompt": "x"})
        dead_letters.add_failed_job("other", "y", "user-2", None, "quota")

        metrics = await queue.get_metrics()

        assert metrics["jobs_by_status"]["pending"] == 1
        assert metrics["dead_letter"]["total_jobs"] == 1
