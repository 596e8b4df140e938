"""
Unit Tests for DeadLetterStore

Tests upsert semantics, oldest-first eviction at capacity, TTL cleanup,
retry eligibility and the operator views.
"""

import asyncio

import pytest

from genguard.core.config.constants import JobStatus
from genguard.core.config.settings import DeadLetterSettings
from genguard.core.resilience.dead_letter_store import DeadLetterStore
from tests.test_fixtures import JobFactory


@pytest.fixture
def small_store(clock, telemetry, metrics):
    return DeadLetterStore(
        DeadLetterSettings(DLQ_MAX_SIZE=3), clock=clock, telemetry=telemetry, metrics=metrics
    )


def add(store, job_id, attempt_count=1, reason="timeout"):
    return store.add_failed_job(
        job_id, f"prompt for {job_id}", "user-1", "session-1", reason, attempt_count=attempt_count
    )


@pytest.mark.unit
class TestDeadLetterStore:
    def test_add_creates_entry(self, dead_letters, clock):
        entry = dead_letters.add_failed_job(
            "job-1", "a castle", "user-1", None, "5xx", "Bad Gateway", attempt_count=2
        )

        assert "job-1" in dead_letters
        assert len(dead_letters) == 1
        assert entry.attempt_count == 2
        assert entry.max_attempts == 3
        assert entry.first_failure_time == clock()
        assert entry.errors[0].reason == "5xx"
        assert entry.errors[0].detail == "Bad Gateway"

    def test_repeat_failure_upserts(self, dead_letters, clock):
        add(dead_letters, "job-1", attempt_count=1)
        first_seen = clock()
        clock.advance(30)

        entry = add(dead_letters, "job-1", attempt_count=2, reason="quota")

        assert len(dead_letters) == 1
        assert entry.attempt_count == 2
        assert entry.first_failure_time == first_seen
        assert entry.last_failure_time == clock()
        assert [error.reason for error in entry.errors] == ["timeout", "quota"]

    def test_should_retry_absent_job(self, dead_letters):
        assert dead_letters.should_retry_job("unknown")
        assert dead_letters.get_attempt_count("unknown") == 0

    def test_should_retry_until_max_attempts(self, dead_letters):
        add(dead_letters, "job-1", attempt_count=2)
        assert dead_letters.should_retry_job("job-1")

        add(dead_letters, "job-1", attempt_count=3)
        assert not dead_letters.should_retry_job("job-1")

    def test_evicts_single_oldest_at_capacity(self, small_store, clock):
        for job_id in ("job-a", "job-b", "job-c"):
            add(small_store, job_id)
            clock.advance(10)

        add(small_store, "job-d")

        assert len(small_store) == 3
        assert "job-a" not in small_store
        assert all(job_id in small_store for job_id in ("job-b", "job-c", "job-d"))

    def test_eviction_uses_first_failure_time_not_last(self, small_store, clock):
        for job_id in ("job-a", "job-b", "job-c"):
            add(small_store, job_id)
            clock.advance(10)
        # job-a keeps its original first failure time
        add(small_store, "job-a", attempt_count=2)

        add(small_store, "job-d")

        assert "job-a" not in small_store
        assert "job-b" in small_store

    def test_upsert_at_capacity_does_not_evict(self, small_store):
        for job_id in ("job-a", "job-b", "job-c"):
            add(small_store, job_id)

        add(small_store, "job-b", attempt_count=2)

        assert len(small_store) == 3

    def test_cleanup_removes_expired_entries(self, dead_letters, clock, telemetry_sink):
        add(dead_letters, "old")
        clock.advance(1800)
        add(dead_letters, "recent")
        clock.advance(1801)

        assert dead_letters.cleanup_expired() == 1
        assert "old" not in dead_letters
        assert "recent" in dead_letters
        assert "dlq_cleanup" in telemetry_sink.names()

    def test_expiry_counts_from_last_failure(self, dead_letters, clock):
        add(dead_letters, "job-1")
        clock.advance(3000)
        add(dead_letters, "job-1", attempt_count=2)
        clock.advance(3000)

        assert dead_letters.cleanup_expired() == 0

    def test_max_attempts_surfaced_once(self, dead_letters, telemetry_sink, metrics):
        add(dead_letters, "job-1", attempt_count=3)
        add(dead_letters, "job-1", attempt_count=4)

        surfaced = telemetry_sink.of("dlq_job_max_attempts")
        assert len(surfaced) == 1
        assert surfaced[0].metrics["attempt_count"] == 3
        metrics.record_dead_letter_surfaced.assert_called_once()

    def test_stats(self, dead_letters, clock):
        add(dead_letters, "job-1", attempt_count=1)
        clock.advance(100)
        add(dead_letters, "job-2", attempt_count=3)

        stats = dead_letters.get_stats()

        assert stats["total_jobs"] == 2
        assert stats["critical_jobs"] == 1
        assert stats["oldest_job_age"] == 100
        assert stats["avg_attempts"] == 2.0

    def test_stats_empty(self, dead_letters):
        stats = dead_letters.get_stats()
        assert stats["total_jobs"] == 0
        assert stats["oldest_job_age"] is None
        assert stats["avg_attempts"] == 0.0

    def test_jobs_for_ops_ordering(self, dead_letters, clock):
        add(dead_letters, "minor-old", attempt_count=1)
        clock.advance(1)
        add(dead_letters, "critical-3", attempt_count=3)
        clock.advance(1)
        add(dead_letters, "minor-2", attempt_count=2)
        clock.advance(1)
        add(dead_letters, "critical-5", attempt_count=5)

        ordered = [entry.id for entry in dead_letters.get_jobs_for_ops(limit=10)]

        assert ordered == ["critical-5", "critical-3", "minor-2", "minor-old"]
        assert len(dead_letters.get_jobs_for_ops(limit=2)) == 2

    def test_to_dict_includes_critical_flag(self, dead_letters):
        data = add(dead_letters, "job-1", attempt_count=3).to_dict()
        assert data["is_critical"] is True
        assert data["errors"][0]["reason"] == "timeout"

    def test_restore_rebuilds_from_rows(self, dead_letters, clock, telemetry_sink):
        add(dead_letters, "stale-local-entry")
        row = JobFactory.pending(created_at=clock() - 60).model_copy(
            update={
                "status": JobStatus.DEAD_LETTER,
                "retry_count": 3,
                "completed_at": clock() - 10,
                "failure_reason": "quota",
                "error_message": "429 Too Many Requests",
            }
        )
        expired = JobFactory.pending(created_at=clock() - 7200).model_copy(
            update={"status": JobStatus.DEAD_LETTER, "completed_at": clock() - 3601}
        )
        before = len(telemetry_sink.of("dlq_job_max_attempts"))

        assert dead_letters.restore([row, expired]) == 1

        assert "stale-local-entry" not in dead_letters
        assert expired.id not in dead_letters
        entry = dead_letters.get(row.id)
        assert entry.attempt_count == 4
        assert entry.is_critical
        assert entry.surfaced
        assert entry.first_failure_time == clock() - 10
        assert [(e.reason, e.detail) for e in entry.errors] == [("quota", "429 Too Many Requests")]
        assert not dead_letters.should_retry_job(row.id)
        assert len(telemetry_sink.of("dlq_job_max_attempts")) == before

    def test_restore_keeps_newest_at_capacity(self, small_store, clock):
        rows = [
            JobFactory.pending(created_at=clock()).model_copy(
                update={"status": JobStatus.DEAD_LETTER, "completed_at": clock() - age}
            )
            for age in (50, 40, 30, 20)
        ]

        assert small_store.restore(rows) == 3
        assert rows[0].id not in small_store
        assert small_store.get(rows[1].id).errors[0].reason == "unknown"

    def test_remove(self, dead_letters):
        add(dead_letters, "job-1")
        assert dead_letters.remove("job-1")
        assert not dead_letters.remove("job-1")
        assert dead_letters.should_retry_job("job-1")

    @pytest.mark.asyncio
    async def test_cleanup_task_lifecycle(self, dead_letters):
        dead_letters.start_cleanup()
        await asyncio.sleep(0)
        await dead_letters.stop()
        await dead_letters.stop()
