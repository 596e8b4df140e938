"""
Unit Tests for Job and Outcome Models
"""

import pytest
from pydantic import ValidationError

from genguard.core.config.constants import (
    MESSAGE_DEAD_LETTER,
    MESSAGE_INSUFFICIENT_CREDITS,
    FailureKind,
    JobStatus,
)
from genguard.core.models.job import Job, JobStatusView
from genguard.core.models.outcome import GenerationFailure, GenerationSuccess
from tests.test_fixtures import JobFactory


@pytest.mark.unit
class TestJob:
    def test_defaults(self):
        job = Job(user_id="user-1")

        assert len(job.id) == 36
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 0
        assert job.max_retries == 3
        assert job.version == 0
        assert job.attempt_count == 1

    def test_user_id_required(self):
        with pytest.raises(ValidationError):
            Job(user_id="")

    def test_negative_retry_count_rejected(self):
        with pytest.raises(ValidationError):
            Job(user_id="user-1", retry_count=-1)

    def test_prompt_property(self):
        assert JobFactory.pending(prompt="a fox").prompt == "a fox"
        assert Job(user_id="user-1", payload={"prompt": 3}).prompt == ""

    def test_dict_round_trip_keeps_status_enum(self):
        job = JobFactory.processing()

        data = job.to_dict()
        restored = Job.from_dict(data)

        assert data["status"] == "processing"
        assert restored == job
        assert restored.status is JobStatus.PROCESSING

    def test_terminal_statuses(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.DEAD_LETTER.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.PROCESSING.is_terminal


@pytest.mark.unit
class TestJobStatusView:
    def test_pending_view(self):
        view = JobStatusView.from_job(JobFactory.pending())
        assert view.message is None
        assert view.result is None

    def test_dead_letter_view(self):
        job = JobFactory.pending(status=JobStatus.DEAD_LETTER, error_message="timeout")
        view = JobStatusView.from_job(job)
        assert view.message == MESSAGE_DEAD_LETTER
        assert view.error_message == "timeout"

    def test_failed_view_defaults_to_credit_message(self):
        view = JobStatusView.from_job(JobFactory.pending(status=JobStatus.FAILED))
        assert view.message == MESSAGE_INSUFFICIENT_CREDITS

    def test_result_hidden_unless_completed(self):
        pending = JobFactory.pending(result="stale-url")
        completed = JobFactory.pending(status=JobStatus.COMPLETED, result="url")

        assert JobStatusView.from_job(pending).result is None
        assert JobStatusView.from_job(completed).result == "url"

    def test_view_is_frozen(self):
        view = JobStatusView.from_job(JobFactory.pending())
        with pytest.raises(ValidationError):
            view.status = JobStatus.COMPLETED


@pytest.mark.unit
class TestOutcomes:
    def test_success_and_failure_flags(self):
        assert GenerationSuccess(result="url", latency_seconds=1.0).ok
        failure = GenerationFailure(kind=FailureKind.QUOTA, message="429")
        assert not failure.ok
        assert failure.latency_seconds == 0.0
