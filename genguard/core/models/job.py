"""
Job Models

A ``Job`` is the durable row the queue persists. The store owns it; every
mutation by a worker goes through a compare-and-swap on ``version``.

``JobStatusView`` is the caller-facing projection returned by ``get_job_status``.
"""

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from genguard.core.config.constants import (
    DEFAULT_MAX_RETRIES,
    MESSAGE_DEAD_LETTER,
    MESSAGE_INSUFFICIENT_CREDITS,
    JobStatus,
)


class Job(BaseModel):
    """
    Represents a queued image-generation job.

    ``not_before`` holds the earliest time the job may be claimed; retries push it
    forward by the backoff delay instead of touching ``priority``.
    ``claimed_by`` / ``lease_expires_at`` identify the worker currently holding a
    ``processing`` row so interrupted rows can be found after a restart.
    """

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Job identifier")
    user_id: str = Field(..., min_length=1, description="Owning user")
    session_id: str | None = Field(default=None, description="Session the job belongs to")
    payload: dict[str, Any] = Field(default_factory=dict, description="Opaque generation parameters")
    status: JobStatus = Field(default=JobStatus.PENDING)
    priority: int = Field(default=0, description="Higher runs first")
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    version: int = Field(default=0, ge=0, description="Optimistic lock stamp")
    created_at: float = Field(default=0.0)
    not_before: float = Field(default=0.0)
    started_at: float | None = None
    completed_at: float | None = None
    claimed_by: str | None = None
    lease_expires_at: float | None = None
    result: Any = None
    error_message: str | None = None
    failure_reason: str | None = Field(default=None, description="Kind of the last failed attempt")

    @property
    def attempt_count(self) -> int:
        """Generation attempts made so far, counting the one in progress."""
        return self.retry_count + 1

    @property
    def prompt(self) -> str:
        value = self.payload.get("prompt")
        return value if isinstance(value, str) else ""

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls.model_validate(data)


class JobStatusView(BaseModel):
    """What a polling caller sees for a job."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    status: JobStatus
    retry_count: int
    max_retries: int
    result: Any = None
    error_message: str | None = None
    message: str | None = None
    created_at: float
    completed_at: float | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusView":
        message = None
        if job.status == JobStatus.DEAD_LETTER:
            message = MESSAGE_DEAD_LETTER
        elif job.status == JobStatus.FAILED:
            message = job.error_message or MESSAGE_INSUFFICIENT_CREDITS
        return cls(
            job_id=job.id,
            status=job.status,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            result=job.result if job.status == JobStatus.COMPLETED else None,
            error_message=job.error_message,
            message=message,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )
