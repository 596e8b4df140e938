"""
Job API Models

Request/response bodies for the job endpoints. ``JobStatusView`` from the core
models is returned as-is for status lookups.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from genguard.core.config.constants import JobStatus


class EnqueueJobRequest(BaseModel):
    """
    Body of ``POST /jobs``.

    ``payload`` is opaque to the queue; the default prompt builder reads
    ``payload["prompt"]``.
    """

    user_id: str = Field(..., min_length=1, max_length=200)
    payload: dict[str, Any] = Field(..., description="Generation parameters")
    priority: int = Field(default=0, description="Higher runs first")
    session_id: str | None = Field(default=None, max_length=200)
    max_retries: int | None = Field(default=None, ge=0, le=10)

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, v: dict[str, Any]) -> dict[str, Any]:
        if not v:
            raise ValueError("payload must not be empty")
        return v

    model_config = {
        "json_schema_extra": {
            "example": {
                "user_id": "user-123",
                "payload": {"prompt": "a lighthouse at dusk, oil painting"},
                "priority": 100,
                "session_id": "session-9",
            }
        }
    }


class PreGenerationRequest(BaseModel):
    """Body of ``POST /jobs/pre-generation``: low-priority background jobs."""

    user_id: str = Field(..., min_length=1, max_length=200)
    session_id: str = Field(..., min_length=1, max_length=200)
    payloads: list[dict[str, Any]] = Field(..., min_length=1, max_length=50)
    reason: str = Field(default="Pool coverage threshold", max_length=200)


class EnqueueJobResponse(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.PENDING


class EnqueueBatchResponse(BaseModel):
    job_ids: list[str]
    count: int
