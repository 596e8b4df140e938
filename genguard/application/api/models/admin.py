"""
Admin and Health API Models

Response bodies for generation health and dead-letter operator endpoints.
"""

from typing import Any

from pydantic import BaseModel, Field

from genguard.core.config.constants import CircuitState


class GenerationHealthResponse(BaseModel):
    """
    Snapshot of the generation breaker and its recovery machinery.

    ``budget`` is the number of failure tokens left before the breaker trips.
    With several workers the top-level fields come from the most degraded one;
    ``workers`` holds the short summary of each.
    """

    state: CircuitState
    healthy: bool
    budget: int
    timeout_seconds: float
    breaker: dict[str, Any]
    recovery: dict[str, Any]
    worker: dict[str, Any]
    workers: dict[str, dict[str, Any]] = Field(default_factory=dict)


class DeadLetterEntry(BaseModel):
    id: str
    prompt: str
    user_id: str
    session_id: str | None = None
    attempt_count: int
    max_attempts: int
    first_failure_time: float
    last_failure_time: float
    errors: list[dict[str, Any]] = Field(default_factory=list)
    surfaced: bool = False
    is_critical: bool = False


class DeadLetterListResponse(BaseModel):
    stats: dict[str, Any]
    jobs: list[DeadLetterEntry]


class ShouldRetryResponse(BaseModel):
    job_id: str
    should_retry: bool
    attempt_count: int
    quarantined: bool


class ReprocessResponse(BaseModel):
    reprocessed: list[str]
    count: int


class QueueMetricsResponse(BaseModel):
    queue: dict[str, Any]
    worker: dict[str, Any] | None = None
    workers: dict[str, dict[str, Any]] = Field(default_factory=dict)
