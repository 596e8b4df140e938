"""API request/response models."""

from genguard.application.api.models.admin import (
    DeadLetterEntry,
    DeadLetterListResponse,
    GenerationHealthResponse,
    QueueMetricsResponse,
    ReprocessResponse,
    ShouldRetryResponse,
)
from genguard.application.api.models.jobs import (
    EnqueueBatchResponse,
    EnqueueJobRequest,
    EnqueueJobResponse,
    PreGenerationRequest,
)

__all__ = [
    "DeadLetterEntry",
    "DeadLetterListResponse",
    "GenerationHealthResponse",
    "QueueMetricsResponse",
    "ReprocessResponse",
    "ShouldRetryResponse",
    "EnqueueBatchResponse",
    "EnqueueJobRequest",
    "EnqueueJobResponse",
    "PreGenerationRequest",
]
