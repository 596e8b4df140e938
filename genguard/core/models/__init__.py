"""Domain models: jobs and generation outcomes."""

from genguard.core.models.job import Job, JobStatusView
from genguard.core.models.outcome import (
    GenerationFailure,
    GenerationOptions,
    GenerationOutcome,
    GenerationSuccess,
)

__all__ = [
    "Job",
    "JobStatusView",
    "GenerationOptions",
    "GenerationSuccess",
    "GenerationFailure",
    "GenerationOutcome",
]
