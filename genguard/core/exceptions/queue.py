"""
Job Queue Exceptions

All exceptions related to job persistence, admission and credit accounting.
"""

from genguard.core.exceptions.base import GenGuardError


class QueueError(GenGuardError):
    """Base exception for job queue errors."""
    pass


class JobNotFoundError(QueueError):
    """Raised when a job id does not exist in the store."""
    pass


class JobStoreError(QueueError):
    """
    Raised when the persistent job store fails.

    Transient by assumption; finalize writes are retried on this error.
    """
    pass


class InsufficientCreditsError(QueueError):
    """Raised when a credit deduction is refused for a job attempt."""
    pass


class ConcurrencyLimitError(QueueError):
    """
    Raised when the worker's global in-flight cap is reached.

    This is backpressure, not a job failure: the job stays pending.
    """
    pass


class UserConcurrencyLimitError(ConcurrencyLimitError):
    """Raised when one user already has the maximum jobs in flight."""

    def __init__(self, user_id: str, limit: int, job_id: str | None = None, details: dict | None = None):
        super().__init__(
            f"User {user_id} has reached the concurrent job limit ({limit})",
            job_id=job_id,
            details={"user_id": user_id, "limit": limit, **(details or {})},
        )
