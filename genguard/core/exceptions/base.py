"""
Base Exception Class

This module contains ONLY the base exception class that all other exceptions inherit from.
All specialized exceptions are in their respective themed modules.
"""

from typing import Any


class GenGuardError(Exception):
    """
    Base exception for all generation-queue errors.

    All custom exceptions inherit from this class to enable:
    - Consistent error handling
    - Job ID correlation
    - Structured error logging and API rendering

    Attributes:
        message: Error message
        job_id: Job ID for correlation (if available)
        details: Additional error details (dict)

    Example:
        raise JobNotFoundError(
            "Job not found",
            job_id="5b1d...",
            details={"lookup": "status"}
        )
    """

    def __init__(
        self, message: str, job_id: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.job_id = job_id
        self.details = (details or {}).copy()
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging/API responses.

        Returns:
            Dict with error_type, message, job_id, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "job_id": self.job_id,
            "details": self.details,
        }

    def with_context(self, **context) -> "GenGuardError":
        """Add additional context to the error details (chainable)."""
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        details_str = f", details={self.details}" if self.details else ""
        job_id_str = f", job_id='{self.job_id}'" if self.job_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{job_id_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        job_id: str | None = None,
        **details
    ) -> "GenGuardError":
        """
        Create an error of this class wrapping another exception.

        Example:
            >>> try:
            ...     await redis.get(key)
            ... except redis.ConnectionError as e:
            ...     raise JobStoreError.from_exception(e, job_id=job_id)
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details
        }
        return cls(error_message, job_id=job_id, details=error_details)


class ConfigurationError(GenGuardError):
    """Raised when configuration is invalid or missing."""
    pass
