"""
Generation Exceptions

Errors raised by (or on behalf of) the external image-generation function.
Each subclass pins the FailureKind the health tracker records for it.
"""

from genguard.core.config.constants import FailureKind
from genguard.core.exceptions.base import GenGuardError


class GenerationError(GenGuardError):
    """Base exception for generation failures."""

    kind: FailureKind = FailureKind.UNKNOWN


class GenerationTimeoutError(GenerationError):
    """The generation call exceeded its adaptive timeout and was cancelled."""

    kind = FailureKind.TIMEOUT


class GenerationQuotaError(GenerationError):
    """Upstream rejected the call for quota or rate-limit reasons (HTTP 429)."""

    kind = FailureKind.QUOTA


class GenerationServerError(GenerationError):
    """Upstream returned a 5xx response."""

    kind = FailureKind.SERVER_ERROR


class GenerationClientError(GenerationError):
    """
    Upstream returned a 4xx response other than 429.

    Usually a prompt problem; still subject to the normal retry budget.
    """

    kind = FailureKind.CLIENT_ERROR
