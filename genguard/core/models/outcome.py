"""
Generation Outcome Types

The generation call is modelled as a tagged result instead of exceptions:
``GenerationGateway.attempt()`` returns exactly one of ``GenerationSuccess`` or
``GenerationFailure`` and callers branch on the type.
"""

from dataclasses import dataclass
from typing import Any

from genguard.core.config.constants import FailureKind


@dataclass(frozen=True)
class GenerationOptions:
    """Options handed to the external generation function."""

    is_probe: bool = False
    timeout_seconds: float = 60.0


@dataclass(frozen=True)
class GenerationSuccess:
    result: Any
    latency_seconds: float

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class GenerationFailure:
    """
    A failed generation call.

    Attributes:
        kind: Classified failure kind (timeout, quota, 5xx, 4xx, unknown)
        message: Human-readable error text
        latency_seconds: Time spent before the failure surfaced
        error_type: Class name of the underlying exception, if any
    """

    kind: FailureKind
    message: str
    latency_seconds: float = 0.0
    error_type: str | None = None

    @property
    def ok(self) -> bool:
        return False


GenerationOutcome = GenerationSuccess | GenerationFailure
