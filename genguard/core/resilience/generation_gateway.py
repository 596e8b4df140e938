"""
Generation Gateway

Wraps the opaque external generation call:
- bounds it with a timeout and cancels the underlying task when it fires
- converts every outcome into a tagged ``GenerationSuccess`` / ``GenerationFailure``
- classifies exceptions into the five failure kinds

The gateway never records outcomes itself; callers feed the result to the
health tracker so that job validity checks happen first.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any

from genguard.core.config.constants import FailureKind
from genguard.core.exceptions.generation import GenerationError
from genguard.core.interfaces.ports import GenerateFn
from genguard.core.logging.logger import get_logger
from genguard.core.models.outcome import (
    GenerationFailure,
    GenerationOptions,
    GenerationOutcome,
    GenerationSuccess,
)

logger = get_logger(__name__)

_QUOTA_MARKERS = ("quota", "rate limit", "rate_limit", "ratelimit", "too many requests", "billing")


def _status_code_of(exc: BaseException) -> int | None:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_failure(exc: BaseException) -> FailureKind:
    """
    Map an exception raised by the generation call to a failure kind.

    Order: explicit GenerationError kind, timeouts, HTTP status, quota wording.
    """
    if isinstance(exc, GenerationError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return FailureKind.TIMEOUT

    status = _status_code_of(exc)
    if status is not None:
        if status == 429:
            return FailureKind.QUOTA
        if 500 <= status < 600:
            return FailureKind.SERVER_ERROR
        if 400 <= status < 500:
            return FailureKind.CLIENT_ERROR

    text = str(exc).lower()
    if any(marker in text for marker in _QUOTA_MARKERS):
        return FailureKind.QUOTA
    return FailureKind.UNKNOWN


class GenerationGateway:
    """
    Timeout-bounded, cancellable access to the generation function.

    Usage:
        gateway = GenerationGateway(generate)
        outcome = await gateway.attempt(prompt, timeout_seconds=tracker.get_timeout())
        if outcome.ok:
            ...
    """

    def __init__(self, generate: GenerateFn, timer: Callable[[], float] = time.monotonic):
        self._generate = generate
        self._timer = timer

    async def attempt(
        self, prompt: str, *, timeout_seconds: float, is_probe: bool = False
    ) -> GenerationOutcome:
        options = GenerationOptions(is_probe=is_probe, timeout_seconds=timeout_seconds)
        started = self._timer()
        try:
            # wait_for cancels the inner call on timeout so the request is aborted
            result: Any = await asyncio.wait_for(
                self._generate(prompt, options), timeout=timeout_seconds
            )
        except Exception as e:
            latency = self._timer() - started
            kind = classify_failure(e)
            message = str(e) or type(e).__name__
            if kind == FailureKind.TIMEOUT and not str(e):
                message = f"Generation timed out after {timeout_seconds:.1f}s"
            logger.warning(
                "Generation attempt failed",
                failure_kind=kind.value,
                is_probe=is_probe,
                latency_seconds=round(latency, 3),
                error=message,
                error_type=type(e).__name__,
            )
            return GenerationFailure(
                kind=kind,
                message=message,
                latency_seconds=latency,
                error_type=type(e).__name__,
            )

        latency = self._timer() - started
        logger.debug(
            "Generation attempt succeeded",
            is_probe=is_probe,
            latency_seconds=round(latency, 3),
        )
        return GenerationSuccess(result=result, latency_seconds=latency)
