"""
Unit Tests for GenerationGateway

Tests the timeout-bounded call, cancellation of the inner task and the
exception -> FailureKind classification.
"""

import asyncio

import pytest

from genguard.core.config.constants import FailureKind
from genguard.core.exceptions import (
    GenerationClientError,
    GenerationQuotaError,
    GenerationServerError,
    GenerationTimeoutError,
)
from genguard.core.models.outcome import GenerationFailure, GenerationSuccess
from genguard.core.resilience.generation_gateway import GenerationGateway, classify_failure
from tests.test_fixtures import HANG, ScriptedGenerator


class HttpError(Exception):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class _Response:
    def __init__(self, status_code: int):
        self.status_code = status_code


class ResponseError(Exception):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.response = _Response(status_code)


@pytest.mark.unit
class TestClassifyFailure:
    @pytest.mark.parametrize(
        "exc,kind",
        [
            (GenerationTimeoutError("slow"), FailureKind.TIMEOUT),
            (GenerationQuotaError("quota"), FailureKind.QUOTA),
            (GenerationServerError("bad gateway"), FailureKind.SERVER_ERROR),
            (GenerationClientError("bad prompt"), FailureKind.CLIENT_ERROR),
            (asyncio.TimeoutError(), FailureKind.TIMEOUT),
            (TimeoutError("read timed out"), FailureKind.TIMEOUT),
            (HttpError("Too Many Requests", 429), FailureKind.QUOTA),
            (HttpError("Service Unavailable", 503), FailureKind.SERVER_ERROR),
            (HttpError("Bad Request", 400), FailureKind.CLIENT_ERROR),
            (ResponseError("upstream", 502), FailureKind.SERVER_ERROR),
            (RuntimeError("Monthly quota exceeded"), FailureKind.QUOTA),
            (RuntimeError("rate limit hit"), FailureKind.QUOTA),
            (RuntimeError("something odd"), FailureKind.UNKNOWN),
        ],
    )
    def test_classification(self, exc, kind):
        assert classify_failure(exc) == kind

    def test_explicit_kind_wins_over_message(self):
        assert classify_failure(GenerationServerError("quota")) == FailureKind.SERVER_ERROR


@pytest.mark.unit
class TestGenerationGateway:
    @pytest.mark.asyncio
    async def test_success_returns_tagged_result(self):
        generator = ScriptedGenerator("https://img/1.png")
        gateway = GenerationGateway(generator)

        outcome = await gateway.attempt("a red fox", timeout_seconds=1.0)

        assert isinstance(outcome, GenerationSuccess)
        assert outcome.ok
        assert outcome.result == "https://img/1.png"
        assert outcome.latency_seconds >= 0

    @pytest.mark.asyncio
    async def test_options_passed_to_generator(self):
        generator = ScriptedGenerator()
        gateway = GenerationGateway(generator)

        await gateway.attempt("probe prompt", timeout_seconds=7.5, is_probe=True)

        prompt, options = generator.calls[0]
        assert prompt == "probe prompt"
        assert options.is_probe is True
        assert options.timeout_seconds == 7.5

    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self):
        gateway = GenerationGateway(ScriptedGenerator(HttpError("Service Unavailable", 503)))

        outcome = await gateway.attempt("prompt", timeout_seconds=1.0)

        assert isinstance(outcome, GenerationFailure)
        assert not outcome.ok
        assert outcome.kind == FailureKind.SERVER_ERROR
        assert outcome.message == "Service Unavailable"
        assert outcome.error_type == "HttpError"

    @pytest.mark.asyncio
    async def test_timeout_cancels_the_call(self):
        cancelled = asyncio.Event()

        async def generate(prompt, options):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        gateway = GenerationGateway(generate)

        outcome = await gateway.attempt("prompt", timeout_seconds=0.05)

        assert outcome.kind == FailureKind.TIMEOUT
        assert "timed out" in outcome.message
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_hanging_generator_times_out(self):
        gateway = GenerationGateway(ScriptedGenerator(HANG))
        outcome = await gateway.attempt("prompt", timeout_seconds=0.05)
        assert outcome.kind == FailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_latency_measured_with_injected_timer(self):
        ticks = iter([100.0, 142.5])
        gateway = GenerationGateway(ScriptedGenerator(), timer=lambda: next(ticks))

        outcome = await gateway.attempt("prompt", timeout_seconds=60.0)

        assert outcome.latency_seconds == 42.5
