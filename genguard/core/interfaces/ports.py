"""
Collaborator Ports

This module defines the protocols the generation core consumes. Concrete
collaborators (the real image API, a relational job table, a billing service,
a telemetry pipeline, a websocket broadcaster) are injected at the composition
root; in-process implementations live under ``genguard.infrastructure``.

Architectural Decision: Protocol-based abstraction
- Structural subtyping, no inheritance required from collaborators
- Easy mocking with AsyncMock in tests
- The core never imports a concrete store, ledger or sink
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from genguard.core.config.constants import JobStatus, TelemetryCategory, TelemetrySeverity
from genguard.core.models.job import Job
from genguard.core.models.outcome import GenerationOptions


@runtime_checkable
class GenerateFn(Protocol):
    """
    The opaque external generation call.

    May hang, time out, or raise errors of any kind. The gateway bounds it with
    the adaptive timeout and cancels it when the timeout fires.
    """

    async def __call__(self, prompt: str, options: GenerationOptions) -> Any:
        ...


class PromptBuilder(Protocol):
    """Turns a job payload into the prompt handed to the generation call."""

    def __call__(self, payload: dict[str, Any]) -> str:
        ...


@runtime_checkable
class JobStore(Protocol):
    """
    Durable job persistence.

    Implementations:
    - InMemoryJobStore: single-process store guarded by an asyncio.Lock
    - RedisJobStore: shared store, conditional updates run as one Lua script

    ``claim`` and ``update_if_version`` must be atomic at the storage layer: the
    version predicate and the write happen in one step.
    """

    async def create(self, job: Job) -> Job:
        ...

    async def get(self, job_id: str) -> Job | None:
        ...

    async def fetch_pending(self, limit: int, now: float, offset: int = 0) -> list[Job]:
        """
        Pending jobs with ``not_before <= now``, priority desc then created_at asc.

        At most ``limit`` rows are read, starting ``offset`` rows into that order.
        """
        ...

    async def claim(
        self,
        job_id: str,
        expected_version: int,
        worker_id: str,
        lease_expires_at: float,
        now: float,
    ) -> Job | None:
        """Move a pending row to processing iff its version still matches."""
        ...

    async def update_if_version(
        self, job_id: str, expected_version: int, changes: dict[str, Any]
    ) -> Job | None:
        """Apply ``changes`` and bump the version iff the version still matches."""
        ...

    async def list_by_status(self, status: JobStatus, limit: int | None = None) -> list[Job]:
        ...

    async def count_by_status(self) -> dict[str, int]:
        ...


@dataclass(frozen=True)
class CreditResult:
    success: bool
    balance: int | None = None
    reason: str | None = None


@runtime_checkable
class CreditController(Protocol):
    """
    Billing collaborator.

    Both calls are idempotent on ``idempotency_key``: repeating a deduction or a
    refund with the same key is a no-op that reports the original outcome.
    """

    async def deduct(self, user_id: str, amount: int, idempotency_key: str) -> CreditResult:
        ...

    async def refund(
        self, user_id: str, amount: int, reason: str, idempotency_key: str
    ) -> CreditResult:
        ...


@dataclass(frozen=True)
class TelemetryEvent:
    event: str
    category: TelemetryCategory
    severity: TelemetrySeverity
    timestamp: float
    metrics: dict[str, Any] = field(default_factory=dict)


class TelemetrySink(Protocol):
    """Receives telemetry events. May be synchronous or return an awaitable."""

    def record_event(self, event: TelemetryEvent) -> Any:
        ...


@runtime_checkable
class Notifier(Protocol):
    """Best-effort realtime broadcast of job lifecycle transitions."""

    async def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        ...
