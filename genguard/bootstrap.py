"""
Composition Root

Wires the generation resilience components together and owns their lifecycle.
Both entry points (the worker process and the API) build their services here.

Architectural Decision: Explicit construction over module singletons
- Every component receives its collaborators through its constructor
- Tests build a fully wired graph with fake clock, store and generator
- Redis is used only when ``REDIS_ENABLED`` is set (or a client is passed in)
"""

import asyncio
import importlib
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from genguard.core.config.constants import CircuitState
from genguard.core.config.settings import Settings, get_settings
from genguard.core.exceptions.base import ConfigurationError
from genguard.core.exceptions.queue import JobStoreError
from genguard.core.interfaces.ports import (
    CreditController,
    GenerateFn,
    JobStore,
    Notifier,
    PromptBuilder,
    TelemetrySink,
)
from genguard.core.logging.logger import get_logger
from genguard.core.resilience.dead_letter_store import DeadLetterStore
from genguard.core.resilience.generation_gateway import GenerationGateway
from genguard.core.resilience.health_tracker import HealthTracker
from genguard.core.resilience.job_queue import JobQueue
from genguard.core.resilience.queue_worker import QueueWorker, default_prompt_builder
from genguard.core.resilience.recovery_orchestrator import RecoveryOrchestrator
from genguard.infrastructure.credits.credit_ledger import InMemoryCreditLedger
from genguard.infrastructure.monitoring.metrics_collector import get_metrics_collector
from genguard.infrastructure.monitoring.status_board import WorkerStatusBoard
from genguard.infrastructure.monitoring.telemetry import TelemetryRecorder
from genguard.infrastructure.notifications.notifier import JobNotifier, RedisJobEventPublisher
from genguard.infrastructure.redis import RedisConnection
from genguard.infrastructure.stores.memory_job_store import InMemoryJobStore
from genguard.infrastructure.stores.redis_job_store import RedisJobStore

logger = get_logger(__name__)


def load_generator(path: str) -> GenerateFn:
    """
    Import the generation function named by ``module:attribute``.

    Raises:
        ConfigurationError: Malformed path, missing module or attribute
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(
            "Generator must be given as 'module:callable'", details={"value": path}
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError.from_exception(
            e, "Generator module could not be imported", value=path
        ) from e

    generate = getattr(module, attribute, None)
    if generate is None or not callable(generate):
        raise ConfigurationError(
            "Generator attribute is missing or not callable", details={"value": path}
        )
    return generate


# worker status older than this many poll intervals is treated as gone
STATUS_MAX_AGE_POLLS = 3

_STATE_SEVERITY = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


@dataclass
class GenerationServices:
    """
    The wired component graph.

    Usage:
        services = build_services(generate)
        await services.start()
        job_id = await services.queue.enqueue_job("user-1", {"prompt": "..."})
        ...
        await services.stop()

    A process that shares a Redis store but runs no worker (the API) reports
    breaker state, worker metrics and dead letters from what the worker
    processes publish, not from its own idle components.
    """

    settings: Settings
    telemetry: TelemetryRecorder
    health: HealthTracker
    gateway: GenerationGateway
    orchestrator: RecoveryOrchestrator
    dead_letters: DeadLetterStore
    store: JobStore
    credits: CreditController
    queue: JobQueue
    worker: QueueWorker
    redis: RedisConnection | None = None
    status_board: WorkerStatusBoard | None = None
    clock: Callable[[], float] = time.time
    _worker_task: asyncio.Task | None = field(default=None, init=False, repr=False)
    _status_task: asyncio.Task | None = field(default=None, init=False, repr=False)

    @property
    def worker_task(self) -> asyncio.Task | None:
        return self._worker_task

    @property
    def reads_remote_workers(self) -> bool:
        return self.status_board is not None and self._worker_task is None

    async def start(self, *, run_worker: bool = True) -> None:
        """Start background loops; the worker loop only when ``run_worker``."""
        self.dead_letters.start_cleanup()
        self.orchestrator.start_monitoring()
        if run_worker and self._worker_task is None:
            self._worker_task = asyncio.create_task(self.worker.start(), name="genguard-worker")
            if self.status_board is not None:
                self._status_task = asyncio.create_task(self._status_loop(), name="genguard-status")
        logger.info("Generation services started", run_worker=run_worker)

    async def stop(self) -> None:
        """Drain the worker, then stop probing, cleanup and the Redis pool."""
        if self._status_task is not None:
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass
            self._status_task = None

        if self._worker_task is not None:
            self.worker.stop()
            try:
                await self._worker_task
            except Exception as e:
                logger.error(
                    "Worker exited with error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            self._worker_task = None
            if self.status_board is not None:
                try:
                    await self.status_board.remove(self.worker.config.worker_id)
                except JobStoreError as e:
                    logger.warning("Worker status not removed", error=str(e))

        await self.orchestrator.stop()
        await self.dead_letters.stop()
        await self.telemetry.flush()
        if self.redis is not None:
            await self.redis.disconnect()
        logger.info("Generation services stopped")

    async def _status_loop(self) -> None:
        while True:
            try:
                await self.publish_status()
            except Exception as e:
                logger.warning(
                    "Worker status publish failed",
                    worker_id=self.worker.config.worker_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            await asyncio.sleep(self.worker.config.poll_interval_seconds)

    async def publish_status(self) -> None:
        if self.status_board is not None:
            await self.status_board.publish(
                self.worker.config.worker_id, self.get_health_snapshot(), self.clock()
            )

    def get_generation_summary(self) -> dict[str, Any]:
        return {
            "state": self.health.get_current_state().value,
            "healthy": self.health.is_healthy(),
            "budget": self.health.current_budget(),
            "timeout_seconds": self.health.get_timeout(),
        }

    def get_health_snapshot(self) -> dict[str, Any]:
        return {
            "generation": self.get_generation_summary(),
            "breaker": self.health.get_health_metrics(),
            "recovery": self.orchestrator.get_status(),
            "dead_letter": self.dead_letters.get_stats(),
            "worker": self.worker.get_metrics(),
        }

    async def get_worker_snapshots(self) -> dict[str, dict[str, Any]]:
        """Health snapshot per live worker, keyed by worker id."""
        if self.reads_remote_workers:
            return await self.status_board.read(self.clock())
        return {self.worker.config.worker_id: self.get_health_snapshot()}

    async def get_generation_health(self) -> dict[str, Any]:
        """
        Generation health as callers should see it.

        With remote workers the most degraded worker wins (open over half-open
        over closed); with none publishing, the local tracker is reported.
        """
        snapshots = await self.get_worker_snapshots()
        local = self.get_health_snapshot()
        chosen = local
        if self.reads_remote_workers and snapshots:
            chosen = max(
                snapshots.values(),
                key=lambda snapshot: _STATE_SEVERITY.get(
                    CircuitState(snapshot["generation"]["state"]), 0
                ),
            )
        return {
            **chosen["generation"],
            "breaker": chosen["breaker"],
            "recovery": chosen["recovery"],
            "worker": chosen["worker"],
            "workers": {
                worker_id: snapshot["generation"] for worker_id, snapshot in snapshots.items()
            },
        }

    async def refresh_dead_letters(self) -> None:
        """Reload the dead-letter view from the store when workers run elsewhere."""
        if self.reads_remote_workers:
            await self.queue.sync_dead_letters()


def build_services(
    generate: GenerateFn,
    settings: Settings | None = None,
    *,
    store: JobStore | None = None,
    credits: CreditController | None = None,
    telemetry_sink: TelemetrySink | None = None,
    notifier: Notifier | None = None,
    redis_client=None,
    prompt_builder: PromptBuilder = default_prompt_builder,
    clock: Callable[[], float] = time.time,
    rng: random.Random | None = None,
    metrics=None,
) -> GenerationServices:
    """
    Build the component graph.

    With ``redis_client`` the job store and event publisher default to their
    Redis implementations and worker status goes to the shared status board;
    otherwise jobs live in process memory and events are not broadcast.
    """
    settings = settings or get_settings()
    rng = rng or random.Random()
    metrics = metrics or get_metrics_collector()
    telemetry = TelemetryRecorder(telemetry_sink, clock=clock)

    if store is None:
        store = RedisJobStore(redis_client) if redis_client is not None else InMemoryJobStore()
    if notifier is None and redis_client is not None:
        notifier = RedisJobEventPublisher(redis_client)
    status_board = None
    if redis_client is not None:
        status_board = WorkerStatusBoard(
            redis_client,
            max_age_seconds=STATUS_MAX_AGE_POLLS * settings.worker.WORKER_POLL_INTERVAL_SECONDS,
        )
    if credits is None:
        credits = InMemoryCreditLedger(default_balance=settings.credits.CREDITS_DEFAULT_BALANCE)
    job_notifier = JobNotifier(notifier)

    health = HealthTracker(
        settings.health, clock=clock, rng=rng, telemetry=telemetry, metrics=metrics
    )
    gateway = GenerationGateway(generate)
    orchestrator = RecoveryOrchestrator(
        health,
        gateway,
        settings.recovery,
        max_batch_size=settings.health.HEALTH_MAX_RECOVERY_BATCH_SIZE,
        clock=clock,
        rng=rng,
        telemetry=telemetry,
        metrics=metrics,
    )
    dead_letters = DeadLetterStore(
        settings.dead_letter, clock=clock, telemetry=telemetry, metrics=metrics
    )
    queue = JobQueue(
        store,
        dead_letters,
        settings.worker,
        notifier=job_notifier,
        clock=clock,
        telemetry=telemetry,
        metrics=metrics,
    )
    worker = QueueWorker(
        store,
        health,
        gateway,
        credits,
        dead_letters,
        settings,
        orchestrator=orchestrator,
        notifier=job_notifier,
        prompt_builder=prompt_builder,
        clock=clock,
        telemetry=telemetry,
        metrics=metrics,
    )

    logger.info(
        "Generation services built",
        store=type(store).__name__,
        credits=type(credits).__name__,
        worker_id=worker.config.worker_id,
    )
    return GenerationServices(
        settings=settings,
        telemetry=telemetry,
        health=health,
        gateway=gateway,
        orchestrator=orchestrator,
        dead_letters=dead_letters,
        store=store,
        credits=credits,
        queue=queue,
        worker=worker,
        status_board=status_board,
        clock=clock,
    )


async def create_services(
    generate: GenerateFn, settings: Settings | None = None, **overrides: Any
) -> GenerationServices:
    """
    Build services for a real process, connecting to Redis when enabled.

    Raises:
        JobStoreError: Redis is enabled but unreachable
    """
    settings = settings or get_settings()
    connection = None
    if settings.redis.REDIS_ENABLED and "store" not in overrides:
        connection = RedisConnection(settings.redis)
        overrides["redis_client"] = await connection.connect()

    services = build_services(generate, settings, **overrides)
    services.redis = connection
    return services
