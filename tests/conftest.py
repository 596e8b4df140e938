"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.

Time and randomness are injected everywhere: tests drive a ``FakeClock`` and a
seeded ``random.Random`` instead of sleeping.
"""

import os
import random
import sys
from unittest.mock import MagicMock

import pytest

# Add project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from genguard.core.config.settings import Settings  # noqa: E402
from genguard.core.resilience.dead_letter_store import DeadLetterStore  # noqa: E402
from genguard.core.resilience.generation_gateway import GenerationGateway  # noqa: E402
from genguard.core.resilience.health_tracker import HealthTracker  # noqa: E402
from genguard.core.resilience.job_queue import JobQueue  # noqa: E402
from genguard.core.resilience.queue_worker import QueueWorker, WorkerConfig  # noqa: E402
from genguard.infrastructure.credits.credit_ledger import InMemoryCreditLedger  # noqa: E402
from genguard.infrastructure.monitoring.telemetry import TelemetryRecorder  # noqa: E402
from genguard.infrastructure.notifications.notifier import JobNotifier  # noqa: E402
from genguard.infrastructure.stores.memory_job_store import InMemoryJobStore  # noqa: E402
from tests.test_fixtures import (  # noqa: E402
    FakeClock,
    RecordingNotifier,
    RecordingTelemetrySink,
    ScriptedGenerator,
)

# pytest-asyncio is automatically loaded via pyproject.toml configuration


# ============================================================================
# Core Fixtures
# ============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def settings():
    """Defaults from constants, isolated from any local .env file."""
    return Settings(WORKER_ID="test-worker", _env_file=None)


@pytest.fixture
def metrics():
    """Metrics collector stand-in; prometheus globals stay untouched."""
    return MagicMock()


@pytest.fixture
def telemetry_sink():
    return RecordingTelemetrySink()


@pytest.fixture
def telemetry(telemetry_sink, clock):
    return TelemetryRecorder(telemetry_sink, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def job_notifier(notifier):
    return JobNotifier(notifier)


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def credits():
    return InMemoryCreditLedger(default_balance=100)


@pytest.fixture
def health(settings, clock, rng, telemetry, metrics):
    return HealthTracker(settings.health, clock=clock, rng=rng, telemetry=telemetry, metrics=metrics)


@pytest.fixture
def gateway(generator):
    return GenerationGateway(generator)


@pytest.fixture
def dead_letters(settings, clock, telemetry, metrics):
    return DeadLetterStore(settings.dead_letter, clock=clock, telemetry=telemetry, metrics=metrics)


@pytest.fixture
def queue(store, dead_letters, settings, job_notifier, clock, telemetry, metrics):
    return JobQueue(
        store,
        dead_letters,
        settings.worker,
        notifier=job_notifier,
        clock=clock,
        telemetry=telemetry,
        metrics=metrics,
    )


@pytest.fixture
def worker_config():
    """Fast config: no store-write backoff, short poll interval."""
    return WorkerConfig(
        worker_id="test-worker",
        poll_interval_seconds=0.01,
        shutdown_timeout_seconds=5.0,
        store_write_base_delay=0.0,
        store_write_max_delay=0.0,
    )


@pytest.fixture
def make_worker(store, health, gateway, credits, dead_letters, worker_config, job_notifier, clock, telemetry, metrics):
    """Factory so tests can swap single collaborators."""

    def _make(**overrides) -> QueueWorker:
        components = {
            "store": store,
            "health": health,
            "gateway": gateway,
            "credits": credits,
            "dead_letters": dead_letters,
        }
        for name in list(components):
            if name in overrides:
                components[name] = overrides.pop(name)
        options = {
            "config": worker_config,
            "notifier": job_notifier,
            "clock": clock,
            "telemetry": telemetry,
            "metrics": metrics,
        }
        options.update(overrides)
        return QueueWorker(
            components["store"],
            components["health"],
            components["gateway"],
            components["credits"],
            components["dead_letters"],
            **options,
        )

    return _make


@pytest.fixture
def worker(make_worker):
    return make_worker()
