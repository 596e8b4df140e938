"""
Resilience Module - Generation Resilience Components

ARCHITECTURE:
=============
HealthTracker
    - Token-bucket + sliding-window circuit breaker over the generation call
    - Adaptive timeout from P95 latency (RollingStats)
    - Per-job deadlines guarding against late results

RecoveryOrchestrator
    - Budget-capped recovery probes while the breaker is open / half-open
    - Recovery batch size ramp (1, 2, 4, 5)

DeadLetterStore
    - Bounded quarantine of jobs that exhausted their retries

JobQueue / QueueWorker
    - Durable queue with optimistic-lock claims
    - Breaker-aware polling, concurrency caps, exponential retry backoff
"""

from .concurrency_limiter import ConcurrencyLimiter
from .dead_letter_store import DeadLetterError, DeadLetterJob, DeadLetterStore
from .generation_gateway import GenerationGateway, classify_failure
from .health_tracker import HealthTracker
from .job_queue import JobQueue
from .queue_worker import QueueWorker, WorkerConfig, default_prompt_builder
from .recovery_orchestrator import RecoveryOrchestrator
from .rolling_stats import RollingStats

__all__ = [
    "ConcurrencyLimiter",
    "DeadLetterError",
    "DeadLetterJob",
    "DeadLetterStore",
    "GenerationGateway",
    "classify_failure",
    "HealthTracker",
    "JobQueue",
    "QueueWorker",
    "WorkerConfig",
    "default_prompt_builder",
    "RecoveryOrchestrator",
    "RollingStats",
]
