"""
System Constants and Enumerations

This module defines system-wide constants and enumerations used across
the generation resilience service.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for magic numbers
- Type-safe enums for state management
- Settings defaults reference these values so tests and config agree
"""

from enum import Enum

# ============================================================================
# Stage Identifiers (for structured logging)
# ============================================================================


class Stage(str, Enum):
    """
    Processing stages attached to log lines as ``stage=...``.

    Format: {PREFIX}_{DESCRIPTIVE_NAME}
    - CB: circuit breaker / health tracking
    - RP: recovery probes
    - DLQ: dead-letter quarantine
    - Q: job queue and worker
    """

    HEALTH_ADMISSION = "CB.1_ADMISSION_CHECK"
    HEALTH_RECORD = "CB.2_RECORD_OUTCOME"
    HEALTH_TRANSITION = "CB.3_STATE_TRANSITION"
    PROBE_SCHEDULE = "RP.1_PROBE_SCHEDULE"
    PROBE_EXECUTE = "RP.2_PROBE_EXECUTE"
    DEAD_LETTER = "DLQ.1_QUARANTINE"
    QUEUE_ENQUEUE = "Q.1_ENQUEUE"
    QUEUE_CLAIM = "Q.2_CLAIM"
    QUEUE_EXECUTE = "Q.3_EXECUTE"
    QUEUE_FINALIZE = "Q.4_FINALIZE"
    QUEUE_RECOVERY = "Q.5_ORPHAN_RECOVERY"


# ============================================================================
# Circuit Breaker States
# ============================================================================


class CircuitState(str, Enum):
    """
    Circuit breaker states.

    CLOSED: Normal operation, all generations admitted
    OPEN: Failing fast, nothing admitted
    HALF_OPEN: Testing recovery, a sampled fraction admitted
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


# ============================================================================
# Failure Kinds
# ============================================================================


class FailureKind(str, Enum):
    """
    Classification of a failed generation call.

    Every kind counts identically towards the breaker; the distinction is
    carried through to telemetry and metrics labels.
    """

    TIMEOUT = "timeout"
    QUOTA = "quota"
    SERVER_ERROR = "5xx"
    CLIENT_ERROR = "4xx"
    UNKNOWN = "unknown"


# ============================================================================
# Job Status
# ============================================================================


class JobStatus(str, Enum):
    """
    Lifecycle status of a generation job row.

    Terminal: COMPLETED, DEAD_LETTER, FAILED (rejected before any attempt).
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.DEAD_LETTER, JobStatus.FAILED)


# ============================================================================
# Telemetry
# ============================================================================


class TelemetryCategory(str, Enum):
    SYSTEM = "system"
    GENERATION = "generation"
    QUEUE = "queue"


class TelemetrySeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class JobEventType(str, Enum):
    """Realtime job lifecycle events broadcast to connected clients."""

    QUEUED = "job_queued"
    COMPLETED = "job_completed"
    FAILED = "job_failed"
    RETRY_SCHEDULED = "job_retry_scheduled"


# ============================================================================
# Health Tracker Defaults
# ============================================================================

OPEN_TOKENS = 5  # Failure tokens that trip the breaker
REFILL_SECONDS = 60.0  # One token decays per interval
OPEN_DURATION_SECONDS = 300.0  # Breaker stays open for 5 minutes
WINDOW_SIZE = 25  # Sliding window of recent outcomes
WINDOW_MIN_SAMPLES = 10  # Samples before the failure-rate rule applies
WINDOW_FAILURE_RATE = 0.5
RECOVERY_SUCCESS_COUNT = 3  # Consecutive half-open successes that close the breaker
HALF_OPEN_SAMPLE_RATE = 0.10
MIN_TIMEOUT_SECONDS = 45.0
MAX_TIMEOUT_SECONDS = 90.0
TIMEOUT_BUFFER_SECONDS = 10.0
JOB_DEADLINE_BUFFER_SECONDS = 30.0
STATS_WINDOW_SECONDS = 3600.0
DEFAULT_LATENCY_SECONDS = 50.0  # Reported percentile when no samples exist
MAX_RECOVERY_BATCH_SIZE = 5

# ============================================================================
# Recovery Probe Defaults
# ============================================================================

PROBE_INTERVAL_SECONDS = 120.0
PROBE_JITTER = 0.2  # +/- 20%
HOURLY_PROBE_BUDGET = 1.00  # USD
PROBE_COST_ESTIMATE = 0.04  # USD per probe
PROBE_TIMEOUT_SECONDS = 30.0
BUDGET_RETRY_SECONDS = 3600.0
MONITOR_INTERVAL_SECONDS = 10.0
BUDGET_WINDOW_SECONDS = 3600.0

# Minimal, content-neutral prompts used for probes only
PROBE_PROMPTS: tuple[str, ...] = (
    "abstract geometric shape, no text, minimal detail",
    "simple abstract geometric pattern, no text, minimal detail",
    "basic geometric composition, no text, minimal detail",
    "minimal abstract shapes, no text, simple colors",
    "elementary geometric forms, no text, minimal complexity",
)

# ============================================================================
# Dead Letter Defaults
# ============================================================================

DLQ_MAX_SIZE = 1000
DLQ_MAX_ATTEMPTS = 3
DLQ_JOB_EXPIRY_SECONDS = 3600.0
DLQ_CLEANUP_INTERVAL_SECONDS = 300.0

# ============================================================================
# Worker Defaults
# ============================================================================

POLL_INTERVAL_SECONDS = 5.0
MAX_CONCURRENT_JOBS = 3
MAX_JOBS_PER_USER = 2
POLL_BATCH_SIZE = 5
INITIAL_BACKOFF_SECONDS = 1.0
BACKOFF_MULTIPLIER = 2.0
MAX_BACKOFF_SECONDS = 32.0
DEFAULT_MAX_RETRIES = 3
SHUTDOWN_TIMEOUT_SECONDS = 120.0
PRE_GENERATION_PRIORITY = -10
REPROCESS_PRIORITY = 10
CREDIT_COST_PER_JOB = 1

# Store write retries on the finalize path (tenacity)
STORE_WRITE_ATTEMPTS = 3
STORE_WRITE_BASE_DELAY = 0.2
STORE_WRITE_MAX_DELAY = 2.0

# ============================================================================
# Redis Keys
# ============================================================================

REDIS_KEY_JOB = "genguard:job"
REDIS_KEY_PENDING = "genguard:jobs:pending"
REDIS_KEY_DELAYED = "genguard:jobs:delayed"
REDIS_KEY_STATUS = "genguard:jobs:status"
REDIS_CHANNEL_JOB_EVENTS = "genguard:events:jobs"
REDIS_KEY_WORKER_STATUS = "genguard:workers"

# ============================================================================
# User-facing Messages
# ============================================================================

MESSAGE_DEAD_LETTER = "Generation unavailable, please retry later"
MESSAGE_INSUFFICIENT_CREDITS = "Insufficient credits"
