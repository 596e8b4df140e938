"""
Configuration Module

Centralized, type-safe configuration for the generation resilience service.

Components:
-----------
- **settings.py**: Pydantic-based configuration with environment variable loading
- **constants.py**: Enums (CircuitState, JobStatus, FailureKind, ...) and default thresholds

Usage:
------
```python
from genguard.core.config import get_settings
from genguard.core.config.constants import CircuitState, JobStatus

settings = get_settings()
settings.health.HEALTH_OPEN_TOKENS   # 5
settings.worker.WORKER_MAX_CONCURRENT_JOBS
```

Testing:
-------
Construct ``Settings(...)`` directly with overrides, or set environment variables
and call ``reload_settings()``.
"""

from genguard.core.config.constants import (
    CircuitState,
    FailureKind,
    JobEventType,
    JobStatus,
    Stage,
    TelemetryCategory,
    TelemetrySeverity,
)
from genguard.core.config.settings import Settings, get_settings, reload_settings

__all__ = [
    "get_settings",
    "reload_settings",
    "Settings",
    "Stage",
    "CircuitState",
    "FailureKind",
    "JobStatus",
    "JobEventType",
    "TelemetryCategory",
    "TelemetrySeverity",
]
