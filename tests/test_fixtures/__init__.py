"""
Test Fixtures Package

Shared test doubles and factories for consistent testing across all modules.
"""

from .doubles import (
    HANG,
    FakeClock,
    FixedRandom,
    RecordingNotifier,
    RecordingTelemetrySink,
    ScriptedGenerator,
)
from .job_factory import JobFactory

__all__ = [
    "HANG",
    "FakeClock",
    "FixedRandom",
    "RecordingNotifier",
    "RecordingTelemetrySink",
    "ScriptedGenerator",
    "JobFactory",
]
