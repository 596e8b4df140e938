"""
Core Interfaces Module

Protocols for the collaborators the generation core depends on.
"""

from genguard.core.interfaces.ports import (
    CreditController,
    CreditResult,
    GenerateFn,
    JobStore,
    Notifier,
    PromptBuilder,
    TelemetryEvent,
    TelemetrySink,
)

__all__ = [
    "GenerateFn",
    "PromptBuilder",
    "JobStore",
    "CreditController",
    "CreditResult",
    "TelemetryEvent",
    "TelemetrySink",
    "Notifier",
]
