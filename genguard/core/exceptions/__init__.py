"""
Exception Module

Structured exception hierarchy for the generation resilience service.

Module Structure:
-----------------
- **base.py**: GenGuardError base class + ConfigurationError
- **generation.py**: Failures of the external generation call, each tied to a FailureKind
- **queue.py**: Job store, admission and credit exceptions

Usage:
------
```python
from genguard.core.exceptions import GenerationTimeoutError, JobNotFoundError
```
"""

from genguard.core.exceptions.base import ConfigurationError, GenGuardError
from genguard.core.exceptions.generation import (
    GenerationClientError,
    GenerationError,
    GenerationQuotaError,
    GenerationServerError,
    GenerationTimeoutError,
)
from genguard.core.exceptions.queue import (
    ConcurrencyLimitError,
    InsufficientCreditsError,
    JobNotFoundError,
    JobStoreError,
    QueueError,
    UserConcurrencyLimitError,
)

__all__ = [
    # Base
    "GenGuardError",
    "ConfigurationError",
    # Generation
    "GenerationError",
    "GenerationTimeoutError",
    "GenerationQuotaError",
    "GenerationServerError",
    "GenerationClientError",
    # Queue
    "QueueError",
    "JobNotFoundError",
    "JobStoreError",
    "InsufficientCreditsError",
    "ConcurrencyLimitError",
    "UserConcurrencyLimitError",
]
