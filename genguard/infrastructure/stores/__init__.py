"""Job store implementations."""

from genguard.infrastructure.stores.memory_job_store import InMemoryJobStore
from genguard.infrastructure.stores.redis_job_store import RedisJobStore

__all__ = ["InMemoryJobStore", "RedisJobStore"]
