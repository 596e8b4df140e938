"""
Worker Status Board

Cross-process view of worker health for processes that do not run a worker
themselves (the API in Redis mode).

Layout:
- ``genguard:workers``: hash of ``worker_id`` -> JSON
  ``{"published_at": <epoch>, "snapshot": {...}}``

Each worker publishes its health snapshot every poll interval. Readers drop
entries older than ``max_age_seconds``, so a crashed worker disappears from the
board after a few missed publishes.
"""

from typing import Any

import orjson
from redis.exceptions import RedisError

from genguard.core.config.constants import REDIS_KEY_WORKER_STATUS
from genguard.core.exceptions.queue import JobStoreError
from genguard.core.logging.logger import get_logger

logger = get_logger(__name__)


class WorkerStatusBoard:
    """
    Redis hash of the latest health snapshot per worker.

    Usage:
        board = WorkerStatusBoard(redis_client, max_age_seconds=15.0)
        await board.publish(worker_id, services.get_health_snapshot(), now)
        snapshots = await board.read(now)
    """

    def __init__(self, redis_client, *, max_age_seconds: float, key: str = REDIS_KEY_WORKER_STATUS):
        self._redis = redis_client
        self.key = key
        self.max_age_seconds = max_age_seconds

    async def publish(self, worker_id: str, snapshot: dict[str, Any], now: float) -> None:
        entry = orjson.dumps({"published_at": now, "snapshot": snapshot}, default=str)
        try:
            await self._redis.hset(self.key, worker_id, entry)
        except RedisError as e:
            raise JobStoreError.from_exception(e, operation="publish_worker_status") from e

    async def remove(self, worker_id: str) -> None:
        try:
            await self._redis.hdel(self.key, worker_id)
        except RedisError as e:
            raise JobStoreError.from_exception(e, operation="remove_worker_status") from e

    async def read(self, now: float) -> dict[str, dict[str, Any]]:
        """Fresh snapshots by worker id; stale entries are deleted."""
        try:
            raw_entries = await self._redis.hgetall(self.key)
        except RedisError as e:
            raise JobStoreError.from_exception(e, operation="read_worker_status") from e

        snapshots: dict[str, dict[str, Any]] = {}
        stale: list[str] = []
        for raw_id, raw_entry in raw_entries.items():
            worker_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
            try:
                entry = orjson.loads(raw_entry)
                published_at = float(entry["published_at"])
                snapshot = entry["snapshot"]
            except (orjson.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.warning("Unreadable worker status entry dropped", worker_id=worker_id)
                stale.append(worker_id)
                continue
            if now - published_at > self.max_age_seconds:
                stale.append(worker_id)
                continue
            snapshots[worker_id] = snapshot

        if stale:
            logger.info("Stale worker status entries removed", worker_ids=stale)
            try:
                await self._redis.hdel(self.key, *stale)
            except RedisError as e:
                raise JobStoreError.from_exception(e, operation="read_worker_status") from e
        return snapshots
