"""
Redis Job Store

Shared ``JobStore`` for several worker processes.

Layout:
- ``genguard:job:{id}``: hash with ``data`` (JSON row), ``version`` and, for
  pending rows, ``order`` (the claim-order score)
- ``genguard:jobs:delayed``: sorted set of pending ids scored by ``not_before``
- ``genguard:jobs:pending``: sorted set of due pending ids scored by ``order``
  (priority descending, then ``created_at`` ascending)
- ``genguard:jobs:status:{status}``: set of ids per status

Every pending row enters the delayed set. ``fetch_pending`` first promotes due
ids into the ready set, then reads one bounded range of it, so a poll touches
``limit`` rows no matter how large the backlog is.

Conditional writes compare the stored ``version`` and replace the row inside one
Lua script, so two workers racing on the same version cannot both succeed.
"""

from typing import Any

import orjson
from redis.exceptions import RedisError

from genguard.core.config.constants import (
    REDIS_KEY_DELAYED,
    REDIS_KEY_JOB,
    REDIS_KEY_PENDING,
    REDIS_KEY_STATUS,
    JobStatus,
)
from genguard.core.exceptions.queue import JobStoreError
from genguard.core.logging.logger import get_logger
from genguard.core.models.job import Job

logger = get_logger(__name__)

# created_at stays far below this, so priority always dominates the order score
_PRIORITY_SCALE = 1e10
_PROMOTE_BATCH = 500

# KEYS: job hash, ready zset, delayed zset, old status set, new status set
# ARGV: expected version, new row JSON, job id, new status, not_before, order
_COMPARE_AND_SWAP = """
local current = redis.call('HGET', KEYS[1], 'version')
if not current or tonumber(current) ~= tonumber(ARGV[1]) then
  return 0
end
redis.call('HSET', KEYS[1], 'data', ARGV[2], 'version', tonumber(ARGV[1]) + 1)
redis.call('SREM', KEYS[4], ARGV[3])
redis.call('SADD', KEYS[5], ARGV[3])
redis.call('ZREM', KEYS[2], ARGV[3])
if ARGV[4] == 'pending' then
  redis.call('HSET', KEYS[1], 'order', ARGV[6])
  redis.call('ZADD', KEYS[3], ARGV[5], ARGV[3])
else
  redis.call('HDEL', KEYS[1], 'order')
  redis.call('ZREM', KEYS[3], ARGV[3])
end
return 1
"""

# KEYS: delayed zset, ready zset
# ARGV: now, batch size, job key prefix
_PROMOTE_DUE = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, id in ipairs(ids) do
  local order = redis.call('HGET', ARGV[3] .. id, 'order')
  if order then
    redis.call('ZADD', KEYS[2], order, id)
  end
  redis.call('ZREM', KEYS[1], id)
end
return #ids
"""


def order_score(job: Job) -> float:
    """Ascending score that sorts by priority desc, then created_at asc."""
    return -job.priority * _PRIORITY_SCALE + job.created_at


class RedisJobStore:
    """
    Redis-backed job store.

    Usage:
        store = RedisJobStore(redis_client)
        await store.create(job)
    """

    def __init__(self, redis_client):
        self._redis = redis_client
        self._cas = redis_client.register_script(_COMPARE_AND_SWAP)
        self._promote = redis_client.register_script(_PROMOTE_DUE)

    @staticmethod
    def _job_key(job_id: str) -> str:
        return f"{REDIS_KEY_JOB}:{job_id}"

    @staticmethod
    def _status_key(status: JobStatus) -> str:
        return f"{REDIS_KEY_STATUS}:{status.value}"

    @staticmethod
    def _encode(job: Job) -> bytes:
        return orjson.dumps(job.to_dict())

    @staticmethod
    def _decode(raw: str | bytes | None) -> Job | None:
        if raw is None:
            return None
        return Job.from_dict(orjson.loads(raw))

    async def create(self, job: Job) -> Job:
        fields: dict[str, Any] = {"data": self._encode(job), "version": job.version}
        if job.status == JobStatus.PENDING:
            fields["order"] = order_score(job)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job.id), mapping=fields)
                pipe.sadd(self._status_key(job.status), job.id)
                if job.status == JobStatus.PENDING:
                    pipe.zadd(REDIS_KEY_DELAYED, {job.id: job.not_before})
                await pipe.execute()
        except RedisError as e:
            raise JobStoreError.from_exception(e, job_id=job.id, operation="create") from e
        return job

    async def get(self, job_id: str) -> Job | None:
        try:
            raw = await self._redis.hget(self._job_key(job_id), "data")
        except RedisError as e:
            raise JobStoreError.from_exception(e, job_id=job_id, operation="get") from e
        return self._decode(raw)

    async def _get_many(self, job_ids: list[str]) -> list[Job]:
        if not job_ids:
            return []
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                for job_id in job_ids:
                    pipe.hget(self._job_key(job_id), "data")
                rows = await pipe.execute()
        except RedisError as e:
            raise JobStoreError.from_exception(e, operation="get_many") from e
        return [job for job in (self._decode(raw) for raw in rows) if job is not None]

    async def _promote_due(self, now: float) -> None:
        while True:
            moved = await self._promote(
                keys=[REDIS_KEY_DELAYED, REDIS_KEY_PENDING],
                args=[now, _PROMOTE_BATCH, f"{REDIS_KEY_JOB}:"],
            )
            if int(moved) < _PROMOTE_BATCH:
                return

    async def fetch_pending(self, limit: int, now: float, offset: int = 0) -> list[Job]:
        if limit <= 0:
            return []
        start = max(0, offset)
        try:
            await self._promote_due(now)
            job_ids = await self._redis.zrange(REDIS_KEY_PENDING, start, start + limit - 1)
        except RedisError as e:
            raise JobStoreError.from_exception(e, operation="fetch_pending") from e

        return [
            job
            for job in await self._get_many(list(job_ids))
            if job.status == JobStatus.PENDING and job.not_before <= now
        ]

    async def _swap(self, current: Job, updated: Job) -> Job | None:
        try:
            swapped = await self._cas(
                keys=[
                    self._job_key(current.id),
                    REDIS_KEY_PENDING,
                    REDIS_KEY_DELAYED,
                    self._status_key(current.status),
                    self._status_key(updated.status),
                ],
                args=[
                    current.version,
                    self._encode(updated),
                    current.id,
                    updated.status.value,
                    updated.not_before,
                    order_score(updated),
                ],
            )
        except RedisError as e:
            raise JobStoreError.from_exception(e, job_id=current.id, operation="compare_and_swap") from e
        return updated if int(swapped) == 1 else None

    async def claim(
        self,
        job_id: str,
        expected_version: int,
        worker_id: str,
        lease_expires_at: float,
        now: float,
    ) -> Job | None:
        current = await self.get(job_id)
        if current is None or current.version != expected_version or current.status != JobStatus.PENDING:
            return None
        updated = current.model_copy(
            update={
                "status": JobStatus.PROCESSING,
                "started_at": now,
                "claimed_by": worker_id,
                "lease_expires_at": lease_expires_at,
                "version": current.version + 1,
            },
            deep=True,
        )
        return await self._swap(current, updated)

    async def update_if_version(
        self, job_id: str, expected_version: int, changes: dict[str, Any]
    ) -> Job | None:
        current = await self.get(job_id)
        if current is None or current.version != expected_version:
            return None
        updated = current.model_copy(update={**changes, "version": current.version + 1}, deep=True)
        return await self._swap(current, updated)

    async def list_by_status(self, status: JobStatus, limit: int | None = None) -> list[Job]:
        try:
            job_ids = await self._redis.smembers(self._status_key(status))
        except RedisError as e:
            raise JobStoreError.from_exception(e, operation="list_by_status") from e

        jobs = [job for job in await self._get_many(sorted(job_ids)) if job.status == status]
        jobs.sort(key=lambda job: job.created_at)
        return jobs if limit is None else jobs[: max(0, limit)]

    async def count_by_status(self) -> dict[str, int]:
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                for status in JobStatus:
                    pipe.scard(self._status_key(status))
                counts = await pipe.execute()
        except RedisError as e:
            raise JobStoreError.from_exception(e, operation="count_by_status") from e
        return {status.value: int(count) for status, count in zip(JobStatus, counts)}
