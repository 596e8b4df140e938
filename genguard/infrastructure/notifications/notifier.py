"""
Job Event Notification

Best-effort broadcast of job lifecycle transitions to connected clients.

- ``JobNotifier`` wraps any ``Notifier`` port and never lets a broadcast failure
  escape into the queue or worker.
- ``RedisJobEventPublisher`` is a ``Notifier`` that publishes JSON events on a
  Redis Pub/Sub channel, for a websocket gateway to fan out.

Event payload:
    {"type": "job_completed", "user_id": "...", "payload": {"job_id": "...", ...}}
"""

from typing import Any

import orjson

from genguard.core.config.constants import REDIS_CHANNEL_JOB_EVENTS, JobEventType
from genguard.core.interfaces.ports import Notifier
from genguard.core.logging.logger import get_logger
from genguard.core.models.job import Job

logger = get_logger(__name__)


class RedisJobEventPublisher:
    """
    Publishes job events to a Redis Pub/Sub channel.

    Channel Format:
        genguard:events:jobs
    """

    def __init__(self, redis_client, channel: str = REDIS_CHANNEL_JOB_EVENTS):
        self._redis = redis_client
        self.channel = channel

    async def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        message = orjson.dumps({"type": event_type, "user_id": user_id, "payload": payload})
        try:
            await self._redis.publish(self.channel, message)
        except Exception as e:
            logger.error(
                "Failed to publish job event",
                event_type=event_type,
                channel=self.channel,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise


class JobNotifier:
    """
    Fire-and-forget wrapper around a notifier port.

    Usage:
        notifier = JobNotifier(RedisJobEventPublisher(redis_client))
        await notifier.publish(JobEventType.COMPLETED, job)
    """

    def __init__(self, notifier: Notifier | None = None):
        self._notifier = notifier

    async def publish(self, event_type: JobEventType, job: Job, **extra: Any) -> None:
        if self._notifier is None:
            return

        payload = {
            "job_id": job.id,
            "status": job.status.value,
            "retry_count": job.retry_count,
            **extra,
        }
        try:
            await self._notifier.notify(job.user_id, event_type.value, payload)
        except Exception as e:
            logger.warning(
                "Job notification failed",
                job_id=job.id,
                event_type=event_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
