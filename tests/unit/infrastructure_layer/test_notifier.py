"""
Unit Tests for Job Event Notification
"""

from unittest.mock import AsyncMock, MagicMock

import orjson
import pytest

from genguard.core.config.constants import JobEventType
from genguard.infrastructure.notifications.notifier import JobNotifier, RedisJobEventPublisher
from tests.test_fixtures import JobFactory, RecordingNotifier


@pytest.mark.unit
class TestJobNotifier:
    @pytest.mark.asyncio
    async def test_publish_builds_payload(self):
        recorder = RecordingNotifier()
        job = JobFactory.pending(user_id="user-9")

        await JobNotifier(recorder).publish(JobEventType.COMPLETED, job, result="url")

        user_id, event_type, payload = recorder.sent[0]
        assert user_id == "user-9"
        assert event_type == "job_completed"
        assert payload == {"job_id": job.id, "status": "pending", "retry_count": 0, "result": "url"}

    @pytest.mark.asyncio
    async def test_without_notifier_is_noop(self):
        await JobNotifier().publish(JobEventType.QUEUED, JobFactory.pending())

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        failing = MagicMock()
        failing.notify = AsyncMock(side_effect=ConnectionError("socket closed"))

        await JobNotifier(failing).publish(JobEventType.FAILED, JobFactory.pending())

        failing.notify.assert_awaited_once()


@pytest.mark.unit
class TestRedisJobEventPublisher:
    @pytest.mark.asyncio
    async def test_publishes_json_event(self):
        client = MagicMock()
        client.publish = AsyncMock(return_value=1)
        publisher = RedisJobEventPublisher(client)

        await publisher.notify("user-1", "job_queued", {"job_id": "job-1"})

        channel, message = client.publish.await_args.args
        assert channel == "genguard:events:jobs"
        assert orjson.loads(message) == {
            "type": "job_queued",
            "user_id": "user-1",
            "payload": {"job_id": "job-1"},
        }

    @pytest.mark.asyncio
    async def test_publish_errors_propagate(self):
        client = MagicMock()
        client.publish = AsyncMock(side_effect=ConnectionError("redis down"))

        with pytest.raises(ConnectionError):
            await RedisJobEventPublisher(client, channel="custom").notify("user-1", "job_failed", {})
