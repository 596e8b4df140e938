"""Realtime job notifications."""

from genguard.infrastructure.notifications.notifier import JobNotifier, RedisJobEventPublisher

__all__ = ["JobNotifier", "RedisJobEventPublisher"]
