"""Notification service package."""

from .backend import (
    InMemoryNotificationEnqueuer,
    NotificationEnqueuer,
    NotificationPayload,
    NotificationRequest,
)
from .outbox import NotificationOutbox, make_dedupe_key

__all__ = [
    "InMemoryNotificationEnqueuer",
    "NotificationEnqueuer",
    "NotificationOutbox",
    "NotificationPayload",
    "NotificationRequest",
    "make_dedupe_key",
]
