"""Notification enqueue contract and an in-memory implementation for tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Sequence

from merchant_api.models.notification import NotificationChannelEnum


@dataclass(slots=True)
class NotificationPayload:
    """Channel-agnostic message body handed to the fan-out pipeline."""

    message: str
    subject: Optional[str] = None
    variables: dict[str, str] = field(default_factory=dict)
    country: Optional[str] = None
    user_id: Optional[str] = None
    client_id: Optional[str] = None
    url: Optional[str] = None
    ticket_id: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "subject": self.subject,
            "variables": dict(self.variables),
            "country": self.country,
            "userId": self.user_id,
            "clientId": self.client_id,
            "url": self.url,
            "ticketId": self.ticket_id,
        }


@dataclass(slots=True)
class NotificationRequest:
    organization_id: str
    type: str
    channels: Sequence[NotificationChannelEnum]
    payload: NotificationPayload
    order_id: Optional[str] = None
    trigger: Optional[str] = None
    dedupe_salt: Optional[str] = None


class NotificationEnqueuer(Protocol):
    """Fire-and-forget hand-off to the notification fan-out pipeline."""

    async def enqueue(self, request: NotificationRequest) -> list[str]:
        ...


@dataclass
class InMemoryNotificationEnqueuer:
    """Test enqueuer capturing requests instead of persisting them."""

    requests: List[NotificationRequest]

    def __init__(self) -> None:
        self.requests = []

    async def enqueue(self, request: NotificationRequest) -> list[str]:
        self.requests.append(request)
        return [f"mem_{len(self.requests)}_{channel.value}" for channel in request.channels]
