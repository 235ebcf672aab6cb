from __future__ import annotations

from datetime import datetime
from typing import Any, Final, Literal

from pydantic import BaseModel, Field


Channel = Literal["email", "professional_network", "video"]
EventType = Literal[
    "sent",
    "delivered",
    "opened",
    "clicked",
    "replied",
    "bounced",
    "unsubscribed",
    "connection_sent",
    "connection_accepted",
    "profile_visited",
    "video_generated",
    "video_failed",
    "video_viewed",
]
EnrollmentStatus = Literal["enrolled", "active", "paused", "completed", "unsubscribed", "bounced"]

CHANNEL_EVENT_TYPES: Final[dict[str, frozenset[str]]] = {
    "email": frozenset({"sent", "delivered", "opened", "clicked", "replied", "bounced", "unsubscribed"}),
    "professional_network": frozenset(
        {"connection_sent", "connection_accepted", "profile_visited", "sent", "replied"}
    ),
    "video": frozenset({"video_generated", "video_failed", "video_viewed"}),
}

TERMINAL_ENROLLMENT_STATUSES: Final[frozenset[str]] = frozenset({"completed", "unsubscribed", "bounced"})

INSTANCE_COUNTERS: Final[tuple[str, ...]] = (
    "total_sent",
    "total_delivered",
    "total_opened",
    "total_clicked",
    "total_replied",
    "total_bounced",
    "total_unsubscribed",
)

_COUNTER_BY_EVENT: Final[dict[str, str]] = {
    "sent": "total_sent",
    "connection_sent": "total_sent",
    "delivered": "total_delivered",
    "opened": "total_opened",
    "clicked": "total_clicked",
    "replied": "total_replied",
    "bounced": "total_bounced",
    "unsubscribed": "total_unsubscribed",
}

_TERMINAL_STATUS_BY_EVENT: Final[dict[str, str]] = {
    "replied": "completed",
    "bounced": "bounced",
    "unsubscribed": "unsubscribed",
}

_STEP_EVENTS: Final[frozenset[str]] = frozenset({"sent", "connection_sent"})


class CanonicalEvent(BaseModel):
    """Provider-agnostic projection of a delivery or engagement notification."""

    provider_slug: str
    provider_event_id: str | None = None
    channel: Channel
    event_type: EventType
    enrollment_id: str | None = None
    instance_id: str | None = None
    contact_id: str | None = None
    provider_message_id: str | None = None
    step_number: int | None = None
    occurred_at: datetime
    raw_payload: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def deduplicable(self) -> bool:
        return bool(self.provider_event_id)


def counter_for_event(event_type: str) -> str | None:
    return _COUNTER_BY_EVENT.get(event_type)


def terminal_status_for_event(event_type: str) -> str | None:
    return _TERMINAL_STATUS_BY_EVENT.get(event_type)


def advances_step(event_type: str) -> bool:
    return event_type in _STEP_EVENTS


def is_terminal_status(status: str | None) -> bool:
    return status in TERMINAL_ENROLLMENT_STATUSES
