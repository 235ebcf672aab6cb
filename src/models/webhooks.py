from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class WebhookIngestResponse(BaseModel):
    status: Literal["applied", "duplicate", "queued", "dead_lettered"]
    provider_slug: str
    event_type: str
    provider_event_id: str | None = None
    event_id: str | None = None
    enrollment_id: str | None = None


class WebhookDeadLetterListItem(BaseModel):
    id: str
    event_id: str | None = None
    provider_slug: str
    provider_event_id: str | None = None
    channel: str | None = None
    event_type: str | None = None
    reason: Literal["max_attempts_exceeded", "validation_failed", "apply_failed"]
    replayable: bool
    status: Literal["pending", "replayed", "requeued", "replay_failed"]
    attempts: int = 0
    last_error: str | None = None
    replay_count: int = 0
    last_replay_at: datetime | None = None
    created_at: datetime | None = None


class WebhookDeadLetterDetailResponse(WebhookDeadLetterListItem):
    failure_history: list[dict[str, Any]] = Field(default_factory=list)
    raw_payload: str | None = None
    canonical_event: dict[str, Any] | None = None
    updated_at: datetime | None = None


class WebhookDeadLetterReplayResponse(BaseModel):
    id: str
    status: Literal["replayed", "requeued", "replay_failed"]
    outcome: str
    error: str | None = None


class WebhookDeadLetterBulkReplayRequest(BaseModel):
    ids: list[str] = Field(default_factory=list, max_length=200)


class WebhookDeadLetterBulkReplayItem(BaseModel):
    id: str
    status: Literal["replayed", "requeued", "replay_failed", "not_found", "not_replayable", "cooldown"]
    outcome: str | None = None
    error: str | None = None


class WebhookDeadLetterBulkReplayResponse(BaseModel):
    requested: int
    replayed: int
    requeued: int
    failed: int
    skipped: int
    results: list[WebhookDeadLetterBulkReplayItem]


class OrphanQueueStatsResponse(BaseModel):
    depth: int
    truncated: bool = False
    due_now: int
    leased: int
    oldest_age_seconds: float | None = None
    age_buckets: dict[str, int]
    attempts_histogram: dict[str, int]
    fallback_size: int
    fallback_engaged: bool
    fallback_dropped: int
    worker_id: str | None = None
    last_successful_poll_at: datetime | None = None


class OrphanCycleResponse(BaseModel):
    worker_id: str
    started_at: datetime
    flushed: int
    swept: int
    claimed: int
    resolved: int
    rescheduled: int
    dead_lettered: int
    skipped: bool
    errors: list[str]
