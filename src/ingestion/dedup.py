from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from src.db import supabase
from src.domain.errors import StoreUnavailableError, is_unique_violation
from src.domain.events import CanonicalEvent
from src.observability import incr_metric


@dataclass(frozen=True)
class RecordedEvent:
    event_id: str | None
    duplicate: bool


def _event_row(event: CanonicalEvent, *, received_at: datetime) -> dict:
    return {
        "provider_slug": event.provider_slug,
        "provider_event_id": event.provider_event_id,
        "channel": event.channel,
        "event_type": event.event_type,
        "enrollment_id": event.enrollment_id,
        "instance_id": event.instance_id,
        "contact_id": event.contact_id,
        "provider_message_id": event.provider_message_id,
        "step_number": event.step_number,
        "occurred_at": event.occurred_at.isoformat(),
        "raw_payload": event.raw_payload,
        "metadata": event.metadata,
        "status": "received",
        "received_at": received_at.isoformat(),
    }


def record_event(event: CanonicalEvent, *, received_at: datetime | None = None) -> RecordedEvent:
    """Persist the event as seen; the unique index on provider event ids decides duplicates.

    This is one conflict-detecting insert. There is no prior lookup, so any number of
    simultaneous deliveries of the same provider event produce exactly one row.
    """
    row = _event_row(event, received_at=received_at or datetime.now(timezone.utc))
    try:
        result = supabase.table("campaign_events").insert(row).execute()
    except Exception as exc:
        if event.deduplicable and is_unique_violation(exc):
            incr_metric("webhook.events.duplicate", provider_slug=event.provider_slug)
            return RecordedEvent(event_id=None, duplicate=True)
        raise StoreUnavailableError(f"campaign_events insert failed: {exc}") from exc
    if not result.data:
        raise StoreUnavailableError("campaign_events insert returned no row")
    incr_metric("webhook.events.recorded", provider_slug=event.provider_slug, deduplicable=event.deduplicable)
    return RecordedEvent(event_id=result.data[0]["id"], duplicate=False)


def mark_event_status(event_id: str, status: str, *, error: str | None = None) -> None:
    # Only moves rows that have not been applied; "applied" is owned by apply_campaign_event.
    try:
        supabase.table("campaign_events").update({"status": status, "error": error}).eq("id", event_id).neq(
            "status", "applied"
        ).execute()
    except Exception as exc:
        raise StoreUnavailableError(f"campaign_events status update failed: {exc}") from exc
