from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.db import supabase
from src.domain.errors import StoreUnavailableError
from src.domain.events import CanonicalEvent


_ENROLLMENT_COLUMNS = "id, instance_id, contact_id, status, current_step"


@dataclass(frozen=True)
class Enrollment:
    id: str
    instance_id: str
    contact_id: str | None
    status: str
    current_step: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Enrollment":
        return cls(
            id=str(row["id"]),
            instance_id=str(row["instance_id"]),
            contact_id=row.get("contact_id"),
            status=row.get("status") or "enrolled",
            current_step=int(row.get("current_step") or 0),
        )


def _correlation_column(channel: str) -> str:
    if channel == "professional_network":
        return "provider_action_id"
    return "provider_message_id"


def _first(query) -> dict[str, Any] | None:
    try:
        rows = query.limit(1).execute().data or []
    except Exception as exc:
        raise StoreUnavailableError(f"campaign_enrollments lookup failed: {exc}") from exc
    return rows[0] if rows else None


def resolve_enrollment(event: CanonicalEvent) -> Enrollment | None:
    """Find the enrollment an event targets, or ``None`` when it does not exist yet.

    Lookup order: explicit enrollment id, then (instance, contact), then the
    provider correlation id recorded when the outreach step was sent.
    """
    if event.enrollment_id:
        row = _first(supabase.table("campaign_enrollments").select(_ENROLLMENT_COLUMNS).eq("id", event.enrollment_id))
        if row:
            return Enrollment.from_row(row)
    if event.instance_id and event.contact_id:
        row = _first(
            supabase.table("campaign_enrollments")
            .select(_ENROLLMENT_COLUMNS)
            .eq("instance_id", event.instance_id)
            .eq("contact_id", event.contact_id)
        )
        if row:
            return Enrollment.from_row(row)
    if event.provider_message_id:
        row = _first(
            supabase.table("campaign_enrollments")
            .select(_ENROLLMENT_COLUMNS)
            .eq(_correlation_column(event.channel), event.provider_message_id)
        )
        if row:
            return Enrollment.from_row(row)
    return None
