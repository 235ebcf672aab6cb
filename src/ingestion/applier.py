from __future__ import annotations

from dataclasses import dataclass

from src.db import supabase
from src.domain.errors import StoreUnavailableError, is_permanent_store_error
from src.domain.events import CanonicalEvent, advances_step, counter_for_event, terminal_status_for_event
from src.ingestion.resolver import Enrollment
from src.observability import incr_metric


class ApplyRejectedError(Exception):
    """The store refused the event permanently; retrying cannot help."""


@dataclass(frozen=True)
class ApplyResult:
    applied: bool
    enrollment_status: str | None
    current_step: int | None


def apply_event(event_id: str, event: CanonicalEvent, enrollment: Enrollment) -> ApplyResult:
    """Apply one recorded event inside the ``apply_campaign_event`` database function.

    The function runs as a single transaction: it flips the event row to ``applied``
    only if it is not applied yet, and only then increments the instance counter,
    applies a terminal transition (never overwriting an existing terminal status),
    and advances ``current_step`` with ``current_step + 1``.
    """
    params = {
        "p_event_id": event_id,
        "p_enrollment_id": enrollment.id,
        "p_counter": counter_for_event(event.event_type),
        "p_terminal_status": terminal_status_for_event(event.event_type),
        "p_advance_step": advances_step(event.event_type),
    }
    try:
        response = supabase.rpc("apply_campaign_event", params).execute()
    except Exception as exc:
        if is_permanent_store_error(exc):
            raise ApplyRejectedError(str(exc)) from exc
        raise StoreUnavailableError(f"apply_campaign_event failed: {exc}") from exc

    data = response.data
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict):
        raise StoreUnavailableError("apply_campaign_event returned no result")

    applied = bool(data.get("applied"))
    incr_metric(
        "webhook.events.applied" if applied else "webhook.events.already_applied",
        provider_slug=event.provider_slug,
        event_type=event.event_type,
    )
    return ApplyResult(
        applied=applied,
        enrollment_status=data.get("enrollment_status"),
        current_step=data.get("current_step"),
    )
