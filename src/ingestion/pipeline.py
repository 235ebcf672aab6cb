from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from src.domain.errors import StoreUnavailableError
from src.domain.events import CanonicalEvent
from src.ingestion import dead_letters, orphan_queue
from src.ingestion.applier import ApplyRejectedError, apply_event
from src.ingestion.dedup import mark_event_status, record_event
from src.ingestion.resolver import resolve_enrollment
from src.observability import incr_metric, log_event


IngestOutcome = Literal["applied", "duplicate", "queued", "dead_lettered"]
ProcessOutcome = Literal["applied", "already_applied", "unresolved", "unavailable", "rejected"]


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome
    event_id: str | None = None
    enrollment_id: str | None = None
    enrollment_status: str | None = None
    durable: bool = True


@dataclass(frozen=True)
class ProcessResult:
    outcome: ProcessOutcome
    enrollment_id: str | None = None
    enrollment_status: str | None = None
    error: str | None = None


def process_recorded(
    event: CanonicalEvent,
    event_id: str,
    *,
    request_id: str | None = None,
    source: str = "webhook",
) -> ProcessResult:
    """Resolve and apply an event that already has a ``campaign_events`` row.

    Shared by the webhook path, the orphan retry worker and dead-letter replay;
    callers decide what to do with unresolved or unavailable outcomes.
    """
    try:
        enrollment = resolve_enrollment(event)
    except StoreUnavailableError as exc:
        return ProcessResult(outcome="unavailable", error=str(exc))
    if enrollment is None:
        return ProcessResult(outcome="unresolved", error="enrollment_not_found")

    try:
        result = apply_event(event_id, event, enrollment)
    except StoreUnavailableError as exc:
        return ProcessResult(outcome="unavailable", enrollment_id=enrollment.id, error=str(exc))
    except ApplyRejectedError as exc:
        return ProcessResult(outcome="rejected", enrollment_id=enrollment.id, error=str(exc))

    log_event(
        "campaign_event_applied" if result.applied else "campaign_event_already_applied",
        request_id=request_id,
        source=source,
        provider_slug=event.provider_slug,
        event_id=event_id,
        event_type=event.event_type,
        enrollment_id=enrollment.id,
        enrollment_status=result.enrollment_status,
        current_step=result.current_step,
    )
    return ProcessResult(
        outcome="applied" if result.applied else "already_applied",
        enrollment_id=enrollment.id,
        enrollment_status=result.enrollment_status,
    )


def ingest(event: CanonicalEvent, *, request_id: str | None = None) -> IngestResult:
    """Deduplicate, resolve and apply an authenticated, normalized event."""
    try:
        recorded = record_event(event)
    except StoreUnavailableError as exc:
        durable = orphan_queue.enqueue_or_buffer(event, event_id=None, error=str(exc), request_id=request_id)
        return IngestResult(outcome="queued", durable=durable)

    if recorded.duplicate:
        log_event(
            "webhook_duplicate_ignored",
            request_id=request_id,
            provider_slug=event.provider_slug,
            provider_event_id=event.provider_event_id,
            event_type=event.event_type,
        )
        return IngestResult(outcome="duplicate")

    event_id = recorded.event_id
    processed = process_recorded(event, event_id, request_id=request_id)
    if processed.outcome == "applied":
        return IngestResult(
            outcome="applied",
            event_id=event_id,
            enrollment_id=processed.enrollment_id,
            enrollment_status=processed.enrollment_status,
        )
    if processed.outcome == "already_applied":
        return IngestResult(outcome="duplicate", event_id=event_id, enrollment_id=processed.enrollment_id)
    if processed.outcome == "rejected":
        try:
            dead_letters.record_dead_letter(
                reason="apply_failed",
                error=processed.error or "apply_rejected",
                raw_payload=event.raw_payload,
                provider_slug=event.provider_slug,
                event_id=event_id,
                event=event,
                request_id=request_id,
            )
            mark_event_status(event_id, "dead_letter", error=processed.error)
            return IngestResult(outcome="dead_lettered", event_id=event_id, enrollment_id=processed.enrollment_id)
        except StoreUnavailableError as exc:
            # The retry worker dead-letters it once the store is back.
            processed = ProcessResult(outcome="unavailable", error=f"{processed.error}; {exc}")

    if processed.outcome == "unavailable":
        log_event(
            "campaign_event_apply_deferred",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug=event.provider_slug,
            event_id=event_id,
            error=processed.error,
        )
    incr_metric("webhook.events.orphaned", provider_slug=event.provider_slug, reason=processed.outcome)
    durable = orphan_queue.enqueue_or_buffer(
        event,
        event_id=event_id,
        error=processed.error or "enrollment_not_found",
        request_id=request_id,
    )
    return IngestResult(outcome="queued", event_id=event_id, durable=durable)
