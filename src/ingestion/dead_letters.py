from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from src.config import settings
from src.db import supabase
from src.domain.errors import StoreUnavailableError, is_unique_violation
from src.domain.events import CanonicalEvent
from src.observability import incr_metric, log_event, raise_alarm


DeadLetterReason = Literal["max_attempts_exceeded", "validation_failed", "apply_failed"]
DeadLetterStatus = Literal["pending", "replayed", "requeued", "replay_failed"]

DEAD_LETTER_STATUSES: frozenset[str] = frozenset({"pending", "replayed", "requeued", "replay_failed"})
DEAD_LETTER_REASONS: frozenset[str] = frozenset({"max_attempts_exceeded", "validation_failed", "apply_failed"})

_LIST_COLUMNS = (
    "id, event_id, provider_slug, provider_event_id, channel, event_type, reason, replayable, status, "
    "attempts, last_error, replay_count, last_replay_at, created_at"
)


class DeadLetterNotFoundError(Exception):
    pass


class DeadLetterNotReplayableError(Exception):
    pass


class DeadLetterReplayCooldownError(Exception):
    def __init__(self, retry_after_seconds: int):
        super().__init__(f"Dead letter was replayed recently; retry in {retry_after_seconds}s")
        self.retry_after_seconds = retry_after_seconds


@dataclass(frozen=True)
class ReplayResult:
    dead_letter_id: str
    status: DeadLetterStatus
    outcome: str
    error: str | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(ts: Any) -> datetime | None:
    if isinstance(ts, datetime):
        return ts
    if not ts:
        return None
    try:
        return datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    except ValueError:
        return None


def _reopen_dead_letter(row: dict[str, Any]) -> bool:
    """Return a replayed-then-requeued entry to ``pending`` when its event is parked again.

    An entry that is still ``pending`` is left alone, so a repeated dead-lettering
    of the same orphan stays a no-op.
    """
    try:
        existing = (
            supabase.table("webhook_dead_letters")
            .select("id, status, failure_history")
            .eq("event_id", row["event_id"])
            .execute()
            .data
            or []
        )
        if not existing or existing[0].get("status") == "pending":
            return False
        current = existing[0]
        reopened = (
            supabase.table("webhook_dead_letters")
            .update(
                {
                    "status": "pending",
                    "reason": row["reason"],
                    "attempts": row["attempts"],
                    "last_error": row["last_error"],
                    "failure_history": list(current.get("failure_history") or []) + row["failure_history"],
                    "updated_at": row["updated_at"],
                }
            )
            .eq("id", current["id"])
            .eq("status", current["status"])
            .execute()
        )
    except Exception as exc:
        raise StoreUnavailableError(f"webhook_dead_letters reopen failed: {exc}") from exc
    return bool(reopened.data)


def record_dead_letter(
    *,
    reason: DeadLetterReason,
    error: str,
    raw_payload: str,
    provider_slug: str,
    event_id: str | None = None,
    event: CanonicalEvent | None = None,
    event_type: str | None = None,
    attempts: int = 0,
    failure_history: list[dict[str, Any]] | None = None,
    replayable: bool = True,
    request_id: str | None = None,
) -> bool:
    """Park an event terminally. Returns False when ``event_id`` is already parked and pending."""
    now_iso = _now().isoformat()
    row = {
        "event_id": event_id,
        "provider_slug": provider_slug,
        "provider_event_id": event.provider_event_id if event else None,
        "channel": event.channel if event else None,
        "event_type": event.event_type if event else event_type,
        "reason": reason,
        "replayable": replayable,
        "status": "pending",
        "attempts": attempts,
        "failure_history": failure_history or [],
        "last_error": error,
        "raw_payload": raw_payload,
        "canonical_event": event.model_dump(mode="json") if event else None,
        "replay_count": 0,
        "last_replay_at": None,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    try:
        supabase.table("webhook_dead_letters").insert(row).execute()
    except Exception as exc:
        if event_id and is_unique_violation(exc):
            if not _reopen_dead_letter(row):
                log_event(
                    "webhook_dead_letter_already_recorded",
                    request_id=request_id,
                    provider_slug=provider_slug,
                    event_id=event_id,
                )
                return False
        else:
            raise StoreUnavailableError(f"webhook_dead_letters insert failed: {exc}") from exc
    incr_metric("webhook.dead_letter.recorded", provider_slug=provider_slug, reason=reason, replayable=replayable)
    if reason == "validation_failed":
        log_event(
            "webhook_dead_letter_recorded",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug=provider_slug,
            event_id=event_id,
            reason=reason,
            error=error,
        )
    else:
        raise_alarm(
            "webhook_dead_letter_recorded",
            request_id=request_id,
            provider_slug=provider_slug,
            event_id=event_id,
            event_type=row["event_type"],
            reason=reason,
            attempts=attempts,
            error=error,
        )
    return True


def list_dead_letters(
    *,
    status: str | None = None,
    event_type: str | None = None,
    provider_slug: str | None = None,
    reason: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    query = supabase.table("webhook_dead_letters").select(_LIST_COLUMNS)
    if status:
        query = query.eq("status", status)
    if event_type:
        query = query.eq("event_type", event_type)
    if provider_slug:
        query = query.eq("provider_slug", provider_slug)
    if reason:
        query = query.eq("reason", reason)
    rows = (
        query.order("created_at", desc=True)
        .range(bounded_offset, bounded_offset + bounded_limit - 1)
        .execute()
        .data
        or []
    )
    return rows


def get_dead_letter(dead_letter_id: str) -> dict[str, Any] | None:
    rows = supabase.table("webhook_dead_letters").select("*").eq("id", dead_letter_id).execute().data or []
    return rows[0] if rows else None


def _claim_replay(row: dict[str, Any], *, now: datetime) -> None:
    cooldown = max(0, int(settings.dead_letter_replay_cooldown_seconds or 0))
    last_replay_at = _parse_ts(row.get("last_replay_at"))
    if cooldown and last_replay_at and now - last_replay_at < timedelta(seconds=cooldown):
        remaining = cooldown - int((now - last_replay_at).total_seconds())
        raise DeadLetterReplayCooldownError(max(1, remaining))
    replay_count = int(row.get("replay_count") or 0)
    # Conditional on the replay_count we read, so two concurrent replays cannot both proceed.
    claimed = (
        supabase.table("webhook_dead_letters")
        .update({"replay_count": replay_count + 1, "last_replay_at": now.isoformat(), "updated_at": now.isoformat()})
        .eq("id", row["id"])
        .eq("replay_count", replay_count)
        .execute()
    )
    if not claimed.data:
        raise DeadLetterReplayCooldownError(max(1, cooldown))


def replay_dead_letter(dead_letter_id: str, *, request_id: str | None = None) -> ReplayResult:
    """Re-inject a parked event at the enrollment resolver.

    Resolved events are applied (the applied guard still holds, so a replay never
    double counts); unresolved ones re-enter the orphan queue with fresh attempts.
    """
    from src.ingestion import orphan_queue, pipeline

    row = get_dead_letter(dead_letter_id)
    if not row:
        raise DeadLetterNotFoundError(dead_letter_id)
    if not row.get("replayable") or not row.get("canonical_event") or not row.get("event_id"):
        raise DeadLetterNotReplayableError(f"Dead letter {dead_letter_id} ({row.get('reason')}) cannot be replayed")

    now = _now()
    _claim_replay(row, now=now)
    event = CanonicalEvent.model_validate(row["canonical_event"])
    event_id = str(row["event_id"])

    processed = pipeline.process_recorded(event, event_id, request_id=request_id, source="dead_letter_replay")
    status: DeadLetterStatus
    error: str | None = processed.error
    if processed.outcome in {"applied", "already_applied"}:
        status = "replayed"
    elif processed.outcome in {"unresolved", "unavailable"}:
        try:
            orphan_queue.enqueue(event, event_id=event_id, error=processed.error or "enrollment_not_found", request_id=request_id)
            status = "requeued"
        except StoreUnavailableError as exc:
            status = "replay_failed"
            error = str(exc)
    else:
        status = "replay_failed"

    history = list(row.get("failure_history") or [])
    if status == "replay_failed":
        history.append({"at": now.isoformat(), "error": error, "attempt": "replay"})
    supabase.table("webhook_dead_letters").update(
        {
            "status": status,
            "last_error": error if status == "replay_failed" else row.get("last_error"),
            "failure_history": history,
            "updated_at": _now().isoformat(),
        }
    ).eq("id", dead_letter_id).execute()

    incr_metric("webhook.dead_letter.replay", status=status)
    log_event(
        "webhook_dead_letter_replayed",
        level=logging.WARNING if status == "replay_failed" else logging.INFO,
        request_id=request_id,
        dead_letter_id=dead_letter_id,
        event_id=event_id,
        provider_slug=event.provider_slug,
        event_type=event.event_type,
        status=status,
        outcome=processed.outcome,
        error=error,
    )
    return ReplayResult(dead_letter_id=dead_letter_id, status=status, outcome=processed.outcome, error=error)
