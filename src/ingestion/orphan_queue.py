from __future__ import annotations

import logging
import random
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable

from pydantic import ValidationError

from src.config import settings
from src.db import supabase
from src.domain.errors import StoreUnavailableError, is_unique_violation
from src.domain.events import CanonicalEvent
from src.ingestion import dead_letters
from src.ingestion.dedup import mark_event_status, record_event
from src.observability import incr_metric, log_event, raise_alarm, set_gauge


_AGE_BUCKETS: tuple[tuple[str, float], ...] = (
    ("lt_1m", 60),
    ("1m_15m", 15 * 60),
    ("15m_1h", 60 * 60),
    ("1h_6h", 6 * 60 * 60),
)


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


def compute_next_retry_delay(
    attempts: int,
    *,
    base_seconds: float | None = None,
    max_seconds: float | None = None,
    jitter_ratio: float | None = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff ``min(cap, base * 2**attempts)`` plus up to ``jitter_ratio`` of it."""
    base = settings.orphan_base_delay_seconds if base_seconds is None else base_seconds
    cap = settings.orphan_max_delay_seconds if max_seconds is None else max_seconds
    ratio = settings.orphan_jitter_ratio if jitter_ratio is None else jitter_ratio
    exponent = max(0, min(int(attempts), 32))
    delay = min(max(0.0, float(cap)), max(0.0, float(base)) * (2**exponent))
    return delay + delay * max(0.0, float(ratio)) * rand()


@dataclass
class OrphanRecord:
    id: str
    event_id: str
    attempts: int
    first_seen_at: datetime | None
    last_error: str | None
    failure_history: list[dict[str, Any]]
    canonical_event: dict[str, Any]
    raw_payload: str
    provider_slug: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "OrphanRecord":
        canonical = row.get("canonical_event") or {}
        return cls(
            id=str(row["id"]),
            event_id=str(row["event_id"]),
            attempts=int(row.get("attempts") or 0),
            first_seen_at=_parse_ts(row.get("first_seen_at")),
            last_error=row.get("last_error"),
            failure_history=list(row.get("failure_history") or []),
            canonical_event=canonical,
            raw_payload=str(canonical.get("raw_payload") or ""),
            provider_slug=row.get("provider_slug") or canonical.get("provider_slug") or "unknown",
        )

    def event(self) -> CanonicalEvent:
        return CanonicalEvent.model_validate(self.canonical_event)


@dataclass
class FallbackEntry:
    event: CanonicalEvent
    event_id: str | None
    error: str
    buffered_at: datetime = field(default_factory=_now)
    flush_failures: int = 0


class FallbackBuffer:
    """Bounded in-process holding area used while the durable queue is unreachable.

    Overflow drops the oldest entry and raises an alarm. Entries are lost on
    restart; events already recorded in ``campaign_events`` are recovered by the
    stale-receipt sweep.
    """

    def __init__(self, max_size: int):
        self.max_size = max(1, int(max_size))
        self._entries: deque[FallbackEntry] = deque()
        self._lock = Lock()
        self.engaged = False
        self.dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def push(self, entry: FallbackEntry, *, request_id: str | None = None) -> None:
        dropped: FallbackEntry | None = None
        with self._lock:
            first_engagement = not self.engaged
            self.engaged = True
            if len(self._entries) >= self.max_size:
                dropped = self._entries.popleft()
                self.dropped += 1
            self._entries.append(entry)
            size = len(self._entries)
        set_gauge("orphan.fallback.size", size)
        if first_engagement:
            raise_alarm(
                "orphan_fallback_engaged",
                request_id=request_id,
                provider_slug=entry.event.provider_slug,
                error=entry.error,
                max_size=self.max_size,
            )
        if dropped is not None:
            raise_alarm(
                "orphan_fallback_overflow",
                request_id=request_id,
                dropped_provider_slug=dropped.event.provider_slug,
                dropped_provider_event_id=dropped.event.provider_event_id,
                dropped_event_id=dropped.event_id,
                max_size=self.max_size,
            )

    def pop(self) -> FallbackEntry | None:
        with self._lock:
            return self._entries.popleft() if self._entries else None

    def push_front(self, entry: FallbackEntry) -> None:
        with self._lock:
            self._entries.appendleft(entry)

    def mark_drained(self) -> bool:
        with self._lock:
            if self._entries or not self.engaged:
                return False
            self.engaged = False
        set_gauge("orphan.fallback.size", 0)
        return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.engaged = False
            self.dropped = 0


fallback_buffer = FallbackBuffer(settings.orphan_fallback_max_size)


def _insert_orphan(event: CanonicalEvent, *, event_id: str, error: str, now: datetime) -> bool:
    row = {
        "event_id": event_id,
        "provider_slug": event.provider_slug,
        "event_type": event.event_type,
        "canonical_event": event.model_dump(mode="json"),
        "attempts": 0,
        "next_retry_at": (now + timedelta(seconds=compute_next_retry_delay(0))).isoformat(),
        "first_seen_at": now.isoformat(),
        "last_error": error,
        "failure_history": [{"at": now.isoformat(), "error": error, "attempt": 0}],
        "lease_owner": None,
        "lease_expires_at": None,
    }
    try:
        supabase.table("webhook_orphan_events").insert(row).execute()
    except Exception as exc:
        if is_unique_violation(exc):
            return False
        raise StoreUnavailableError(f"webhook_orphan_events insert failed: {exc}") from exc
    return True


def enqueue(
    event: CanonicalEvent,
    *,
    event_id: str,
    error: str,
    request_id: str | None = None,
) -> bool:
    """Durably queue a recorded event for retry. Re-enqueueing the same event is a no-op.

    Raises ``StoreUnavailableError`` when the queue table cannot be written.
    """
    created = _insert_orphan(event, event_id=event_id, error=error, now=_now())
    mark_event_status(event_id, "orphaned", error=error)
    if created:
        incr_metric("orphan.enqueued", provider_slug=event.provider_slug, event_type=event.event_type)
        log_event(
            "orphan_enqueued",
            request_id=request_id,
            provider_slug=event.provider_slug,
            event_id=event_id,
            event_type=event.event_type,
            error=error,
        )
    return created


def enqueue_or_buffer(
    event: CanonicalEvent,
    *,
    event_id: str | None,
    error: str,
    request_id: str | None = None,
) -> bool:
    """Queue durably when possible, otherwise hold the event in the fallback buffer.

    ``event_id`` is None when the event could not even be recorded; the flush
    records it before queueing. Returns True when the durable write succeeded.
    """
    if event_id is not None:
        try:
            enqueue(event, event_id=event_id, error=error, request_id=request_id)
            return True
        except StoreUnavailableError as exc:
            error = f"{error}; queue unavailable: {exc}"
    fallback_buffer.push(FallbackEntry(event=event, event_id=event_id, error=error), request_id=request_id)
    incr_metric("orphan.fallback.buffered", provider_slug=event.provider_slug)
    return False


def _park_unflushable(entry: FallbackEntry, *, error: str, request_id: str | None) -> bool:
    """Dead-letter a buffered entry the store keeps refusing so it stops blocking the rest."""
    message = f"fallback flush failed {entry.flush_failures} times: {error}"
    try:
        dead_letters.record_dead_letter(
            reason="max_attempts_exceeded",
            error=message,
            raw_payload=entry.event.raw_payload,
            provider_slug=entry.event.provider_slug,
            event_id=entry.event_id,
            event=entry.event,
            attempts=entry.flush_failures,
            failure_history=[{"at": _now().isoformat(), "error": message, "attempt": entry.flush_failures}],
            replayable=entry.event_id is not None,
            request_id=request_id,
        )
        if entry.event_id is not None:
            mark_event_status(entry.event_id, "dead_letter", error=message)
    except StoreUnavailableError:
        return False
    incr_metric("orphan.fallback.parked", provider_slug=entry.event.provider_slug)
    return True


def flush_fallback(*, request_id: str | None = None) -> int:
    """Move buffered events into durable storage; stops at the first store failure."""
    flushed = 0
    while True:
        entry = fallback_buffer.pop()
        if entry is None:
            break
        try:
            event_id = entry.event_id
            if event_id is None:
                recorded = record_event(entry.event, received_at=entry.buffered_at)
                if recorded.duplicate:
                    flushed += 1
                    continue
                event_id = recorded.event_id
                entry.event_id = event_id
            enqueue(entry.event, event_id=event_id, error=entry.error, request_id=request_id)
        except StoreUnavailableError as exc:
            entry.flush_failures += 1
            if entry.flush_failures >= max(1, int(settings.orphan_fallback_max_flush_failures)) and _park_unflushable(
                entry, error=str(exc), request_id=request_id
            ):
                continue
            fallback_buffer.push_front(entry)
            log_event(
                "orphan_fallback_flush_stalled",
                level=logging.WARNING,
                request_id=request_id,
                remaining=len(fallback_buffer),
                flush_failures=entry.flush_failures,
                error=str(exc),
            )
            break
        flushed += 1
    if fallback_buffer.mark_drained():
        log_event("orphan_fallback_drained", request_id=request_id, flushed=flushed)
    if flushed:
        incr_metric("orphan.fallback.flushed", value=flushed)
    return flushed


def claim_due(worker_id: str, *, limit: int, lease_seconds: int) -> list[OrphanRecord]:
    """Lease due records to ``worker_id`` via ``claim_orphan_events`` (``FOR UPDATE SKIP LOCKED``)."""
    try:
        response = supabase.rpc(
            "claim_orphan_events",
            {"p_worker_id": worker_id, "p_limit": limit, "p_lease_seconds": lease_seconds},
        ).execute()
    except Exception as exc:
        raise StoreUnavailableError(f"claim_orphan_events failed: {exc}") from exc
    return [OrphanRecord.from_row(row) for row in response.data or []]


def mark_resolved(record: OrphanRecord) -> None:
    try:
        supabase.table("webhook_orphan_events").delete().eq("id", record.id).execute()
    except Exception as exc:
        raise StoreUnavailableError(f"webhook_orphan_events delete failed: {exc}") from exc


def reschedule(record: OrphanRecord, *, worker_id: str, error: str, now: datetime | None = None) -> datetime:
    now = now or _now()
    attempts = record.attempts + 1
    next_retry_at = now + timedelta(seconds=compute_next_retry_delay(attempts))
    history = record.failure_history + [{"at": now.isoformat(), "error": error, "attempt": attempts}]
    try:
        supabase.table("webhook_orphan_events").update(
            {
                "attempts": attempts,
                "next_retry_at": next_retry_at.isoformat(),
                "last_error": error,
                "failure_history": history,
                "lease_owner": None,
                "lease_expires_at": None,
            }
        ).eq("id", record.id).eq("lease_owner", worker_id).execute()
    except Exception as exc:
        raise StoreUnavailableError(f"webhook_orphan_events reschedule failed: {exc}") from exc
    record.attempts = attempts
    record.failure_history = history
    record.last_error = error
    return next_retry_at


def move_to_dead_letter(
    record: OrphanRecord,
    *,
    reason: dead_letters.DeadLetterReason,
    error: str,
    request_id: str | None = None,
) -> None:
    """Dead-letter first, then delete; a crash in between is repaired by the unique event_id."""
    event: CanonicalEvent | None
    try:
        event = record.event()
    except ValidationError:
        event = None
    history = record.failure_history + [{"at": _now().isoformat(), "error": error, "attempt": record.attempts}]
    dead_letters.record_dead_letter(
        reason=reason,
        error=error,
        raw_payload=record.raw_payload,
        provider_slug=record.provider_slug,
        event_id=record.event_id,
        event=event,
        event_type=record.canonical_event.get("event_type"),
        attempts=record.attempts,
        failure_history=history,
        replayable=event is not None,
        request_id=request_id,
    )
    mark_event_status(record.event_id, "dead_letter", error=error)
    mark_resolved(record)


def release_leases(worker_id: str) -> int:
    try:
        released = (
            supabase.table("webhook_orphan_events")
            .update({"lease_owner": None, "lease_expires_at": None})
            .eq("lease_owner", worker_id)
            .execute()
        )
    except Exception as exc:
        raise StoreUnavailableError(f"webhook_orphan_events lease release failed: {exc}") from exc
    return len(released.data or [])


def sweep_stale_received(*, older_than_seconds: int, limit: int, request_id: str | None = None) -> int:
    """Queue events left in ``received`` by a process that died between recording and applying."""
    cutoff = _now() - timedelta(seconds=max(0, older_than_seconds))
    try:
        rows = (
            supabase.table("campaign_events")
            .select("*")
            .eq("status", "received")
            .lt("received_at", cutoff.isoformat())
            .order("received_at")
            .limit(limit)
            .execute()
            .data
            or []
        )
    except Exception as exc:
        raise StoreUnavailableError(f"campaign_events stale sweep failed: {exc}") from exc
    swept = 0
    for row in rows:
        try:
            event = CanonicalEvent.model_validate(row)
        except ValidationError as exc:
            log_event(
                "stale_received_event_invalid",
                level=logging.WARNING,
                request_id=request_id,
                event_id=row.get("id"),
                error=str(exc),
            )
            mark_event_status(str(row["id"]), "dead_letter", error="invalid_canonical_event")
            continue
        if enqueue(event, event_id=str(row["id"]), error="stale_received", request_id=request_id):
            swept += 1
    if swept:
        incr_metric("orphan.stale_received.swept", value=swept)
    return swept


def queue_stats(*, now: datetime | None = None) -> dict[str, Any]:
    """Backlog summary over the oldest ``orphan_stats_max_rows`` records.

    ``truncated`` is set when the queue holds more rows than were read; ``depth`` is then a floor.
    """
    now = now or _now()
    max_rows = max(1, int(settings.orphan_stats_max_rows))
    try:
        rows = (
            supabase.table("webhook_orphan_events")
            .select("id, attempts, next_retry_at, first_seen_at, lease_owner, lease_expires_at")
            .order("first_seen_at")
            .limit(max_rows + 1)
            .execute()
            .data
            or []
        )
    except Exception as exc:
        raise StoreUnavailableError(f"webhook_orphan_events stats query failed: {exc}") from exc
    truncated = len(rows) > max_rows
    rows = rows[:max_rows]
    due_now = 0
    leased = 0
    oldest_age: float | None = None
    age_buckets = {name: 0 for name, _ in _AGE_BUCKETS}
    age_buckets["gte_6h"] = 0
    attempts_histogram: Counter[str] = Counter()
    for row in rows:
        next_retry_at = _parse_ts(row.get("next_retry_at"))
        lease_expires_at = _parse_ts(row.get("lease_expires_at"))
        if row.get("lease_owner") and lease_expires_at and lease_expires_at > now:
            leased += 1
        elif next_retry_at is None or next_retry_at <= now:
            due_now += 1
        first_seen_at = _parse_ts(row.get("first_seen_at"))
        age = (now - first_seen_at).total_seconds() if first_seen_at else 0.0
        oldest_age = age if oldest_age is None else max(oldest_age, age)
        for name, upper in _AGE_BUCKETS:
            if age < upper:
                age_buckets[name] += 1
                break
        else:
            age_buckets["gte_6h"] += 1
        attempts_histogram[str(int(row.get("attempts") or 0))] += 1
    set_gauge("orphan.queue.depth", len(rows))
    return {
        "depth": len(rows),
        "truncated": truncated,
        "due_now": due_now,
        "leased": leased,
        "oldest_age_seconds": oldest_age,
        "age_buckets": age_buckets,
        "attempts_histogram": dict(attempts_histogram),
        "fallback_size": len(fallback_buffer),
        "fallback_engaged": fallback_buffer.engaged,
        "fallback_dropped": fallback_buffer.dropped,
    }
