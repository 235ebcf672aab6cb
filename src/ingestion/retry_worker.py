from __future__ import annotations

import logging
import os
import socket
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Any
from uuid import uuid4

from src.config import settings
from src.domain.errors import StoreUnavailableError
from src.ingestion import orphan_queue
from src.ingestion.pipeline import process_recorded
from src.observability import incr_metric, log_event, set_gauge


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


@dataclass
class CycleReport:
    worker_id: str
    started_at: datetime
    flushed: int = 0
    swept: int = 0
    claimed: int = 0
    resolved: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class OrphanRetryWorker:
    """Periodic retry loop over the orphan queue.

    Safe to run in several processes: records are leased through
    ``claim_orphan_events`` and a lease that outlives its worker expires.
    """

    def __init__(
        self,
        *,
        worker_id: str | None = None,
        poll_interval_seconds: float | None = None,
        batch_size: int | None = None,
        lease_seconds: int | None = None,
    ):
        self.worker_id = worker_id or _default_worker_id()
        self.poll_interval_seconds = (
            settings.orphan_poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )
        self.batch_size = settings.orphan_batch_size if batch_size is None else batch_size
        self.lease_seconds = settings.orphan_lease_seconds if lease_seconds is None else lease_seconds
        self.last_successful_poll_at: datetime | None = None
        self._stop = Event()
        self._cycle_lock = Lock()
        self._thread: Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name=f"orphan-retry-{self.worker_id}", daemon=True)
        self._thread.start()
        log_event("orphan_worker_started", worker_id=self.worker_id, poll_interval_seconds=self.poll_interval_seconds)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception as exc:
                # Keep the loop alive; the next cycle retries from durable state.
                incr_metric("orphan.worker.cycle_crashed")
                log_event(
                    "orphan_worker_cycle_crashed",
                    level=logging.ERROR,
                    worker_id=self.worker_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            self._stop.wait(self.poll_interval_seconds)

    def run_cycle(self, *, request_id: str | None = None) -> CycleReport:
        report = CycleReport(worker_id=self.worker_id, started_at=datetime.now(timezone.utc))
        if self._stop.is_set():
            report.skipped = True
            return report
        with self._cycle_lock:
            self._run_cycle_locked(report, request_id=request_id)
        return report

    def _run_cycle_locked(self, report: CycleReport, *, request_id: str | None) -> None:
        report.flushed = orphan_queue.flush_fallback(request_id=request_id)
        try:
            report.swept = orphan_queue.sweep_stale_received(
                older_than_seconds=settings.orphan_stale_received_seconds,
                limit=self.batch_size,
                request_id=request_id,
            )
            records = orphan_queue.claim_due(self.worker_id, limit=self.batch_size, lease_seconds=self.lease_seconds)
        except StoreUnavailableError as exc:
            report.errors.append(str(exc))
            incr_metric("orphan.worker.poll_failed")
            log_event(
                "orphan_worker_poll_failed",
                level=logging.WARNING,
                request_id=request_id,
                worker_id=self.worker_id,
                error=str(exc),
            )
            return
        report.claimed = len(records)
        self.last_successful_poll_at = datetime.now(timezone.utc)
        set_gauge("orphan.worker.last_successful_poll_at", self.last_successful_poll_at.timestamp())

        for record in records:
            if self._stop.is_set():
                # Unprocessed leases are released by shutdown().
                break
            try:
                self._retry_one(record, report, request_id=request_id)
            except StoreUnavailableError as exc:
                report.errors.append(str(exc))
                log_event(
                    "orphan_retry_persist_failed",
                    level=logging.WARNING,
                    request_id=request_id,
                    worker_id=self.worker_id,
                    orphan_id=record.id,
                    event_id=record.event_id,
                    error=str(exc),
                )

        log_event(
            "orphan_worker_cycle_completed",
            request_id=request_id,
            worker_id=self.worker_id,
            flushed=report.flushed,
            swept=report.swept,
            claimed=report.claimed,
            resolved=report.resolved,
            rescheduled=report.rescheduled,
            dead_lettered=report.dead_lettered,
        )

    def _retry_one(self, record: orphan_queue.OrphanRecord, report: CycleReport, *, request_id: str | None) -> None:
        try:
            event = record.event()
        except ValueError as exc:
            orphan_queue.move_to_dead_letter(record, reason="validation_failed", error=str(exc), request_id=request_id)
            report.dead_lettered += 1
            return

        processed = process_recorded(event, record.event_id, request_id=request_id, source="orphan_retry")
        if processed.outcome in {"applied", "already_applied"}:
            orphan_queue.mark_resolved(record)
            report.resolved += 1
            incr_metric("orphan.resolved", provider_slug=event.provider_slug, attempts=record.attempts)
            return
        if processed.outcome == "rejected":
            orphan_queue.move_to_dead_letter(
                record,
                reason="apply_failed",
                error=processed.error or "apply_rejected",
                request_id=request_id,
            )
            report.dead_lettered += 1
            return

        error = processed.error or "enrollment_not_found"
        if record.attempts + 1 >= settings.orphan_max_attempts:
            record.attempts += 1
            orphan_queue.move_to_dead_letter(record, reason="max_attempts_exceeded", error=error, request_id=request_id)
            report.dead_lettered += 1
            return
        next_retry_at = orphan_queue.reschedule(record, worker_id=self.worker_id, error=error)
        report.rescheduled += 1
        incr_metric("orphan.rescheduled", provider_slug=event.provider_slug)
        log_event(
            "orphan_rescheduled",
            request_id=request_id,
            worker_id=self.worker_id,
            event_id=record.event_id,
            attempts=record.attempts,
            next_retry_at=next_retry_at,
            error=error,
        )

    def shutdown(self, drain_timeout: float | None = None) -> bool:
        """Stop new cycles, wait for the in-flight one, then release held leases.

        Returns False when the in-flight cycle did not finish within the timeout;
        leases are released regardless and any left over expire on their own.
        """
        timeout = settings.orphan_drain_timeout_seconds if drain_timeout is None else drain_timeout
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        drained = self._cycle_lock.acquire(timeout=max(0.0, timeout))
        try:
            released = orphan_queue.release_leases(self.worker_id)
        except StoreUnavailableError as exc:
            released = 0
            log_event(
                "orphan_worker_lease_release_failed",
                level=logging.WARNING,
                worker_id=self.worker_id,
                error=str(exc),
            )
        finally:
            if drained:
                self._cycle_lock.release()
        log_event("orphan_worker_stopped", worker_id=self.worker_id, drained=drained, released_leases=released)
        return drained


_worker: OrphanRetryWorker | None = None
_worker_lock = Lock()


def get_orphan_worker() -> OrphanRetryWorker:
    global _worker
    with _worker_lock:
        if _worker is None:
            _worker = OrphanRetryWorker()
        return _worker


def reset_orphan_worker() -> None:
    global _worker
    with _worker_lock:
        _worker = None
