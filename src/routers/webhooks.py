from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from src.auth import SuperAdminContext, get_current_super_admin
from src.config import settings
from src.db import supabase
from src.domain.errors import (
    IngestError,
    MalformedPayloadError,
    PayloadTooLargeError,
    StoreUnavailableError,
    UnsupportedEventTypeError,
    ingest_error_detail,
)
from src.domain.normalization import normalize_event, parse_payload
from src.ingestion import dead_letters, orphan_queue, pipeline
from src.ingestion.retry_worker import get_orphan_worker
from src.models.webhooks import (
    OrphanCycleResponse,
    OrphanQueueStatsResponse,
    WebhookDeadLetterBulkReplayItem,
    WebhookDeadLetterBulkReplayRequest,
    WebhookDeadLetterBulkReplayResponse,
    WebhookDeadLetterDetailResponse,
    WebhookDeadLetterListItem,
    WebhookDeadLetterReplayResponse,
    WebhookIngestResponse,
)
from src.observability import incr_metric, log_event, metrics_snapshot, persist_metrics_snapshot
from src.providers.registry import SUPPORTED_PROVIDERS, verify_webhook_signature


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _ingest_http_error(provider_slug: str, exc: IngestError) -> HTTPException:
    return HTTPException(status_code=exc.http_status, detail=ingest_error_detail(provider=provider_slug, exc=exc))


async def _read_body_bounded(request: Request, max_bytes: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared:
        try:
            declared_bytes = int(declared)
        except ValueError as exc:
            raise MalformedPayloadError("Invalid Content-Length header", reason="invalid_content_length") from exc
        if declared_bytes > max_bytes:
            raise PayloadTooLargeError(f"Payload exceeds {max_bytes} bytes", reason="payload_too_large")
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise PayloadTooLargeError(f"Payload exceeds {max_bytes} bytes", reason="payload_too_large")
    return bytes(body)


def _dead_letter_invalid_payload(
    *,
    provider_slug: str,
    raw_body: bytes,
    exc: IngestError,
    request_id: str | None,
) -> None:
    try:
        dead_letters.record_dead_letter(
            reason="validation_failed",
            error=str(exc),
            raw_payload=raw_body.decode("utf-8", errors="replace"),
            provider_slug=provider_slug,
            event_type=getattr(exc, "event_type", None),
            replayable=False,
            request_id=request_id,
        )
    except StoreUnavailableError as store_exc:
        log_event(
            "webhook_dead_letter_persist_failed",
            level=logging.ERROR,
            request_id=request_id,
            provider_slug=provider_slug,
            reason="validation_failed",
            error=str(store_exc),
        )


@router.post("/{provider_slug}", response_model=WebhookIngestResponse)
async def ingest_webhook(provider_slug: str, request: Request, response: Response):
    req_id = _request_id(request)
    if provider_slug not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unsupported provider")
    incr_metric("webhook.events.received", provider_slug=provider_slug)
    received_at = datetime.now(timezone.utc)

    try:
        raw_body = await _read_body_bounded(request, max(1, int(settings.webhook_max_body_bytes)))
        verify_webhook_signature(
            provider_slug,
            raw_body=raw_body,
            headers=request.headers,
            now=received_at,
            request_id=req_id,
        )
    except IngestError as exc:
        if isinstance(exc, PayloadTooLargeError):
            incr_metric("webhook.events.rejected", provider_slug=provider_slug, reason=exc.reason)
            log_event("webhook_payload_too_large", level=logging.WARNING, request_id=req_id, provider_slug=provider_slug)
        raise _ingest_http_error(provider_slug, exc)

    try:
        payload = parse_payload(raw_body)
        event = normalize_event(provider_slug, raw_body=raw_body, payload=payload, received_at=received_at)
    except (MalformedPayloadError, UnsupportedEventTypeError) as exc:
        incr_metric("webhook.events.rejected", provider_slug=provider_slug, reason=exc.reason)
        log_event(
            "webhook_payload_rejected",
            level=logging.WARNING,
            request_id=req_id,
            provider_slug=provider_slug,
            reason=exc.reason,
            error=str(exc),
        )
        _dead_letter_invalid_payload(provider_slug=provider_slug, raw_body=raw_body, exc=exc, request_id=req_id)
        raise _ingest_http_error(provider_slug, exc)

    log_event(
        "webhook_received",
        request_id=req_id,
        provider_slug=provider_slug,
        event_type=event.event_type,
        provider_event_id=event.provider_event_id,
        has_enrollment_id=bool(event.enrollment_id),
    )
    result = pipeline.ingest(event, request_id=req_id)
    if result.outcome in {"queued", "dead_lettered"}:
        response.status_code = status.HTTP_202_ACCEPTED
    incr_metric("webhook.events.outcome", provider_slug=provider_slug, outcome=result.outcome)
    return WebhookIngestResponse(
        status=result.outcome,
        provider_slug=provider_slug,
        event_type=event.event_type,
        provider_event_id=event.provider_event_id,
        event_id=result.event_id,
        enrollment_id=result.enrollment_id,
    )


@router.get("/dead-letters", response_model=list[WebhookDeadLetterListItem])
async def list_dead_letters(
    status_filter: str | None = None,
    event_type: str | None = None,
    provider_slug: str | None = None,
    reason: str | None = None,
    limit: int = 50,
    offset: int = 0,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    if status_filter and status_filter not in dead_letters.DEAD_LETTER_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "type": "invalid_filter",
                "message": f"status_filter must be one of: {', '.join(sorted(dead_letters.DEAD_LETTER_STATUSES))}",
            },
        )
    if reason and reason not in dead_letters.DEAD_LETTER_REASONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "type": "invalid_filter",
                "message": f"reason must be one of: {', '.join(sorted(dead_letters.DEAD_LETTER_REASONS))}",
            },
        )
    return dead_letters.list_dead_letters(
        status=status_filter,
        event_type=event_type,
        provider_slug=provider_slug,
        reason=reason,
        limit=limit,
        offset=offset,
    )


@router.get("/dead-letters/{dead_letter_id}", response_model=WebhookDeadLetterDetailResponse)
async def get_dead_letter_detail(
    dead_letter_id: str,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    row = dead_letters.get_dead_letter(dead_letter_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead-letter event not found")
    return row


def _replay_one(dead_letter_id: str, *, request_id: str | None) -> dead_letters.ReplayResult:
    try:
        return dead_letters.replay_dead_letter(dead_letter_id, request_id=request_id)
    except dead_letters.DeadLetterNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead-letter event not found")
    except dead_letters.DeadLetterNotReplayableError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"type": "dead_letter_not_replayable", "message": str(exc)},
        )
    except dead_letters.DeadLetterReplayCooldownError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"type": "dead_letter_replay_cooldown", "message": str(exc)},
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )


@router.post("/dead-letters/replay", response_model=WebhookDeadLetterBulkReplayResponse)
async def replay_dead_letters_bulk(
    data: WebhookDeadLetterBulkReplayRequest,
    request: Request,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    if not data.ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="ids cannot be empty")
    max_batch = max(1, int(settings.dead_letter_replay_max_batch or 1))
    if len(data.ids) > max_batch:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Requested replay count exceeds max batch size ({max_batch})",
        )
    req_id = _request_id(request)
    results: list[WebhookDeadLetterBulkReplayItem] = []
    seen: set[str] = set()
    for dead_letter_id in data.ids:
        if dead_letter_id in seen:
            continue
        seen.add(dead_letter_id)
        try:
            result = dead_letters.replay_dead_letter(dead_letter_id, request_id=req_id)
        except dead_letters.DeadLetterNotFoundError:
            results.append(WebhookDeadLetterBulkReplayItem(id=dead_letter_id, status="not_found"))
            continue
        except dead_letters.DeadLetterNotReplayableError as exc:
            results.append(WebhookDeadLetterBulkReplayItem(id=dead_letter_id, status="not_replayable", error=str(exc)))
            continue
        except dead_letters.DeadLetterReplayCooldownError as exc:
            results.append(WebhookDeadLetterBulkReplayItem(id=dead_letter_id, status="cooldown", error=str(exc)))
            continue
        results.append(
            WebhookDeadLetterBulkReplayItem(
                id=dead_letter_id,
                status=result.status,
                outcome=result.outcome,
                error=result.error,
            )
        )
    replayed = sum(1 for item in results if item.status == "replayed")
    requeued = sum(1 for item in results if item.status == "requeued")
    failed = sum(1 for item in results if item.status == "replay_failed")
    log_event(
        "dead_letter_bulk_replay_completed",
        request_id=req_id,
        requested=len(data.ids),
        replayed=replayed,
        requeued=requeued,
        failed=failed,
    )
    return WebhookDeadLetterBulkReplayResponse(
        requested=len(data.ids),
        replayed=replayed,
        requeued=requeued,
        failed=failed,
        skipped=len(results) - replayed - requeued - failed,
        results=results,
    )


@router.post("/dead-letters/{dead_letter_id}/replay", response_model=WebhookDeadLetterReplayResponse)
async def replay_dead_letter(
    dead_letter_id: str,
    request: Request,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    result = _replay_one(dead_letter_id, request_id=_request_id(request))
    return WebhookDeadLetterReplayResponse(
        id=result.dead_letter_id,
        status=result.status,
        outcome=result.outcome,
        error=result.error,
    )


@router.get("/orphans/stats", response_model=OrphanQueueStatsResponse)
async def get_orphan_queue_stats(
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    worker = get_orphan_worker()
    try:
        stats = orphan_queue.queue_stats()
    except StoreUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"type": "store_unavailable", "message": str(exc)},
        ) from exc
    return OrphanQueueStatsResponse(
        **stats,
        worker_id=worker.worker_id,
        last_successful_poll_at=worker.last_successful_poll_at,
    )


@router.post("/orphans/run-cycle", response_model=OrphanCycleResponse)
async def run_orphan_cycle(
    request: Request,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    report = get_orphan_worker().run_cycle(request_id=_request_id(request))
    return report.as_dict()


@router.post("/metrics-snapshots/flush")
async def flush_metrics_snapshot(
    request: Request,
    reset_after_flush: bool = False,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    req_id = _request_id(request)
    snapshot = metrics_snapshot()
    persisted = persist_metrics_snapshot(
        supabase_client=supabase,
        source="webhooks_operator_flush",
        request_id=req_id,
        reset_after_persist=reset_after_flush,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return {"persisted": persisted, "counter_count": len(snapshot), "reset_after_flush": reset_after_flush}
