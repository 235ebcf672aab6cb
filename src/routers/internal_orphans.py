from __future__ import annotations

import hmac

from fastapi import APIRouter, Header, HTTPException, Request, status

from src.config import settings
from src.db import supabase
from src.ingestion.retry_worker import get_orphan_worker
from src.models.webhooks import OrphanCycleResponse
from src.observability import incr_metric, log_event, persist_metrics_snapshot


router = APIRouter(prefix="/api/internal/orphans", tags=["internal-orphans"])


@router.post("/run-scheduled", response_model=OrphanCycleResponse)
async def run_orphan_cycle_scheduled(
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
):
    request_id = getattr(request.state, "request_id", None)
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not x_internal_scheduler_secret or not hmac.compare_digest(
        x_internal_scheduler_secret,
        configured_secret,
    ):
        incr_metric("orphans.scheduled.auth_failed")
        log_event("orphans_scheduled_auth_failed", request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )
    incr_metric("orphans.scheduled.auth_succeeded")
    report = get_orphan_worker().run_cycle(request_id=request_id)
    persist_metrics_snapshot(
        supabase_client=supabase,
        source="orphans_scheduled_cycle",
        request_id=request_id,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return report.as_dict()
