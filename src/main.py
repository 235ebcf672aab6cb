import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config import settings
from src.domain.errors import StoreUnavailableError
from src.ingestion import orphan_queue
from src.ingestion.retry_worker import get_orphan_worker
from src.observability import log_event
from src.routers import internal_orphans, webhooks


@asynccontextmanager
async def lifespan(app: FastAPI):
    worker = get_orphan_worker()
    if settings.orphan_worker_enabled:
        worker.start()
    try:
        yield
    finally:
        if worker.running:
            worker.shutdown(settings.orphan_drain_timeout_seconds)


app = FastAPI(title="Outreach Event Ingest", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhooks.router)
app.include_router(internal_orphans.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "outreach-event-ingest"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    worker = get_orphan_worker()
    now = datetime.now(timezone.utc)
    checks: dict[str, bool] = {}
    try:
        stats = orphan_queue.queue_stats(now=now)
        checks["store"] = True
    except StoreUnavailableError as exc:
        log_event("readiness_store_check_failed", level=logging.WARNING, error=str(exc))
        stats = None
        checks["store"] = False
    checks["fallback_idle"] = not orphan_queue.fallback_buffer.engaged
    last_poll = worker.last_successful_poll_at
    poll_age = (now - last_poll).total_seconds() if last_poll else None
    if settings.orphan_worker_enabled:
        checks["worker_polling"] = poll_age is not None and poll_age <= settings.readiness_max_poll_age_seconds
    body = {
        "status": "ready" if all(checks.values()) else "not_ready",
        "checks": checks,
        "orphan_backlog": stats["depth"] if stats else None,
        "orphan_due_now": stats["due_now"] if stats else None,
        "orphan_oldest_age_seconds": stats["oldest_age_seconds"] if stats else None,
        "fallback_size": len(orphan_queue.fallback_buffer),
        "last_successful_poll_at": last_poll.isoformat() if last_poll else None,
        "last_poll_age_seconds": poll_age,
    }
    code = status.HTTP_200_OK if all(checks.values()) else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=body)
