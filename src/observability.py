from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime, timezone
from threading import Lock
from typing import Any

import httpx


logger = logging.getLogger("outreach_event_ingest")

_metrics_lock = Lock()
_metrics_counter: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize(v) for v in value]
    return str(value)


def metric_key(name: str, **labels: Any) -> str:
    if not labels:
        return name
    ordered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}|{ordered}"


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **{k: _normalize(v) for k, v in labels.items()})
    with _metrics_lock:
        _metrics_counter[key] += value


def set_gauge(name: str, value: float, **labels: Any) -> None:
    key = metric_key(name, **{k: _normalize(v) for k, v in labels.items()})
    with _metrics_lock:
        _gauges[key] = value


def metrics_snapshot() -> dict[str, int]:
    with _metrics_lock:
        return dict(_metrics_counter)


def gauges_snapshot() -> dict[str, float]:
    with _metrics_lock:
        return dict(_gauges)


def reset_metrics() -> None:
    with _metrics_lock:
        _metrics_counter.clear()
        _gauges.clear()


def _snapshot_payload(*, source: str, request_id: str | None) -> dict[str, Any]:
    counters = metrics_snapshot()
    return {
        "source": source,
        "request_id": request_id,
        "captured_at": datetime.now(timezone.utc).isoformat(),
        "counters": counters,
        "gauges": gauges_snapshot(),
        "alarm_count": sum(v for k, v in counters.items() if k.startswith("alarm.")),
    }


def _export_snapshot(
    payload: dict[str, Any],
    *,
    url: str,
    bearer_token: str | None,
    timeout_seconds: float,
) -> None:
    headers = {"Content-Type": "application/json"}
    if bearer_token:
        headers["Authorization"] = f"Bearer {bearer_token}"
    fields = {"request_id": payload["request_id"], "source": payload["source"], "export_url": url}
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            response = client.post(url, headers=headers, json=payload)
    except httpx.HTTPError as exc:
        log_event("metrics_snapshot_export_failed", level=logging.WARNING, error=str(exc), **fields)
        return
    if response.status_code >= 400:
        log_event(
            "metrics_snapshot_export_failed",
            level=logging.WARNING,
            status_code=response.status_code,
            response_text=response.text[:200],
            **fields,
        )
        return
    log_event("metrics_snapshot_exported", status_code=response.status_code, **fields)


def persist_metrics_snapshot(
    *,
    supabase_client: Any,
    source: str,
    request_id: str | None = None,
    reset_after_persist: bool = False,
    export_url: str | None = None,
    export_bearer_token: str | None = None,
    export_timeout_seconds: float = 3.0,
) -> bool:
    """Store the current counters and gauges; export them too when a sink is configured.

    Export failures are logged and never fail the persist.
    """
    payload = _snapshot_payload(source=source, request_id=request_id)
    row = {key: payload[key] for key in ("source", "request_id", "counters", "gauges")}
    try:
        supabase_client.table("observability_metric_snapshots").insert(row).execute()
    except Exception as exc:
        log_event(
            "metrics_snapshot_persist_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            error=str(exc),
        )
        return False

    if export_url:
        _export_snapshot(
            payload,
            url=export_url,
            bearer_token=export_bearer_token,
            timeout_seconds=export_timeout_seconds,
        )
    log_event(
        "metrics_snapshot_persisted",
        request_id=request_id,
        source=source,
        counter_count=len(payload["counters"]),
        gauge_count=len(payload["gauges"]),
        alarm_count=payload["alarm_count"],
    )
    if reset_after_persist:
        reset_metrics()
    return True


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    payload = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    for key, value in fields.items():
        payload[key] = _normalize(value)
    logger.log(level, json.dumps(payload, sort_keys=True))


def raise_alarm(name: str, *, request_id: str | None = None, **fields: Any) -> None:
    """Operator-facing alarm: an ERROR log line tagged ``alarm`` plus a counter."""
    incr_metric(f"alarm.{name}")
    log_event(name, level=logging.ERROR, request_id=request_id, alarm=True, **fields)
