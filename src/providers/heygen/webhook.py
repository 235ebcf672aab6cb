from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from src.config import settings
from src.domain.errors import AuthenticationError, UnsupportedEventTypeError
from src.domain.events import CanonicalEvent
from src.domain.signatures import compute_hmac_sha256, constant_time_equals
from src.providers.webhook_fields import first_str, header, nested_dict, parse_timestamp


PROVIDER_SLUG = "heygen"
CHANNEL = "video"
SIGNATURE_HEADER = "X-Heygen-Signature"

_EVENT_TYPES = {
    "video.completed": "video_generated",
    "avatar_video.success": "video_generated",
    "video.failed": "video_failed",
    "avatar_video.fail": "video_failed",
    "video.viewed": "video_viewed",
}


def verify_signature(*, raw_body: bytes, headers: Mapping[str, str], secret: str | None, now: datetime) -> None:
    """Header format is ``<unix seconds>,<hex hmac of "<ts>.<raw body>">``."""
    if not secret:
        raise AuthenticationError("HeyGen webhook secret is not configured", reason="secret_not_configured")
    signature = header(headers, SIGNATURE_HEADER)
    if not signature:
        raise AuthenticationError("Missing X-Heygen-Signature header", reason="missing_signature")
    timestamp_text, _, received = signature.partition(",")
    timestamp_text = timestamp_text.strip()
    if not timestamp_text.isdigit() or not received.strip():
        raise AuthenticationError("Invalid HeyGen signature format", reason="invalid_signature_format")
    tolerance = max(0, int(settings.heygen_webhook_signature_tolerance_seconds or 0))
    try:
        signed_at = datetime.fromtimestamp(int(timestamp_text), tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise AuthenticationError("Invalid HeyGen signature timestamp", reason="invalid_signature_format") from exc
    if tolerance and abs((now - signed_at).total_seconds()) > tolerance:
        raise AuthenticationError("HeyGen signature timestamp outside tolerance window", reason="stale_timestamp")
    expected = compute_hmac_sha256(secret, timestamp_text.encode("ascii") + b"." + raw_body)
    if not constant_time_equals(received.strip().lower(), expected):
        raise AuthenticationError("HeyGen webhook signature verification failed", reason="invalid_signature")


def normalize_event_type(value: str | None) -> str:
    key = str(value or "").strip().lower()
    mapped = _EVENT_TYPES.get(key)
    if not mapped:
        raise UnsupportedEventTypeError(PROVIDER_SLUG, value)
    return mapped


def normalize(*, payload: dict[str, Any], raw_body: bytes, received_at: datetime) -> CanonicalEvent:
    raw_type = first_str(payload, "event_type", "type")
    event_type = normalize_event_type(raw_type)
    data = nested_dict(payload, "event_data") or nested_dict(payload, "data")
    video_id = first_str(data, "video_id")
    event_id = first_str(payload, "event_id")
    if not event_id and video_id and raw_type:
        event_id = f"{video_id}:{raw_type}"
    # callback_id is set to the enrollment id when the video is requested.
    return CanonicalEvent(
        provider_slug=PROVIDER_SLUG,
        provider_event_id=event_id,
        channel=CHANNEL,
        event_type=event_type,
        enrollment_id=first_str(data, "callback_id", "enrollment_id"),
        instance_id=first_str(data, "instance_id"),
        contact_id=first_str(data, "contact_id"),
        provider_message_id=video_id,
        occurred_at=parse_timestamp(data.get("timestamp") or payload.get("timestamp"), default=received_at),
        raw_payload=raw_body.decode("utf-8", errors="replace"),
        metadata={
            "video_id": video_id,
            "video_url": first_str(data, "url", "video_url"),
            "duration": data.get("duration"),
            "error": first_str(data, "msg", "error"),
        },
    )
