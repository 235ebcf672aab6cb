from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from src.domain.errors import AuthenticationError, UnsupportedEventTypeError
from src.domain.events import CanonicalEvent
from src.domain.signatures import compute_hmac_sha256, constant_time_equals
from src.providers.webhook_fields import first_str, header, nested_dict, optional_int, parse_timestamp


PROVIDER_SLUG = "postmark"
CHANNEL = "email"
SIGNATURE_HEADER = "X-Postmark-Signature"

_RECORD_TYPES = {
    "delivery": "delivered",
    "bounce": "bounced",
    "open": "opened",
    "click": "clicked",
    "spamcomplaint": "unsubscribed",
}


def verify_signature(*, raw_body: bytes, headers: Mapping[str, str], secret: str | None, now: datetime) -> None:
    if not secret:
        raise AuthenticationError("Postmark webhook secret is not configured", reason="secret_not_configured")
    signature = header(headers, SIGNATURE_HEADER)
    if not signature:
        raise AuthenticationError("Missing X-Postmark-Signature header", reason="missing_signature")
    expected = compute_hmac_sha256(secret, raw_body, encoding="base64")
    if not constant_time_equals(signature, expected):
        raise AuthenticationError("Postmark webhook signature verification failed", reason="invalid_signature")


def normalize_event_type(payload: dict[str, Any]) -> str:
    record_type = first_str(payload, "RecordType")
    key = str(record_type or "").strip().lower()
    if key == "subscriptionchange":
        # Only suppressions are actionable; resubscribes have no canonical counterpart.
        if payload.get("SuppressSending") is True:
            return "unsubscribed"
        raise UnsupportedEventTypeError(PROVIDER_SLUG, record_type)
    mapped = _RECORD_TYPES.get(key)
    if not mapped:
        raise UnsupportedEventTypeError(PROVIDER_SLUG, record_type)
    return mapped


def _occurred_at_raw(payload: dict[str, Any]) -> Any:
    for key in ("DeliveredAt", "BouncedAt", "ReceivedAt", "ChangedAt"):
        if payload.get(key):
            return payload[key]
    return None


def provider_event_id(payload: dict[str, Any]) -> str | None:
    explicit = first_str(payload, "ID")
    if explicit:
        return f"{first_str(payload, 'RecordType') or 'event'}:{explicit}"
    message_id = first_str(payload, "MessageID")
    record_type = first_str(payload, "RecordType")
    occurred = _occurred_at_raw(payload)
    if message_id and record_type and occurred:
        return f"{message_id}:{record_type}:{occurred}"
    return None


def normalize(*, payload: dict[str, Any], raw_body: bytes, received_at: datetime) -> CanonicalEvent:
    event_type = normalize_event_type(payload)
    metadata = nested_dict(payload, "Metadata")
    return CanonicalEvent(
        provider_slug=PROVIDER_SLUG,
        provider_event_id=provider_event_id(payload),
        channel=CHANNEL,
        event_type=event_type,
        enrollment_id=first_str(metadata, "enrollment_id", "enrollmentId"),
        instance_id=first_str(metadata, "instance_id", "instanceId"),
        contact_id=first_str(metadata, "contact_id", "contactId"),
        provider_message_id=first_str(payload, "MessageID"),
        step_number=optional_int(metadata, "step_number", "stepNumber"),
        occurred_at=parse_timestamp(_occurred_at_raw(payload), default=received_at),
        raw_payload=raw_body.decode("utf-8", errors="replace"),
        metadata={
            "record_type": first_str(payload, "RecordType"),
            "recipient": first_str(payload, "Recipient", "Email"),
            "tag": first_str(payload, "Tag"),
            "bounce_type": first_str(payload, "Type"),
            "clicked_link": first_str(payload, "OriginalLink"),
        },
    )
