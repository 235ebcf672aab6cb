from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from src.domain.errors import AuthenticationError, UnsupportedEventTypeError
from src.domain.events import CanonicalEvent
from src.domain.signatures import compute_hmac_sha256, constant_time_equals
from src.providers.webhook_fields import first_str, header, optional_int, parse_timestamp


PROVIDER_SLUG = "lemlist"
CHANNEL = "email"
SIGNATURE_HEADER = "X-Lemlist-Signature"

_EVENT_TYPES = {
    "emailssent": "sent",
    "emailsdelivered": "delivered",
    "emailsopened": "opened",
    "emailsclicked": "clicked",
    "emailsreplied": "replied",
    "emailsbounced": "bounced",
    "emailsunsubscribed": "unsubscribed",
    "email.sent": "sent",
    "email.delivered": "delivered",
    "email.opened": "opened",
    "email.clicked": "clicked",
    "email.replied": "replied",
    "email.bounced": "bounced",
    "email.unsubscribed": "unsubscribed",
}


def verify_signature(*, raw_body: bytes, headers: Mapping[str, str], secret: str | None, now: datetime) -> None:
    if not secret:
        raise AuthenticationError("Lemlist webhook secret is not configured", reason="secret_not_configured")
    signature = header(headers, SIGNATURE_HEADER)
    if not signature:
        raise AuthenticationError("Missing X-Lemlist-Signature header", reason="missing_signature")
    algorithm, _, received = signature.partition("=")
    if algorithm.strip().lower() != "sha256" or not received:
        raise AuthenticationError("Unsupported Lemlist signature format", reason="invalid_signature_format")
    expected = compute_hmac_sha256(secret, raw_body)
    if not constant_time_equals(received.strip().lower(), expected):
        raise AuthenticationError("Lemlist webhook signature verification failed", reason="invalid_signature")


def normalize_event_type(value: str | None) -> str:
    key = str(value or "").strip().lower()
    mapped = _EVENT_TYPES.get(key)
    if not mapped:
        raise UnsupportedEventTypeError(PROVIDER_SLUG, value)
    return mapped


def normalize(*, payload: dict[str, Any], raw_body: bytes, received_at: datetime) -> CanonicalEvent:
    event_type = normalize_event_type(first_str(payload, "type", "event"))
    return CanonicalEvent(
        provider_slug=PROVIDER_SLUG,
        provider_event_id=first_str(payload, "_id", "id", "activityId"),
        channel=CHANNEL,
        event_type=event_type,
        enrollment_id=first_str(payload, "enrollmentId", "enrollment_id"),
        instance_id=first_str(payload, "instanceId", "instance_id"),
        contact_id=first_str(payload, "contactId", "contact_id"),
        provider_message_id=first_str(payload, "emailId", "messageId"),
        step_number=optional_int(payload, "sequenceStep", "stepNumber"),
        occurred_at=parse_timestamp(payload.get("createdAt") or payload.get("timestamp"), default=received_at),
        raw_payload=raw_body.decode("utf-8", errors="replace"),
        metadata={
            "campaign_id": first_str(payload, "campaignId"),
            "lead_id": first_str(payload, "leadId"),
            "provider_type": first_str(payload, "type", "event"),
        },
    )
