from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from src.domain.errors import AuthenticationError, UnsupportedEventTypeError
from src.domain.events import CanonicalEvent
from src.domain.signatures import constant_time_equals, extract_bearer_token
from src.providers.webhook_fields import first_str, header, optional_int, parse_timestamp


PROVIDER_SLUG = "phantombuster"
CHANNEL = "professional_network"
TOKEN_HEADER = "X-Phantombuster-Token"

_ACTIONS = {
    "connection_sent": "connection_sent",
    "connection_request_sent": "connection_sent",
    "linkedin.connection_sent": "connection_sent",
    "connection_accepted": "connection_accepted",
    "linkedin.connection_accepted": "connection_accepted",
    "profile_visited": "profile_visited",
    "linkedin.profile_visited": "profile_visited",
    "message_sent": "sent",
    "linkedin.message_sent": "sent",
    "message_replied": "replied",
    "linkedin.message_replied": "replied",
}


def verify_signature(*, raw_body: bytes, headers: Mapping[str, str], secret: str | None, now: datetime) -> None:
    """PhantomBuster authenticates with a shared bearer token rather than an HMAC."""
    if not secret:
        raise AuthenticationError("PhantomBuster webhook token is not configured", reason="secret_not_configured")
    token = extract_bearer_token(header(headers, "Authorization")) or header(headers, TOKEN_HEADER)
    if not token:
        raise AuthenticationError("Missing PhantomBuster webhook token", reason="missing_signature")
    if not constant_time_equals(token, secret):
        raise AuthenticationError("PhantomBuster webhook token verification failed", reason="invalid_signature")


def normalize_event_type(value: str | None) -> str:
    key = str(value or "").strip().lower()
    mapped = _ACTIONS.get(key)
    if not mapped:
        raise UnsupportedEventTypeError(PROVIDER_SLUG, value)
    return mapped


def provider_event_id(payload: dict[str, Any]) -> str | None:
    explicit = first_str(payload, "eventId", "event_id")
    if explicit:
        return explicit
    container_id = first_str(payload, "containerId")
    action = first_str(payload, "action", "event")
    target = first_str(payload, "contactId", "profileUrl")
    if container_id and action and target:
        return f"{container_id}:{action}:{target}"
    return None


def normalize(*, payload: dict[str, Any], raw_body: bytes, received_at: datetime) -> CanonicalEvent:
    raw_action = first_str(payload, "action", "event")
    if str(payload.get("status") or "").strip().lower() == "error":
        # Failed runs did not perform the action; there is nothing to count.
        raise UnsupportedEventTypeError(PROVIDER_SLUG, f"{raw_action}:error")
    event_type = normalize_event_type(raw_action)
    return CanonicalEvent(
        provider_slug=PROVIDER_SLUG,
        provider_event_id=provider_event_id(payload),
        channel=CHANNEL,
        event_type=event_type,
        enrollment_id=first_str(payload, "enrollmentId", "enrollment_id"),
        instance_id=first_str(payload, "instanceId", "instance_id"),
        contact_id=first_str(payload, "contactId", "contact_id"),
        provider_message_id=first_str(payload, "containerId"),
        step_number=optional_int(payload, "stepNumber", "step_number"),
        occurred_at=parse_timestamp(payload.get("timestamp"), default=received_at),
        raw_payload=raw_body.decode("utf-8", errors="replace"),
        metadata={
            "agent_id": first_str(payload, "agentId"),
            "container_id": first_str(payload, "containerId"),
            "profile_url": first_str(payload, "profileUrl"),
            "exit_message": first_str(payload, "exitMessage"),
        },
    )
