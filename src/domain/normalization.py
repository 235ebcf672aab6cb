from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from src.domain.errors import MalformedPayloadError, UnsupportedEventTypeError
from src.domain.events import CHANNEL_EVENT_TYPES, CanonicalEvent
from src.providers.registry import get_adapter


def parse_payload(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("Invalid JSON payload", reason="malformed_json") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Webhook payload must be a JSON object", reason="payload_not_object")
    return payload


def normalize_event(
    provider_slug: str,
    *,
    raw_body: bytes,
    payload: dict[str, Any],
    received_at: datetime,
) -> CanonicalEvent:
    """Project a provider payload onto the canonical event shape.

    Raises ``UnsupportedEventTypeError`` for event types outside the channel's
    vocabulary and ``MalformedPayloadError`` for payloads that cannot be projected.
    """
    adapter = get_adapter(provider_slug)
    if adapter is None:
        raise MalformedPayloadError(f"Unknown provider: {provider_slug}", reason="unknown_provider")
    try:
        event = adapter.module.normalize(payload=payload, raw_body=raw_body, received_at=received_at)
    except ValidationError as exc:
        raise MalformedPayloadError(f"Payload could not be normalized: {exc.errors()[0]['msg']}") from exc
    if event.event_type not in CHANNEL_EVENT_TYPES[event.channel]:
        raise UnsupportedEventTypeError(provider_slug, event.event_type)
    return event
