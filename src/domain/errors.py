from __future__ import annotations

from typing import Any


class IngestError(Exception):
    """Base for failures raised while ingesting a provider notification."""

    http_status: int = 400
    error_type: str = "webhook_ingest_error"

    def __init__(self, message: str, *, reason: str | None = None):
        super().__init__(message)
        self.reason = reason or self.error_type


class AuthenticationError(IngestError):
    http_status = 401
    error_type = "webhook_auth_failed"


class MalformedPayloadError(IngestError):
    http_status = 400
    error_type = "webhook_payload_invalid"


class UnsupportedEventTypeError(IngestError):
    http_status = 400
    error_type = "webhook_event_type_unsupported"

    def __init__(self, provider_slug: str, event_type: str | None):
        super().__init__(
            f"Unsupported {provider_slug} event type: {event_type!r}",
            reason="unsupported_event_type",
        )
        self.provider_slug = provider_slug
        self.event_type = event_type


class PayloadTooLargeError(IngestError):
    http_status = 413
    error_type = "webhook_payload_too_large"


class StoreUnavailableError(Exception):
    """The transactional store or the durable queue could not be reached."""


def ingest_error_detail(*, provider: str, exc: IngestError) -> dict[str, Any]:
    return {
        "type": exc.error_type,
        "provider": provider,
        "reason": exc.reason,
        "message": str(exc),
    }


def is_unique_violation(exc: Exception) -> bool:
    # PostgREST surfaces 23505 as an APIError code; older clients only carry the message.
    if getattr(exc, "code", None) == "23505":
        return True
    text = str(exc).lower()
    return "duplicate" in text or "unique" in text


def is_permanent_store_error(exc: Exception) -> bool:
    """Integrity (23), data (22) and raised (P0001) errors cannot succeed on retry."""
    code = str(getattr(exc, "code", None) or "")
    return code.startswith(("23", "22")) or code == "P0001"
