from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from types import ModuleType
from typing import Mapping

from src.config import settings
from src.domain.errors import AuthenticationError
from src.observability import incr_metric, log_event
from src.providers.heygen import webhook as heygen_webhook
from src.providers.lemlist import webhook as lemlist_webhook
from src.providers.phantombuster import webhook as phantombuster_webhook
from src.providers.postmark import webhook as postmark_webhook


@dataclass(frozen=True)
class ProviderAdapter:
    slug: str
    channel: str
    module: ModuleType
    secret_setting: str

    @property
    def secret(self) -> str | None:
        return getattr(settings, self.secret_setting, None)


_ADAPTERS: dict[str, ProviderAdapter] = {
    module.PROVIDER_SLUG: ProviderAdapter(
        slug=module.PROVIDER_SLUG,
        channel=module.CHANNEL,
        module=module,
        secret_setting=f"{module.PROVIDER_SLUG}_webhook_secret",
    )
    for module in (lemlist_webhook, postmark_webhook, phantombuster_webhook, heygen_webhook)
}

SUPPORTED_PROVIDERS: frozenset[str] = frozenset(_ADAPTERS)


def get_adapter(provider_slug: str) -> ProviderAdapter | None:
    return _ADAPTERS.get(provider_slug)


def verify_webhook_signature(
    provider_slug: str,
    *,
    raw_body: bytes,
    headers: Mapping[str, str],
    now: datetime,
    request_id: str | None = None,
) -> None:
    """Authenticate a raw request body; raises ``AuthenticationError`` on any failure."""
    adapter = get_adapter(provider_slug)
    if adapter is None:
        raise AuthenticationError(f"Unknown provider: {provider_slug}", reason="unknown_provider")
    try:
        adapter.module.verify_signature(raw_body=raw_body, headers=headers, secret=adapter.secret, now=now)
    except AuthenticationError as exc:
        incr_metric("webhook.signature.rejected", provider_slug=provider_slug, reason=exc.reason)
        log_event(
            "webhook_signature_rejected",
            level=logging.ERROR if exc.reason == "secret_not_configured" else logging.WARNING,
            request_id=request_id,
            provider_slug=provider_slug,
            reason=exc.reason,
            message=str(exc),
        )
        raise
    incr_metric("webhook.signature.verified", provider_slug=provider_slug)
