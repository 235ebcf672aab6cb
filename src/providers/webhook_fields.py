from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.domain.errors import MalformedPayloadError


def first_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def nested_dict(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def optional_int(payload: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        raw = payload.get(key)
        if raw is None:
            continue
        try:
            return int(raw)
        except (TypeError, ValueError):
            continue
    return None


def parse_timestamp(value: Any, *, default: datetime) -> datetime:
    """Accept ISO-8601 strings and unix epochs in seconds or milliseconds."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise MalformedPayloadError(f"Invalid timestamp: {value!r}", reason="invalid_timestamp")
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        number = float(value)
        # Anything past 10^10 is milliseconds; seconds will not reach that until 2286.
        if number > 10_000_000_000:
            number = number / 1000.0
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedPayloadError(f"Invalid timestamp: {value!r}", reason="invalid_timestamp") from exc
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise MalformedPayloadError(f"Invalid timestamp: {value!r}", reason="invalid_timestamp") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise MalformedPayloadError(f"Invalid timestamp: {value!r}", reason="invalid_timestamp")


def header(headers: Any, name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    if value is None:
        return None
    text = str(value).strip()
    return text or None
