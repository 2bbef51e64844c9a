"""Common helpers for durable store records."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def optional_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def optional_from_iso(value: str | None) -> datetime | None:
    return from_iso(value) if value else None


def dumps(payload: dict[str, Any]) -> str:
    """Serialize a record for the store with stable key order."""

    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def loads(raw: str) -> dict[str, Any]:
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError(f"Store record must be a JSON object, got {type(payload).__name__}")
    return payload
