"""Shared utility functions used across Blueprint modules."""
from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any

_MISSING = object()
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def normalize_answer(value: str | None) -> str:
    """Lowercase, collapse every non-alphanumeric run to one space, trim."""
    return _NON_ALNUM_RE.sub(" ", (value or "").lower()).strip()


def semantically_equal(a: str | None, b: str | None) -> bool:
    """Two answers are equal when their normalized forms match (both empty counts)."""
    return normalize_answer(a) == normalize_answer(b)


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware datetime."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)
