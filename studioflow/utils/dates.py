"""Datetime helpers shared by the orchestrator, store and clients."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_dt(value: Any) -> Optional[datetime]:
    """Coerce an ISO string or datetime into a timezone-aware datetime.

    Accepts the trailing ``Z`` produced by JavaScript ``toISOString()``.
    Returns None for anything that cannot be parsed.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return None


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    coerced = coerce_dt(dt)
    return coerced.isoformat() if coerced else None


def to_epoch(dt: Optional[datetime]) -> Optional[int]:
    if dt is None:
        return None
    coerced = coerce_dt(dt)
    return int(coerced.timestamp()) if coerced else None
