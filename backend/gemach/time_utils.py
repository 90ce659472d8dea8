# Overview: UTC clock helpers; every stored timestamp is naive UTC.

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC now. Compare and store only values produced by this."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def is_past(moment: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when `moment` is set and strictly before `now` (default: utcnow())."""
    if moment is None:
        return False
    return _as_naive_utc(moment) < (now or utcnow())


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Report range bounds from query strings.

    Accepts "2026-03-01", "2026-03-01T09:30" (read as UTC) and offsets
    ("...Z", "...-05:00"). Blank -> None; anything else raises ValueError.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()
    if text[-1] in "zZ":
        text = text[:-1] + "+00:00"
    return _as_naive_utc(datetime.fromisoformat(text))


def to_utc_z(moment: Optional[datetime]) -> Optional[str]:
    """Second precision ISO-8601 with a trailing Z, for JSON responses."""
    if moment is None:
        return None
    return _as_naive_utc(moment).replace(microsecond=0).isoformat() + "Z"
