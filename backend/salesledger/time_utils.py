# Overview: Timestamp helpers; every stored datetime is UTC-naive and serialized with a trailing Z.

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Canonical server clock (UTC, naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_datetime(dt: datetime) -> datetime:
    """Aware values are shifted to UTC and stripped; naive values are already UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    ISO-8601 text to a UTC-naive datetime.

    Accepts a bare date, a naive timestamp (read as UTC), a trailing Z or an
    explicit offset. Blank input gives None; malformed input raises ValueError.
    """
    text = (value or "").strip()
    if not text:
        return None
    if text[-1] in "zZ":
        text = f"{text[:-1]}+00:00"
    return normalize_datetime(datetime.fromisoformat(text))


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    stamp = normalize_datetime(dt).replace(microsecond=0)
    return f"{stamp.isoformat()}Z"


def year_month_code(dt: Optional[datetime] = None) -> str:
    """Invoice period, e.g. 2610 for October 2026."""
    return f"{dt or utcnow():%y%m}"


def day_code(dt: Optional[datetime] = None) -> str:
    """Waybill day, e.g. 20261005."""
    return f"{dt or utcnow():%Y%m%d}"
