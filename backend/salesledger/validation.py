# Overview: Input coercion for request payloads; strict integers, booleans and ISO-8601 datetimes.

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable

from salesledger.errors import InvalidTransactionError
from salesledger.time_utils import normalize_datetime, parse_iso_datetime, utcnow

# Accounting dates may run slightly ahead of the server clock
FUTURE_TOLERANCE = timedelta(minutes=2)


def coerce_int(value: Any, field: str, *, required: bool = True) -> int | None:
    """Plain integers only: rejects bools, floats, decimals and scientific notation."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise InvalidTransactionError(f"{field} is required", details={"field": field})
        return None
    if isinstance(value, bool):
        raise InvalidTransactionError(f"{field} must be an integer", details={"field": field})
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower() or "." in stripped:
            raise InvalidTransactionError(f"{field} must be a plain integer", details={"field": field})
        try:
            return int(stripped)
        except ValueError:
            raise InvalidTransactionError(f"{field} must be an integer", details={"field": field}) from None
    raise InvalidTransactionError(f"{field} must be an integer", details={"field": field})


def coerce_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no"):
        return False
    raise InvalidTransactionError(f"{field} must be a boolean", details={"field": field})


def coerce_datetime(value: Any, field: str) -> datetime | None:
    """
    Normalize to canonical UTC-naive datetime.

    - None / "" -> None
    - aware datetime -> converted to UTC; naive -> taken as UTC
    - str -> ISO-8601 with Z or offset
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return normalize_datetime(value)
    if isinstance(value, str):
        try:
            return parse_iso_datetime(value)
        except ValueError:
            raise InvalidTransactionError(
                f"{field} must be an ISO-8601 datetime", details={"field": field, "value": value}
            ) from None
    raise InvalidTransactionError(f"{field} must be a datetime", details={"field": field})


def accounting_date(value: Any, field: str = "date") -> datetime:
    """Accounting date of a new transaction; defaults to now, never in the future."""
    dt = coerce_datetime(value, field)
    now = utcnow()
    if dt is None:
        return now
    if dt > now + FUTURE_TOLERANCE:
        raise InvalidTransactionError(f"{field} cannot be in the future", details={"field": field})
    return dt


def clean_str(value: Any, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:max_length] if max_length else text


def reject_unknown_fields(payload: dict, allowed: Iterable[str]) -> None:
    allowed = set(allowed)
    unknown = sorted(k for k in payload if k not in allowed)
    if unknown:
        raise InvalidTransactionError(
            f"Field(s) cannot be changed: {', '.join(unknown)}",
            details={"fields": unknown},
        )
