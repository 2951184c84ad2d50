from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_minor_units(value: Any) -> int:
    """
    Convert a major-unit amount ("2000.00", Decimal("2000"), 2000) to kobo.

    Floats are routed through ``str`` so 2000.1 becomes 200010, not 200009.
    Raises ValueError for anything that is not a finite number.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).replace(",", "").strip())
    except (InvalidOperation, AttributeError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(minor: int) -> Decimal:
    return (Decimal(minor) / 100).quantize(Decimal("0.01"))


def format_minor_units(minor: int, currency: str) -> str:
    """200000, "NGN" -> "NGN 2,000.00"."""
    return f"{currency} {to_major_units(minor):,.2f}"


def parse_timestamp(value: Any) -> datetime:
    """
    Parse unix seconds ("1718000000", 1718000000.5) or ISO-8601 into an aware UTC datetime.
    Raises ValueError when the value is neither.
    """
    if value is None or isinstance(value, bool):
        raise ValueError("timestamp missing")
    text = str(value).strip()
    if not text:
        raise ValueError("timestamp missing")
    try:
        return datetime.fromtimestamp(float(text), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))
