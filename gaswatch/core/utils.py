"""
GasWatch Utility Functions
==========================

Timestamp and unit-conversion helpers shared by the feeds, the store and the
query path.

All timestamps that reach the Record Store go through :func:`to_iso` so that
lexicographic comparison in SQL matches chronological order.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

WEI_PER_GWEI = 1_000_000_000


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """
    Format a datetime as a canonical UTC ISO-8601 string.

    Example: ``2024-05-01T12:00:00.250Z``.  Naive datetimes are taken as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def timestamp_ago(
    minutes: int = 0,
    hours: int = 0,
    days: int = 0,
    now: Optional[datetime] = None,
) -> str:
    """Get canonical timestamp from some time ago."""
    dt = (now or utc_now()) - timedelta(minutes=minutes, hours=hours, days=days)
    return to_iso(dt)


def parse_rfc3339(timestamp: str) -> datetime:
    """
    Parse RFC3339 timestamps with optional nanoseconds into UTC datetime.

    Tendermint reports block times like ``2024-05-01T12:00:00.123456789Z``,
    which ``datetime.fromisoformat`` rejects because of the nine fraction
    digits.
    """
    if not timestamp:
        raise ValueError("Timestamp is empty")
    if timestamp.endswith("Z"):
        timestamp = timestamp[:-1] + "+00:00"
    if "." in timestamp:
        prefix, rest = timestamp.split(".", 1)
        if "+" in rest or "-" in rest:
            sign = "+" if "+" in rest else "-"
            frac, offset = rest.split(sign, 1)
            frac = (frac + "000000")[:6]
            timestamp = f"{prefix}.{frac}{sign}{offset}"
        else:
            frac = (rest + "000000")[:6]
            timestamp = f"{prefix}.{frac}"
    parsed = datetime.fromisoformat(timestamp)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_timestamp(timestamp: str) -> str:
    """Re-format any RFC3339 timestamp into the canonical store format."""
    return to_iso(parse_rfc3339(timestamp))


def epoch_to_iso(seconds: Union[int, float]) -> str:
    """Convert epoch seconds to the canonical timestamp format."""
    return to_iso(datetime.fromtimestamp(seconds, tz=timezone.utc))


def hex_to_int(value: str) -> int:
    """Decode a JSON-RPC quantity (``0x``-prefixed hex string)."""
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        raise ValueError(f"Not a hex quantity: {value!r}")
    return int(value, 16)


def wei_to_gwei(wei: int) -> float:
    """Convert an integer wei amount to gwei."""
    return wei / WEI_PER_GWEI


def safe_float(value) -> Optional[float]:
    """Coerce a feed value to float, mapping missing or non-finite to None."""
    if value is None:
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result
