from datetime import datetime, timezone, timedelta
from typing import Optional

# Fixed width so timestamps sort lexically, e.g. '2025-11-06T09:12:34.123456Z'
ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_iso(value: str) -> datetime:
    """Parse a timestamp written by :func:`to_iso` (or any ISO string with Z)."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return to_iso(utc_now())


def iso_in_utc_from_seconds_from_now(seconds: float) -> str:
    """Return UTC ISO time `seconds` from now, with 'Z' suffix."""
    return to_iso(utc_now() + timedelta(seconds=seconds))


def advance_timestamp(previous: Optional[str]) -> str:
    """
    Stamp for a mutation that must sort strictly after `previous`.
    Falls back to previous + 1µs when the clock has not moved on.
    """
    now = utc_now()
    if previous:
        floor = parse_iso(previous) + timedelta(microseconds=1)
        if now < floor:
            now = floor
    return to_iso(now)
