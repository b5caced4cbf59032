"""Timestamp resolution for raw platform payloads.

Platforms report event times in several shapes: epoch seconds (Twitch
EventSub fallbacks), epoch milliseconds (TikTok ``createTime``), epoch
microseconds (YouTube ``timestampUsec``) and ISO-8601 strings.  Numeric
epochs are classified by magnitude; anything unparseable falls back to the
ingest time of the injected clock.

Usage::

    from stream_aggregator.events.timestamps import resolve_timestamp

    iso = resolve_timestamp(raw.get("timestampUsec"), clock=clock)
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

from stream_aggregator.core.clock import Clock, SystemClock, ms_to_iso

# Magnitude boundaries for numeric epochs.  A seconds value crosses 1e11 in
# the year 5138; a milliseconds value crosses 1e14 in the year 5138 as well.
_SECONDS_LIMIT = 1e11
_MILLIS_LIMIT = 1e14
_MICROS_LIMIT = 1e17


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            number = float(stripped)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def parse_iso(value: str) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix accepted) into an aware datetime."""
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_epoch_ms(value: Any) -> float | None:
    """Convert a raw timestamp to epoch milliseconds, or ``None`` when unusable.

    Numeric values (and numeric strings) are classified by magnitude as
    seconds, milliseconds, microseconds or nanoseconds.  Non-positive values
    are rejected.  Other strings are parsed as ISO-8601; ``datetime``
    instances are accepted directly.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp() * 1000.0

    number = _as_number(value)
    if number is not None:
        if number <= 0:
            return None
        if number < _SECONDS_LIMIT:
            return number * 1000.0
        if number < _MILLIS_LIMIT:
            return number
        if number < _MICROS_LIMIT:
            return number / 1000.0
        return number / 1_000_000.0

    if isinstance(value, str):
        parsed = parse_iso(value)
        if parsed is not None:
            return parsed.timestamp() * 1000.0
    return None


def resolve_timestamp_ms(value: Any, clock: Clock | None = None) -> int:
    """Return *value* as integer epoch milliseconds, falling back to ingest time."""
    resolved = to_epoch_ms(value)
    if resolved is None:
        return (clock or SystemClock()).now_ms()
    return int(resolved)


def resolve_timestamp(value: Any, clock: Clock | None = None) -> str:
    """Return *value* as an ISO-8601 UTC string, falling back to ingest time."""
    return ms_to_iso(resolve_timestamp_ms(value, clock))


def iso_to_epoch_us(value: str) -> int | None:
    """Convert an ISO-8601 string to integer epoch microseconds."""
    parsed = parse_iso(value)
    if parsed is None:
        return None
    return int(round(parsed.timestamp() * 1_000_000))


def is_iso_timestamp(value: Any) -> bool:
    return isinstance(value, str) and parse_iso(value) is not None
