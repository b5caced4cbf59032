"""Canonical event constructors shared by the per-platform normalizers.

Each constructor validates the identity and subtype fields it needs and
returns a built event (see :mod:`stream_aggregator.events.builder`).  A
missing ``user_id`` or ``username`` raises :class:`NormalizationError` with
kind ``invalid-payload``; platform modules never emit partial identities.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from stream_aggregator.core.clock import Clock
from stream_aggregator.core.exceptions import NormalizationError
from stream_aggregator.events.builder import EventBuilder, EventType


def _clean(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        return str(value) if not isinstance(value, float) or math.isfinite(value) else ""
    if isinstance(value, str):
        return value.strip()
    return ""


def require_identity(platform: str, user_id: Any, username: Any, raw: Any = None) -> tuple[str, str]:
    """Return ``(user_id, username)`` as non-empty strings.

    Raises:
        NormalizationError: When either field is missing or blank.
    """
    clean_id = _clean(user_id)
    clean_name = _clean(username)
    if not clean_id:
        raise NormalizationError(f"Missing {platform} user_id", platform, raw if isinstance(raw, dict) else None)
    if not clean_name:
        raise NormalizationError(f"Missing {platform} username", platform, raw if isinstance(raw, dict) else None)
    return clean_id, clean_name


def finite_number(value: Any) -> float | None:
    """Return *value* as a finite float; numeric strings are accepted."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def positive_int(value: Any) -> int | None:
    number = finite_number(value)
    if number is None or number <= 0:
        return None
    return int(number)


def _number_out(value: float) -> int | float:
    return int(value) if float(value).is_integer() else value


def _base(platform: str, event_type: EventType, timestamp: str, clock: Clock | None) -> EventBuilder:
    return EventBuilder(clock).platform(platform).type(event_type).timestamp(timestamp)


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def chat_event(
    platform: str,
    *,
    user_id: Any,
    username: Any,
    text: Any,
    timestamp: str,
    raw: Any = None,
    metadata: Mapping[str, Any] | None = None,
    flags: Mapping[str, Any] | None = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    """Build a ``platform:chat-message`` event.

    *flags* (``is_mod``, ``is_subscriber``, ``is_broadcaster``, ``self``,
    ``badges``, ...) are copied onto the event for the self-message filter
    and downstream renderers.
    """
    user_id, username = require_identity(platform, user_id, username, raw)
    if not isinstance(text, str) or not text.strip():
        raise NormalizationError(f"Missing {platform} message text", platform, raw if isinstance(raw, dict) else None)
    builder = (
        _base(platform, EventType.CHAT_MESSAGE, timestamp, clock)
        .user_id(user_id)
        .username(username)
        .message(text.strip())
        .metadata(metadata or {})
    )
    if flags:
        builder.data(flags)
    return builder.build()


def gift_event(
    platform: str,
    *,
    user_id: Any,
    username: Any,
    gift_id: Any,
    gift_type: str,
    gift_count: int,
    unit_amount: float,
    currency: str,
    timestamp: str,
    combo: bool = False,
    combo_type: Any = None,
    group_id: Any = None,
    repeat_end: Any = None,
    message: str | None = None,
    raw: Any = None,
    metadata: Mapping[str, Any] | None = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    """Build a ``platform:gift`` event with ``amount = unit_amount * gift_count``."""
    user_id, username = require_identity(platform, user_id, username, raw)
    raw_dict = raw if isinstance(raw, dict) else None
    if gift_count < 1:
        raise NormalizationError(f"{platform} gift requires gift_count >= 1", platform, raw_dict)
    if unit_amount < 0:
        raise NormalizationError(f"{platform} gift requires unit_amount >= 0", platform, raw_dict)
    data: dict[str, Any] = {
        "gift_type": gift_type,
        "gift_count": gift_count,
        "unit_amount": _number_out(unit_amount),
        "amount": _number_out(unit_amount * gift_count),
        "currency": currency,
        "combo": combo,
        "combo_type": combo_type,
        "group_id": group_id,
        "repeat_end": repeat_end,
    }
    builder = _base(platform, EventType.GIFT, timestamp, clock).user_id(user_id).username(username)
    if gift_id:
        builder.id(str(gift_id))
    if message:
        builder.message(message)
    return builder.data(data).metadata(metadata or {}).build()


def paypiggy_event(
    platform: str,
    *,
    user_id: Any,
    username: Any,
    timestamp: str,
    tier: Any = None,
    months: Any = None,
    membership_level: str | None = None,
    message: str | None = None,
    extra: Mapping[str, Any] | None = None,
    raw: Any = None,
    metadata: Mapping[str, Any] | None = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    """Build a ``platform:paypiggy`` event; optional fields are omitted when absent."""
    user_id, username = require_identity(platform, user_id, username, raw)
    data: dict[str, Any] = {}
    if tier:
        data["tier"] = tier
    resolved_months = positive_int(months)
    if resolved_months is not None:
        data["months"] = resolved_months
    if membership_level:
        data["membership_level"] = membership_level
    if extra:
        data.update(extra)
    builder = _base(platform, EventType.PAYPIGGY, timestamp, clock).user_id(user_id).username(username)
    if message:
        builder.message(message)
    return builder.data(data).metadata(metadata or {}).build()


def gift_paypiggy_event(
    platform: str,
    *,
    user_id: Any,
    username: Any,
    timestamp: str,
    gift_count: Any,
    tier: Any = None,
    is_anonymous: bool | None = None,
    cumulative_total: Any = None,
    raw: Any = None,
    metadata: Mapping[str, Any] | None = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    """Build a ``platform:giftpaypiggy`` event for gifted subscriptions or memberships."""
    user_id, username = require_identity(platform, user_id, username, raw)
    count = positive_int(gift_count)
    if count is None:
        raise NormalizationError(
            f"{platform} giftpaypiggy payload requires gift_count", platform, raw if isinstance(raw, dict) else None
        )
    data: dict[str, Any] = {"gift_count": count}
    if tier:
        data["tier"] = tier
    if is_anonymous is not None:
        data["is_anonymous"] = bool(is_anonymous)
    total = positive_int(cumulative_total)
    if total is not None:
        data["cumulative_total"] = total
    return (
        _base(platform, EventType.GIFT_PAYPIGGY, timestamp, clock)
        .user_id(user_id)
        .username(username)
        .data(data)
        .metadata(metadata or {})
        .build()
    )


def viewer_count_event(platform: str, count: Any, timestamp: str, clock: Clock | None = None) -> dict[str, Any]:
    number = finite_number(count)
    if number is None or number < 0:
        raise NormalizationError(f"{platform} viewer count requires a non-negative count", platform)
    return _base(platform, EventType.VIEWER_COUNT, timestamp, clock).data({"count": int(number)}).build()


def stream_status_event(
    platform: str,
    is_live: bool,
    timestamp: str,
    stream_id: Any = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    data: dict[str, Any] = {"is_live": bool(is_live)}
    if stream_id:
        data["stream_id"] = str(stream_id)
    return _base(platform, EventType.STREAM_STATUS, timestamp, clock).data(data).build()


def stream_detected_event(
    platform: str,
    *,
    new_stream_ids: list[str],
    all_stream_ids: list[str],
    detection_time: int,
    connection_count: int,
    ended_stream_ids: list[str] | None = None,
    timestamp: str,
    clock: Clock | None = None,
) -> dict[str, Any]:
    """Build a ``platform:stream-detected`` event.

    ``event_type`` is ``stream-ended`` when only *ended_stream_ids* changed.
    """
    ended = list(ended_stream_ids or [])
    event_type = "stream-detected" if new_stream_ids or not ended else "stream-ended"
    data: dict[str, Any] = {
        "event_type": event_type,
        "new_stream_ids": list(new_stream_ids),
        "all_stream_ids": list(all_stream_ids),
        "detection_time": detection_time,
        "connection_count": connection_count,
    }
    if ended:
        data["ended_stream_ids"] = ended
    return _base(platform, EventType.STREAM_DETECTED, timestamp, clock).data(data).build()


# ---------------------------------------------------------------------------
# Rendering copy
# ---------------------------------------------------------------------------


def paypiggy_copy(event: Mapping[str, Any]) -> str:
    """Return the verb used to render a paypiggy event.

    ``superfan`` tiers render as ``SuperFan``; otherwise YouTube renders
    ``member`` and every other platform ``subscribed``.
    """
    tier = event.get("tier")
    if isinstance(tier, str) and tier.lower() == "superfan":
        return "SuperFan"
    if event.get("platform") == "youtube":
        return "member"
    return "subscribed"
