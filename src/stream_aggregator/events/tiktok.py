"""TikTok webcast payload normalization.

Identity comes from the ``user`` block: ``userId`` (string-coerced) is the
canonical ``user_id`` and ``uniqueId`` the canonical ``username``;
``nickname`` is carried as ``display_name`` only.

Gifts are normalized per message.  Combo bursts (``giftType == 1``) arrive
as a series of messages with a growing cumulative ``repeatCount``; collapsing
them is the job of :class:`~stream_aggregator.events.gift_aggregator.TikTokGiftAggregator`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from stream_aggregator.core.clock import Clock
from stream_aggregator.core.exceptions import NormalizationError
from stream_aggregator.events.canonical import (
    chat_event,
    finite_number,
    gift_event,
    paypiggy_event,
    positive_int,
    require_identity,
    stream_status_event,
    viewer_count_event,
)
from stream_aggregator.events.timestamps import resolve_timestamp

logger = logging.getLogger(__name__)

PLATFORM = "tiktok"
COMBO_GIFT_TYPE = 1


def extract_user(data: Mapping[str, Any]) -> tuple[str, str, str | None]:
    """Return ``(user_id, username, display_name)`` from a webcast payload.

    Raises:
        NormalizationError: When ``user.userId`` or ``user.uniqueId`` is missing.
    """
    user = data.get("user")
    if not isinstance(user, Mapping):
        raise NormalizationError("Missing TikTok user data", PLATFORM, dict(data))
    user_id, username = require_identity(PLATFORM, user.get("userId"), user.get("uniqueId"), dict(data))
    nickname = user.get("nickname")
    return user_id, username, nickname.strip() if isinstance(nickname, str) and nickname.strip() else None


def event_timestamp(data: Mapping[str, Any], clock: Clock | None = None) -> str:
    """Resolve ``createTime`` (root or ``common``) or ``timestamp``, else ingest time."""
    common = data.get("common") if isinstance(data.get("common"), Mapping) else {}
    for candidate in (data.get("createTime"), common.get("createTime"), data.get("timestamp")):
        if candidate not in (None, "", 0, "0"):
            return resolve_timestamp(candidate, clock)
    return resolve_timestamp(None, clock)


def _message_id(data: Mapping[str, Any]) -> Any:
    common = data.get("common") if isinstance(data.get("common"), Mapping) else {}
    return data.get("msgId") or data.get("id") or common.get("msgId")


def _user_flags(data: Mapping[str, Any], display_name: str | None) -> dict[str, Any]:
    return {
        "display_name": display_name,
        "is_mod": bool(data.get("isModerator")),
        "is_subscriber": bool(data.get("isSubscriber")),
        "is_broadcaster": bool(data.get("isOwner")),
    }


def normalize_chat(data: Mapping[str, Any], clock: Clock | None = None) -> dict[str, Any]:
    user_id, username, display_name = extract_user(data)
    comment = data.get("comment")
    return chat_event(
        PLATFORM,
        user_id=user_id,
        username=username,
        text=comment,
        timestamp=event_timestamp(data, clock),
        raw=dict(data),
        metadata={"message_id": _message_id(data)},
        flags=_user_flags(data, display_name),
        clock=clock,
    )


def normalize_gift(data: Mapping[str, Any], clock: Clock | None = None) -> dict[str, Any]:
    """Normalize one gift message.

    ``giftDetails`` and the root ``repeatCount`` are the source of truth:
    ``unit_amount = diamondCount``, ``gift_count = repeatCount``,
    ``amount = unit_amount * gift_count`` in ``coins``.

    Raises:
        NormalizationError: On missing identity, gift name, non-finite
            diamond count or gift type, or a non-positive ``repeatCount``.
    """
    user_id, username, display_name = extract_user(data)
    details = data.get("giftDetails")
    if not isinstance(details, Mapping):
        raise NormalizationError("TikTok gift requires giftDetails", PLATFORM, dict(data))
    gift_name = details.get("giftName")
    if not isinstance(gift_name, str) or not gift_name.strip():
        raise NormalizationError("TikTok gift requires giftDetails.giftName", PLATFORM, dict(data))
    diamonds = details.get("diamondCount")
    if isinstance(diamonds, bool) or not isinstance(diamonds, (int, float)) or finite_number(diamonds) is None:
        raise NormalizationError("TikTok gift requires finite giftDetails.diamondCount", PLATFORM, dict(data))
    gift_type = details.get("giftType")
    if isinstance(gift_type, bool) or not isinstance(gift_type, (int, float)) or finite_number(gift_type) is None:
        raise NormalizationError("TikTok gift requires finite giftDetails.giftType", PLATFORM, dict(data))
    repeat_count = positive_int(data.get("repeatCount"))
    if repeat_count is None:
        raise NormalizationError("TikTok gift requires repeatCount > 0", PLATFORM, dict(data))

    return gift_event(
        PLATFORM,
        user_id=user_id,
        username=username,
        gift_id=_message_id(data),
        gift_type=gift_name.strip(),
        gift_count=repeat_count,
        unit_amount=diamonds,
        currency="coins",
        timestamp=event_timestamp(data, clock),
        combo=gift_type == COMBO_GIFT_TYPE,
        combo_type=gift_type,
        group_id=data.get("groupId"),
        repeat_end=data.get("repeatEnd"),
        raw=dict(data),
        metadata={"display_name": display_name, "gift_id": details.get("id") or data.get("giftId")},
        clock=clock,
    )


def normalize_subscription(data: Mapping[str, Any], clock: Clock | None = None, *, superfan: bool = False) -> dict[str, Any]:
    user_id, username, display_name = extract_user(data)
    tier = "superfan" if superfan else data.get("tier")
    message = data.get("message")
    return paypiggy_event(
        PLATFORM,
        user_id=user_id,
        username=username,
        timestamp=event_timestamp(data, clock),
        tier=tier.strip() if isinstance(tier, str) else tier,
        months=data.get("months") or data.get("subMonth"),
        message=message.strip() if isinstance(message, str) and message.strip() else None,
        raw=dict(data),
        metadata={"display_name": display_name},
        clock=clock,
    )


def normalize_viewer_count(data: Mapping[str, Any], clock: Clock | None = None) -> dict[str, Any]:
    return viewer_count_event(PLATFORM, data.get("viewerCount"), event_timestamp(data, clock), clock)


def normalize_stream_end(data: Mapping[str, Any], clock: Clock | None = None) -> dict[str, Any]:
    return stream_status_event(PLATFORM, False, event_timestamp(data, clock), data.get("roomId"), clock)


_NORMALIZERS = {
    "chat": normalize_chat,
    "gift": normalize_gift,
    "subscribe": normalize_subscription,
    "roomUser": normalize_viewer_count,
    "streamEnd": normalize_stream_end,
}


def normalize_tiktok_event(
    event_name: str,
    data: Mapping[str, Any],
    clock: Clock | None = None,
) -> dict[str, Any] | None:
    """Normalize one webcast event by its connector event name.

    Returns:
        The canonical event, or ``None`` for unsupported event names.
    """
    if not isinstance(data, Mapping):
        raise NormalizationError("TikTok event payload must be a mapping", PLATFORM)
    if event_name == "superfan":
        return normalize_subscription(data, clock, superfan=True)
    normalizer = _NORMALIZERS.get(event_name)
    if normalizer is None:
        logger.debug("tiktok: no normalizer for event %s", event_name)
        return None
    return normalizer(data, clock)
