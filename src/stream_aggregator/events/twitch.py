"""Twitch EventSub payload normalization.

:func:`normalize_twitch_event` takes the EventSub subscription type and the
``event`` object of a notification and returns a canonical event, or
``None`` for subscription types the aggregator does not surface.

Usage::

    from stream_aggregator.events.twitch import normalize_twitch_event

    event = normalize_twitch_event("channel.cheer", notification["event"], clock=clock)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from stream_aggregator.core.clock import Clock
from stream_aggregator.core.exceptions import NormalizationError
from stream_aggregator.events.canonical import (
    chat_event,
    finite_number,
    gift_event,
    gift_paypiggy_event,
    paypiggy_event,
    positive_int,
    require_identity,
    stream_status_event,
)
from stream_aggregator.events.timestamps import resolve_timestamp

logger = logging.getLogger(__name__)

PLATFORM = "twitch"

_CHEERMOTE_RE = re.compile(r"^([A-Za-z]+?)(\d+)$")

# Subscription types whose payloads carry no deliverable event.
MODERATION_TYPES: frozenset[str] = frozenset({
    "channel.chat.clear",
    "channel.chat.clear_user_messages",
    "channel.chat.message_delete",
    "channel.moderate",
    "channel.ban",
    "channel.unban",
})


def extract_message_data(message: Any) -> tuple[str, dict[str, Any] | None]:
    """Split an EventSub message into plain text and cheermote info.

    Text fragments are joined; cheermote fragments are removed from the
    text and summarized as ``{prefix, text, total_bits, count, types,
    is_mixed}``.  A message without fragments falls back to its ``text``.
    """
    if isinstance(message, str):
        return message.strip(), None
    if not isinstance(message, Mapping):
        return "", None

    fragments = message.get("fragments")
    if not isinstance(fragments, list) or not fragments:
        text = message.get("text")
        return (text.strip() if isinstance(text, str) else ""), None

    text_parts: list[str] = []
    cheermotes: list[Mapping[str, Any]] = []
    for fragment in fragments:
        if not isinstance(fragment, Mapping):
            continue
        kind = fragment.get("type")
        if kind == "cheermote" and isinstance(fragment.get("cheermote"), Mapping):
            cheermotes.append(fragment)
        elif kind in ("text", "emote", "mention"):
            text_parts.append(str(fragment.get("text") or ""))
    text = " ".join("".join(text_parts).split()) if text_parts else ""

    if not cheermotes:
        return text, None

    total_bits = 0
    types: list[str] = []
    for fragment in cheermotes:
        cheermote = fragment["cheermote"]
        bits = positive_int(cheermote.get("bits"))
        if bits is None:
            match = _CHEERMOTE_RE.match(str(fragment.get("text") or ""))
            bits = int(match.group(2)) if match else 0
        total_bits += bits
        prefix = str(cheermote.get("prefix") or "")
        if prefix and prefix.lower() not in (seen.lower() for seen in types):
            types.append(prefix)
    primary = cheermotes[0]
    info = {
        "prefix": primary["cheermote"].get("prefix"),
        "text": primary.get("text"),
        "total_bits": total_bits,
        "count": len(cheermotes),
        "types": types,
        "is_mixed": len(types) > 1,
    }
    return text, info


def _timestamp(event: Mapping[str, Any], clock: Clock | None, *keys: str) -> str:
    for key in (*keys, "timestamp"):
        if event.get(key):
            return resolve_timestamp(event[key], clock)
    return resolve_timestamp(None, clock)


def _metadata(event: Mapping[str, Any], subscription_type: str, **extra: Any) -> dict[str, Any]:
    metadata: dict[str, Any] = {"subscription_type": subscription_type}
    if event.get("message_id"):
        metadata["message_id"] = event["message_id"]
    metadata.update({key: value for key, value in extra.items() if value is not None})
    return metadata


# ---------------------------------------------------------------------------
# Per-type normalizers
# ---------------------------------------------------------------------------


def _chat(event: Mapping[str, Any], subscription_type: str, clock: Clock | None) -> dict[str, Any] | None:
    user_id, username = require_identity(
        PLATFORM, event.get("chatter_user_id"), event.get("chatter_user_name") or event.get("chatter_user_login"), event
    )
    if event.get("message_type") in ("moderation", "system"):
        logger.debug("twitch: suppressing %s chat message from %s", event.get("message_type"), username)
        return None
    text, cheermote_info = extract_message_data(event.get("message"))
    if not text and cheermote_info is None:
        raise NormalizationError("Missing twitch message text", PLATFORM, dict(event))
    badges = event.get("badges") or []
    badge_ids = {badge.get("set_id") for badge in badges if isinstance(badge, Mapping)}
    flags = {
        "self": bool(event.get("broadcaster_user_id")) and event.get("broadcaster_user_id") == user_id,
        "is_mod": "moderator" in badge_ids,
        "is_subscriber": "subscriber" in badge_ids,
        "is_broadcaster": "broadcaster" in badge_ids,
        "display_name": event.get("chatter_user_name"),
        "badges": sorted(badge_id for badge_id in badge_ids if badge_id),
    }
    return chat_event(
        PLATFORM,
        user_id=user_id,
        username=username,
        text=text or str(cheermote_info.get("text") if cheermote_info else ""),
        timestamp=_timestamp(event, clock),
        raw=dict(event),
        metadata=_metadata(event, subscription_type, cheermote_info=cheermote_info),
        flags=flags,
        clock=clock,
    )


def _cheer(event: Mapping[str, Any], subscription_type: str, clock: Clock | None) -> dict[str, Any]:
    if event.get("is_anonymous"):
        user_id, username = "anonymous", "Anonymous"
    else:
        user_id, username = require_identity(PLATFORM, event.get("user_id"),
                                             event.get("user_name") or event.get("user_login"), event)
    bits = finite_number(event.get("bits"))
    if bits is None or bits <= 0:
        raise NormalizationError("Twitch cheer payload requires numeric bits", PLATFORM, dict(event))
    message = event.get("message")
    text, cheermote_info = extract_message_data(message)
    return gift_event(
        PLATFORM,
        user_id=user_id,
        username=username,
        gift_id=event.get("message_id") or event.get("id"),
        gift_type="bits",
        gift_count=1,
        unit_amount=bits,
        currency="bits",
        timestamp=_timestamp(event, clock),
        message=text or None,
        raw=dict(event),
        metadata=_metadata(event, subscription_type, cheermote_info=cheermote_info,
                           is_anonymous=bool(event.get("is_anonymous"))),
        clock=clock,
    )


def _subscribe(event: Mapping[str, Any], subscription_type: str, clock: Clock | None) -> dict[str, Any] | None:
    if subscription_type == "channel.subscribe" and event.get("is_gift") is True:
        logger.debug("twitch: suppressing gifted subscription for %s, reported by channel.subscription.gift",
                     event.get("user_name"))
        return None
    months = positive_int(event.get("cumulative_months") or event.get("months"))
    text, _cheer_info = extract_message_data(event.get("message"))
    return paypiggy_event(
        PLATFORM,
        user_id=event.get("user_id"),
        username=event.get("user_name") or event.get("user_login"),
        timestamp=_timestamp(event, clock),
        tier=event.get("tier"),
        months=months,
        message=text or None,
        extra={
            "is_gift": bool(event.get("is_gift")),
            "is_renewal": months is not None and months > 1,
        },
        raw=dict(event),
        metadata=_metadata(event, subscription_type),
        clock=clock,
    )


def _gift_subscription(event: Mapping[str, Any], subscription_type: str, clock: Clock | None) -> dict[str, Any]:
    if event.get("is_anonymous"):
        user_id, username = "anonymous", "Anonymous"
    else:
        user_id, username = event.get("user_id"), event.get("user_name") or event.get("user_login")
    return gift_paypiggy_event(
        PLATFORM,
        user_id=user_id,
        username=username,
        timestamp=_timestamp(event, clock),
        gift_count=event.get("total"),
        tier=event.get("tier"),
        is_anonymous=bool(event.get("is_anonymous")),
        cumulative_total=event.get("cumulative_total"),
        raw=dict(event),
        metadata=_metadata(event, subscription_type),
        clock=clock,
    )


def _stream_online(event: Mapping[str, Any], subscription_type: str, clock: Clock | None) -> dict[str, Any]:
    return stream_status_event(PLATFORM, True, _timestamp(event, clock, "started_at"), event.get("id"), clock)


def _stream_offline(event: Mapping[str, Any], subscription_type: str, clock: Clock | None) -> dict[str, Any]:
    return stream_status_event(PLATFORM, False, _timestamp(event, clock), event.get("id"), clock)


_NORMALIZERS = {
    "channel.chat.message": _chat,
    "channel.cheer": _cheer,
    "channel.subscribe": _subscribe,
    "channel.subscription.message": _subscribe,
    "channel.subscription.gift": _gift_subscription,
    "stream.online": _stream_online,
    "stream.offline": _stream_offline,
}


def supported_types() -> list[str]:
    return sorted(_NORMALIZERS)


def normalize_twitch_event(
    subscription_type: str,
    event: Mapping[str, Any],
    clock: Clock | None = None,
) -> dict[str, Any] | None:
    """Normalize one EventSub notification.

    Returns:
        The canonical event, or ``None`` for moderation and unsupported
        subscription types.

    Raises:
        NormalizationError: When the payload lacks identity or required
            subtype fields.
    """
    if not isinstance(event, Mapping):
        raise NormalizationError("Twitch event payload must be a mapping", PLATFORM)
    if subscription_type in MODERATION_TYPES:
        logger.debug("twitch: dropping moderation notification %s", subscription_type)
        return None
    normalizer = _NORMALIZERS.get(subscription_type)
    if normalizer is None:
        logger.debug("twitch: no normalizer for subscription type %s", subscription_type)
        return None
    return normalizer(event, subscription_type, clock)
