"""YouTube live-chat item normalization.

Chat items arrive as ``{"item": {...}, "videoId": "..."}`` wrappers around
the InnerTube live-chat renderers.  :func:`normalize_youtube_item` maps
text messages, Super Chats, Super Stickers, memberships and gifted
membership purchases onto canonical events; moderation actions are
suppressed.

Usage::

    from stream_aggregator.events.youtube import normalize_youtube_item

    event = normalize_youtube_item(chat_item, clock=clock)
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
    require_identity,
)
from stream_aggregator.events.timestamps import resolve_timestamp

logger = logging.getLogger(__name__)

PLATFORM = "youtube"

TEXT_MESSAGE = "LiveChatTextMessage"
PAID_MESSAGE = "LiveChatPaidMessage"
PAID_STICKER = "LiveChatPaidSticker"
MEMBERSHIP_ITEM = "LiveChatMembershipItem"
GIFT_PURCHASE = "LiveChatSponsorshipsGiftPurchaseAnnouncement"

MODERATION_TYPES: frozenset[str] = frozenset({
    "RemoveChatItemAction",
    "RemoveChatItemByAuthorAction",
    "MarkChatItemAsDeletedAction",
    "MarkChatItemsByAuthorAsDeletedAction",
    "LiveChatModerationMessage",
    "LiveChatBanMessage",
})

_CODE_SPACE_RE = re.compile(r"^([A-Za-z]{3})\s+([0-9.,]+)$")
_CODE_SYMBOL_RE = re.compile(r"^([A-Za-z]{1,3})\$([0-9.,]+)$")
_SYMBOLS: tuple[tuple[str, str], ...] = (
    ("₺", "TRY"),
    ("₹", "INR"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₩", "KRW"),
    ("₽", "RUB"),
    ("฿", "THB"),
    ("₱", "PHP"),
    ("₦", "NGN"),
    ("₴", "UAH"),
    ("₪", "ILS"),
    ("₫", "VND"),
    ("R$", "BRL"),
    ("$", "USD"),
)
_DOLLAR_PREFIXES: dict[str, str] = {
    "CA": "CAD", "A": "AUD", "NZ": "NZD", "HK": "HKD", "NT": "TWD", "MX": "MXN", "S": "SGD", "US": "USD", "R": "BRL",
}


def extract_youtube_message_text(message: Any) -> str:
    """Flatten a YouTube message to plain text.

    Accepts a string, an object with ``text``, a list of parts, a ``runs``
    object or a ``simpleText`` object.  Emoji parts render as their first
    shortcut (``:smile:``).
    """
    if isinstance(message, str):
        return message.strip()
    if not message:
        return ""
    if isinstance(message, list):
        parts = message
    elif isinstance(message, Mapping):
        if isinstance(message.get("text"), str) and message["text"]:
            return message["text"].strip()
        if isinstance(message.get("runs"), list):
            parts = message["runs"]
        elif isinstance(message.get("simpleText"), str):
            return message["simpleText"].strip()
        else:
            return ""
    else:
        return ""

    rendered: list[str] = []
    for part in parts:
        if not isinstance(part, Mapping):
            continue
        emoji = part.get("emoji")
        if isinstance(emoji, Mapping) and emoji.get("shortcuts"):
            rendered.append(str(emoji["shortcuts"][0]))
        else:
            rendered.append(str(part.get("text") or ""))
    return "".join(rendered).strip()


def _parse_amount_text(text: str) -> float | None:
    cleaned = text.strip()
    if "," in cleaned and "." in cleaned:
        cleaned = cleaned.replace(",", "") if cleaned.rfind(".") > cleaned.rfind(",") else (
            cleaned.replace(".", "").replace(",", ".")
        )
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        cleaned = f"{head.replace(',', '')}.{tail}" if len(tail) <= 2 else cleaned.replace(",", "")
    return finite_number(cleaned)


def parse_display_amount(display: str) -> tuple[float, str] | None:
    """Parse a localized purchase string such as ``"$5.00"`` or ``"CA$10.00"``.

    Returns:
        ``(amount, currency_code)`` or ``None`` when unparseable or not
        positive.
    """
    if not isinstance(display, str):
        return None
    text = display.strip().replace("\u00a0", " ")
    if not text or text.startswith("-"):
        return None

    match = _CODE_SPACE_RE.match(text)
    if match:
        amount = _parse_amount_text(match.group(2))
        return (amount, match.group(1).upper()) if amount and amount > 0 else None

    match = _CODE_SYMBOL_RE.match(text)
    if match:
        amount = _parse_amount_text(match.group(2))
        prefix = match.group(1).upper()
        currency = _DOLLAR_PREFIXES.get(prefix, prefix if len(prefix) == 3 else "USD")
        return (amount, currency) if amount and amount > 0 else None

    for symbol, currency in _SYMBOLS:
        if symbol in text:
            amount = _parse_amount_text(text.replace(symbol, "").strip())
            return (amount, currency) if amount and amount > 0 else None
    return None


def _purchase(item: Mapping[str, Any], label: str) -> tuple[float, str]:
    raw = item.get("purchase_amount")
    if isinstance(raw, str) and finite_number(raw) is None:
        parsed = parse_display_amount(raw)
        if parsed is None:
            raise NormalizationError(f"{label} requires valid purchase_amount", PLATFORM, dict(item))
        return parsed
    amount = finite_number(raw)
    if amount is None or amount <= 0:
        raise NormalizationError(f"{label} requires valid amount", PLATFORM, dict(item))
    currency = item.get("purchase_currency")
    if not isinstance(currency, str) or not currency.strip():
        raise NormalizationError(f"{label} requires currency", PLATFORM, dict(item))
    return amount, currency.strip().upper()


def _structured_text(field: Any) -> str:
    if isinstance(field, Mapping) and isinstance(field.get("runs"), list):
        return "".join(str(run.get("text") or "") for run in field["runs"] if isinstance(run, Mapping)).strip()
    if isinstance(field, Mapping):
        raw = field.get("simpleText") or field.get("text") or ""
        return raw.strip() if isinstance(raw, str) else ""
    return field.strip() if isinstance(field, str) else ""


def _item_type(item: Mapping[str, Any]) -> str:
    item_type = item.get("type")
    if isinstance(item_type, str) and item_type:
        return item_type
    if item.get("superchat") or (item.get("purchase_amount") is not None and not item.get("sticker")):
        return PAID_MESSAGE
    if item.get("supersticker") or item.get("sticker"):
        return PAID_STICKER
    if item.get("giftMembershipsCount") is not None:
        return GIFT_PURCHASE
    if item.get("isMembership") or item.get("headerPrimaryText"):
        return MEMBERSHIP_ITEM
    return TEXT_MESSAGE


def _author_flags(author: Mapping[str, Any]) -> dict[str, Any]:
    badges = [badge for badge in author.get("badges") or [] if isinstance(badge, Mapping)]
    badge_labels = [str(badge.get("tooltip") or badge.get("label") or "") for badge in badges]
    return {
        "is_broadcaster": any(badge.get("icon_type") == "OWNER" for badge in badges)
        or author.get("isChatOwner") is True,
        "is_mod": author.get("is_moderator") is True or any(badge.get("icon_type") == "MODERATOR" for badge in badges),
        "is_subscriber": any("member" in label.lower() for label in badge_labels),
        "badges": [label for label in badge_labels if label],
        "author": {
            "channel_id": author.get("channelId") or author.get("id"),
            "name": author.get("name"),
            "isChatOwner": author.get("isChatOwner") is True,
        },
    }


def normalize_youtube_item(chat_item: Mapping[str, Any], clock: Clock | None = None) -> dict[str, Any] | None:
    """Normalize one live-chat item.

    Returns:
        The canonical event, or ``None`` for moderation actions.

    Raises:
        NormalizationError: On a missing item, identity or required
            monetization fields.
    """
    if not isinstance(chat_item, Mapping):
        raise NormalizationError("Missing YouTube chat item", PLATFORM)
    item = chat_item.get("item")
    if not isinstance(item, Mapping):
        raise NormalizationError("Missing YouTube chat item payload", PLATFORM, dict(chat_item))

    item_type = _item_type(item)
    author = item.get("author")
    if item_type in MODERATION_TYPES and not isinstance(author, Mapping):
        logger.debug("youtube: dropping moderation action %s", item_type)
        return None
    if not isinstance(author, Mapping):
        raise NormalizationError("Missing YouTube author data", PLATFORM, dict(chat_item))

    raw_name = author.get("name")
    if isinstance(raw_name, str):
        raw_name = raw_name.strip().removeprefix("@")
    user_id, username = require_identity(PLATFORM, author.get("channelId") or author.get("id"), raw_name, dict(item))
    if item_type in MODERATION_TYPES:
        logger.debug("youtube: dropping moderation action %s by %s", item_type, username)
        return None

    timestamp_usec = item.get("timestamp_usec") or item.get("timestampUsec")
    raw_timestamp = timestamp_usec if timestamp_usec is not None else item.get("timestamp")
    timestamp = resolve_timestamp(raw_timestamp, clock)
    metadata: dict[str, Any] = {"message_id": item.get("id"), "item_type": item_type}
    if finite_number(timestamp_usec) is not None:
        metadata["timestamp_usec"] = int(finite_number(timestamp_usec) or 0)
    video_id = chat_item.get("videoId") or chat_item.get("video_id")
    if video_id:
        metadata["video_id"] = video_id
    thumbnails = author.get("thumbnails")
    if isinstance(thumbnails, list) and thumbnails and isinstance(thumbnails[0], Mapping):
        metadata["author_photo"] = thumbnails[0].get("url")
    flags = _author_flags(author)
    common = {"user_id": user_id, "username": username, "timestamp": timestamp, "raw": dict(item), "clock": clock}

    if item_type in (PAID_MESSAGE, PAID_STICKER):
        label = "YouTube Super Chat" if item_type == PAID_MESSAGE else "YouTube Super Sticker"
        amount, currency = _purchase(item, label)
        if item_type == PAID_MESSAGE:
            superchat = item.get("superchat")
            source = superchat.get("message") if isinstance(superchat, Mapping) else item.get("message")
            message = extract_youtube_message_text(source)
        else:
            sticker = item.get("sticker") or item.get("supersticker") or {}
            message = ""
            if isinstance(sticker, Mapping):
                message = str(sticker.get("name") or sticker.get("altText") or _structured_text(sticker.get("label")))
        return gift_event(
            PLATFORM,
            gift_id=item.get("id"),
            gift_type="Super Chat" if item_type == PAID_MESSAGE else "Super Sticker",
            gift_count=1,
            unit_amount=amount,
            currency=currency,
            message=message or None,
            metadata={**metadata, "is_broadcaster": flags["is_broadcaster"]},
            **common,
        )

    if item_type == MEMBERSHIP_ITEM:
        months = item.get("memberMilestoneDurationInMonths")
        message = _structured_text(item.get("headerSubtext")) or extract_youtube_message_text(item.get("message"))
        return paypiggy_event(
            PLATFORM,
            tier=item.get("tier"),
            months=months,
            membership_level=_structured_text(item.get("headerPrimaryText")) or None,
            message=message or None,
            metadata=metadata,
            **common,
        )

    if item_type == GIFT_PURCHASE:
        return gift_paypiggy_event(
            PLATFORM,
            gift_count=item.get("giftMembershipsCount"),
            tier=item.get("tier"),
            metadata=metadata,
            **common,
        )

    if item_type != TEXT_MESSAGE:
        logger.debug("youtube: treating unknown item type %s as chat", item_type)
    text = extract_youtube_message_text(item.get("message"))
    return chat_event(PLATFORM, text=text, metadata=metadata, flags=flags, **common)
