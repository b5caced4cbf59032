"""Unit tests for YouTube live-chat item normalization."""

from __future__ import annotations

import pytest

from stream_aggregator.core.exceptions import NormalizationError
from stream_aggregator.events.builder import validate_event
from stream_aggregator.events.youtube import (
    extract_youtube_message_text,
    normalize_youtube_item,
    parse_display_amount,
)

_USEC = 1_714_587_723_120_000


def _item(**overrides) -> dict:
    item = {
        "id": "yt-msg-1",
        "timestampUsec": str(_USEC),
        "author": {"channelId": "UC42", "name": "@alice", "thumbnails": [{"url": "https://img/a.png"}]},
        "message": {"runs": [{"text": "hello "}, {"emoji": {"shortcuts": [":wave:"]}}]},
    }
    item.update(overrides)
    return {"item": item, "videoId": "vid-1"}


class TestExtractMessageText:
    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            (" plain ", "plain"),
            ({"text": "direct"}, "direct"),
            ({"simpleText": "simple"}, "simple"),
            ([{"text": "a"}, {"text": "b"}], "ab"),
            ({"runs": [{"text": "hi "}, {"emoji": {"shortcuts": [":smile:", ":)"]}}]}, "hi :smile:"),
            (None, ""),
            ({}, ""),
        ],
    )
    def test_shapes(self, message, expected) -> None:
        assert extract_youtube_message_text(message) == expected


class TestParseDisplayAmount:
    @pytest.mark.parametrize(
        ("display", "expected"),
        [
            ("$5.00", (5.0, "USD")),
            ("CA$10.00", (10.0, "CAD")),
            ("A$2.50", (2.5, "AUD")),
            ("€1.234,56", (1234.56, "EUR")),
            ("£3", (3.0, "GBP")),
            ("¥1,000", (1000.0, "JPY")),
            ("R$25,00", (25.0, "BRL")),
            ("PHP 100.00", (100.0, "PHP")),
            ("₹ 199", (199.0, "INR")),
        ],
    )
    def test_localized_amounts(self, display, expected) -> None:
        assert parse_display_amount(display) == expected

    @pytest.mark.parametrize("display", ["", "-$5.00", "$0", "free", None])
    def test_unparseable(self, display) -> None:
        assert parse_display_amount(display) is None


class TestTextMessage:
    def test_canonical_chat(self) -> None:
        event = normalize_youtube_item(_item())

        assert event["type"] == "platform:chat-message"
        assert event["user_id"] == "UC42"
        assert event["username"] == "alice"
        assert event["message"]["text"] == "hello :wave:"
        assert event["timestamp"] == "2024-05-01T18:22:03.120Z"
        assert event["metadata"]["timestamp_usec"] == _USEC
        assert event["metadata"]["video_id"] == "vid-1"
        assert event["metadata"]["author_photo"] == "https://img/a.png"
        assert validate_event(event) == (True, [])

    def test_owner_badge_sets_broadcaster(self) -> None:
        author = {"channelId": "UC1", "name": "chan", "badges": [{"icon_type": "OWNER", "tooltip": "Owner"}]}

        event = normalize_youtube_item(_item(author=author))

        assert event["is_broadcaster"] is True
        assert event["badges"] == ["Owner"]

    def test_member_badge_sets_subscriber(self) -> None:
        author = {"channelId": "UC1", "name": "bob", "badges": [{"tooltip": "Member (6 months)"}]}

        assert normalize_youtube_item(_item(author=author))["is_subscriber"] is True

    def test_missing_author_rejected(self) -> None:
        with pytest.raises(NormalizationError, match="Missing YouTube author data"):
            normalize_youtube_item(_item(author=None))

    def test_missing_channel_id_rejected(self) -> None:
        with pytest.raises(NormalizationError, match="Missing youtube user_id"):
            normalize_youtube_item(_item(author={"name": "alice"}))

    def test_missing_item_rejected(self) -> None:
        with pytest.raises(NormalizationError, match="payload"):
            normalize_youtube_item({"videoId": "v"})


class TestMonetization:
    def test_super_chat_with_numeric_amount(self) -> None:
        raw = _item(
            type="LiveChatPaidMessage",
            purchase_amount=5,
            purchase_currency="usd",
            superchat={"message": {"text": "great stream"}},
        )

        event = normalize_youtube_item(raw)

        assert event["type"] == "platform:gift"
        assert event["gift_type"] == "Super Chat"
        assert event["amount"] == 5
        assert event["currency"] == "USD"
        assert event["message"]["text"] == "great stream"
        assert validate_event(event) == (True, [])

    def test_super_chat_with_display_amount(self) -> None:
        event = normalize_youtube_item(_item(superchat={"message": "hi"}, purchase_amount="CA$10.00"))

        assert event["gift_type"] == "Super Chat"
        assert event["amount"] == 10
        assert event["currency"] == "CAD"

    def test_super_chat_requires_currency(self) -> None:
        with pytest.raises(NormalizationError, match="requires currency"):
            normalize_youtube_item(_item(type="LiveChatPaidMessage", purchase_amount=5))

    def test_super_chat_rejects_unparseable_display(self) -> None:
        with pytest.raises(NormalizationError, match="valid purchase_amount"):
            normalize_youtube_item(_item(type="LiveChatPaidMessage", purchase_amount="lots"))

    def test_super_sticker(self) -> None:
        raw = _item(
            type="LiveChatPaidSticker",
            purchase_amount="£2.00",
            sticker={"altText": "Party parrot"},
        )

        event = normalize_youtube_item(raw)

        assert event["gift_type"] == "Super Sticker"
        assert event["currency"] == "GBP"
        assert event["message"]["text"] == "Party parrot"

    def test_membership_milestone(self) -> None:
        raw = _item(
            type="LiveChatMembershipItem",
            memberMilestoneDurationInMonths=12,
            headerPrimaryText={"runs": [{"text": "Member for 12 months"}]},
            headerSubtext={"simpleText": "Gold tier"},
        )

        event = normalize_youtube_item(raw)

        assert event["type"] == "platform:paypiggy"
        assert event["months"] == 12
        assert event["membership_level"] == "Member for 12 months"
        assert event["message"]["text"] == "Gold tier"

    def test_gift_membership_purchase(self) -> None:
        event = normalize_youtube_item(_item(giftMembershipsCount=5))

        assert event["type"] == "platform:giftpaypiggy"
        assert event["gift_count"] == 5


class TestModeration:
    def test_moderation_without_author_dropped(self) -> None:
        assert normalize_youtube_item(_item(type="RemoveChatItemAction", author=None)) is None

    def test_moderation_with_author_dropped(self) -> None:
        assert normalize_youtube_item(_item(type="LiveChatBanMessage")) is None

    def test_unknown_type_treated_as_chat(self) -> None:
        assert normalize_youtube_item(_item(type="LiveChatNewThing"))["type"] == "platform:chat-message"
