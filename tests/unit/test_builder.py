"""Unit tests for the event builder, canonical constructors and schema validation."""

from __future__ import annotations

import pytest

from stream_aggregator.core.exceptions import EventBuildError, NormalizationError
from stream_aggregator.events.builder import (
    EventBuilder,
    EventType,
    create_connection_event,
    create_error_event,
    is_recoverable_error,
    qualify_type,
    validate_event,
)
from stream_aggregator.events.canonical import (
    chat_event,
    gift_event,
    gift_paypiggy_event,
    paypiggy_copy,
    paypiggy_event,
    stream_detected_event,
    viewer_count_event,
)

_TS = "2024-05-01T18:22:03.120Z"


class TestEventBuilder:
    def test_build_chat_event(self, clock) -> None:
        event = (
            EventBuilder(clock)
            .platform("twitch")
            .type("chat-message")
            .username("alice")
            .user_id("42")
            .message("hello <script>x</script>")
            .build()
        )

        assert event["type"] == "platform:chat-message"
        assert event["message"] == {"text": "hello", "original": "hello <script>x</script>"}
        assert event["timestamp"] == "2023-11-14T22:13:20.000Z"
        assert event["priority"] == 1
        assert event["metadata"] == {}
        assert event["id"] and event["correlation_id"]

    def test_enum_type_accepted(self) -> None:
        event = EventBuilder().platform("tiktok").type(EventType.GIFT).build()

        assert event["type"] == "platform:gift"
        assert event["priority"] == 8

    @pytest.mark.parametrize(
        ("event_type", "priority"),
        [("giftpaypiggy", 6), ("paypiggy", 5), ("viewer-count", 1)],
    )
    def test_default_priorities(self, event_type, priority) -> None:
        assert EventBuilder().platform("youtube").type(event_type).build()["priority"] == priority

    def test_explicit_priority_kept(self) -> None:
        assert EventBuilder().platform("youtube").type("gift").priority(2).build()["priority"] == 2

    def test_invalid_platform(self) -> None:
        with pytest.raises(EventBuildError, match="Invalid platform: kick"):
            EventBuilder().platform("kick").type("gift").build()

    def test_invalid_type(self) -> None:
        with pytest.raises(EventBuildError, match="Invalid event type: platform:raid"):
            EventBuilder().platform("twitch").type("raid").build()

    def test_qualify_type_leaves_qualified_names(self) -> None:
        assert qualify_type("platform:gift") == "platform:gift"
        assert qualify_type("gift") == "platform:gift"


class TestCanonicalConstructors:
    def test_chat_requires_identity(self) -> None:
        with pytest.raises(NormalizationError, match="Missing twitch user_id") as excinfo:
            chat_event("twitch", user_id="", username="alice", text="hi", timestamp=_TS)

        assert excinfo.value.kind == "invalid-payload"
        assert excinfo.value.platform == "twitch"

    def test_chat_requires_text(self) -> None:
        with pytest.raises(NormalizationError, match="message text"):
            chat_event("twitch", user_id="1", username="alice", text="   ", timestamp=_TS)

    def test_chat_flags_copied(self) -> None:
        event = chat_event(
            "youtube", user_id=7, username=" bob ", text=" hey ", timestamp=_TS, flags={"is_mod": True}
        )

        assert event["user_id"] == "7"
        assert event["username"] == "bob"
        assert event["message"]["text"] == "hey"
        assert event["is_mod"] is True

    def test_gift_amount_is_unit_times_count(self) -> None:
        event = gift_event(
            "tiktok",
            user_id="1",
            username="alice",
            gift_id="g-1",
            gift_type="Rose",
            gift_count=5,
            unit_amount=1,
            currency="coins",
            timestamp=_TS,
        )

        assert event["amount"] == 5
        assert isinstance(event["amount"], int)
        assert event["id"] == "g-1"
        assert validate_event(event) == (True, [])

    def test_gift_rejects_zero_count(self) -> None:
        with pytest.raises(NormalizationError, match="gift_count >= 1"):
            gift_event(
                "tiktok",
                user_id="1",
                username="a",
                gift_id="g",
                gift_type="Rose",
                gift_count=0,
                unit_amount=1,
                currency="coins",
                timestamp=_TS,
            )

    def test_paypiggy_omits_absent_fields(self) -> None:
        event = paypiggy_event("twitch", user_id="1", username="a", timestamp=_TS, tier="1000", months="3")

        assert event["tier"] == "1000"
        assert event["months"] == 3
        assert "membership_level" not in event

    def test_giftpaypiggy_requires_count(self) -> None:
        with pytest.raises(NormalizationError, match="requires gift_count"):
            gift_paypiggy_event("twitch", user_id="1", username="a", timestamp=_TS, gift_count=0)

    def test_viewer_count_rejects_negative(self) -> None:
        with pytest.raises(NormalizationError):
            viewer_count_event("youtube", -1, _TS)

    def test_stream_ended_when_only_ended_ids(self) -> None:
        event = stream_detected_event(
            "youtube",
            new_stream_ids=[],
            all_stream_ids=[],
            ended_stream_ids=["v1"],
            detection_time=12,
            connection_count=0,
            timestamp=_TS,
        )

        assert event["event_type"] == "stream-ended"
        assert validate_event(event) == (True, [])

    @pytest.mark.parametrize(
        ("event", "copy"),
        [
            ({"platform": "twitch", "tier": "superfan"}, "SuperFan"),
            ({"platform": "youtube"}, "member"),
            ({"platform": "tiktok"}, "subscribed"),
        ],
    )
    def test_paypiggy_copy(self, event, copy) -> None:
        assert paypiggy_copy(event) == copy


class TestSystemEvents:
    @pytest.mark.parametrize(
        "message",
        ["Network unreachable", "connection reset", "Request timeout", "rate limit hit", "temporary outage"],
    )
    def test_recoverable_patterns(self, message) -> None:
        assert is_recoverable_error(message) is True

    def test_context_flag_wins(self) -> None:
        assert is_recoverable_error("network down", {"recoverable": False}) is False
        assert is_recoverable_error("bad input", {"recoverable": True}) is True

    def test_error_event_from_exception(self) -> None:
        try:
            raise ValueError("connection lost")
        except ValueError as exc:
            event = create_error_event("tiktok", exc, {"phase": "connect"})

        assert event["type"] == "platform:error"
        assert event["error"]["name"] == "ValueError"
        assert event["error"]["code"] == "UNKNOWN"
        assert "stack" in event["error"]
        assert event["recoverable"] is True
        assert event["context"] == {"phase": "connect"}
        assert validate_event(event) == (True, [])

    def test_connection_event_reconnect_flag(self) -> None:
        disconnected = create_connection_event("twitch", "disconnected", "socket closed")
        connected = create_connection_event("twitch", "connected")

        assert disconnected["will_reconnect"] is True
        assert disconnected["error"] == {"message": "socket closed"}
        assert connected["will_reconnect"] is False
        assert "error" not in connected


class TestValidateEvent:
    def test_non_mapping(self) -> None:
        assert validate_event(["x"]) == (False, ["Event is not a mapping"])

    def test_unknown_type(self) -> None:
        valid, errors = validate_event({"type": "platform:raid", "platform": "twitch"})

        assert valid is False
        assert errors == ["Invalid event type: platform:raid"]

    def test_missing_fields_reported(self) -> None:
        valid, errors = validate_event({"type": "platform:paypiggy", "platform": "twitch", "timestamp": _TS})

        assert valid is False
        assert "Missing required field: username" in errors
        assert "Missing required field: user_id" in errors

    def test_bad_timestamp(self) -> None:
        valid, errors = validate_event(
            {"type": "platform:stream-status", "platform": "twitch", "is_live": True, "timestamp": "yesterday"}
        )

        assert valid is False
        assert errors == ["Invalid type for field timestamp"]

    def test_negative_viewer_count(self) -> None:
        _, errors = validate_event({"type": "platform:viewer-count", "platform": "twitch", "count": -3, "timestamp": _TS})

        assert errors == ["count must be a non-negative number"]

    def test_stream_detected_requires_new_ids(self) -> None:
        event = {
            "type": "platform:stream-detected",
            "platform": "youtube",
            "event_type": "stream-detected",
            "new_stream_ids": [],
            "all_stream_ids": [],
            "detection_time": 1,
            "connection_count": "two",
        }

        _, errors = validate_event(event)

        assert "new_stream_ids must not be empty for stream-detected" in errors
        assert "Invalid type for field connection_count" in errors

    def test_invalid_platform_reported(self) -> None:
        _, errors = validate_event({"type": "platform:connection", "platform": "kick", "status": "x", "timestamp": _TS})

        assert errors[0].startswith("Invalid platform: kick")
