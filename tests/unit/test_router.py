"""Unit tests for PlatformEventRouter."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from stream_aggregator.core.exceptions import NormalizationError
from stream_aggregator.events.builder import PLATFORM_EVENT
from stream_aggregator.events.bus import EventBus
from stream_aggregator.events.router import PlatformEventRouter

_CHAT = {
    "username": "alice",
    "user_id": "42",
    "timestamp": "2024-05-01T18:22:03.120Z",
    "message": {"text": "hello"},
    "metadata": {},
}


def _envelope(event_type: str, data: dict, platform: str = "twitch") -> dict:
    return {"platform": platform, "type": event_type, "data": data}


class _Consumer:
    def __init__(self) -> None:
        self.memberships: list[tuple] = []
        self.viewers: list[tuple] = []

    def on_membership(self, platform, data) -> None:
        self.memberships.append((platform, data))

    async def on_viewer_count(self, platform, data) -> None:
        self.viewers.append((platform, data))


class TestHandlerResolution:
    def test_unknown_and_non_callable_discarded(self, bus: EventBus) -> None:
        router = PlatformEventRouter(bus, {"on_chat": MagicMock(), "on_raid": MagicMock(), "on_gift": "nope"})

        assert set(router.handlers) == {"on_chat"}

    def test_alias_yields_to_canonical_name(self, bus: EventBus) -> None:
        canonical, alias = MagicMock(), MagicMock()

        router = PlatformEventRouter(bus, {"on_paypiggy": canonical, "on_membership": alias})

        assert router.handlers["on_paypiggy"] is canonical

    @pytest.mark.asyncio
    async def test_object_handlers(self, bus: EventBus) -> None:
        consumer = _Consumer()
        PlatformEventRouter(bus, consumer)

        await bus.publish(PLATFORM_EVENT, _envelope("platform:paypiggy", {"username": "a", "user_id": "1"}))
        await bus.publish(PLATFORM_EVENT, _envelope("viewer-count", {"count": 7}, "youtube"))

        assert consumer.memberships[0][1]["source_type"] == "paypiggy"
        assert consumer.viewers == [("youtube", {"count": 7})]


class TestRouting:
    @pytest.mark.asyncio
    async def test_chat_routed(self, bus: EventBus) -> None:
        on_chat = AsyncMock()
        router = PlatformEventRouter(bus, {"on_chat": on_chat})

        assert await router.route_event(_envelope("platform:chat-message", _CHAT)) is True

        on_chat.assert_awaited_once_with("twitch", _CHAT)
        assert router.stats["routed"] == 1

    @pytest.mark.parametrize(
        ("overrides", "match"),
        [
            ({"message": {"text": "  "}}, "message text"),
            ({"username": ""}, "requires username"),
            ({"timestamp": None}, "requires timestamp"),
            ({"metadata": "x"}, "metadata must be a mapping"),
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_chat_rejected(self, bus: EventBus, overrides, match) -> None:
        router = PlatformEventRouter(bus, {"on_chat": MagicMock()})

        with pytest.raises(NormalizationError, match=match):
            await router.route_event(_envelope("chat-message", {**_CHAT, **overrides}))

    @pytest.mark.asyncio
    async def test_gift_payload_sanitized(self, bus: EventBus) -> None:
        on_gift = MagicMock()
        router = PlatformEventRouter(bus, {"on_gift": on_gift})
        data = {
            "type": "platform:gift",
            "platform": "tiktok-live",
            "username": "alice",
            "user_id": "1",
            "display_name": "Alice",
            "amount": 5,
        }

        await router.route_event(_envelope("gift", data, "tiktok"))

        platform, payload = on_gift.call_args.args
        assert platform == "tiktok"
        assert payload == {
            "username": "alice",
            "user_id": "1",
            "platform": "tiktok",
            "amount": 5,
            "source_type": "gift",
            "source_platform": "tiktok-live",
        }

    @pytest.mark.asyncio
    async def test_conflicting_source_type_kept(self, bus: EventBus) -> None:
        on_gift_paypiggy = MagicMock()
        router = PlatformEventRouter(bus, {"on_gift_paypiggy": on_gift_paypiggy})

        await router.route_event(
            _envelope("giftpaypiggy", {"type": "subscription.gift", "username": "a", "user_id": "1"})
        )

        assert on_gift_paypiggy.call_args.args[1]["source_type"] == "subscription.gift"

    @pytest.mark.asyncio
    async def test_notification_requires_user_id(self, bus: EventBus) -> None:
        router = PlatformEventRouter(bus, {"on_gift": MagicMock()})

        with pytest.raises(NormalizationError, match="gift notification requires user_id"):
            await router.route_event(_envelope("gift", {"username": "a"}))

    @pytest.mark.asyncio
    async def test_viewer_count_requires_count(self, bus: EventBus) -> None:
        router = PlatformEventRouter(bus, {"on_viewer_count": MagicMock()})

        with pytest.raises(NormalizationError, match="requires count"):
            await router.route_event(_envelope("viewer-count", {}))

    @pytest.mark.asyncio
    async def test_unrouted_types_dropped(self, bus: EventBus) -> None:
        router = PlatformEventRouter(bus, {"on_chat": MagicMock()})

        assert await router.route_event(_envelope("raid", {})) is False
        assert await router.route_event(_envelope("gift", {"username": "a", "user_id": "1"})) is False
        assert router.stats["dropped"] == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("envelope", ["text", {"platform": "twitch", "type": "gift"}, {"type": "gift", "data": {}}])
    async def test_malformed_envelope(self, bus: EventBus, envelope) -> None:
        router = PlatformEventRouter(bus, {})

        with pytest.raises(NormalizationError):
            await router.route_event(envelope)


class TestBusIntegration:
    @pytest.mark.asyncio
    async def test_rejections_counted_not_raised(self, bus: EventBus) -> None:
        router = PlatformEventRouter(bus, {"on_chat": MagicMock()})

        delivered = await bus.publish(PLATFORM_EVENT, _envelope("chat-message", {"username": "a"}))

        assert delivered == 1
        assert router.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_dispose_unsubscribes(self, bus: EventBus) -> None:
        on_chat = MagicMock()
        router = PlatformEventRouter(bus, {"on_chat": on_chat})

        router.dispose()
        router.dispose()
        await bus.publish(PLATFORM_EVENT, _envelope("chat-message", _CHAT))

        on_chat.assert_not_called()
        assert bus.listener_count(PLATFORM_EVENT) == 0
