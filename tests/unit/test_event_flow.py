"""End-to-end tests: raw platform callbacks reach consumer handlers.

A platform module calls its default handlers with raw payloads; the
lifecycle service normalizes them, the pipeline filters and publishes them
and the router hands them to the consumer.
"""

from __future__ import annotations

from typing import Any

import pytest

from stream_aggregator.events.bus import EventBus
from stream_aggregator.events.router import PlatformEventRouter
from stream_aggregator.platforms.lifecycle import PlatformLifecycleService

from tests.conftest import START_MS


class RecordingPlatform:
    """Platform module double that keeps the handlers it was given."""

    def __init__(self, config: Any, dependencies: Any = None) -> None:
        self.config = config
        self.handlers: Any = None

    async def initialize(self, handlers: Any) -> None:
        self.handlers = handlers

    async def cleanup(self) -> None:
        return None


class ImmediateDetector:
    async def start_stream_detection(self, platform, config, connect_callback, status_callback=None):
        return await connect_callback()

    async def cleanup(self) -> None:
        return None


class ConsumerHandlers:
    def __init__(self) -> None:
        self.chats: list[tuple[str, dict]] = []
        self.gifts: list[tuple[str, dict]] = []
        self.viewer_counts: list[tuple[str, dict]] = []

    def on_chat(self, platform: str, data: dict) -> None:
        self.chats.append((platform, data))

    def on_gift(self, platform: str, data: dict) -> None:
        self.gifts.append((platform, data))

    async def on_viewer_count(self, platform: str, data: dict) -> None:
        self.viewer_counts.append((platform, data))


def _config() -> dict:
    return {
        "general": {"ignore_self_messages": True},
        "twitch": {"enabled": True, "username": "streamer", "channel": "streamer"},
        "youtube": {"enabled": False},
        "tiktok": {"enabled": True, "username": "host"},
    }


async def _connected(clock, bus: EventBus) -> PlatformLifecycleService:
    service = PlatformLifecycleService(_config(), bus, stream_detector=ImmediateDetector(), clock=clock)
    await service.initialize_all({"twitch": RecordingPlatform, "tiktok": RecordingPlatform})
    await service.wait_for_background_inits(1000)
    return service


class TestRawEventToHandler:
    @pytest.mark.asyncio
    async def test_tiktok_chat_reaches_on_chat(self, clock, bus: EventBus) -> None:
        consumer = ConsumerHandlers()
        PlatformEventRouter(bus, consumer)
        service = await _connected(clock, bus)
        handlers = service.get_platform("tiktok").handlers

        accepted = await handlers["on_chat"]({"user": {"userId": "1", "uniqueId": "alice"}, "comment": "hi"})

        assert accepted is True
        assert len(consumer.chats) == 1
        platform, data = consumer.chats[0]
        assert platform == "tiktok"
        assert data["username"] == "alice"
        assert data["user_id"] == "1"
        assert data["message"]["text"] == "hi"

    @pytest.mark.asyncio
    async def test_twitch_cheer_reaches_on_gift(self, clock, bus: EventBus) -> None:
        consumer = ConsumerHandlers()
        PlatformEventRouter(bus, consumer)
        service = await _connected(clock, bus)
        handlers = service.get_platform("twitch").handlers

        await handlers["on_gift"]({"user_id": "9", "user_name": "carol", "bits": 100})

        assert len(consumer.gifts) == 1
        platform, data = consumer.gifts[0]
        assert platform == "twitch"
        assert data["username"] == "carol"
        assert data["source_type"] == "gift"
        assert data["amount"] == 100
        assert data["currency"] == "bits"

    @pytest.mark.asyncio
    async def test_tiktok_viewer_count_reaches_handler(self, clock, bus: EventBus) -> None:
        consumer = ConsumerHandlers()
        PlatformEventRouter(bus, consumer)
        service = await _connected(clock, bus)

        await service.get_platform("tiktok").handlers["on_viewer_count"]({"viewerCount": 321})

        assert [(platform, data["count"]) for platform, data in consumer.viewer_counts] == [("tiktok", 321)]

    @pytest.mark.asyncio
    async def test_history_replayed_before_connect_never_reaches_handler(self, clock, bus: EventBus) -> None:
        consumer = ConsumerHandlers()
        PlatformEventRouter(bus, consumer)
        service = await _connected(clock, bus)
        handlers = service.get_platform("tiktok").handlers
        user = {"userId": "1", "uniqueId": "alice"}

        await handlers["on_chat"]({"user": user, "comment": "old", "createTime": str(START_MS - 5000)})
        await handlers["on_chat"]({"user": user, "comment": "new", "createTime": str(START_MS + 1000)})

        assert [data["message"]["text"] for _, data in consumer.chats] == ["new"]

    @pytest.mark.asyncio
    async def test_own_messages_filtered_end_to_end(self, clock, bus: EventBus) -> None:
        consumer = ConsumerHandlers()
        PlatformEventRouter(bus, consumer)
        service = await _connected(clock, bus)
        handlers = service.get_platform("tiktok").handlers

        await handlers["on_chat"]({"user": {"userId": "7", "uniqueId": "host"}, "comment": "welcome"})

        assert consumer.chats == []
