"""Delivery path for normalized canonical events.

Each event passes, in order, through the chronology filter, the self-message
filter, monetization handling (TikTok combo aggregation, goal tracking) and
finally the event bus.  Events of one ``(platform, stream_id)`` pair are
processed under one :class:`asyncio.Lock` so their order is preserved;
different streams proceed independently.

Usage::

    pipeline = EventPipeline(bus, platforms_config=config, cutoffs=lifecycle.get_stream_cutoffs)
    await pipeline.process(event)
    ...
    await pipeline.cleanup()
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable, Mapping
from typing import Any

from stream_aggregator.config.platforms import GeneralConfig, PlatformsConfig
from stream_aggregator.config.settings import Settings, get_settings
from stream_aggregator.core.clock import Clock, SystemClock
from stream_aggregator.core.exceptions import NormalizationError
from stream_aggregator.core.logging_config import correlation_id_var
from stream_aggregator.events.builder import PLATFORM_EVENT, EventType
from stream_aggregator.events.bus import EventBus
from stream_aggregator.events.chronology import ChronologyFilter
from stream_aggregator.events.gift_aggregator import TikTokGiftAggregator
from stream_aggregator.events.goals import GoalTracker
from stream_aggregator.events.monetization import MonetizationDetector
from stream_aggregator.events.sanitize import sanitize_envelope_data
from stream_aggregator.events.self_filter import SelfMessageFilter

logger = logging.getLogger(__name__)

CutoffLookup = Callable[[str], Mapping[str, int]]

_GIFT = EventType.GIFT.value
_CHAT = EventType.CHAT_MESSAGE.value
_PAYPIGGY_TYPES = frozenset({EventType.PAYPIGGY.value, EventType.GIFT_PAYPIGGY.value})


def stream_id_of(event: Mapping[str, Any]) -> str | None:
    """Return the stream id an event belongs to, if it carries one."""
    if event.get("stream_id"):
        return str(event["stream_id"])
    metadata = event.get("metadata")
    if isinstance(metadata, Mapping):
        for key in ("stream_id", "video_id"):
            if metadata.get(key):
                return str(metadata[key])
    return None


class EventPipeline:
    """Filter, enrich and publish canonical events.

    Args:
        event_bus: Destination bus.  Each event is published under its
            ``type`` and, wrapped in a ``{platform, type, data}`` envelope,
            under ``platform:event`` for the consumer router.
        platforms_config: Platform configuration for self-filtering and goals.
        cutoffs: Returns the per-stream connection cutoffs of a platform
            (usually ``PlatformLifecycleService.get_stream_cutoffs``).
        clock: Time source shared by the filters and the aggregator.
        settings: Settings override (tests).
        aggregator: Pre-built gift aggregator; one is created when omitted.
    """

    def __init__(
        self,
        event_bus: EventBus,
        *,
        platforms_config: PlatformsConfig | None = None,
        cutoffs: CutoffLookup | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
        aggregator: TikTokGiftAggregator | None = None,
    ) -> None:
        self.event_bus = event_bus
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self.config = platforms_config or PlatformsConfig(
            general=GeneralConfig(ignore_self_messages=self._settings.ignore_self_messages)
        )
        self._cutoffs = cutoffs
        self.chronology = ChronologyFilter(self._clock)
        self.self_filter = SelfMessageFilter(self.config.general)
        self.monetization = MonetizationDetector(self._clock)
        self.goals = GoalTracker(self.config.goals)
        self.aggregator = aggregator or TikTokGiftAggregator(
            self.deliver_aggregated,
            self.config.tiktok.gift_aggregation_delay_ms,
            clock=self._clock,
            settings=self._settings,
        )
        self._locks: dict[tuple[str, str | None], asyncio.Lock] = {}
        self.stats: Counter[str] = Counter()

    def _lock_for(self, platform: str, stream_id: str | None) -> asyncio.Lock:
        key = (platform, stream_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def process(self, event: Mapping[str, Any], stream_id: str | None = None) -> bool:
        """Run *event* through the filters and publish it.

        Args:
            event: A canonical event produced by the normalizer.
            stream_id: Stream the event belongs to; read from the event when
                omitted.

        Returns:
            True when the event was published or handed to the gift
            aggregator, False when a filter dropped it.
        """
        platform = str(event.get("platform") or "")
        stream_id = stream_id or stream_id_of(event)
        token = correlation_id_var.set(event.get("correlation_id"))
        try:
            async with self._lock_for(platform, stream_id):
                return await self._process_locked(dict(event), platform, stream_id)
        finally:
            correlation_id_var.reset(token)

    async def _process_locked(self, event: dict[str, Any], platform: str, stream_id: str | None) -> bool:
        self.stats["received"] += 1
        cutoffs = self._cutoffs(platform) if self._cutoffs is not None else None
        if not self.chronology.should_deliver(event, stream_id, cutoffs):
            self.stats["replayed"] += 1
            return False

        event_type = event.get("type")
        if event_type == _CHAT:
            platform_config = self.config.for_platform(platform)
            if self.self_filter.should_filter(platform, event, platform_config):
                self.stats["self_filtered"] += 1
                logger.debug("pipeline: dropped own %s message from %s", platform, event.get("username"))
                return False
            detection = self.monetization.detect(event, platform)
            if detection.detected:
                event["metadata"] = {**(event.get("metadata") or {}), "monetization": detection.details}

        if event_type == _GIFT and platform == "tiktok" and not event.get("is_aggregated"):
            try:
                self.aggregator.add(event)
            except NormalizationError as exc:
                self.stats["rejected"] += 1
                logger.warning("pipeline: rejected TikTok gift — %s", exc)
                return False
            self.stats["aggregating"] += 1
            return True

        await self.deliver(event)
        return True

    async def deliver_aggregated(self, event: Mapping[str, Any]) -> int:
        """Publish an aggregated gift under its stream lock.

        The aggregator fires from its own timer task, outside :meth:`process`.
        """
        platform = str(event.get("platform") or "")
        token = correlation_id_var.set(event.get("correlation_id"))
        try:
            async with self._lock_for(platform, stream_id_of(event)):
                return await self.deliver(event)
        finally:
            correlation_id_var.reset(token)

    async def deliver(self, event: Mapping[str, Any]) -> int:
        """Update goals for *event* and publish it on the bus.

        The caller holds the stream lock.  Returns the number of bus handlers
        that received the event or its envelope.
        """
        event_type = event.get("type")
        if event_type == _GIFT:
            result = self.goals.add_gift(event)
            if result.get("goal_completed"):
                logger.info("pipeline: %s goal reached — %s", event.get("platform"), result.get("new_total"))
        elif event_type in _PAYPIGGY_TYPES:
            self.goals.add_paypiggy(event.get("platform"))
        self.stats["published"] += 1
        platform = str(event.get("platform") or "")
        delivered = await self.event_bus.publish(str(event_type), dict(event))
        envelope = {
            "platform": platform,
            "type": event_type,
            "data": sanitize_envelope_data(platform, str(event_type), dict(event)),
        }
        return delivered + await self.event_bus.publish(PLATFORM_EVENT, envelope)

    def get_stats(self) -> dict[str, Any]:
        return {
            **{key: self.stats[key] for key in ("received", "replayed", "self_filtered", "aggregating", "rejected", "published")},
            "aggregator": dict(self.aggregator.stats),
            "monetization": self.monetization.get_metrics(),
        }

    async def cleanup(self, flush: bool = True) -> None:
        """Emit (or drop, when *flush* is False) pending gift windows."""
        if flush:
            await self.aggregator.flush()
        await self.aggregator.cleanup()
        self._locks.clear()
