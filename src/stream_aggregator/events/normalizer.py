"""Platform-agnostic entry point for raw event normalization.

Usage::

    from stream_aggregator.events.normalizer import EventNormalizer

    normalizer = EventNormalizer(clock=clock)
    event = normalizer.normalize("tiktok", "gift", payload)
    if event is not None:
        await pipeline.process(event)

The per-platform modules do the mapping; this class routes by platform,
counts outcomes and turns :class:`NormalizationError` into a logged
rejection when ``raise_errors`` is off.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping
from typing import Any

from stream_aggregator.core.clock import Clock
from stream_aggregator.core.exceptions import NormalizationError
from stream_aggregator.events.canonical import paypiggy_copy, require_identity
from stream_aggregator.events.tiktok import normalize_tiktok_event
from stream_aggregator.events.twitch import normalize_twitch_event
from stream_aggregator.events.youtube import normalize_youtube_item

logger = logging.getLogger(__name__)

__all__ = ["EventNormalizer", "paypiggy_copy", "require_identity"]


class EventNormalizer:
    """Route raw payloads to the matching platform normalizer.

    Args:
        clock: Clock used for ingest-time fallbacks.
        raise_errors: When False (the default), rejected payloads are logged
            and ``None`` is returned instead of raising.
    """

    def __init__(self, clock: Clock | None = None, raise_errors: bool = False) -> None:
        self._clock = clock
        self._raise_errors = raise_errors
        self.stats: Counter[str] = Counter()

    def normalize(self, platform: str, event_name: str, raw: Mapping[str, Any]) -> dict[str, Any] | None:
        """Normalize *raw* as *event_name* on *platform*.

        *event_name* is the EventSub subscription type for Twitch, the
        webcast event name for TikTok and ignored for YouTube (item type is
        read from the payload).

        Raises:
            NormalizationError: On a rejected payload when ``raise_errors``
                is set, or for an unsupported platform.
        """
        try:
            if platform == "twitch":
                event = normalize_twitch_event(event_name, raw, self._clock)
            elif platform == "youtube":
                event = normalize_youtube_item(raw, self._clock)
            elif platform == "tiktok":
                event = normalize_tiktok_event(event_name, raw, self._clock)
            else:
                raise NormalizationError(f"Unsupported platform: {platform}", platform, kind="unsupported-platform")
        except NormalizationError as exc:
            self.stats["rejected"] += 1
            if self._raise_errors or exc.kind == "unsupported-platform":
                raise
            logger.warning("normalizer: rejected %s %s payload — %s", platform, event_name, exc)
            return None

        if event is None:
            self.stats["suppressed"] += 1
            return None
        self.stats["normalized"] += 1
        return event

    def get_stats(self) -> dict[str, int]:
        return {key: self.stats[key] for key in ("normalized", "suppressed", "rejected")}
