"""Stream-aware viewer-count polling with observer fan-out.

:class:`ViewerCountSystem` polls a provider per platform while that
platform's stream is live and notifies every registered observer of each
new count.  Notifications run concurrently over a snapshot of the observer
registry, so observers may be added or removed mid-broadcast and a failing
observer never affects the others.

Usage::

    system = ViewerCountSystem({"twitch": twitch_provider}, clock=clock)
    system.add_observer(EventBusViewerCountObserver(bus))
    await system.initialize()
    system.start_polling()
    ...
    await system.cleanup()
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any, Union

from stream_aggregator.config.settings import Settings, get_settings
from stream_aggregator.core.clock import Clock, SystemClock, ms_to_iso
from stream_aggregator.viewer_count.observers import (
    StreamStatusUpdate,
    ViewerCountObserver,
    ViewerCountUpdate,
)
from stream_aggregator.viewer_count.providers import coerce_count

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL_SECONDS = 5.0
OBSERVER_CLEANUP_TIMEOUT_SECONDS = 5.0
STATUS_HISTORY_KEPT = 2

# Twitch chat is reachable whether or not the channel is live.
DEFAULT_STREAM_STATUS: dict[str, bool] = {"twitch": True, "youtube": False, "tiktok": False}

ProviderSource = Union[Mapping[str, Any], Callable[[], Mapping[str, Any]]]


async def _invoke(method: Callable[..., Any], *args: Any) -> Any:
    result = method(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ViewerCountSystem:
    """Poll providers for live platforms and notify observers.

    Args:
        providers: Platform name to provider (anything with an async
            ``get_viewer_count()``), or a callable returning that mapping.
        settings: Source of ``viewer_count_poll_interval_seconds``.
        clock: Time source for poll waits and update timestamps.
    """

    def __init__(
        self,
        providers: ProviderSource | None = None,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._providers = providers if providers is not None else {}
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()

        self.observers: dict[str, ViewerCountObserver] = {}
        self.stream_status: dict[str, bool] = dict(DEFAULT_STREAM_STATUS)
        self.counts: dict[str, int] = {platform: 0 for platform in DEFAULT_STREAM_STATUS}
        self.status_history: dict[str, list[dict[str, Any]]] = {}
        self.is_polling = False
        self.poll_interval_seconds = 0.0
        self._poll_tasks: dict[str, asyncio.Task[None]] = {}
        self.polling_stats = {"total_polls": 0, "successful_polls": 0, "started_at": self._clock.now_ms()}

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def get_providers(self) -> Mapping[str, Any]:
        source = self._providers
        try:
            providers = source() if callable(source) else source
        except Exception:  # noqa: BLE001
            logger.exception("viewer_count: failed to resolve providers")
            return {}
        return providers if isinstance(providers, Mapping) else {}

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_observer(self, observer: ViewerCountObserver) -> None:
        """Register *observer*, replacing one with the same id.

        Raises:
            ValueError: When the observer has no usable ``get_observer_id``.
        """
        get_id = getattr(observer, "get_observer_id", None)
        if not callable(get_id):
            raise ValueError("Observer must implement get_observer_id()")
        observer_id = get_id()
        if not isinstance(observer_id, str) or not observer_id.strip():
            raise ValueError("Observer ID must be a non-empty string")
        self.observers[observer_id] = observer
        logger.info("viewer_count: registered observer %s", observer_id)

    def remove_observer(self, observer_id: str) -> bool:
        if self.observers.pop(observer_id, None) is None:
            return False
        logger.info("viewer_count: unregistered observer %s", observer_id)
        return True

    async def _broadcast(self, hook: str, *args: Any) -> int:
        """Call *hook* on a snapshot of the observers concurrently; return successes."""
        targets = [
            (observer_id, getattr(observer, hook))
            for observer_id, observer in list(self.observers.items())
            if callable(getattr(observer, hook, None))
        ]
        results = await asyncio.gather(*(_invoke(method, *args) for _, method in targets), return_exceptions=True)
        failures = 0
        for (observer_id, _), result in zip(targets, results):
            if isinstance(result, Exception):
                failures += 1
                logger.error("viewer_count: observer %s failed in %s — %s", observer_id, hook, result)
        return len(targets) - failures

    async def notify_observers(self, platform: str, count: int, previous_count: int | None) -> ViewerCountUpdate:
        update = ViewerCountUpdate(
            platform=platform,
            count=count,
            previous_count=previous_count,
            is_stream_live=self.is_stream_live(platform),
            timestamp=ms_to_iso(self._clock.now_ms()),
        )
        await self._broadcast("on_viewer_count_update", update)
        return update

    async def notify_stream_status_change(self, platform: str, is_live: bool, was_live: bool) -> None:
        update = StreamStatusUpdate(
            platform=platform,
            is_live=is_live,
            was_live=was_live,
            timestamp=ms_to_iso(self._clock.now_ms()),
        )
        await self._broadcast("on_stream_status_change", update)

    async def initialize(self) -> None:
        logger.info("viewer_count: initializing %d observer(s)", len(self.observers))
        await self._broadcast("initialize")

    # ------------------------------------------------------------------
    # Stream status
    # ------------------------------------------------------------------

    def is_stream_live(self, platform: str) -> bool:
        return self.stream_status.get(platform.lower(), False)

    async def update_stream_status(self, platform: str, is_live: bool) -> None:
        """Record *platform*'s liveness; start or stop its polling accordingly.

        Going offline resets the count to 0 and notifies observers.
        """
        key = platform.lower()
        if key not in self.stream_status:
            logger.warning("viewer_count: unknown platform for status update — %s", platform)
            return
        was_live = self.stream_status[key]
        self.stream_status[key] = is_live
        history = self.status_history.setdefault(key, [])
        history.append({"timestamp": self._clock.now_ms(), "from": was_live, "to": is_live})
        del history[:-STATUS_HISTORY_KEPT]

        if was_live != is_live:
            logger.info("viewer_count: %s stream is now %s", key, "LIVE" if is_live else "OFFLINE")
            await self.notify_stream_status_change(key, is_live, was_live)

        if is_live:
            if self.is_polling:
                self.start_platform_polling(key)
        else:
            self.stop_platform_polling(key)
            previous = self.counts.get(key)
            self.counts[key] = 0
            await self.notify_observers(key, 0, previous)

    def get_stream_status_history(self, platform: str) -> list[dict[str, Any]]:
        return list(self.status_history.get(platform.lower(), []))

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def start_polling(self) -> None:
        if self.is_polling:
            logger.warning("viewer_count: polling is already active")
            return
        configured = self._settings.viewer_count_poll_interval_seconds
        if configured <= 0:
            logger.warning("viewer_count: poll interval %s is not positive — polling disabled", configured)
            return
        self.poll_interval_seconds = self._interval_seconds()
        self.is_polling = True
        logger.info("viewer_count: polling every %.0fs", self.poll_interval_seconds)
        for platform in self.get_providers():
            if self.is_stream_live(platform):
                self.start_platform_polling(platform)
            else:
                logger.debug("viewer_count: not polling %s — stream offline", platform)

    def _interval_seconds(self) -> float:
        return max(MIN_POLL_INTERVAL_SECONDS, float(self._settings.viewer_count_poll_interval_seconds))

    def start_platform_polling(self, platform: str) -> None:
        if platform in self._poll_tasks:
            return
        if self.poll_interval_seconds <= 0:
            self.poll_interval_seconds = self._interval_seconds()
        logger.info("viewer_count: starting polling for %s", platform)
        self._poll_tasks[platform] = asyncio.get_running_loop().create_task(
            self._poll_loop(platform),
            name=f"viewer-count-{platform}",
        )

    def stop_platform_polling(self, platform: str) -> None:
        task = self._poll_tasks.pop(platform, None)
        if task is not None:
            logger.info("viewer_count: stopping polling for %s", platform)
            if task is not asyncio.current_task():
                task.cancel()

    async def _poll_loop(self, platform: str) -> None:
        while True:
            await self.poll_platform(platform)
            await self._clock.sleep(self.poll_interval_seconds)

    def validate_platform_for_polling(self, platform: str) -> tuple[bool, str | None]:
        provider = self.get_providers().get(platform)
        if provider is None:
            return False, f"No provider found for {platform}"
        if not callable(getattr(provider, "get_viewer_count", None)):
            return False, f"No get_viewer_count method for {platform}"
        if not self.is_stream_live(platform):
            return False, f"Stream offline for {platform}"
        return True, None

    async def poll_platform(self, platform: str) -> int | None:
        """Poll *platform* once; return the new count or ``None`` when skipped."""
        self.polling_stats["total_polls"] += 1
        valid, reason = self.validate_platform_for_polling(platform)
        if not valid:
            if reason and "offline" in reason:
                logger.debug("viewer_count: skipping %s poll — stream offline", platform)
            else:
                logger.warning("viewer_count: %s", reason)
            return None

        provider = self.get_providers()[platform]
        try:
            raw = await provider.get_viewer_count()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("viewer_count: failed to poll %s", platform)
            return None

        count = coerce_count(raw)
        if count is None:
            logger.warning("viewer_count: %s returned invalid viewer count %r", platform, raw)
            return None
        previous = self.counts.get(platform)
        self.counts[platform] = count
        logger.debug("viewer_count: %s viewer count %d", platform, count)
        await self.notify_observers(platform, count, previous)
        self.polling_stats["successful_polls"] += 1
        return count

    def stop_polling(self) -> None:
        if not self.is_polling:
            return
        self.is_polling = False
        for platform in list(self._poll_tasks):
            self.stop_platform_polling(platform)
        logger.info("viewer_count: polling stopped")

    # ------------------------------------------------------------------
    # Status and teardown
    # ------------------------------------------------------------------

    def get_polling_efficiency(self) -> dict[str, Any]:
        total = self.polling_stats["total_polls"]
        successful = self.polling_stats["successful_polls"]
        return {
            "success_rate": successful / total * 100 if total else 0.0,
            "total_polls": total,
            "successful_polls": successful,
            "failed_polls": total - successful,
            "runtime_ms": self._clock.now_ms() - self.polling_stats["started_at"],
        }

    def get_system_status(self) -> dict[str, Any]:
        return {
            "is_polling": self.is_polling,
            "poll_interval_seconds": self.poll_interval_seconds,
            "stream_status": dict(self.stream_status),
            "viewer_counts": dict(self.counts),
            "observer_count": len(self.observers),
            "active_polling_platforms": sorted(self._poll_tasks),
            "efficiency": self.get_polling_efficiency(),
        }

    async def cleanup(self) -> None:
        """Stop polling, clean up every observer (5 s budget) and drop them."""
        tasks = list(self._poll_tasks.values())
        self.stop_polling()
        for platform in list(self._poll_tasks):
            self.stop_platform_polling(platform)
        for task in tasks:
            if task is not asyncio.current_task():
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        count = len(self.observers)
        try:
            await asyncio.wait_for(self._broadcast("cleanup"), timeout=OBSERVER_CLEANUP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("viewer_count: observer cleanup timed out")
        self.observers.clear()
        logger.info("viewer_count: cleanup complete — %d observer(s)", count)
