"""Live-stream detection and continuous liveness monitoring.

Chat transports for YouTube and TikTok only make sense while the channel is
live.  :class:`StreamDetector` polls a per-platform ``check_live`` callable
until the stream is up, invokes the platform's connect callback, and then
keeps re-checking so a stream that ends and restarts is reconnected.

Status callbacks receive ``(status, message)`` where status is one of
``waiting``, ``live``, ``failed``, ``error`` or ``offline``.

Twitch chat is available whether or not the channel is live, so Twitch
connects immediately.

Usage::

    detector = StreamDetector(check_live={"youtube": YouTubeLivePageChecker()})
    await detector.start_stream_detection("youtube", config, connect, on_status)
    ...
    await detector.cleanup()
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from stream_aggregator.config.settings import Settings, get_settings
from stream_aggregator.core.clock import Clock, SystemClock
from stream_aggregator.core.exceptions import StreamDetectionError
from stream_aggregator.core.http import client_scope
from stream_aggregator.core.retry import AdaptiveRetry, extract_error_message

logger = logging.getLogger(__name__)

CheckLive = Callable[[Any], Awaitable[bool]]
"""``async (platform_config) -> bool`` liveness check."""

ConnectCallback = Callable[[], Awaitable[Any]]
StatusCallback = Callable[[str, str], Any]

MAX_ERROR_BACKOFF_MS: int = 300_000
"""Upper bound for the delay between detection attempts after an error."""

MONITORED_PLATFORMS: frozenset[str] = frozenset({"youtube", "tiktok"})
"""Platforms whose liveness is re-checked after the initial detection."""

YOUTUBE_STREAMS_URL = "https://www.youtube.com/{handle}/streams"


def _config_value(config: Any, key: str, default: Any = None) -> Any:
    if isinstance(config, dict):
        return config.get(key, default)
    return getattr(config, key, default)


class YouTubeLivePageChecker:
    """Liveness check that inspects a channel's public ``/streams`` page.

    The page embeds its initial data as JSON; a live broadcast shows up as
    a ``LIVE_NOW`` badge, ``isLiveContent`` or a ``LIVE`` label next to a
    view counter.  Any transport failure counts as not live.

    Args:
        http_client: Optional injected client; a short-lived one is used
            when omitted.
        timeout: Request timeout in seconds.
    """

    def __init__(self, http_client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._http_client = http_client
        self._timeout = timeout

    async def __call__(self, config: Any) -> bool:
        username = str(_config_value(config, "username", "") or "").strip()
        if not username:
            return False
        handle = username if username.startswith("@") else f"@{username}"
        url = YOUTUBE_STREAMS_URL.format(handle=handle)
        try:
            async with client_scope(self._http_client, timeout=self._timeout) as client:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.debug("stream_detector: youtube streams page fetch failed — %s", exc)
            return False
        return self.page_is_live(response.text)

    @staticmethod
    def page_is_live(html: str) -> bool:
        has_badge = "BADGE_STYLE_TYPE_LIVE_NOW" in html or '"style":"LIVE"' in html
        has_viewers = "watching now" in html or "viewCountText" in html
        is_live = (
            '"isLiveContent":true' in html
            or ('"style":"LIVE"' in html and "watching now" in html)
            or "BADGE_STYLE_TYPE_LIVE_NOW" in html
            or ('"text":"LIVE"' in html and "viewCountText" in html)
        )
        return is_live and (has_badge or has_viewers)


class StreamDetector:
    """Poll platforms until live, then connect and keep watching.

    Per-platform options are read from the platform config
    (``stream_detection_enabled``, ``stream_retry_interval``,
    ``stream_max_retries``, ``continuous_monitoring_interval``), falling
    back to :class:`~stream_aggregator.config.settings.Settings`.

    Args:
        check_live: Mapping of platform name to liveness check.  Twitch
            needs none.  A TikTok connection without a check is allowed to
            connect; the TikTok transport gates on liveness itself.
        settings: Source of the detection defaults.
        clock: Time source for retry and monitoring waits.
    """

    def __init__(
        self,
        check_live: dict[str, CheckLive] | None = None,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self.check_live: dict[str, CheckLive] = dict(check_live or {})
        self.enabled = self._settings.stream_detection_enabled

        self.retry_attempts: dict[str, int] = {}
        self.error_backoff: dict[str, AdaptiveRetry] = {}
        self.platform_configs: dict[str, Any] = {}
        self.platform_callbacks: dict[str, tuple[ConnectCallback, StatusCallback | None]] = {}
        self.platform_stream_status: dict[str, bool] = {}
        self._retry_tasks: dict[str, asyncio.Task[None]] = {}
        self._monitor_tasks: dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Per-platform options
    # ------------------------------------------------------------------

    def _detection_enabled(self, config: Any) -> bool:
        value = _config_value(config, "stream_detection_enabled")
        return self.enabled if value is None else bool(value)

    def _retry_interval(self, config: Any) -> float:
        value = _config_value(config, "stream_retry_interval")
        interval = self._settings.stream_retry_interval_seconds if value is None else value
        if not isinstance(interval, (int, float)) or isinstance(interval, bool) or interval <= 0:
            raise StreamDetectionError(f"stream_retry_interval must be positive, got {interval!r}")
        return float(interval)

    def _max_retries(self, config: Any) -> int:
        value = _config_value(config, "stream_max_retries")
        max_retries = self._settings.stream_max_retries if value is None else value
        if not isinstance(max_retries, int) or isinstance(max_retries, bool) or max_retries < -1:
            raise StreamDetectionError(f"stream_max_retries must be -1 or >= 0, got {max_retries!r}")
        return max_retries

    def _monitoring_interval(self, config: Any) -> float:
        value = _config_value(config, "continuous_monitoring_interval")
        interval = self._settings.continuous_monitoring_interval_seconds if value is None else value
        if not isinstance(interval, (int, float)) or isinstance(interval, bool) or interval < 0:
            raise StreamDetectionError(
                f"continuous_monitoring_interval must not be negative, got {interval!r}"
            )
        return float(interval)

    def _error_backoff_for(self, platform: str, config: Any) -> AdaptiveRetry:
        """Return *platform*'s error backoff: the retry interval doubled per failed check, capped."""
        retry = self.error_backoff.get(platform)
        if retry is None:
            retry = self.error_backoff[platform] = AdaptiveRetry(
                base_delay_ms=int(self._retry_interval(config) * 1000),
                max_delay_ms=MAX_ERROR_BACKOFF_MS,
                multiplier=2.0,
                clock=self._clock,
            )
        return retry

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def start_stream_detection(
        self,
        platform: str,
        config: Any,
        connect_callback: ConnectCallback,
        status_callback: StatusCallback | None = None,
    ) -> Any:
        """Connect *platform* now if live, otherwise keep polling in the background.

        Returns:
            The connect callback's result when it ran during this call,
            else ``None``.

        Raises:
            StreamDetectionError: On invalid detection options.
        """
        if platform == "twitch":
            logger.debug("stream_detector: twitch chat is always available — connecting directly")
            return await connect_callback()
        if not self._detection_enabled(config):
            logger.info("stream_detector: detection disabled for %s — connecting directly", platform)
            return await connect_callback()

        # Validate up front so a bad option fails the caller, not a background task.
        self._retry_interval(config)
        self._max_retries(config)
        self._monitoring_interval(config)

        logger.info("stream_detector: starting stream detection for %s", platform)
        self._cancel_retry(platform)
        self.retry_attempts[platform] = 0
        self.error_backoff.pop(platform, None)
        self.platform_configs[platform] = config
        self.platform_callbacks[platform] = (connect_callback, status_callback)
        self.platform_stream_status[platform] = False

        result = await self._detect_once(platform)
        if platform in MONITORED_PLATFORMS:
            self.start_continuous_monitoring(platform)
        return result

    async def check_stream_status(self, platform: str, config: Any) -> bool:
        """Return whether *platform* is currently live according to its liveness check."""
        if platform == "twitch":
            return True
        check = self.check_live.get(platform)
        if check is None:
            if platform == "tiktok":
                logger.debug("stream_detector: no tiktok liveness check — allowing connection attempt")
                return True
            logger.warning("stream_detector: no liveness check registered for %s", platform)
            return False
        return bool(await check(config))

    async def _detect_once(self, platform: str) -> Any:
        """Run one detection attempt; schedule the next one unless finished."""
        config = self.platform_configs[platform]
        connect_callback, status_callback = self.platform_callbacks[platform]
        attempt = self.retry_attempts.get(platform, 0) + 1
        self.retry_attempts[platform] = attempt

        try:
            is_live = await self.check_stream_status(platform, config)
            if is_live:
                logger.info("stream_detector: %s stream is live — connecting", platform)
                self.retry_attempts.pop(platform, None)
                self._error_backoff_for(platform, config).reset(platform)
                await self._notify(status_callback, "live", f"Stream is live, connecting to {platform}")
                result = await connect_callback()
                self.platform_stream_status[platform] = True
                return result

            logger.debug("stream_detector: %s not live (attempt %d)", platform, attempt)
            await self._notify(
                status_callback,
                "waiting",
                f"Waiting for {platform} stream to go live (attempt {attempt})",
            )
            max_retries = self._max_retries(config)
            if max_retries > 0 and attempt >= max_retries:
                logger.warning("stream_detector: max retry attempts (%d) reached for %s", max_retries, platform)
                await self._notify(status_callback, "failed", f"Max retry attempts reached for {platform}")
                return None
            delay_s = self._retry_interval(config)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            message = extract_error_message(exc)
            logger.warning("stream_detector: error detecting %s stream — %s", platform, message)
            await self._notify(status_callback, "error", f"Error detecting {platform} stream: {message}")
            delay_s = self._error_backoff_for(platform, config).increment(platform) / 1000.0

        logger.debug("stream_detector: retrying %s in %.1fs", platform, delay_s)
        self._retry_tasks[platform] = asyncio.get_running_loop().create_task(
            self._retry_after(platform, delay_s),
            name=f"stream-detect-{platform}",
        )
        return None

    async def _retry_after(self, platform: str, delay_s: float) -> None:
        await self._clock.sleep(delay_s)
        if self._retry_tasks.get(platform) is asyncio.current_task():
            del self._retry_tasks[platform]
        if platform in self.platform_callbacks:
            await self._detect_once(platform)

    async def _notify(self, callback: StatusCallback | None, status: str, message: str) -> None:
        if callback is None:
            return
        try:
            result = callback(status, message)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("stream_detector: status callback raised for status %r", status)

    def stop_stream_detection(self, platform: str) -> None:
        """Cancel pending detection retries for *platform*."""
        self._cancel_retry(platform)
        self.retry_attempts.pop(platform, None)
        self.error_backoff.pop(platform, None)
        logger.debug("stream_detector: detection stopped for %s", platform)

    def _cancel_retry(self, platform: str) -> None:
        task = self._retry_tasks.pop(platform, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Continuous monitoring
    # ------------------------------------------------------------------

    def start_continuous_monitoring(self, platform: str) -> None:
        if platform in self._monitor_tasks:
            logger.debug("stream_detector: continuous monitoring already active for %s", platform)
            return
        interval = self._monitoring_interval(self.platform_configs.get(platform))
        if interval <= 0:
            logger.debug("stream_detector: continuous monitoring disabled for %s", platform)
            return
        logger.info("stream_detector: monitoring %s every %.0fs", platform, interval)
        self._monitor_tasks[platform] = asyncio.get_running_loop().create_task(
            self._monitor_loop(platform, interval),
            name=f"stream-monitor-{platform}",
        )

    def stop_continuous_monitoring(self, platform: str) -> None:
        task = self._monitor_tasks.pop(platform, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            logger.debug("stream_detector: continuous monitoring stopped for %s", platform)

    async def _monitor_loop(self, platform: str, interval: float) -> None:
        while True:
            await self._clock.sleep(interval)
            await self.perform_continuous_check(platform)

    async def perform_continuous_check(self, platform: str) -> None:
        """Re-check liveness once; connect on an offline-to-live transition."""
        config = self.platform_configs.get(platform)
        callbacks = self.platform_callbacks.get(platform)
        if config is None or callbacks is None:
            logger.warning("stream_detector: no configuration for continuous monitoring of %s", platform)
            return
        connect_callback, status_callback = callbacks
        try:
            current = await self.check_stream_status(platform, config)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("stream_detector: monitoring check for %s failed — %s", platform, extract_error_message(exc))
            return

        if current == self.platform_stream_status.get(platform, False):
            logger.debug("stream_detector: %s status unchanged (%s)", platform, "LIVE" if current else "OFFLINE")
            return
        self.platform_stream_status[platform] = current
        if not current:
            logger.info("stream_detector: %s stream ended", platform)
            await self._notify(status_callback, "offline", f"Stream ended for {platform}")
            return

        logger.info("stream_detector: %s stream started — connecting", platform)
        self._cancel_retry(platform)
        self.retry_attempts.pop(platform, None)
        await self._notify(status_callback, "live", f"Stream started for {platform}")
        try:
            await connect_callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("stream_detector: failed to connect to %s stream — %s", platform, extract_error_message(exc))

    # ------------------------------------------------------------------
    # Status and teardown
    # ------------------------------------------------------------------

    def is_enabled(self) -> bool:
        return self.enabled

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "retry_attempts": dict(self.retry_attempts),
            "error_retries": {name: retry.get_retry_count(name) for name, retry in self.error_backoff.items()},
            "pending_retries": sorted(self._retry_tasks),
            "monitoring": sorted(self._monitor_tasks),
            "platforms": sorted(self.platform_configs),
            "stream_status": dict(self.platform_stream_status),
        }

    async def cleanup(self) -> None:
        """Cancel every retry and monitoring task and forget all platforms.  Idempotent."""
        tasks = [*self._retry_tasks.values(), *self._monitor_tasks.values()]
        self._retry_tasks.clear()
        self._monitor_tasks.clear()
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is not current:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self.retry_attempts.clear()
        self.error_backoff.clear()
        self.platform_configs.clear()
        self.platform_callbacks.clear()
        self.platform_stream_status.clear()
        logger.debug("stream_detector: cleanup completed")
