"""Per-platform viewer-count providers.

Every provider exposes ``async get_viewer_count() -> int`` and never raises:
a failed lookup is recorded in the provider's error counters and
reported as ``0``.  Errors are classified as ``network`` (transport
failures and timeouts), ``provider`` (the platform answered with an error
or an unusable payload) or ``unknown``.

Usage::

    provider = TwitchViewerCountProvider(config, token_provider=auth.get_access_token)
    count = await provider.get_viewer_count()
"""

from __future__ import annotations

import inspect
import logging
import math
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Union

import httpx

from stream_aggregator.config.settings import get_settings
from stream_aggregator.core.exceptions import ViewerCountError
from stream_aggregator.core.http import client_scope
from stream_aggregator.core.retry import extract_error_message

logger = logging.getLogger(__name__)

TWITCH_STREAMS_URL = "https://api.twitch.tv/helix/streams"
YOUTUBE_VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"

ERROR_KINDS: tuple[str, ...] = ("network", "provider", "unknown")

TokenProvider = Callable[[], Union[str, Awaitable[str]]]


def _config_value(config: Any, key: str, default: Any = None) -> Any:
    if isinstance(config, dict):
        return config.get(key, default)
    return getattr(config, key, default)


def coerce_count(value: Any) -> int | None:
    """Return *value* as a non-negative int, or ``None`` when it is not one."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if not value.isdigit():
            return None
        return int(value)
    if isinstance(value, (int, float)) and math.isfinite(value) and value >= 0:
        return int(value)
    return None


class ViewerCountProvider(ABC):
    """Common error accounting for viewer-count providers.

    Subclasses implement :meth:`fetch_viewer_count`, which may raise;
    :meth:`get_viewer_count` turns any failure into ``0``.
    """

    platform: str = ""

    def __init__(self) -> None:
        self.total_errors = 0
        self.consecutive_errors = 0
        self.last_error: str | None = None
        self.error_types: Counter[str] = Counter()

    @abstractmethod
    def is_ready(self) -> bool: ...

    @abstractmethod
    async def fetch_viewer_count(self) -> int: ...

    async def get_viewer_count(self) -> int:
        if not self.is_ready():
            logger.debug("viewer_count: %s provider not ready — returning 0", self.platform)
            return 0
        try:
            count = await self.fetch_viewer_count()
        except Exception as exc:  # noqa: BLE001
            return self.handle_error(exc)
        self.consecutive_errors = 0
        return count

    @staticmethod
    def categorize_error(error: BaseException) -> str:
        if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
            return "network"
        if isinstance(error, (httpx.HTTPStatusError, ViewerCountError, ValueError)):
            return "provider"
        message = str(error).lower()
        if "network" in message or "timeout" in message or "connect" in message:
            return "network"
        return "unknown"

    def handle_error(self, error: BaseException, operation: str = "get_viewer_count") -> int:
        kind = self.categorize_error(error)
        self.total_errors += 1
        self.consecutive_errors += 1
        self.last_error = extract_error_message(error) or "Unknown error"
        self.error_types[kind] += 1
        logger.debug(
            "viewer_count: %s %s failed — kind=%s consecutive=%d error=%s",
            self.platform,
            operation,
            kind,
            self.consecutive_errors,
            self.last_error,
        )
        return 0

    def get_error_stats(self) -> dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "consecutive_errors": self.consecutive_errors,
            "last_error": self.last_error,
            "error_types": {kind: self.error_types[kind] for kind in ERROR_KINDS},
        }


class TwitchViewerCountProvider(ViewerCountProvider):
    """Viewer count of a Twitch channel from the Helix ``streams`` endpoint.

    An offline channel (empty ``data``) has 0 viewers.

    Args:
        config: Twitch platform config; ``channel`` is the login to query.
        token_provider: Returns the current user access token; may be a
            coroutine function (``TwitchAuthManager.get_access_token``).
        client_id: Application client id; defaults to settings.
        http_client: Optional shared client.
    """

    platform = "twitch"

    def __init__(
        self,
        config: Any,
        token_provider: TokenProvider,
        *,
        client_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self.config = config
        self._token_provider = token_provider
        self._client_id = client_id
        self._http = http_client

    def is_ready(self) -> bool:
        return bool(_config_value(self.config, "channel"))

    async def _access_token(self) -> str:
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        return str(token)

    async def fetch_viewer_count(self) -> int:
        client_id = self._client_id or _config_value(self.config, "client_id") or get_settings().twitch_client_id
        headers = {"Client-Id": client_id, "Authorization": f"Bearer {await self._access_token()}"}
        async with client_scope(self._http) as client:
            response = await client.get(
                TWITCH_STREAMS_URL,
                params={"user_login": _config_value(self.config, "channel")},
                headers=headers,
            )
            response.raise_for_status()
            payload = response.json()

        streams = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(streams, list):
            raise ViewerCountError("Twitch streams response missing data", self.platform)
        if not streams:
            return 0
        count = coerce_count(streams[0].get("viewer_count"))
        if count is None:
            raise ViewerCountError("Twitch stream has no valid viewer_count", self.platform)
        return count


class YouTubeViewerCountProvider(ViewerCountProvider):
    """Sum of concurrent viewers across every active YouTube broadcast.

    Args:
        config: YouTube platform config; an ``api_key`` option enables the
            Data API lookup.
        get_active_video_ids: Returns the ids of the broadcasts currently
            being read.
        api_key: Data API key; overrides ``config.api_key``.
        http_client: Optional shared client.
    """

    platform = "youtube"

    def __init__(
        self,
        config: Any,
        get_active_video_ids: Callable[[], Sequence[str]],
        *,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self.config = config
        self.get_active_video_ids = get_active_video_ids
        self._api_key = api_key or _config_value(config, "api_key")
        self._http = http_client
        self.stats = {"total_requests": 0, "successful_requests": 0}

    def is_ready(self) -> bool:
        return bool(self.config is not None and self._api_key and callable(self.get_active_video_ids))

    async def fetch_viewer_count(self) -> int:
        self.stats["total_requests"] += 1
        video_ids = [video_id for video_id in self.get_active_video_ids() or [] if video_id]
        if not video_ids:
            logger.debug("viewer_count: no active youtube streams")
            return 0
        counts = await self._fetch_counts(video_ids)
        total = sum(counts.values())
        self.stats["successful_requests"] += 1
        logger.debug(
            "viewer_count: youtube aggregate %d viewers from %d/%d streams",
            total,
            len(counts),
            len(video_ids),
        )
        return total

    async def get_viewer_count_for_video(self, video_id: str) -> int:
        try:
            counts = await self._fetch_counts([video_id])
        except Exception as exc:  # noqa: BLE001
            return self.handle_error(exc, "get_viewer_count_for_video")
        self.consecutive_errors = 0
        return counts.get(video_id, 0)

    async def _fetch_counts(self, video_ids: Sequence[str]) -> dict[str, int]:
        async with client_scope(self._http) as client:
            response = await client.get(
                YOUTUBE_VIDEOS_URL,
                params={"part": "liveStreamingDetails", "id": ",".join(video_ids), "key": self._api_key},
            )
            response.raise_for_status()
            payload = response.json()

        items = payload.get("items") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise ViewerCountError("YouTube videos response missing items", self.platform)
        counts: dict[str, int] = {}
        for item in items:
            details = item.get("liveStreamingDetails") or {}
            count = coerce_count(details.get("concurrentViewers"))
            if count is not None and item.get("id"):
                counts[item["id"]] = count
        return counts

    def get_stats(self) -> dict[str, Any]:
        total = self.stats["total_requests"]
        return {
            **self.stats,
            "success_rate": round(self.stats["successful_requests"] / total * 100, 2) if total else 0.0,
        }


class TikTokViewerCountProvider(ViewerCountProvider):
    """Viewer count reported by the connected TikTok platform instance.

    Args:
        platform_instance: Object exposing ``get_viewer_count()`` (sync or
            async) and optionally ``connection.is_connected``.
    """

    platform = "tiktok"

    def __init__(self, platform_instance: Any) -> None:
        super().__init__()
        self.platform_instance = platform_instance

    def is_ready(self) -> bool:
        return self.platform_instance is not None

    def is_connected(self) -> bool:
        connection = getattr(self.platform_instance, "connection", None)
        return bool(connection is not None and getattr(connection, "is_connected", False))

    async def fetch_viewer_count(self) -> int:
        getter = getattr(self.platform_instance, "get_viewer_count", None)
        if not callable(getter):
            raise ViewerCountError("TikTok platform not available", self.platform)
        count = getter()
        if inspect.isawaitable(count):
            count = await count
        coerced = coerce_count(count)
        return coerced if coerced is not None else 0
