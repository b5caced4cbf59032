"""Per-platform connection construction with fail-fast validation.

The factory never opens a connection; it builds the client object the
platform module will ``connect()`` later, validating inputs up front so a
misconfiguration fails at start-up rather than on first use.

Dependencies are passed as a mapping:

- ``logger``: required; any object with some of ``debug/info/warning/error``.
- ``tiktok_client_factory`` (or ``TikTokWebSocketClient``): callable
  ``(username, connection_config) -> client`` for TikTok.
- ``twitch_client_factory``: callable ``(config, dependencies) -> client``
  for Twitch.
- ``tiktok_api_key`` / ``youtube_api_key``: optional provider keys.
"""

from __future__ import annotations

import logging
from typing import Any

from stream_aggregator.core.exceptions import PlatformConnectionError
from stream_aggregator.platforms.emitter import ensure_emitter

logger = logging.getLogger(__name__)

_LOGGER_METHODS: tuple[str, ...] = ("debug", "info", "warning", "error")

_SUPPORTED: tuple[str, ...] = ("tiktok", "youtube", "twitch")


def _noop(*_args: Any, **_kwargs: Any) -> None:
    return None


class _NormalizedLogger:
    """Logger view whose missing level methods are no-ops."""

    def __init__(self, target: Any) -> None:
        self._target = target
        for name in _LOGGER_METHODS:
            method = getattr(target, name, None)
            if not callable(method) and name == "warning":
                method = getattr(target, "warn", None)
            setattr(self, name, method if callable(method) else _noop)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._target, name)


def normalize_logger(candidate: Any) -> Any:
    """Return *candidate* with every level method guaranteed callable."""
    if all(callable(getattr(candidate, name, None)) for name in _LOGGER_METHODS):
        return candidate
    return _NormalizedLogger(candidate)


def _config_value(config: Any, key: str, default: Any = None) -> Any:
    if isinstance(config, dict):
        return config.get(key, default)
    return getattr(config, key, default)


class YouTubeConnection:
    """Minimal YouTube connection object bound to a channel.

    Live chat transport is owned by the YouTube platform module; this object
    only tracks connection state for the lifecycle service.
    """

    platform = "youtube"

    def __init__(self, config: Any, api_key: str | None = None) -> None:
        self.config = config
        self.username: str = _config_value(config, "username", "") or ""
        self.channel_id: str = _config_value(config, "channel_id", "") or ""
        self._api_key = api_key
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def get_api_key(self) -> str | None:
        return self._api_key

    def get_username(self) -> str:
        return self.username


class PlatformConnectionFactory:
    """Builds platform client objects.

    Args:
        logger: Optional logger; defaults to this module's logger.  Level
            methods it lacks are replaced with no-ops.
    """

    def __init__(self, logger: Any = None) -> None:
        self.logger = normalize_logger(logger if logger is not None else logging.getLogger(__name__))

    def create_connection(self, platform: str, config: Any, dependencies: dict[str, Any] | None) -> Any:
        """Build the client for *platform*.

        Raises:
            PlatformConnectionError: On missing inputs, an unsupported
                platform, or a client missing its ``connect`` method.
        """
        if not platform or not isinstance(platform, str):
            raise PlatformConnectionError("Platform name is required and must be a string")
        if config is None:
            raise PlatformConnectionError(f"Configuration is required for {platform} connection", platform)
        if not isinstance(dependencies, dict):
            raise PlatformConnectionError(
                f"Platform creation failed for {platform}: missing dependencies",
                platform,
            )
        if dependencies.get("logger") is None:
            raise PlatformConnectionError(
                f"Platform creation failed for {platform}: missing dependencies (logger)",
                platform,
            )
        dependencies = {**dependencies, "logger": normalize_logger(dependencies["logger"])}

        normalized = platform.lower()
        self.logger.debug("connection_factory: creating %s connection", normalized)
        try:
            if normalized == "tiktok":
                return self.create_tiktok_connection(config, dependencies)
            if normalized == "youtube":
                return self.create_youtube_connection(config, dependencies)
            if normalized == "twitch":
                return self.create_twitch_connection(config, dependencies)
        except PlatformConnectionError as exc:
            self.logger.error("connection_factory: failed to create %s connection — %s", platform, exc)
            raise
        raise PlatformConnectionError(f"Unsupported platform: {platform}", platform)

    def create_tiktok_connection(self, config: Any, dependencies: dict[str, Any]) -> Any:
        raw_username = str(_config_value(config, "username", "") or "")
        username = raw_username.strip().removeprefix("@").strip()
        if username != raw_username:
            self.logger.debug("connection_factory: tiktok username cleaned from %r to %r", raw_username, username)

        client_factory = dependencies.get("tiktok_client_factory") or dependencies.get("TikTokWebSocketClient")
        if not callable(client_factory):
            raise PlatformConnectionError(
                "TikTok connection creation failed: missing TikTokWebSocketClient",
                "tiktok",
            )

        api_key = dependencies.get("tiktok_api_key")
        if api_key:
            self.logger.debug(
                "connection_factory: using tiktok provider API key %s...",
                api_key[: 10 if len(api_key) > 12 else 5],
            )
        else:
            self.logger.warning("connection_factory: no tiktok provider API key configured — websocket may fail")

        try:
            client = client_factory(username, {"api_key": api_key, **dependencies.get("tiktok_connection_options", {})})
        except Exception as exc:
            raise PlatformConnectionError(
                f"Failed to create TikTok connection for user '{username}': {exc}",
                "tiktok",
            ) from exc
        if client is None:
            raise PlatformConnectionError(
                f"TikTok connection constructor returned None for user '{username}'",
                "tiktok",
            )
        if not callable(getattr(client, "connect", None)):
            raise PlatformConnectionError(
                f"TikTok connection for user '{username}' missing essential method: connect",
                "tiktok",
            )

        client = ensure_emitter(client, "tiktok")
        for name in ("disconnect", "fetch_is_live", "wait_until_live"):
            if not callable(getattr(client, name, None)):
                try:
                    setattr(client, name, _noop)
                except AttributeError:
                    self.logger.debug("connection_factory: tiktok client rejects optional method %s", name)
        return client

    def create_youtube_connection(self, config: Any, dependencies: dict[str, Any]) -> YouTubeConnection:
        return YouTubeConnection(config, api_key=dependencies.get("youtube_api_key"))

    def create_twitch_connection(self, config: Any, dependencies: dict[str, Any]) -> Any:
        client_factory = dependencies.get("twitch_client_factory")
        if not callable(client_factory):
            raise PlatformConnectionError(
                "Twitch connection creation failed: missing twitch_client_factory",
                "twitch",
            )
        client = client_factory(config, dependencies)
        if client is None:
            raise PlatformConnectionError("Twitch connection factory returned None", "twitch")
        return ensure_emitter(client, "twitch")

    @staticmethod
    def supported_platforms() -> list[str]:
        return list(_SUPPORTED)

    def is_platform_supported(self, platform: Any) -> bool:
        if not platform or not isinstance(platform, str):
            return False
        return platform.lower() in _SUPPORTED
