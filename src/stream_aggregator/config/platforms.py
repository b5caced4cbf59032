"""Per-platform runtime configuration models.

These are plain Pydantic models (not settings): the host application parses
its own configuration file and hands the result to the core.  Unknown keys
are kept (``extra="allow"``) so platform modules can read options the core
does not know about.

Usage::

    config = PlatformsConfig.model_validate({
        "general": {"ignore_self_messages": True},
        "twitch": {"enabled": True, "username": "streamer", "channel": "streamer"},
    })
    config.enabled_platforms()   # ["twitch"]
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict

SUPPORTED_PLATFORMS: tuple[str, ...] = ("twitch", "youtube", "tiktok")
"""Canonical platform identifiers, in initialization order."""


class GeneralConfig(BaseModel):
    """Settings shared by every platform."""

    model_config = ConfigDict(extra="allow")

    ignore_self_messages: bool = False
    """Default for dropping messages authored by the streamer identity."""


class GoalsConfig(BaseModel):
    """Per-platform donation goals and paypiggy equivalents."""

    model_config = ConfigDict(extra="allow")

    tiktok_goal_enabled: bool = False
    tiktok_goal_target: float = 1000
    tiktok_goal_currency: str = "coins"
    youtube_goal_enabled: bool = False
    youtube_goal_target: float = 1.00
    youtube_goal_currency: str = "dollars"
    twitch_goal_enabled: bool = False
    twitch_goal_target: float = 100
    twitch_goal_currency: str = "bits"

    tiktok_paypiggy_equivalent: float = 50
    youtube_paypiggy_price: float = 4.99
    twitch_paypiggy_equivalent: float = 350


class PlatformConfig(BaseModel):
    """Options common to all platforms."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = False
    username: str = ""
    """Streamer identity on this platform; used by self-filtering."""

    ignore_self_messages: Optional[bool] = None
    """Per-platform override of :attr:`GeneralConfig.ignore_self_messages`."""

    stream_detection_enabled: bool = True
    stream_retry_interval: float = 15.0
    """Seconds between live-stream detection polls."""

    stream_max_retries: int = -1
    """Detection polls before giving up; ``-1`` is unlimited."""

    continuous_monitoring_interval: float = 60.0
    """Seconds between liveness re-checks once connected; ``0`` disables."""


class TwitchPlatformConfig(PlatformConfig):
    channel: str = ""
    client_id: str = ""
    access_token: str = ""
    refresh_token: str = ""
    expires_at: Optional[int] = None
    """Access token expiry as epoch milliseconds."""


class YouTubePlatformConfig(PlatformConfig):
    channel_id: str = ""


class TikTokPlatformConfig(PlatformConfig):
    gift_aggregation_delay_ms: int = 2000


class PlatformsConfig(BaseModel):
    """Complete platform configuration handed to the lifecycle service."""

    model_config = ConfigDict(extra="allow")

    general: GeneralConfig = GeneralConfig()
    goals: GoalsConfig = GoalsConfig()
    twitch: TwitchPlatformConfig = TwitchPlatformConfig()
    youtube: YouTubePlatformConfig = YouTubePlatformConfig()
    tiktok: TikTokPlatformConfig = TikTokPlatformConfig()

    def for_platform(self, platform: str) -> PlatformConfig | None:
        """Return the config section for *platform*, or ``None`` if unknown."""
        if platform not in SUPPORTED_PLATFORMS:
            return None
        return getattr(self, platform)

    def enabled_platforms(self) -> list[str]:
        return [name for name in SUPPORTED_PLATFORMS if getattr(self, name).enabled]
