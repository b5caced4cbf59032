"""Configuration package for Stream Aggregator.

Re-exports the most commonly used configuration symbols so that
callers can write::

    from stream_aggregator.config import get_settings, PlatformsConfig

without needing to know which sub-module each symbol lives in.
"""

from __future__ import annotations

from stream_aggregator.config.platforms import (
    SUPPORTED_PLATFORMS,
    GeneralConfig,
    GoalsConfig,
    PlatformConfig,
    PlatformsConfig,
    TikTokPlatformConfig,
    TwitchPlatformConfig,
    YouTubePlatformConfig,
)
from stream_aggregator.config.settings import Settings, get_settings

__all__ = [
    # settings
    "Settings",
    "get_settings",
    # platforms
    "SUPPORTED_PLATFORMS",
    "GeneralConfig",
    "GoalsConfig",
    "PlatformConfig",
    "PlatformsConfig",
    "TwitchPlatformConfig",
    "YouTubePlatformConfig",
    "TikTokPlatformConfig",
]
