"""Dropping of messages authored by the streamer's own identity.

Resolution of the feature flag: the platform section's
``ignore_self_messages`` (when set) overrides ``general.ignore_self_messages``.
Any failure while reading configuration disables filtering for that
message; the filter never drops a message because its config is broken.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from stream_aggregator.config.platforms import SUPPORTED_PLATFORMS

logger = logging.getLogger(__name__)


def _get(source: Any, key: str, default: Any = None) -> Any:
    if source is None:
        return default
    if isinstance(source, Mapping):
        return source.get(key, default)
    return getattr(source, key, default)


def _same_name(left: Any, right: Any) -> bool:
    if not isinstance(left, str) or not isinstance(right, str):
        return False
    left, right = left.strip().lstrip("@").lower(), right.strip().lstrip("@").lower()
    return bool(left) and left == right


class SelfMessageFilter:
    """Decide whether a message was sent by the configured streamer.

    Args:
        general_config: The ``general`` config section (model or mapping).
            ``None`` means filtering is off unless a platform enables it.
    """

    def __init__(self, general_config: Any = None) -> None:
        self.general_config = general_config

    def is_enabled(self, platform_config: Any) -> bool:
        """Return the effective ``ignore_self_messages`` flag.

        Raises:
            Exception: Propagated from config access; :meth:`should_filter`
                turns it into ``False``.
        """
        override = _get(platform_config, "ignore_self_messages")
        if override is not None:
            return bool(override)
        return bool(_get(self.general_config, "ignore_self_messages", False))

    def should_filter(self, platform: str, message: Mapping[str, Any], platform_config: Any) -> bool:
        """Return True when *message* is the streamer's own and filtering is on."""
        try:
            if not self.is_enabled(platform_config):
                return False
            streamer = _get(platform_config, "username", "")
            if platform == "twitch":
                return self._is_twitch_self(message, streamer, platform_config)
            if platform == "youtube":
                return self._is_youtube_self(message, streamer)
            if platform == "tiktok":
                return self._is_tiktok_self(message, streamer, platform_config)
        except Exception:  # noqa: BLE001
            logger.warning("self_filter: could not evaluate %s message, delivering it", platform, exc_info=True)
            return False
        return False

    # ------------------------------------------------------------------
    # Platform rules
    # ------------------------------------------------------------------

    @staticmethod
    def _is_twitch_self(message: Mapping[str, Any], streamer: str, platform_config: Any) -> bool:
        if message.get("self") is True:
            return True
        names = [streamer, _get(platform_config, "channel", "")]
        context = message.get("context")
        context_name = context.get("username") if isinstance(context, Mapping) else None
        return any(_same_name(message.get("username"), name) or _same_name(context_name, name) for name in names)

    @staticmethod
    def _is_youtube_self(message: Mapping[str, Any], streamer: str) -> bool:
        if _same_name(message.get("username"), streamer):
            return True
        if message.get("is_broadcaster") is True:
            return True
        author = message.get("author")
        if isinstance(author, Mapping) and author.get("isChatOwner") is True:
            return True
        badges = message.get("badges") or []
        return any(isinstance(badge, str) and badge.lower() == "owner" for badge in badges)

    @staticmethod
    def _is_tiktok_self(message: Mapping[str, Any], streamer: str, platform_config: Any) -> bool:
        if _same_name(message.get("username"), streamer):
            return True
        own_id = _get(platform_config, "user_id")
        return bool(own_id) and str(message.get("user_id") or message.get("userId") or "") == str(own_id)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def validate_configuration(self, platforms_config: Any) -> dict[str, Any]:
        """Report misconfigurations of self-filtering across platforms.

        Returns:
            ``{"is_valid": bool, "warnings": [...], "errors": [...]}``.
        """
        warnings: list[str] = []
        errors: list[str] = []
        general = _get(platforms_config, "general", self.general_config)
        general_flag = _get(general, "ignore_self_messages")
        if general_flag is not None and not isinstance(general_flag, bool):
            errors.append("general.ignore_self_messages must be a boolean")

        for platform in SUPPORTED_PLATFORMS:
            section = _get(platforms_config, platform)
            if section is None:
                continue
            flag = _get(section, "ignore_self_messages")
            if flag is not None and not isinstance(flag, bool):
                errors.append(f"{platform}.ignore_self_messages must be a boolean")
                continue
            effective = flag if flag is not None else bool(general_flag)
            if effective and _get(section, "enabled", False) and not _get(section, "username"):
                warnings.append(f"{platform}: self-message filtering enabled but no username configured")
        return {"is_valid": not errors, "warnings": warnings, "errors": errors}
