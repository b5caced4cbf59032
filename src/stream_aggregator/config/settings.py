"""Application settings loaded from environment variables.

Uses Pydantic Settings v2 for validated, type-safe configuration.  Twitch
client credentials and runtime flags are read exclusively through this
module; never call ``os.getenv`` directly elsewhere in the codebase.

Usage::

    from stream_aggregator.config.settings import get_settings

    settings = get_settings()
    store_path = settings.token_store_path
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide configuration backed by environment variables and an optional .env file.

    Every field has a default so the core can start without any environment;
    Twitch authentication additionally requires ``TWITCH_CLIENT_ID`` and
    ``TWITCH_CLIENT_SECRET`` unless ``TWITCH_DISABLE_AUTH`` is set.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Application behaviour
    # ------------------------------------------------------------------

    app_env: str = "production"
    """Deployment environment.  ``"test"`` disables real OAuth browser launch."""

    log_level: str = "INFO"
    """Root log level passed to :func:`~stream_aggregator.core.logging_config.configure_logging`."""

    # ------------------------------------------------------------------
    # Twitch authentication
    # ------------------------------------------------------------------

    twitch_client_id: str = ""
    """OAuth client id of the registered Twitch application."""

    twitch_client_secret: str = ""
    """OAuth client secret of the registered Twitch application."""

    twitch_disable_auth: bool = False
    """Bypass the OAuth flow entirely (``TWITCH_DISABLE_AUTH=true``; dev/test only)."""

    twitch_redirect_uri: str = "http://localhost:3000"
    """Redirect URI registered for the authorization-code flow."""

    token_store_path: str = Field(default="data/token-store.json")
    """JSON file holding persisted refresh credentials, rewritten atomically."""

    # ------------------------------------------------------------------
    # Retry and backoff
    # ------------------------------------------------------------------

    retry_base_delay_ms: int = 2000
    retry_max_delay_ms: int = 60000
    retry_multiplier: float = 1.3

    token_refresh_threshold_seconds: int = 15 * 60
    """Refresh an access token once it has this much lifetime left or less."""

    token_refresh_max_schedule_hours: float = 3.0
    """Cap on how far ahead a proactive refresh may be scheduled."""

    token_persist_attempts: int = 3
    """How many times a refreshed token write is attempted before rollback."""

    # ------------------------------------------------------------------
    # Event pipeline
    # ------------------------------------------------------------------

    gift_aggregation_delay_ms: int = 2000
    """Debounce window for TikTok combo gift aggregation."""

    ignore_self_messages: bool = False
    """General default for dropping messages authored by the streamer."""

    # ------------------------------------------------------------------
    # Stream detection and viewer counts
    # ------------------------------------------------------------------

    stream_detection_enabled: bool = True
    stream_retry_interval_seconds: float = 15.0
    stream_max_retries: int = -1
    """Maximum detection polls before giving up; ``-1`` means unlimited."""

    continuous_monitoring_interval_seconds: float = 60.0

    viewer_count_poll_interval_seconds: float = 30.0
    """Viewer-count polling cadence; values below 5 seconds are raised to 5."""

    @property
    def is_test(self) -> bool:
        return self.app_env.lower() == "test"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached process-wide :class:`Settings` instance.

    Tests that patch the environment must call ``get_settings.cache_clear()``.
    """
    return Settings()
