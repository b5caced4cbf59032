"""Twitch OAuth constants.

Endpoints and scopes used by :mod:`stream_aggregator.auth.oauth`,
:mod:`stream_aggregator.auth.token_refresh` and
:mod:`stream_aggregator.auth.manager`.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

TWITCH_AUTHORIZE_URL: str = "https://id.twitch.tv/oauth2/authorize"
"""Browser-interactive authorization endpoint (authorization-code grant)."""

TWITCH_TOKEN_URL: str = "https://id.twitch.tv/oauth2/token"
"""Token endpoint for the ``refresh_token`` and ``authorization_code`` grants.

Requests are ``application/x-www-form-urlencoded`` POSTs.
"""

TWITCH_VALIDATE_URL: str = "https://id.twitch.tv/oauth2/validate"
"""Token validation endpoint (GET with a Bearer token).

Used once during initialization; the proactive refresh path never calls it.
"""

TWITCH_REVOKE_URL: str = "https://id.twitch.tv/oauth2/revoke"

# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------

REQUIRED_SCOPES: tuple[str, ...] = (
    "user:read:chat",
    "chat:edit",
    "channel:read:subscriptions",
    "bits:read",
    "channel:read:redemptions",
    "moderator:read:followers",
)
"""Scopes requested by the authorization flow and checked on validation."""

# ---------------------------------------------------------------------------
# Refresh timing
# ---------------------------------------------------------------------------

REFRESH_THRESHOLD_SECONDS: int = 15 * 60
"""Tokens with this much lifetime left (or less) are refreshed."""

PERSIST_ATTEMPTS: int = 3
PERSIST_BASE_DELAY_S: float = 1.0
"""Persistence retries wait 1 s, 2 s, 4 s."""

DEFAULT_EXPIRES_IN_SECONDS: int = 3600
"""Assumed lifetime when ``/validate`` omits ``expires_in``."""
