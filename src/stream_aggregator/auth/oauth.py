"""Twitch authorization-code flow helpers.

The interactive part of the flow (a local callback server, the browser) is
owned by the host application.  This module builds the authorization URL,
exchanges the returned code for tokens, revokes tokens, and opens the
browser unless running under ``APP_ENV=test``.
"""

from __future__ import annotations

import logging
import time
import webbrowser
from typing import Any
from urllib.parse import urlencode

import httpx

from stream_aggregator.auth.config import (
    REQUIRED_SCOPES,
    TWITCH_AUTHORIZE_URL,
    TWITCH_REVOKE_URL,
    TWITCH_TOKEN_URL,
)
from stream_aggregator.auth.error_handling import AuthErrorFactory
from stream_aggregator.config.settings import get_settings
from stream_aggregator.core.exceptions import TokenRefreshError
from stream_aggregator.core.http import client_scope

logger = logging.getLogger(__name__)


def _default_state() -> str:
    millis = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    encoded = ""
    while millis:
        millis, rem = divmod(millis, 36)
        encoded = digits[rem] + encoded
    return f"cb_{encoded or '0'}"


def build_authorize_url(
    client_id: str,
    redirect_uri: str | None = None,
    state: str | None = None,
    scopes: tuple[str, ...] = REQUIRED_SCOPES,
) -> str:
    """Return the browser URL that starts the authorization-code grant.

    Args:
        client_id: Twitch application client id.
        redirect_uri: Callback URI registered for the application; defaults
            to the ``twitch_redirect_uri`` setting.
        state: CSRF token echoed back on the callback; a short time-based
            value is generated when omitted.
        scopes: Scopes to request.
    """
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri or get_settings().twitch_redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "state": state or _default_state(),
    }
    return f"{TWITCH_AUTHORIZE_URL}?{urlencode(params)}"


async def exchange_code(
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization *code* for an access/refresh token pair.

    *redirect_uri* must match the one used to build the authorization URL;
    it defaults to the ``twitch_redirect_uri`` setting.

    Returns:
        ``{"access_token", "refresh_token", "expires_in"}``; ``expires_in``
        is ``None`` when Twitch omits it.

    Raises:
        TokenRefreshError: When the response lacks either token.
        AuthError: The categorized HTTP or transport failure.
    """
    try:
        async with client_scope(http_client) as client:
            response = await client.post(
                TWITCH_TOKEN_URL,
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": redirect_uri or get_settings().twitch_redirect_uri,
                },
            )
            response.raise_for_status()
            payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise AuthErrorFactory.categorize(exc, {"operation_name": "exchange_code"}) from exc

    if not payload.get("access_token") or not payload.get("refresh_token"):
        logger.error("oauth: invalid token response — error=%s", payload.get("error"))
        raise TokenRefreshError(
            f"Token exchange failed: {payload.get('error') or 'Unknown error'}",
            code="TOKEN_EXCHANGE_FAILED",
            needs_new_tokens=True,
        )
    expires_in = payload.get("expires_in")
    logger.info("oauth: exchanged authorization code for tokens")
    return {
        "access_token": payload["access_token"],
        "refresh_token": payload["refresh_token"],
        "expires_in": expires_in if isinstance(expires_in, (int, float)) else None,
    }


async def revoke_token(
    token: str,
    client_id: str,
    http_client: httpx.AsyncClient | None = None,
) -> bool:
    """Revoke *token*.  Returns False (and logs) on any failure."""
    try:
        async with client_scope(http_client) as client:
            response = await client.post(
                TWITCH_REVOKE_URL,
                data={"client_id": client_id, "token": token},
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("oauth: token revocation failed — %s", exc)
        return False
    logger.info("oauth: token revoked")
    return True


def open_authorize_url(url: str) -> bool:
    """Open *url* in the user's browser; skipped under ``APP_ENV=test``."""
    if get_settings().is_test:
        logger.info("oauth: skipping automatic browser opening")
        return False
    try:
        return webbrowser.open(url)
    except webbrowser.Error as exc:
        logger.warning("oauth: failed to open browser automatically — %s", exc)
        return False
