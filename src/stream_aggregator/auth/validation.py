"""Static and online validation of Twitch credentials.

:func:`validate_config` rejects configurations that can never authenticate
(missing client credentials, missing tokens, placeholder tokens left over
from sample configs or tests) without touching the network.
:func:`validate_token_scopes` asks ``/validate`` which scopes the token was
granted, through :class:`~stream_aggregator.auth.reactive.ReactiveTokenRefresh`
so an expired token is refreshed once on the way.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from stream_aggregator.auth.config import REQUIRED_SCOPES, TWITCH_VALIDATE_URL
from stream_aggregator.auth.reactive import ReactiveTokenRefresh
from stream_aggregator.core.exceptions import AuthError, NetworkError
from stream_aggregator.core.http import client_scope
from stream_aggregator.core.timeouts import timeout_for

logger = logging.getLogger(__name__)

_PLACEHOLDER_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^new_access_\d+$",
        r"^test_token_",
        r"^placeholder_",
        r"your_access_token",
        r"^example_",
        r"^demo_",
        r"^temp_token_",
        r"^sample_",
        r"^dummy_",
        r"^mock_",
        r"^null$",
        r"^undefined$",
    )
)


@dataclass
class TokenValidation:
    """Result of a credential validation.

    ``needs_new_tokens`` means only a fresh OAuth authorization can fix the
    configuration; ``needs_refresh`` means the refresh token may still work.
    """

    is_valid: bool = False
    needs_refresh: bool = False
    needs_new_tokens: bool = False
    retryable: bool = False
    missing_client_credentials: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    missing_scopes: list[str] = field(default_factory=list)


def is_placeholder_token(token: str | None) -> bool:
    """Return True for tokens copied from sample configs or templates."""
    if not token:
        return False
    return any(pattern.search(token) for pattern in _PLACEHOLDER_PATTERNS)


def _get(config: Any, key: str) -> Any:
    if isinstance(config, dict):
        return config.get(key)
    return getattr(config, key, None)


def validate_config(config: Any, client_secret: str | None = None) -> TokenValidation:
    """Check that *config* carries usable Twitch credentials.

    Args:
        config: A :class:`~stream_aggregator.config.platforms.TwitchPlatformConfig`
            or a mapping with ``client_id``, ``access_token`` and
            ``refresh_token``.
        client_secret: The application secret; falls back to
            ``config.client_secret``.

    Returns:
        A :class:`TokenValidation`; ``is_valid`` is True only when every
        static check passes.
    """
    result = TokenValidation()
    secret = client_secret if client_secret is not None else _get(config, "client_secret")

    if not _get(config, "client_id") or not secret:
        result.errors.append("Missing client_id or client_secret")
        result.needs_new_tokens = True
        result.missing_client_credentials = True
        return result

    if not _get(config, "access_token") or not _get(config, "refresh_token"):
        result.errors.append("Missing access_token or refresh_token")
        result.needs_new_tokens = True
        return result

    if is_placeholder_token(_get(config, "access_token")):
        result.errors.append("Placeholder or test access_token detected - real OAuth token required")
        result.needs_new_tokens = True
        return result

    result.is_valid = True
    return result


async def validate_token_scopes(
    reactive: ReactiveTokenRefresh,
    http_client: httpx.AsyncClient | None = None,
    required_scopes: tuple[str, ...] = REQUIRED_SCOPES,
) -> TokenValidation:
    """Verify the current token was granted every scope in *required_scopes*.

    The token is read from the refresher behind *reactive* on each attempt,
    so a 401 followed by a successful refresh validates the new token.
    """
    refresher = reactive.token_refresh
    timeout = timeout_for("validate")

    async def _call() -> dict[str, Any]:
        async with client_scope(http_client, timeout=timeout) as client:
            response = await client.get(
                TWITCH_VALIDATE_URL,
                headers={"Authorization": f"Bearer {refresher.token.access_token}"},
            )
            response.raise_for_status()
            return response.json()

    result = TokenValidation()
    try:
        outcome = await reactive.wrap_api_call(_call, "token scope validation")
    except NetworkError as exc:
        result.errors.append("Token validation failed: Network error")
        result.retryable = True
        logger.warning("token_validation: network error — %s", exc.message)
        return result
    except AuthError as exc:
        result.errors.append(f"Token validation failed: {exc.user_message()}")
        result.needs_refresh = exc.needs_refresh
        result.needs_new_tokens = exc.needs_new_tokens or exc.status == 401
        return result

    granted = set(outcome.response.get("scopes") or [])
    result.missing_scopes = [scope for scope in required_scopes if scope not in granted]
    if result.missing_scopes:
        logger.warning(
            "token_validation: token missing required scopes — missing=%s",
            result.missing_scopes,
        )
        result.errors.extend(f"Missing required OAuth scope: {scope}" for scope in result.missing_scopes)
        result.needs_new_tokens = True
        return result

    if outcome.refreshed:
        result.warnings.append("Access token was refreshed during validation")
    result.is_valid = True
    logger.info("token_validation: token scopes validated")
    return result
