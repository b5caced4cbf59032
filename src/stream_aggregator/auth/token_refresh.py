"""Twitch access-token refresh.

:class:`TwitchTokenRefresh` owns the in-memory :class:`AuthToken` for the
Twitch connection.  It decides whether a refresh is due from the locally
recorded ``expires_at`` alone (``/validate`` is never consulted here),
exchanges the refresh token at the OAuth token endpoint, and commits the
result memory-first, then to the token store.  A store write that keeps
failing rolls the in-memory token back so memory and disk never disagree.

Usage::

    refresher = TwitchTokenRefresh(
        client_id="...",
        client_secret="...",
        token=AuthToken(access_token="...", refresh_token="...", expires_at=...),
        store=TokenStore("data/token-store.json"),
    )
    await refresher.ensure_valid_token()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from stream_aggregator.auth.config import (
    PERSIST_ATTEMPTS,
    PERSIST_BASE_DELAY_S,
    REFRESH_THRESHOLD_SECONDS,
    TWITCH_TOKEN_URL,
)
from stream_aggregator.auth.error_handling import AuthErrorFactory, ErrorHandler
from stream_aggregator.auth.token_store import TokenStore
from stream_aggregator.auth.tokens import AuthToken
from stream_aggregator.core.clock import Clock, SystemClock
from stream_aggregator.core.exceptions import ConfigError, TokenStoreError
from stream_aggregator.core.http import client_scope
from stream_aggregator.core.retry import REFRESH_MAX_ATTEMPTS, refresh_backoff_delay
from stream_aggregator.core.timeouts import criticality_for, timeout_for

logger = logging.getLogger(__name__)


class TwitchTokenRefresh:
    """Refresh and persist Twitch OAuth tokens.

    Args:
        client_id: Twitch application client id.
        client_secret: Twitch application client secret.
        token: The token to manage.  The instance is mutated in place so
            other holders of the same object observe refreshed values.
        store: Token store for persistence.  Without one, persistence fails
            with ``TOKEN_STORE_MISSING``.
        http_client: Optional injected client for the token endpoint.
        clock: Time source for expiry arithmetic and backoff.
        error_handler: Shared error handler; a private one is created if omitted.
        persist_attempts: Store write attempts before rolling back.
        persist_base_delay_s: First backoff delay; doubles per attempt.
        refresh_threshold_seconds: Remaining lifetime at or below which a
            refresh is due.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token: AuthToken | None = None,
        *,
        store: TokenStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        error_handler: ErrorHandler | None = None,
        persist_attempts: int = PERSIST_ATTEMPTS,
        persist_base_delay_s: float = PERSIST_BASE_DELAY_S,
        refresh_threshold_seconds: int = REFRESH_THRESHOLD_SECONDS,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.token = token if token is not None else AuthToken()
        self._store = store
        self._http_client = http_client
        self._clock = clock or SystemClock()
        self._error_handler = error_handler or ErrorHandler(clock=self._clock)
        self._persist_attempts = max(1, persist_attempts)
        self._persist_base_delay_s = persist_base_delay_s
        self._threshold_ms = refresh_threshold_seconds * 1000

        self.is_refreshing = False
        self.last_refresh_time: int | None = None
        self.refresh_success_count = 0
        self.refresh_failure_count = 0

    # ------------------------------------------------------------------
    # Expiry check
    # ------------------------------------------------------------------

    def needs_refresh(self, access_token: str | None) -> bool:
        """Return True when *access_token* should be refreshed now.

        Only the locally recorded ``expires_at`` is consulted.
        """
        if not access_token:
            logger.debug("twitch: no access token provided — refresh needed")
            return True
        expires_at = self.token.expires_at
        if not expires_at:
            logger.debug("twitch: no token expiry recorded — refreshing to ensure validity")
            return True
        remaining = expires_at - self._clock.now_ms()
        if remaining <= 0:
            logger.info("twitch: access token expired by timestamp")
            return True
        if remaining <= self._threshold_ms:
            logger.info(
                "twitch: token expires soon — minutes_remaining=%d",
                round(remaining / 60000),
            )
            return True
        return False

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def refresh_token(
        self,
        refresh_token: str | None,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Exchange *refresh_token* for a new token pair.

        Returns ``None`` immediately when a refresh is already in flight, and
        holds the in-flight flag across every retry.  A failure that survives
        the retries (or is not transient) is recorded through the error
        handler and yields ``None``.

        Returns:
            ``{"access_token", "refresh_token", "expires_in"}`` on success.
        """
        if self.is_refreshing:
            logger.debug("twitch: token refresh already in progress")
            return None
        if not refresh_token:
            self._error_handler.report(
                ConfigError("No refresh token available for token refresh", code="MISSING_REFRESH_TOKEN"),
                {"operation_name": "token_refresh"},
            )
            return None

        self.is_refreshing = True
        try:
            data = await self._post_with_retry(refresh_token, context)
        finally:
            self.is_refreshing = False
        if data is None:
            return None

        logger.info("twitch: refreshed access token")
        return {
            "access_token": data.get("access_token"),
            "refresh_token": data.get("refresh_token"),
            "expires_in": data.get("expires_in"),
        }

    async def _post_with_retry(
        self,
        refresh_token: str,
        context: dict[str, Any] | None,
    ) -> dict[str, Any] | None:
        """POST the refresh grant, retrying transient failures.

        Network errors, 5xx and 429 responses are retried up to
        ``REFRESH_MAX_ATTEMPTS`` times with a jittered backoff slept on the
        injected clock.  Anything else fails on the first attempt.
        """
        timeout = timeout_for("refresh", criticality_for(context))
        error_context = {"endpoint": "oauth2/token", "has_refresh_token": True}
        for attempt in range(1, REFRESH_MAX_ATTEMPTS + 1):
            try:
                async with client_scope(self._http_client, timeout=timeout) as client:
                    response = await client.post(
                        TWITCH_TOKEN_URL,
                        data={
                            "client_id": self.client_id,
                            "client_secret": self.client_secret,
                            "grant_type": "refresh_token",
                            "refresh_token": refresh_token,
                        },
                        timeout=timeout,
                    )
                    if response.status_code != 200:
                        raise httpx.HTTPStatusError(
                            f"Token refresh failed with status {response.status_code}",
                            request=response.request,
                            response=response,
                        )
                    data = response.json()
                if not isinstance(data, dict) or not data.get("access_token"):
                    raise ValueError("Token refresh response missing access_token")
                return data
            except Exception as exc:  # noqa: BLE001
                transient = AuthErrorFactory.categorize(exc, {**error_context, "operation": "token_refresh"})
                if transient.retryable and attempt < REFRESH_MAX_ATTEMPTS:
                    delay_ms = refresh_backoff_delay(attempt)
                    logger.warning(
                        "twitch: token refresh attempt failed — attempt=%d delay_ms=%d error=%s",
                        attempt,
                        delay_ms,
                        transient.code,
                    )
                    await self._clock.sleep(delay_ms / 1000.0)
                    continue
                self._error_handler.report(AuthErrorFactory.token_refresh_error(exc, error_context))
                return None
        return None

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def update_config(self, token_data: dict[str, Any] | None) -> bool:
        """Commit *token_data* to memory, then to the token store.

        Returns:
            False when *token_data* carries no access token, True once both
            memory and store hold the new values.

        Raises:
            ConfigError: ``CONFIG_UPDATE_FAILED`` after every store write
                attempt failed; memory has been restored by then and the
                error context carries ``rollback_applied=True``.
        """
        if not token_data or not token_data.get("access_token"):
            logger.warning(
                "twitch: invalid token data for config update — has_token_data=%s",
                bool(token_data),
            )
            return False

        original = self.token.snapshot()
        self.token.access_token = token_data["access_token"]
        if token_data.get("refresh_token"):
            self.token.refresh_token = token_data["refresh_token"]
        expires_in = token_data.get("expires_in")
        if expires_in:
            self.token.expires_at = self._clock.now_ms() + int(expires_in) * 1000

        try:
            await self._persist_with_retry()
        except ConfigError as exc:
            self.refresh_failure_count += 1
            self.token.access_token = original.access_token
            self.token.refresh_token = original.refresh_token
            self.token.expires_at = original.expires_at
            error = ConfigError(
                "Token configuration update failed",
                code="CONFIG_UPDATE_FAILED",
                original_error=exc,
                context={
                    "rollback_applied": True,
                    "failure_count": self.refresh_failure_count,
                    "success_count": self.refresh_success_count,
                },
            )
            self._error_handler.report(error)
            raise error from exc

        self.refresh_success_count += 1
        self.last_refresh_time = self._clock.now_ms()
        logger.info("twitch: configuration updated with new tokens")
        return True

    async def persist_tokens(self) -> None:
        """Write the current in-memory token to the store.

        Raises:
            ConfigError: ``TOKEN_STORE_MISSING`` without a store,
                ``TOKEN_STORE_UPDATE_FAILED`` when the write fails.
        """
        if self._store is None:
            raise ConfigError("Token store path is required", code="TOKEN_STORE_MISSING")
        try:
            await asyncio.to_thread(self._store.save_tokens, self.token.snapshot())
        except (OSError, TokenStoreError) as exc:
            raise ConfigError(
                "Token store update failed",
                code="TOKEN_STORE_UPDATE_FAILED",
                original_error=exc,
                context={"operation": "token_store_write"},
            ) from exc
        logger.debug("twitch: token store updated with new tokens")

    async def _persist_with_retry(self) -> None:
        last_error: ConfigError | None = None
        for attempt in range(1, self._persist_attempts + 1):
            try:
                await self.persist_tokens()
            except ConfigError as exc:
                last_error = exc
                logger.warning(
                    "twitch: token store update attempt %d failed — %s (remaining=%d)",
                    attempt,
                    exc.message,
                    self._persist_attempts - attempt,
                )
                if exc.code == "TOKEN_STORE_MISSING":
                    break
                if attempt < self._persist_attempts:
                    await self._clock.sleep(self._persist_base_delay_s * 2 ** (attempt - 1))
                continue
            if attempt > 1:
                logger.info("twitch: token store update succeeded on attempt %d", attempt)
            return
        assert last_error is not None
        raise last_error

    # ------------------------------------------------------------------
    # Best-effort entry point
    # ------------------------------------------------------------------

    async def ensure_valid_token(self) -> bool:
        """Refresh the token if it is due.  Always returns True.

        Failures are recorded and logged but never raised; callers rely on
        reactive refresh after a 401 for eventual consistency.
        """
        started = self._clock.now_ms()
        try:
            if not self.needs_refresh(self.token.access_token):
                logger.debug("twitch: token still valid — no refresh needed")
                return True

            token_data = await self.refresh_token(self.token.refresh_token)
            if not token_data:
                logger.warning(
                    "twitch: failed to refresh token — failure_count=%d",
                    self.refresh_failure_count + 1,
                )
                return True
            if not await self.update_config(token_data):
                logger.warning("twitch: refresh succeeded but config update was rejected")
                return True
            logger.info(
                "twitch: token refresh completed — duration_ms=%d",
                self._clock.now_ms() - started,
            )
        except Exception as exc:  # noqa: BLE001
            self._error_handler.report(
                exc,
                {
                    "operation_name": "ensure_valid_token",
                    "duration_ms": self._clock.now_ms() - started,
                },
            )
        return True

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_refresh_stats(self) -> dict[str, Any]:
        total = self.refresh_success_count + self.refresh_failure_count
        return {
            "success_count": self.refresh_success_count,
            "failure_count": self.refresh_failure_count,
            "success_rate": self.refresh_success_count / total if total else 0.0,
            "last_refresh_time": self.last_refresh_time,
            "time_since_last_refresh": (
                self._clock.now_ms() - self.last_refresh_time
                if self.last_refresh_time is not None
                else None
            ),
            "is_refreshing": self.is_refreshing,
            "retry_configuration": {
                "max_attempts": self._persist_attempts,
                "base_delay_s": self._persist_base_delay_s,
                "backoff_type": "exponential",
            },
            "error_stats": self._error_handler.monitor.get_stats(),
        }

    def get_health_status(self) -> dict[str, Any]:
        stats = self.get_refresh_stats()
        failures = stats["failure_count"]
        healthy = not self.is_refreshing and (failures == 0 or stats["success_rate"] > 0.5)
        issues: list[str] = []
        if not healthy:
            if failures > 3:
                issues.append("High failure rate detected")
            if stats["success_rate"] < 0.5:
                issues.append("Low success rate")
            if self.is_refreshing:
                issues.append("Refresh operation in progress")
        return {
            "healthy": healthy,
            "status": "operational" if healthy else "degraded",
            "metrics": {
                "success_rate": stats["success_rate"],
                "recent_failures": failures,
                "last_success": stats["last_refresh_time"],
            },
            "issues": issues,
        }

    def reset_stats(self) -> None:
        self.refresh_success_count = 0
        self.refresh_failure_count = 0
        self.last_refresh_time = None
        self._error_handler.monitor.reset()

    def cleanup(self) -> None:
        self.is_refreshing = False
        self.reset_stats()
        logger.debug("twitch: token refresh state cleared")
