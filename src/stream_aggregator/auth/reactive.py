"""Reactive token refresh: recover from HTTP 401 on an authenticated call.

:meth:`ReactiveTokenRefresh.wrap_api_call` runs an API call; when it fails
with 401 the token is refreshed once and the call retried once.  Any other
failure (403, 5xx, transport errors) is categorized and propagated without
touching the token.

Usage::

    reactive = ReactiveTokenRefresh(refresher)
    result = await reactive.wrap_api_call(
        lambda: client.get(url, headers={"Authorization": f"Bearer {refresher.token.access_token}"}),
        "get_stream",
    )
    if result.refreshed:
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from stream_aggregator.auth.error_handling import AuthErrorFactory, ErrorHandler, status_code_of
from stream_aggregator.auth.token_refresh import TwitchTokenRefresh
from stream_aggregator.core.exceptions import AuthError, ConfigError, TokenRefreshError

logger = logging.getLogger(__name__)


@dataclass
class ReactiveCallResult:
    """Outcome of a wrapped API call.

    Attributes:
        success: Always True; failures are raised.
        response: Whatever the wrapped call returned.
        refreshed: Whether a token refresh happened before the final attempt.
    """

    success: bool
    response: Any
    refreshed: bool = False


def _masked(token: str | None) -> str:
    return f"{token[:10]}..." if token else ""


class ReactiveTokenRefresh:
    """Wrap API calls with one-shot refresh-and-retry on 401.

    Args:
        token_refresh: Owner of the in-memory token; used for the refresh
            exchange and the memory-then-store commit.
        error_handler: Shared error handler; a private one is created if omitted.
    """

    def __init__(
        self,
        token_refresh: TwitchTokenRefresh,
        error_handler: ErrorHandler | None = None,
    ) -> None:
        self._refresher = token_refresh
        self._error_handler = error_handler or ErrorHandler()
        self.metrics: dict[str, int] = {}
        self.reset_metrics()

    @property
    def token_refresh(self) -> TwitchTokenRefresh:
        return self._refresher

    async def wrap_api_call(
        self,
        api_call: Callable[[], Awaitable[Any]],
        operation_name: str = "API call",
    ) -> ReactiveCallResult:
        """Run *api_call*, refreshing and retrying once on HTTP 401.

        Args:
            api_call: Zero-argument factory; it must read the current access
                token on each invocation so the retry uses the new one.
            operation_name: Label for logs and error context.

        Raises:
            TokenRefreshError: When the refresh fails, returns the same
                token, or the retry is rejected with 401 again.  All carry
                ``needs_new_tokens=True``.
            AuthError: The categorized failure for any non-401 error.
        """
        self.metrics["total_calls"] += 1
        logger.debug("reactive_refresh: executing %s", operation_name)
        try:
            response = await api_call()
        except Exception as exc:
            if status_code_of(exc) != 401:
                categorized = self._categorize(exc, operation_name)
                if categorized is exc:
                    raise
                raise categorized from exc
            logger.info(
                "reactive_refresh: 401 unauthorized for %s — attempting token refresh",
                operation_name,
            )
            await self._attempt_refresh(exc)
            return await self._retry_with_new_token(api_call, operation_name)
        logger.debug("reactive_refresh: %s succeeded", operation_name)
        return ReactiveCallResult(success=True, response=response, refreshed=False)

    async def _attempt_refresh(self, cause: BaseException) -> None:
        token = self._refresher.token
        if not token.refresh_token:
            logger.warning("reactive_refresh: no refresh token available for automatic refresh")
            raise TokenRefreshError(
                "No refresh token available - OAuth flow required",
                code="MISSING_REFRESH_TOKEN",
                needs_new_tokens=True,
                original_error=cause,
                context={"has_refresh_token": False},
            )

        self.metrics["refresh_attempts"] += 1
        original_token = token.access_token
        token_data = await self._refresher.refresh_token(token.refresh_token)
        if not token_data:
            self.metrics["failed_refreshes"] += 1
            error = TokenRefreshError(
                "Token refresh failed - OAuth flow required",
                code="REFRESH_API_FAILED",
                needs_new_tokens=True,
                context={"refresh_token_provided": True, "api_response_null": True},
            )
            self._error_handler.report(error)
            raise error

        if token_data.get("access_token") == original_token:
            self.metrics["failed_refreshes"] += 1
            error = TokenRefreshError(
                "Token refresh returned same token - OAuth required",
                code="IDENTICAL_TOKEN_RETURNED",
                needs_new_tokens=True,
                context={"original_token": _masked(original_token), "same_token_returned": True},
            )
            self._error_handler.report(error)
            raise error

        try:
            updated = await self._refresher.update_config(token_data)
        except ConfigError as exc:
            self.metrics["failed_refreshes"] += 1
            raise TokenRefreshError(
                "Token configuration update failed - OAuth flow required",
                code="CONFIG_UPDATE_FAILED",
                needs_new_tokens=True,
                original_error=exc,
                context={"tokens_received": True, "config_update_failed": True},
            ) from exc
        if not updated:
            self.metrics["failed_refreshes"] += 1
            raise TokenRefreshError(
                "Token configuration update failed - OAuth flow required",
                code="CONFIG_UPDATE_FAILED",
                needs_new_tokens=True,
                context={"tokens_received": True, "config_update_failed": True},
            )

        self.metrics["successful_refreshes"] += 1
        logger.info("reactive_refresh: token refreshed")

    async def _retry_with_new_token(
        self,
        api_call: Callable[[], Awaitable[Any]],
        operation_name: str,
    ) -> ReactiveCallResult:
        logger.info("reactive_refresh: retrying %s with refreshed token", operation_name)
        try:
            response = await api_call()
        except Exception as exc:
            if status_code_of(exc) == 401:
                logger.warning("reactive_refresh: retry still unauthorized after refresh")
                error = TokenRefreshError(
                    "Token refresh completed but retry validation failed - OAuth required",
                    code="OAUTH_REQUIRED",
                    needs_new_tokens=True,
                    original_error=exc,
                    context={"operation_name": operation_name, "refresh_attempted": True},
                    status=401,
                )
                self._error_handler.report(error)
                raise error from exc
            categorized = self._categorize(exc, operation_name, refresh_attempted=True)
            if categorized is exc:
                raise
            raise categorized from exc
        logger.info("reactive_refresh: %s succeeded after token refresh", operation_name)
        return ReactiveCallResult(success=True, response=response, refreshed=True)

    def _categorize(
        self,
        error: BaseException,
        operation_name: str,
        refresh_attempted: bool = False,
    ) -> AuthError:
        return self._error_handler.report(
            AuthErrorFactory.categorize(
                error,
                {
                    "operation_name": operation_name,
                    "refresh_attempted": refresh_attempted,
                    "has_refresh_token": bool(self._refresher.token.refresh_token),
                },
            )
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self) -> dict[str, Any]:
        attempts = self.metrics["refresh_attempts"]
        return {
            **self.metrics,
            "refresh_success_rate": (
                self.metrics["successful_refreshes"] / attempts if attempts else 0.0
            ),
            "error_stats": self._error_handler.monitor.get_stats(),
        }

    def reset_metrics(self) -> None:
        self.metrics = {
            "total_calls": 0,
            "refresh_attempts": 0,
            "successful_refreshes": 0,
            "failed_refreshes": 0,
        }
        self._error_handler.monitor.reset()
