"""Classification, recovery and monitoring of authentication failures.

Any exception raised while talking to Twitch (``httpx`` transport errors,
HTTP status errors, configuration problems, anything else) is mapped onto
the :class:`~stream_aggregator.core.exceptions.AuthError` taxonomy by
:class:`AuthErrorFactory`.  :class:`ErrorRecoveryStrategy` derives what to
do about it, :class:`ErrorMonitor` keeps statistics, and
:class:`ErrorHandler` ties the three together.

Strategy table::

    NetworkError                          -> retry (3 attempts, 1000 ms, exponential)
    TokenRefreshError(needs_new_tokens)   -> oauth_flow (requires user action)
    TokenRefreshError(retryable)          -> retry (2 attempts, 500 ms)
    ApiCallError(status=429)              -> rate_limit_backoff (retry-after or 60 s)
    anything else                         -> fail

Usage::

    handler = ErrorHandler()
    try:
        await client.get(url)
    except Exception as exc:
        await handler.handle_error(exc, {"operation_name": "get_stream"})
"""

from __future__ import annotations

import logging
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from stream_aggregator.core.clock import Clock, SystemClock
from stream_aggregator.core.exceptions import (
    ApiCallError,
    AuthError,
    ConfigError,
    NetworkCode,
    NetworkError,
    TokenRefreshError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_REFRESH_MARKERS: tuple[str, ...] = ("Token refresh failed", "refresh", "Invalid refresh token")
_CONFIG_MARKERS: tuple[str, ...] = ("Missing required", "Invalid configuration", "config")


# ---------------------------------------------------------------------------
# Boundary helpers
# ---------------------------------------------------------------------------


def network_code_of(error: BaseException | None) -> NetworkCode | None:
    """Map a transport exception onto a :class:`NetworkCode`, or ``None``.

    ``httpx`` wraps the underlying socket error, so the ``__cause__`` chain
    is followed when the outer exception is not itself conclusive.
    """
    seen: set[int] = set()
    current = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        code = getattr(current, "network_code", None)
        if isinstance(code, NetworkCode):
            return code
        raw_code = getattr(current, "code", None)
        if isinstance(raw_code, str) and raw_code in NetworkCode.__members__:
            return NetworkCode(raw_code)
        if isinstance(current, socket.gaierror):
            return NetworkCode.ENOTFOUND
        if isinstance(current, ConnectionRefusedError):
            return NetworkCode.ECONNREFUSED
        if isinstance(current, ConnectionResetError):
            return NetworkCode.ECONNRESET
        if isinstance(current, ConnectionAbortedError):
            return NetworkCode.ECONNABORTED
        if isinstance(current, (TimeoutError, httpx.TimeoutException)):
            return NetworkCode.ETIMEDOUT
        if isinstance(current, httpx.ConnectError):
            text = str(current).lower()
            if "name or service not known" in text or "nodename" in text or "getaddrinfo" in text:
                return NetworkCode.ENOTFOUND
            return NetworkCode.ECONNREFUSED
        if isinstance(current, (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError)):
            return NetworkCode.ECONNRESET
        if isinstance(current, httpx.CloseError):
            return NetworkCode.ECONNABORTED
        current = current.__cause__ or current.__context__
    return None


def status_code_of(error: BaseException | None) -> int | None:
    """Return the HTTP status carried by *error*, if any."""
    if error is None:
        return None
    if isinstance(error, AuthError) and error.status is not None:
        return error.status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def retry_after_of(error: BaseException | None) -> float | None:
    """Return the ``Retry-After`` header value in seconds, if present."""
    if isinstance(error, ApiCallError) and error.retry_after is not None:
        return error.retry_after
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after")
    try:
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class AuthErrorFactory:
    """Builds taxonomy errors from arbitrary exceptions."""

    @staticmethod
    def categorize(error: BaseException, context: dict[str, Any] | None = None) -> AuthError:
        """Classify *error* into the auth taxonomy.

        Args:
            error: Any exception.  Existing :class:`AuthError` instances are
                returned unchanged.
            context: Diagnostic context; ``operation == "token_refresh"``
                turns an HTTP 400 into a refresh-token expiry.

        Returns:
            The matching :class:`AuthError` subclass instance.
        """
        if isinstance(error, AuthError):
            return error
        context = dict(context or {})

        network = network_code_of(error)
        if network is not None:
            return NetworkError(
                f"Network error: {network.value}",
                network_code=network,
                original_error=error,
                context=context,
            )

        status = status_code_of(error)
        if status is not None:
            return AuthErrorFactory.from_http_error(error, status, context)

        message = str(error)
        if any(marker in message for marker in _REFRESH_MARKERS):
            return TokenRefreshError(
                message,
                code="TOKEN_REFRESH_FAILED",
                original_error=error,
                context=context,
            )
        if any(marker in message for marker in _CONFIG_MARKERS):
            return ConfigError(
                message,
                code="CONFIG_INVALID",
                original_error=error,
                context=context,
            )
        return AuthError(
            message or "Unknown authentication error",
            code="UNKNOWN_ERROR",
            original_error=error,
            context=context,
        )

    @staticmethod
    def from_http_error(
        error: BaseException,
        status: int,
        context: dict[str, Any] | None = None,
    ) -> AuthError:
        """Classify an HTTP failure by *status*."""
        context = dict(context or {})
        context.setdefault("status", status)
        common: dict[str, Any] = {"original_error": error, "context": context, "status": status}

        if status == 401:
            return TokenRefreshError(
                "Unauthorized - token refresh required",
                code="TOKEN_EXPIRED",
                **common,
            )
        if status == 400 and context.get("operation") == "token_refresh":
            return TokenRefreshError(
                "Refresh token expired - OAuth flow required",
                code="REFRESH_TOKEN_EXPIRED",
                needs_new_tokens=True,
                **common,
            )
        request = getattr(error, "request", None)
        api_kwargs: dict[str, Any] = {
            "endpoint": context.get("endpoint") or (str(request.url) if request is not None else None),
            "method": context.get("method") or (request.method if request is not None else None),
        }
        if status == 403:
            return ApiCallError(
                "Forbidden - insufficient permissions",
                code="INSUFFICIENT_PERMISSIONS",
                **api_kwargs,
                **common,
            )
        if status == 404:
            return ApiCallError(
                "Resource not found",
                code="RESOURCE_NOT_FOUND",
                **api_kwargs,
                **common,
            )
        if status == 429:
            return ApiCallError(
                "Rate limit exceeded",
                code="RATE_LIMITED",
                retryable=True,
                recoverable=True,
                retry_after=retry_after_of(error),
                **api_kwargs,
                **common,
            )
        if status >= 500:
            return ApiCallError(
                "Server error",
                code="SERVER_ERROR",
                retryable=True,
                recoverable=True,
                **api_kwargs,
                **common,
            )
        response = getattr(error, "response", None)
        reason = getattr(response, "reason_phrase", "") or "request failed"
        return ApiCallError(
            f"HTTP {status}: {reason}",
            code="HTTP_ERROR",
            **api_kwargs,
            **common,
        )

    @staticmethod
    def token_refresh_error(
        error: BaseException,
        context: dict[str, Any] | None = None,
    ) -> AuthError:
        """Classify a failure raised by the refresh endpoint itself."""
        context = {**(context or {}), "operation": "token_refresh"}
        status = status_code_of(error)
        if status == 400:
            return TokenRefreshError(
                "Refresh token expired - OAuth flow required",
                code="REFRESH_TOKEN_EXPIRED",
                needs_new_tokens=True,
                original_error=error,
                context=context,
                status=status,
            )
        if status == 401:
            return TokenRefreshError(
                "Invalid refresh token - OAuth flow required",
                code="INVALID_REFRESH_TOKEN",
                needs_new_tokens=True,
                original_error=error,
                context=context,
                status=status,
            )
        network = network_code_of(error)
        if network is not None:
            return NetworkError(
                "Token refresh failed due to network error",
                network_code=network,
                original_error=error,
                context=context,
            )
        return TokenRefreshError(
            "Token refresh failed - OAuth flow required",
            code="TOKEN_REFRESH_FAILED",
            needs_new_tokens=True,
            original_error=error,
            context=context,
            status=status,
        )


# ---------------------------------------------------------------------------
# Recovery strategy
# ---------------------------------------------------------------------------


@dataclass
class RecoveryStrategy:
    """What to do about a classified error.

    Attributes:
        type: ``"retry"``, ``"rate_limit_backoff"``, ``"oauth_flow"`` or ``"fail"``.
        max_attempts: Attempts for ``retry``.
        backoff_ms: Initial wait between retry attempts.
        exponential: Double the wait after each failed attempt.
        wait_ms: Wait before the single retry of ``rate_limit_backoff``.
        requires_user_action: The user must intervene (e.g. re-authorize).
    """

    type: str
    max_attempts: int = 0
    backoff_ms: int = 0
    exponential: bool = False
    wait_ms: int = 0
    requires_user_action: bool = False


class ErrorRecoveryStrategy:
    """Derives and executes recovery strategies.

    Args:
        clock: Time source for retry and backoff waits.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()

    @staticmethod
    def get_strategy(error: AuthError) -> RecoveryStrategy:
        if isinstance(error, NetworkError):
            return RecoveryStrategy(type="retry", max_attempts=3, backoff_ms=1000, exponential=True)
        if isinstance(error, TokenRefreshError):
            if error.needs_new_tokens:
                return RecoveryStrategy(type="oauth_flow", requires_user_action=True)
            if error.retryable:
                return RecoveryStrategy(type="retry", max_attempts=2, backoff_ms=500)
        if isinstance(error, ApiCallError) and error.status == 429:
            retry_after = error.retry_after
            wait_ms = int(retry_after * 1000) if retry_after else 60000
            return RecoveryStrategy(type="rate_limit_backoff", wait_ms=wait_ms)
        return RecoveryStrategy(type="fail", requires_user_action=not error.recoverable)

    async def execute_strategy(
        self,
        strategy: RecoveryStrategy,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Run *operation* under *strategy*.

        Raises:
            AuthError: ``OAUTH_REQUIRED`` for ``oauth_flow``; ``NO_RECOVERY``
                for ``fail``.
            Exception: The last failure when every retry attempt fails.
        """
        if strategy.type == "retry":
            return await self._execute_retry(strategy, operation)
        if strategy.type == "rate_limit_backoff":
            logger.info("auth_recovery: rate limited — waiting %dms before retry", strategy.wait_ms)
            await self._clock.sleep(strategy.wait_ms / 1000.0)
            return await operation()
        if strategy.type == "oauth_flow":
            logger.warning("auth_recovery: OAuth flow required for authentication recovery")
            raise AuthError(
                "OAuth flow required - user intervention needed",
                code="OAUTH_REQUIRED",
                recoverable=False,
                needs_new_tokens=True,
            )
        raise AuthError(
            "Operation failed - no recovery strategy available",
            code="NO_RECOVERY",
            recoverable=False,
        )

    async def _execute_retry(
        self,
        strategy: RecoveryStrategy,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        backoff_ms = strategy.backoff_ms or 1000
        attempts = max(1, strategy.max_attempts)
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                logger.info(
                    "auth_recovery: retry attempt %d/%d after %dms",
                    attempt,
                    attempts,
                    backoff_ms,
                )
                await self._clock.sleep(backoff_ms / 1000.0)
                if strategy.exponential:
                    backoff_ms *= 2
            try:
                return await operation()
            except Exception:
                if attempt == attempts:
                    logger.error("auth_recovery: all %d retry attempts failed", attempts)
                    raise
        raise AssertionError("unreachable")


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


def _error_key(error: AuthError) -> str:
    return f"{type(error).__name__}:{error.code}"


class ErrorMonitor:
    """Counts errors by kind and tracks recovery success.

    Args:
        clock: Time source for the hourly frequency buckets.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self.error_counts: dict[str, int] = {}
        self.error_frequency: dict[tuple[str, int], int] = {}
        self.performance_impact: dict[str, list[float]] = {}
        self.recovery_success: dict[str, dict[str, int]] = {}

    def _hour(self) -> int:
        return self._clock.now_ms() // 3_600_000

    def record_error(self, error: AuthError, duration_ms: float | None = None) -> None:
        key = _error_key(error)
        self.error_counts[key] = self.error_counts.get(key, 0) + 1
        bucket = (key, self._hour())
        self.error_frequency[bucket] = self.error_frequency.get(bucket, 0) + 1
        if duration_ms:
            self.performance_impact.setdefault(key, []).append(float(duration_ms))

    def record_recovery(self, error: AuthError, success: bool) -> None:
        entry = self.recovery_success.setdefault(_error_key(error), {"attempts": 0, "successes": 0})
        entry["attempts"] += 1
        if success:
            entry["successes"] += 1

    def get_stats(self) -> dict[str, Any]:
        """Return totals, top-10 kinds, recovery rates and performance impact."""
        top = sorted(self.error_counts.items(), key=lambda item: item[1], reverse=True)[:10]
        impact: dict[str, dict[str, float]] = {}
        for key, durations in self.performance_impact.items():
            if durations:
                impact[key] = {
                    "avg_ms": sum(durations) / len(durations),
                    "max_ms": max(durations),
                    "samples": len(durations),
                }
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_types": dict(self.error_counts),
            "top_errors": [{"type": key, "count": count} for key, count in top],
            "recovery_rates": {
                key: {
                    "attempts": entry["attempts"],
                    "successes": entry["successes"],
                    "rate": entry["successes"] / entry["attempts"] if entry["attempts"] else 0.0,
                }
                for key, entry in self.recovery_success.items()
            },
            "performance_impact": impact,
        }

    def hourly_frequency(self, key: str) -> dict[int, int]:
        """Return ``{hour_bucket: count}`` for one error kind."""
        return {hour: count for (k, hour), count in self.error_frequency.items() if k == key}

    def cleanup(self, hours_to_keep: int = 24) -> None:
        """Drop frequency buckets older than *hours_to_keep* hours."""
        cutoff = self._hour() - hours_to_keep
        for bucket in [b for b in self.error_frequency if b[1] < cutoff]:
            del self.error_frequency[bucket]

    def reset(self) -> None:
        self.error_counts.clear()
        self.error_frequency.clear()
        self.performance_impact.clear()
        self.recovery_success.clear()


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


class ErrorHandler:
    """Categorize, record, log, and (when possible) recover from errors.

    Args:
        monitor: Shared statistics sink.  A private one is created if omitted.
        strategy: Strategy executor.
        clock: Time source for duration measurement.
    """

    def __init__(
        self,
        monitor: ErrorMonitor | None = None,
        strategy: ErrorRecoveryStrategy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self.monitor = monitor or ErrorMonitor(clock=self._clock)
        self.strategy = strategy or ErrorRecoveryStrategy(clock=self._clock)

    async def handle_error(
        self,
        error: BaseException,
        context: dict[str, Any] | None = None,
        operation: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        """Handle *error*, returning the recovered result when recovery succeeds.

        Args:
            error: The failure to handle.
            context: Diagnostic context attached to the categorized error.
            operation: Zero-argument factory re-running the failed operation;
                without it no recovery is attempted.

        Raises:
            AuthError: The categorized error when no recovery applies, or the
                recovery's own failure.
        """
        started = self._clock.now_ms()
        categorized = self.report(error, context)

        if categorized.recoverable and operation is not None:
            strategy = self.strategy.get_strategy(categorized)
            if strategy.type != "fail":
                try:
                    result = await self.strategy.execute_strategy(strategy, operation)
                except Exception:
                    self.monitor.record_recovery(categorized, False)
                    self.monitor.record_error(categorized, self._clock.now_ms() - started)
                    raise
                self.monitor.record_recovery(categorized, True)
                return result

        if categorized is error:
            raise categorized
        raise categorized from error

    def report(self, error: BaseException, context: dict[str, Any] | None = None) -> AuthError:
        """Categorize, record and log *error* without raising it.

        Used by best-effort paths that swallow failures by contract.
        """
        categorized = AuthErrorFactory.categorize(error, context)
        self.monitor.record_error(categorized, duration_ms=(context or {}).get("duration_ms"))
        self.log_error(categorized, context)
        return categorized

    def log_error(self, error: AuthError, context: dict[str, Any] | None = None) -> None:
        """Log *error* at a level matching its severity."""
        extra = {
            "code": error.code,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retryable": error.retryable,
            "needs_refresh": error.needs_refresh,
            "needs_new_tokens": error.needs_new_tokens,
            **{k: v for k, v in (context or {}).items() if isinstance(v, (str, int, float, bool))},
        }
        if isinstance(error, NetworkError):
            logger.warning("auth_error: %s", error.message, extra=extra)
        elif error.recoverable:
            logger.info("auth_error: %s", error.message, extra=extra)
        else:
            logger.error("auth_error: %s", error.message, extra=extra)
        logger.debug("auth_error: technical details — %s", error.technical_details())
