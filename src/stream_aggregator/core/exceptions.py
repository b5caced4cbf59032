"""Application-wide exception hierarchy for Stream Aggregator.

All custom exceptions subclass ``StreamAggregatorError``, enabling
consistent error handling and structured logging across the application.

Hierarchy::

    StreamAggregatorError
    ├── AuthError                (code, category, recoverable, retryable, ...)
    │   ├── TokenRefreshError    (needs_refresh always True)
    │   ├── ApiCallError         (endpoint, method, retry_after)
    │   ├── ConfigError          (missing_fields; never recoverable)
    │   └── NetworkError         (network_code; retryable and recoverable)
    ├── TokenStoreError
    ├── NormalizationError       (platform, raw_item, kind)
    ├── EventBuildError
    └── PlatformConnectionError  (platform)
        ├── StreamDetectionError
        └── ViewerCountError

The auth branch doubles as the error taxonomy consumed by
:mod:`stream_aggregator.auth.error_handling`: every instance carries the
flags a recovery strategy needs, plus human-readable recovery actions.
"""

from __future__ import annotations

import re
import time
from enum import Enum
from typing import Any


class StreamAggregatorError(Exception):
    """Base class for all Stream Aggregator exceptions.

    All application-specific exceptions inherit from this class so that
    callers can catch the entire hierarchy with a single ``except`` clause
    when needed.
    """


# ---------------------------------------------------------------------------
# Enumerations shared by the auth taxonomy
# ---------------------------------------------------------------------------


class NetworkCode(str, Enum):
    """Transport failure codes recognised as network errors.

    Transport exceptions (``httpx`` and ``OSError`` subclasses) are mapped to
    one of these values at the HTTP boundary; see
    :func:`stream_aggregator.auth.error_handling.network_code_of`.
    """

    ECONNREFUSED = "ECONNREFUSED"
    ETIMEDOUT = "ETIMEDOUT"
    ENOTFOUND = "ENOTFOUND"
    ECONNABORTED = "ECONNABORTED"
    ECONNRESET = "ECONNRESET"


class ErrorCategory(str, Enum):
    """Coarse classification attached to every :class:`AuthError`."""

    AUTH = "auth_error"
    TOKEN_REFRESH = "token_refresh_error"
    API_CALL = "api_call_error"
    CONFIG = "config_error"
    NETWORK = "network_error"


_PLACEHOLDER_RE = re.compile(r"\{[^{}]*\}")
_BAD_TOKEN_RE = re.compile(r"\b(?:None|undefined|null|NaN)\b")


def clean_user_copy(text: str, fallback: str = "An unexpected error occurred") -> str:
    """Strip template placeholders and null-ish words from user-facing copy.

    Args:
        text: Raw message text.
        fallback: Returned when nothing meaningful remains.

    Returns:
        Text without ``{...}`` placeholders or ``None``/``undefined``/
        ``null``/``NaN`` tokens, with whitespace collapsed.
    """
    cleaned = _PLACEHOLDER_RE.sub("", text or "")
    cleaned = _BAD_TOKEN_RE.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip(" :-")
    return cleaned or fallback


# ---------------------------------------------------------------------------
# Auth taxonomy
# ---------------------------------------------------------------------------


class AuthError(StreamAggregatorError):
    """Base authentication failure carrying recovery metadata.

    Args:
        message: Human-readable description of the failure.
        code: Machine-readable code (e.g. ``"TOKEN_EXPIRED"``).
        category: Coarse category; subclasses pin their own.
        recoverable: Whether an automatic recovery path exists.
        retryable: Whether repeating the same operation may succeed.
        needs_refresh: Whether a token refresh is the likely fix.
        needs_new_tokens: Whether the user must re-run the OAuth flow.
        original_error: The exception this error was derived from.
        context: Free-form diagnostic context (operation name, status, ...).
        status: HTTP status code of the underlying response, when known.
    """

    default_code: str = "AUTH_ERROR"
    default_category: ErrorCategory = ErrorCategory.AUTH

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        category: ErrorCategory | None = None,
        recoverable: bool = False,
        retryable: bool = False,
        needs_refresh: bool = False,
        needs_new_tokens: bool = False,
        original_error: BaseException | None = None,
        context: dict[str, Any] | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.category = category or self.default_category
        self.recoverable = recoverable
        self.retryable = retryable
        self.needs_refresh = needs_refresh
        self.needs_new_tokens = needs_new_tokens
        self.original_error = original_error
        self.context: dict[str, Any] = dict(context or {})
        self.status = status
        self.timestamp = int(time.time() * 1000)

    def user_message(self) -> str:
        """Return the message with any placeholder artefacts removed."""
        return clean_user_copy(self.message, fallback="Authentication error")

    def technical_details(self) -> dict[str, Any]:
        """Return a structured summary suitable for logging."""
        return {
            "code": self.code,
            "category": self.category.value,
            "status": self.status,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp,
        }

    def recovery_actions(self) -> list[str]:
        return ["Check authentication configuration", "Verify network connectivity"]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class TokenRefreshError(AuthError):
    """Raised when an access token cannot be refreshed.

    ``needs_refresh`` is always ``True``.  ``needs_new_tokens`` is set by the
    factory when the refresh endpoint rejected the refresh token itself
    (HTTP 400/401), in which case only a new OAuth flow can recover.
    """

    default_code = "TOKEN_REFRESH_FAILED"
    default_category = ErrorCategory.TOKEN_REFRESH

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs["needs_refresh"] = True
        super().__init__(message, **kwargs)

    def recovery_actions(self) -> list[str]:
        actions = ["Verify refresh token validity"]
        network = getattr(self.original_error, "network_code", None)
        if self.status == 400:
            actions.append("Refresh token may be expired - OAuth flow required")
        elif self.status == 401:
            actions.append("Invalid refresh token - OAuth flow required")
        elif network is not None:
            actions.append("Check network connectivity")
            actions.append("Retry operation after network is restored")
        else:
            actions.append("Manual token regeneration may be required")
        return actions


class ApiCallError(AuthError):
    """Raised when an authenticated API call fails with an HTTP error.

    Args:
        message: Human-readable description.
        endpoint: URL or logical endpoint name that failed.
        method: HTTP method used.
        retry_after: Seconds to wait before retrying (HTTP 429 only).
    """

    default_code = "API_CALL_FAILED"
    default_category = ErrorCategory.API_CALL

    def __init__(
        self,
        message: str,
        *,
        endpoint: str | None = None,
        method: str | None = None,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.endpoint = endpoint
        self.method = method
        self.retry_after = retry_after

    def recovery_actions(self) -> list[str]:
        actions = super().recovery_actions()
        if self.status == 403:
            actions.append("Check API permissions and scopes")
        elif self.status == 404:
            actions.append("Verify endpoint URL and resource existence")
        elif self.status == 429:
            actions.append("Wait for rate limit reset")
            actions.append("Implement exponential backoff")
        elif self.status is not None and self.status >= 500:
            actions.append("Retry after temporary server issue")
        return actions


class ConfigError(AuthError):
    """Raised for invalid or unpersistable configuration.  Never recoverable.

    Args:
        message: Human-readable description.
        missing_fields: Names of required fields that were absent.
    """

    default_code = "CONFIG_ERROR"
    default_category = ErrorCategory.CONFIG

    def __init__(
        self,
        message: str,
        *,
        missing_fields: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs["recoverable"] = False
        super().__init__(message, **kwargs)
        self.missing_fields = list(missing_fields or [])

    def recovery_actions(self) -> list[str]:
        actions = ["Check configuration file integrity"]
        if self.missing_fields:
            actions.append(f"Provide missing fields: {', '.join(self.missing_fields)}")
        actions.append("Verify configuration file permissions")
        actions.append("Ensure configuration follows expected format")
        return actions


class NetworkError(AuthError):
    """Raised for transport-level failures.  Always retryable and recoverable.

    Args:
        message: Human-readable description.
        network_code: The mapped transport failure code.
    """

    default_code = "NETWORK_ERROR"
    default_category = ErrorCategory.NETWORK

    def __init__(
        self,
        message: str,
        *,
        network_code: NetworkCode | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs["recoverable"] = True
        kwargs["retryable"] = True
        if network_code is not None and "code" not in kwargs:
            kwargs["code"] = network_code.value
        super().__init__(message, **kwargs)
        self.network_code = network_code

    def recovery_actions(self) -> list[str]:
        return [
            "Check internet connectivity",
            "Verify firewall and proxy settings",
            "Retry operation after network is restored",
            "Check DNS resolution",
        ]


# ---------------------------------------------------------------------------
# Storage exceptions
# ---------------------------------------------------------------------------


class TokenStoreError(StreamAggregatorError):
    """Raised when the token store file cannot be read or parsed.

    Args:
        message: Description of the failure.
        path: Path of the token store file.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


# ---------------------------------------------------------------------------
# Event pipeline exceptions
# ---------------------------------------------------------------------------


class NormalizationError(StreamAggregatorError):
    """Raised when a raw platform event cannot be normalized.

    Args:
        message: Description of the normalization failure.
        platform: Platform identifier of the raw event.
        raw_item: The raw payload that could not be normalized (for debugging).
        kind: Rejection kind; ``"invalid-payload"`` for missing required data.
    """

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        raw_item: dict | None = None,  # type: ignore[type-arg]
        kind: str = "invalid-payload",
    ) -> None:
        super().__init__(message)
        self.platform = platform
        self.raw_item = raw_item
        self.kind = kind


class EventBuildError(StreamAggregatorError):
    """Raised by :class:`~stream_aggregator.events.builder.EventBuilder` on
    an unsupported platform or event type."""


# ---------------------------------------------------------------------------
# Platform exceptions
# ---------------------------------------------------------------------------


class PlatformConnectionError(StreamAggregatorError):
    """Raised when a platform connection cannot be constructed or opened.

    Args:
        message: Human-readable description of the failure.
        platform: Platform identifier (e.g. ``"tiktok"``).
    """

    def __init__(self, message: str, platform: str | None = None) -> None:
        super().__init__(message)
        self.platform = platform


class StreamDetectionError(PlatformConnectionError):
    """Raised when live-stream detection fails for a platform."""


class ViewerCountError(PlatformConnectionError):
    """Raised by a viewer-count provider when the platform reports an
    unusable response (HTTP error status, malformed payload)."""
