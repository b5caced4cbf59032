"""Canonical event names, the fluent event builder and schema validation.

Every event published on the bus is a plain ``dict`` sharing one envelope::

    {
        "id": "5f0c...",
        "type": "platform:gift",
        "platform": "tiktok",
        "timestamp": "2024-05-01T18:22:03.120Z",
        "username": "alice",
        "user_id": "6811",
        "correlation_id": "a1b2...",
        "metadata": {...},
        ...subtype fields...
    }

Usage::

    from stream_aggregator.events.builder import EventBuilder, EventType

    event = (
        EventBuilder()
        .platform("twitch")
        .type("chat-message")
        .username("alice")
        .user_id("42")
        .message("hello")
        .build()
    )
"""

from __future__ import annotations

import re
import traceback
import uuid
from collections.abc import Mapping
from enum import Enum
from typing import Any

from stream_aggregator.core.clock import Clock, iso_now
from stream_aggregator.core.exceptions import EventBuildError
from stream_aggregator.events.sanitize import sanitize_text
from stream_aggregator.events.timestamps import is_iso_timestamp

SUPPORTED_PLATFORMS: tuple[str, ...] = ("twitch", "youtube", "tiktok")


class EventType(str, Enum):
    """Canonical bus event names."""

    CHAT_MESSAGE = "platform:chat-message"
    GIFT = "platform:gift"
    PAYPIGGY = "platform:paypiggy"
    GIFT_PAYPIGGY = "platform:giftpaypiggy"
    VIEWER_COUNT = "platform:viewer-count"
    STREAM_STATUS = "platform:stream-status"
    STREAM_DETECTED = "platform:stream-detected"
    CONNECTION = "platform:connection"
    ERROR = "platform:error"


PLATFORM_EVENT = "platform:event"
"""Envelope name used by the lifecycle service's default handlers."""

HANDLER_ERROR = "handler-error"
"""Published by the bus when a subscriber raises."""

EVENT_TYPES: frozenset[str] = frozenset(member.value for member in EventType)

_PRIORITIES: dict[str, int] = {
    EventType.GIFT.value: 8,
    EventType.GIFT_PAYPIGGY.value: 6,
    EventType.PAYPIGGY.value: 5,
}
_DEFAULT_PRIORITY = 1

_RECOVERABLE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"network", r"connection", r"timeout", r"rate limit", r"temporary")
)


def qualify_type(event_type: str) -> str:
    """Prefix a bare event name with ``platform:``."""
    if event_type and ":" not in event_type:
        return f"platform:{event_type}"
    return event_type


def event_priority(event_type: str) -> int:
    return _PRIORITIES.get(qualify_type(event_type), _DEFAULT_PRIORITY)


def new_event_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Fluent builder
# ---------------------------------------------------------------------------


class EventBuilder:
    """Fluent constructor for canonical events.

    ``id``, ``correlation_id`` and ``timestamp`` are filled on construction
    and may be overridden.  :meth:`build` validates the platform and type.

    Args:
        clock: Optional clock used for the default timestamp.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._event: dict[str, Any] = {
            "id": new_event_id(),
            "correlation_id": new_event_id(),
            "timestamp": iso_now(clock),
        }
        self._priority_set = False

    def platform(self, platform: str) -> EventBuilder:
        self._event["platform"] = platform
        return self

    def type(self, event_type: str) -> EventBuilder:
        if isinstance(event_type, EventType):
            event_type = event_type.value
        self._event["type"] = qualify_type(event_type)
        return self

    def username(self, username: str) -> EventBuilder:
        self._event["username"] = username
        return self

    def user_id(self, user_id: str) -> EventBuilder:
        self._event["user_id"] = user_id
        return self

    def message(self, text: str) -> EventBuilder:
        """Attach chat text; the sanitized form is kept beside the original."""
        self._event["message"] = {"text": sanitize_text(text), "original": text}
        return self

    def metadata(self, metadata: Mapping[str, Any]) -> EventBuilder:
        self._event["metadata"] = dict(metadata)
        return self

    def data(self, data: Mapping[str, Any]) -> EventBuilder:
        """Merge subtype fields (``gift_type``, ``count``, ...) into the event."""
        self._event.update(data)
        return self

    def priority(self, priority: int) -> EventBuilder:
        self._event["priority"] = priority
        self._priority_set = True
        return self

    def timestamp(self, timestamp: str) -> EventBuilder:
        self._event["timestamp"] = timestamp
        return self

    def id(self, event_id: str) -> EventBuilder:
        self._event["id"] = event_id
        return self

    def correlation_id(self, correlation_id: str) -> EventBuilder:
        self._event["correlation_id"] = correlation_id
        return self

    def build(self) -> dict[str, Any]:
        """Return the event.

        Raises:
            EventBuildError: When the platform is not supported or the type
                is not a canonical event name.
        """
        platform = self._event.get("platform")
        if platform not in SUPPORTED_PLATFORMS:
            raise EventBuildError(f"Invalid platform: {platform}")
        event_type = self._event.get("type")
        if event_type not in EVENT_TYPES:
            raise EventBuildError(f"Invalid event type: {event_type}")
        event = dict(self._event)
        if not self._priority_set:
            event["priority"] = event_priority(event_type)
        event.setdefault("metadata", {})
        return event


# ---------------------------------------------------------------------------
# System events
# ---------------------------------------------------------------------------


def is_recoverable_error(error: BaseException | str, context: Mapping[str, Any] | None = None) -> bool:
    """Return whether *error* looks transient.

    ``context["recoverable"]`` wins when it is a bool; otherwise the message
    is matched against network, connection, timeout, rate-limit and
    temporary-failure patterns.
    """
    if context is not None and isinstance(context.get("recoverable"), bool):
        return context["recoverable"]
    text = str(error)
    return any(pattern.search(text) for pattern in _RECOVERABLE_PATTERNS)


def create_error_event(
    platform: str,
    error: BaseException | str,
    context: Mapping[str, Any] | None = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    """Build a ``platform:error`` event describing *error*."""
    context = dict(context or {})
    if isinstance(error, BaseException):
        details: dict[str, Any] = {
            "message": str(error) or error.__class__.__name__,
            "code": getattr(error, "code", None) or "UNKNOWN",
            "name": error.__class__.__name__,
        }
        if error.__traceback__ is not None:
            details["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    else:
        details = {"message": str(error), "code": "UNKNOWN", "name": "Error"}
    return (
        EventBuilder(clock)
        .platform(platform)
        .type(EventType.ERROR)
        .data({"error": details, "context": context, "recoverable": is_recoverable_error(error, context)})
        .build()
    )


def create_connection_event(
    platform: str,
    status: str,
    error: BaseException | str | None = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    """Build a ``platform:connection`` event; ``disconnected`` implies a reconnect."""
    data: dict[str, Any] = {"status": status, "will_reconnect": status == "disconnected"}
    if error is not None:
        data["error"] = {"message": str(error)}
    return EventBuilder(clock).platform(platform).type(EventType.CONNECTION).data(data).build()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_REQUIRED: dict[str, tuple[str, ...]] = {
    EventType.CHAT_MESSAGE.value: ("platform", "username", "user_id", "message", "timestamp"),
    EventType.GIFT.value: (
        "platform", "username", "user_id", "id", "gift_type", "gift_count", "amount", "currency", "timestamp",
    ),
    EventType.PAYPIGGY.value: ("platform", "username", "user_id", "timestamp"),
    EventType.GIFT_PAYPIGGY.value: ("platform", "username", "user_id", "gift_count", "timestamp"),
    EventType.VIEWER_COUNT.value: ("platform", "count", "timestamp"),
    EventType.STREAM_STATUS.value: ("platform", "is_live", "timestamp"),
    EventType.STREAM_DETECTED.value: (
        "platform", "event_type", "new_stream_ids", "all_stream_ids", "detection_time", "connection_count",
    ),
    EventType.CONNECTION.value: ("platform", "status", "timestamp"),
    EventType.ERROR.value: ("platform", "error", "timestamp", "recoverable"),
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_stream_detected(event: Mapping[str, Any], errors: list[str]) -> None:
    event_type = event.get("event_type")
    if event_type not in ("stream-detected", "stream-ended"):
        errors.append(f"Invalid event_type: {event_type}")
    for key in ("new_stream_ids", "all_stream_ids", "ended_stream_ids"):
        if key in event and not isinstance(event[key], list):
            errors.append(f"{key} must be a list")
    if event_type == "stream-detected" and not event.get("new_stream_ids"):
        errors.append("new_stream_ids must not be empty for stream-detected")
    if event_type == "stream-ended" and "ended_stream_ids" not in event:
        errors.append("Missing required field: ended_stream_ids")
    for key in ("connection_count", "detection_time"):
        if key in event and not _is_number(event[key]):
            errors.append(f"Invalid type for field {key}")


def validate_event(event: Any) -> tuple[bool, list[str]]:
    """Check *event* against the canonical schema for its type.

    Returns:
        ``(valid, errors)``; ``errors`` is empty when ``valid`` is True.
    """
    if not isinstance(event, Mapping):
        return False, ["Event is not a mapping"]

    errors: list[str] = []
    event_type = event.get("type")
    platform = event.get("platform")
    if platform is not None and platform not in SUPPORTED_PLATFORMS:
        errors.append(f"Invalid platform: {platform}. Must be one of: {', '.join(SUPPORTED_PLATFORMS)}")
    if event_type not in _REQUIRED:
        errors.append(f"Invalid event type: {event_type}")
        return False, errors

    for field in _REQUIRED[event_type]:
        if field not in event:
            errors.append(f"Missing required field: {field}")

    if "timestamp" in event and not is_iso_timestamp(event["timestamp"]):
        errors.append("Invalid type for field timestamp")

    if event_type == EventType.CHAT_MESSAGE.value:
        message = event.get("message")
        if "message" in event and not (isinstance(message, Mapping) and isinstance(message.get("text"), str)):
            errors.append("Invalid type for field message")
    elif event_type == EventType.GIFT.value:
        gift_count = event.get("gift_count")
        if "gift_count" in event and not (_is_number(gift_count) and gift_count >= 1):
            errors.append("gift_count must be a number >= 1")
        unit_amount = event.get("unit_amount", 0)
        if not (_is_number(unit_amount) and unit_amount >= 0):
            errors.append("unit_amount must be a number >= 0")
        if "amount" in event and not _is_number(event["amount"]):
            errors.append("Invalid type for field amount")
    elif event_type == EventType.VIEWER_COUNT.value:
        count = event.get("count")
        if "count" in event and not (_is_number(count) and count >= 0):
            errors.append("count must be a non-negative number")
    elif event_type == EventType.STREAM_DETECTED.value:
        _validate_stream_detected(event, errors)
    elif event_type == EventType.ERROR.value:
        error = event.get("error")
        if "error" in event and not (isinstance(error, Mapping) and isinstance(error.get("message"), str)):
            errors.append("Invalid type for field error")

    return not errors, errors
