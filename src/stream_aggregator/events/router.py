"""Translation of ``platform:event`` envelopes into typed consumer callbacks.

The lifecycle service's default handlers publish every platform callback
as a ``{platform, type, data}`` envelope.  :class:`PlatformEventRouter`
subscribes to that envelope and calls the consumer handler registered for
the type:

============================  ======================
envelope type                 handler
============================  ======================
``chat-message``              ``on_chat``
``gift``                      ``on_gift``
``paypiggy``                  ``on_paypiggy``
``giftpaypiggy``              ``on_gift_paypiggy``
``viewer-count``              ``on_viewer_count``
``stream-status``             ``on_stream_status``
``stream-detected``           ``on_stream_detected``
============================  ======================

``on_membership`` is accepted as an alias of ``on_paypiggy``.  Handlers are
called as ``handler(platform, data)``.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Union

from stream_aggregator.core.exceptions import NormalizationError
from stream_aggregator.events.builder import PLATFORM_EVENT
from stream_aggregator.events.bus import EventBus

logger = logging.getLogger(__name__)

ConsumerHandler = Callable[[str, dict[str, Any]], Union[Awaitable[Any], Any]]

HANDLER_NAMES: dict[str, str] = {
    "chat-message": "on_chat",
    "gift": "on_gift",
    "paypiggy": "on_paypiggy",
    "giftpaypiggy": "on_gift_paypiggy",
    "viewer-count": "on_viewer_count",
    "stream-status": "on_stream_status",
    "stream-detected": "on_stream_detected",
}

HANDLER_ALIASES: dict[str, str] = {"on_membership": "on_paypiggy"}

_NOTIFICATION_TYPES = frozenset({"gift", "paypiggy", "giftpaypiggy"})
_ENVELOPE_KEYS = ("type", "platform", "user", "display_name")


def _bare_type(event_type: str) -> str:
    return event_type.split(":", 1)[1] if event_type.startswith("platform:") else event_type


class PlatformEventRouter:
    """Route envelopes from *event_bus* to consumer *handlers*.

    Args:
        event_bus: Bus publishing ``platform:event`` envelopes.
        handlers: Mapping of handler name to callable, or an object with
            ``on_*`` methods.
    """

    def __init__(self, event_bus: EventBus, handlers: Mapping[str, ConsumerHandler] | Any) -> None:
        self.event_bus = event_bus
        self.handlers = self._resolve_handlers(handlers)
        self.stats = {"routed": 0, "dropped": 0, "failed": 0}
        self._unsubscribe: Callable[[], bool] | None = event_bus.subscribe(PLATFORM_EVENT, self._on_envelope)

    @staticmethod
    def _resolve_handlers(handlers: Mapping[str, ConsumerHandler] | Any) -> dict[str, ConsumerHandler]:
        known = set(HANDLER_NAMES.values())
        if isinstance(handlers, Mapping):
            candidates = dict(handlers)
        else:
            names = known | set(HANDLER_ALIASES)
            candidates = {name: getattr(handlers, name) for name in names if callable(getattr(handlers, name, None))}

        resolved: dict[str, ConsumerHandler] = {}
        for name, handler in candidates.items():
            canonical = HANDLER_ALIASES.get(name, name)
            if canonical not in known:
                logger.debug("router: discarding unknown handler %s", name)
                continue
            if not callable(handler):
                logger.debug("router: discarding non-callable handler %s", name)
                continue
            if canonical in resolved and name in HANDLER_ALIASES:
                continue
            resolved[canonical] = handler
        return resolved

    async def _on_envelope(self, envelope: Any) -> None:
        try:
            await self.route_event(envelope)
        except NormalizationError as exc:
            self.stats["failed"] += 1
            logger.warning("router: rejected %s event — %s", exc.platform, exc)

    async def route_event(self, envelope: Any) -> bool:
        """Dispatch one envelope; return whether a handler was called.

        Raises:
            NormalizationError: When the envelope or its payload is malformed.
        """
        if not isinstance(envelope, Mapping):
            raise NormalizationError("Platform event envelope must be a mapping")
        platform = envelope.get("platform")
        event_type = envelope.get("type")
        data = envelope.get("data")
        if not platform or not event_type or not isinstance(data, Mapping):
            raise NormalizationError("Platform event requires platform, type and data", platform)

        bare = _bare_type(str(event_type))
        handler_name = HANDLER_NAMES.get(bare)
        if handler_name is None:
            self.stats["dropped"] += 1
            logger.debug("router: no route for %s event type %s", platform, event_type)
            return False
        handler = self.handlers.get(handler_name)
        if handler is None:
            self.stats["dropped"] += 1
            logger.debug("router: no %s handler registered for %s", handler_name, platform)
            return False

        if bare == "chat-message":
            payload = self._normalize_chat_event(data, platform)
        elif bare in _NOTIFICATION_TYPES:
            payload = self._sanitize_notification_payload(data, bare, platform)
        elif bare == "viewer-count":
            if data.get("count") is None:
                raise NormalizationError("Viewer-count event requires count", platform)
            payload = dict(data)
        else:
            payload = dict(data)

        result = handler(platform, payload)
        if inspect.isawaitable(result):
            await result
        self.stats["routed"] += 1
        return True

    @staticmethod
    def _normalize_chat_event(data: Mapping[str, Any], platform: str) -> dict[str, Any]:
        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise NormalizationError("Chat event metadata must be a mapping", platform)
        message = data.get("message")
        text = message.get("text") if isinstance(message, Mapping) else message
        if not isinstance(text, str) or not text.strip():
            raise NormalizationError("Chat event requires message text", platform)
        for field in ("username", "user_id", "timestamp"):
            if not data.get(field):
                raise NormalizationError(f"Chat event requires {field}", platform)
        return dict(data)

    @staticmethod
    def _sanitize_notification_payload(data: Mapping[str, Any], event_type: str, platform: str) -> dict[str, Any]:
        rest = {key: value for key, value in data.items() if key not in _ENVELOPE_KEYS}
        username = data.get("username")
        user_id = data.get("user_id")
        if not isinstance(username, str) or not username.strip():
            raise NormalizationError(f"{event_type} notification requires username", platform)
        if not user_id:
            raise NormalizationError(f"{event_type} notification requires user_id", platform)
        sanitized = {"username": username, "user_id": user_id, "platform": platform, **rest}
        source_type = data.get("type")
        if source_type and _bare_type(str(source_type)) != event_type:
            sanitized["source_type"] = source_type
        else:
            sanitized.setdefault("source_type", event_type)
        source_platform = data.get("platform")
        if source_platform and source_platform != platform:
            sanitized["source_platform"] = source_platform
        return sanitized

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._unsubscribe = None
