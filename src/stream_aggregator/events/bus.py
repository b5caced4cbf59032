"""In-process publish/subscribe bus for canonical events.

Subscribers of one event run sequentially, in subscription order, and each
is awaited before the next starts; ``publish`` returns once every
subscriber has finished.  A subscriber that raises is isolated: the error
is logged, counted and re-published as ``handler-error``, and the
remaining subscribers still run.

Usage::

    bus = EventBus()
    unsubscribe = bus.subscribe("platform:gift", on_gift)
    await bus.publish("platform:gift", event)
    unsubscribe()
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union

from stream_aggregator.events.builder import HANDLER_ERROR

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Awaitable[Any], Any]]

_ARGS_PREVIEW = 100


@dataclass(eq=False)
class _Subscription:
    handler: Handler
    once: bool = False


@dataclass
class EventStats:
    emitted: int = 0
    success: int = 0
    error: int = 0
    total_duration: float = 0.0

    @property
    def avg_duration(self) -> float:
        handled = self.success + self.error
        return self.total_duration / handled if handled else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "emitted": self.emitted,
            "success": self.success,
            "error": self.error,
            "total_duration": round(self.total_duration, 3),
            "avg_duration": round(self.avg_duration, 3),
        }


class EventBus:
    """Async event bus with per-event statistics."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[_Subscription]] = {}
        self._stats: dict[str, EventStats] = {}

    def subscribe(self, name: str, handler: Handler, once: bool = False) -> Callable[[], bool]:
        """Register *handler* for *name* and return a callable that removes it."""
        if not callable(handler):
            raise TypeError(f"handler for {name!r} must be callable")
        subscription = _Subscription(handler, once)
        self._subscriptions.setdefault(name, []).append(subscription)

        def _unsubscribe() -> bool:
            return self._remove(name, subscription)

        return _unsubscribe

    def once(self, name: str, handler: Handler) -> Callable[[], bool]:
        return self.subscribe(name, handler, once=True)

    def unsubscribe(self, name: str, handler: Handler) -> bool:
        """Remove the first subscription of *handler* to *name*; return whether one existed."""
        for subscription in self._subscriptions.get(name, []):
            if subscription.handler is handler:
                return self._remove(name, subscription)
        return False

    def _remove(self, name: str, subscription: _Subscription) -> bool:
        subscriptions = self._subscriptions.get(name)
        if not subscriptions or subscription not in subscriptions:
            return False
        subscriptions.remove(subscription)
        if not subscriptions:
            del self._subscriptions[name]
        return True

    async def publish(self, name: str, payload: Any = None) -> int:
        """Deliver *payload* to every subscriber of *name*.

        Returns:
            The number of subscribers that completed without raising.
        """
        stats = self._stats.setdefault(name, EventStats())
        stats.emitted += 1
        delivered = 0
        for subscription in list(self._subscriptions.get(name, [])):
            if subscription not in self._subscriptions.get(name, ()):
                continue
            if subscription.once:
                self._remove(name, subscription)
            started = time.perf_counter()
            try:
                result = subscription.handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                stats.error += 1
                stats.total_duration += (time.perf_counter() - started) * 1000
                logger.error("bus: handler for %s raised — %s", name, exc, exc_info=True)
                if name != HANDLER_ERROR:
                    await self.publish(
                        HANDLER_ERROR,
                        {
                            "event_name": name,
                            "error": str(exc) or exc.__class__.__name__,
                            "args": repr(payload)[:_ARGS_PREVIEW],
                        },
                    )
                continue
            stats.success += 1
            stats.total_duration += (time.perf_counter() - started) * 1000
            delivered += 1
        return delivered

    def listener_count(self, name: str) -> int:
        return len(self._subscriptions.get(name, []))

    def get_listener_summary(self) -> dict[str, int]:
        return {name: len(subscriptions) for name, subscriptions in self._subscriptions.items()}

    def get_event_stats(self, name: str | None = None) -> dict[str, Any]:
        if name is not None:
            return self._stats.get(name, EventStats()).as_dict()
        return {event: stats.as_dict() for event, stats in self._stats.items()}

    def reset(self) -> None:
        """Remove every subscription and clear statistics."""
        self._subscriptions.clear()
        self._stats.clear()
