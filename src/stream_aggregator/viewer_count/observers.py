"""Observers notified by :class:`~stream_aggregator.viewer_count.system.ViewerCountSystem`."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional, Union

from stream_aggregator.core.clock import Clock
from stream_aggregator.events.builder import EventType
from stream_aggregator.events.bus import EventBus
from stream_aggregator.events.canonical import stream_status_event, viewer_count_event


@dataclass(frozen=True)
class ViewerCountUpdate:
    platform: str
    count: int
    previous_count: Optional[int]
    is_stream_live: bool
    timestamp: str


@dataclass(frozen=True)
class StreamStatusUpdate:
    platform: str
    is_live: bool
    was_live: bool
    timestamp: str


class ViewerCountObserver:
    """Base observer; every hook is optional.

    Subclasses must set a non-empty :attr:`observer_id`; registering a
    second observer with the same id replaces the first.
    """

    observer_id: str = ""

    def get_observer_id(self) -> str:
        return self.observer_id

    async def initialize(self) -> None:
        return None

    async def on_viewer_count_update(self, update: ViewerCountUpdate) -> None:
        return None

    async def on_stream_status_change(self, update: StreamStatusUpdate) -> None:
        return None

    async def cleanup(self) -> None:
        return None


UpdateCallback = Callable[[ViewerCountUpdate], Union[Awaitable[Any], Any]]
StatusCallback = Callable[[StreamStatusUpdate], Union[Awaitable[Any], Any]]


async def _call(callback: Callable[[Any], Any] | None, update: Any) -> None:
    if callback is None:
        return
    result = callback(update)
    if inspect.isawaitable(result):
        await result


class CallbackViewerCountObserver(ViewerCountObserver):
    """Observer forwarding updates to plain callables."""

    def __init__(
        self,
        observer_id: str,
        on_update: UpdateCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> None:
        self.observer_id = observer_id
        self._on_update = on_update
        self._on_status = on_status

    async def on_viewer_count_update(self, update: ViewerCountUpdate) -> None:
        await _call(self._on_update, update)

    async def on_stream_status_change(self, update: StreamStatusUpdate) -> None:
        await _call(self._on_status, update)


class EventBusViewerCountObserver(ViewerCountObserver):
    """Publish viewer counts and status changes as canonical bus events."""

    def __init__(self, event_bus: EventBus, clock: Clock | None = None, observer_id: str = "event-bus") -> None:
        self.observer_id = observer_id
        self.event_bus = event_bus
        self._clock = clock

    async def on_viewer_count_update(self, update: ViewerCountUpdate) -> None:
        event = viewer_count_event(update.platform, update.count, update.timestamp, self._clock)
        await self.event_bus.publish(EventType.VIEWER_COUNT.value, event)

    async def on_stream_status_change(self, update: StreamStatusUpdate) -> None:
        event = stream_status_event(update.platform, update.is_live, update.timestamp, clock=self._clock)
        await self.event_bus.publish(EventType.STREAM_STATUS.value, event)
