"""In-process event emitter and the adapter that gives SDK clients one.

Platform SDK clients differ in how they expose events.  The lifecycle
service only relies on ``on`` / ``emit`` / ``remove_all_listeners``; a
client lacking any of those is wrapped in :class:`EmitterAdapter`, which
forwards every other attribute to the client unchanged.

Listeners may be plain callables or coroutine functions.  Coroutine results
are scheduled on the running loop; ``emit`` itself never awaits.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]

_EMITTER_SURFACE: tuple[str, ...] = ("on", "emit", "remove_all_listeners")


class EventEmitter:
    """Minimal named-event emitter."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[tuple[Listener, bool]]] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: Listener) -> EventEmitter:
        self._listeners.setdefault(event, []).append((listener, False))
        return self

    def once(self, event: str, listener: Listener) -> EventEmitter:
        self._listeners.setdefault(event, []).append((listener, True))
        return self

    def off(self, event: str, listener: Listener) -> EventEmitter:
        """Remove the first registration of *listener* for *event*."""
        entries = self._listeners.get(event, [])
        for index, (registered, _once) in enumerate(entries):
            if registered is listener:
                del entries[index]
                break
        if not entries:
            self._listeners.pop(event, None)
        return self

    def emit(self, event: str, *args: Any) -> bool:
        """Invoke every listener of *event*; return whether any existed.

        A listener that raises is logged and does not stop the others.
        """
        entries = list(self._listeners.get(event, []))
        if not entries:
            return False
        for listener, once in entries:
            if once:
                self.off(event, listener)
            try:
                result = listener(*args)
            except Exception:  # noqa: BLE001
                logger.exception("emitter: listener for %r raised", event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        return True

    def remove_all_listeners(self, event: str | None = None) -> EventEmitter:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)
        return self

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def event_names(self) -> list[str]:
        return list(self._listeners)


def has_emitter_surface(obj: Any) -> bool:
    return all(callable(getattr(obj, name, None)) for name in _EMITTER_SURFACE)


class EmitterAdapter:
    """Wrap *client* so it exposes the emitter surface.

    Emitter methods are served by an internal :class:`EventEmitter`; every
    other attribute is looked up on the wrapped client.
    """

    def __init__(self, client: Any, emitter: EventEmitter | None = None) -> None:
        self._client = client
        self._emitter = emitter or EventEmitter()

    @property
    def wrapped(self) -> Any:
        return self._client

    def on(self, event: str, listener: Listener) -> EmitterAdapter:
        self._emitter.on(event, listener)
        return self

    def once(self, event: str, listener: Listener) -> EmitterAdapter:
        self._emitter.once(event, listener)
        return self

    def off(self, event: str, listener: Listener) -> EmitterAdapter:
        self._emitter.off(event, listener)
        return self

    def emit(self, event: str, *args: Any) -> bool:
        return self._emitter.emit(event, *args)

    def remove_all_listeners(self, event: str | None = None) -> EmitterAdapter:
        self._emitter.remove_all_listeners(event)
        return self

    def listener_count(self, event: str) -> int:
        return self._emitter.listener_count(event)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._client, name)


def ensure_emitter(client: Any, platform: str = "tiktok") -> Any:
    """Return *client* unchanged if it already has the emitter surface, else wrap it."""
    if client is None or has_emitter_surface(client):
        return client
    logger.debug("emitter: wrapped %s connection with EventEmitter adapter", platform)
    return EmitterAdapter(client)
