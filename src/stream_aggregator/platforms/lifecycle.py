"""Platform lifecycle: construction, initialization, health and teardown.

:class:`PlatformLifecycleService` owns one :class:`PlatformEntry` per
configured platform.  Enabled platforms are built from the supplied module
classes (with dependencies from an optional dependency factory), handed
their event handlers and connected:

- Twitch and YouTube go through the injected
  :class:`~stream_aggregator.platforms.stream_detector.StreamDetector`,
  which runs the connect callback once the stream is live.
- TikTok connects in a background task; its transport waits for the
  stream itself.

Unless the caller supplies its own handlers, chat, monetization and
viewer-count callbacks are normalized and run through the
:class:`~stream_aggregator.events.pipeline.EventPipeline`, which publishes
them as ``platform:event`` envelopes ``{platform, type, data}``; status,
connection and error callbacks are published as envelopes directly.  A
lost connection is retried after the per-platform adaptive backoff.

Usage::

    lifecycle = PlatformLifecycleService(config, bus, stream_detector=detector)
    await lifecycle.initialize_all({"twitch": TwitchPlatform, "tiktok": TikTokPlatform})
    ...
    await lifecycle.disconnect_all()
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from stream_aggregator.config.platforms import PlatformsConfig
from stream_aggregator.config.settings import Settings, get_settings
from stream_aggregator.core.clock import Clock, SystemClock, iso_now
from stream_aggregator.core.exceptions import NormalizationError, PlatformConnectionError
from stream_aggregator.core.retry import AdaptiveRetry, extract_error_message
from stream_aggregator.core.state import PlatformState
from stream_aggregator.events.builder import PLATFORM_EVENT, EventType
from stream_aggregator.events.bus import EventBus
from stream_aggregator.events.canonical import viewer_count_event
from stream_aggregator.events.chronology import CONNECTION_CUTOFF_KEY
from stream_aggregator.events.normalizer import EventNormalizer
from stream_aggregator.events.pipeline import EventPipeline
from stream_aggregator.events.sanitize import sanitize_envelope_data
from stream_aggregator.platforms.connection_factory import PlatformConnectionFactory
from stream_aggregator.platforms.stream_detector import StreamDetector

logger = logging.getLogger(__name__)

HandlerFactory = Callable[[str], Optional[Mapping[str, Callable[..., Any]]]]

BACKGROUND_PLATFORMS: frozenset[str] = frozenset({"tiktok"})
REQUIRED_METHODS: tuple[str, ...] = ("initialize", "cleanup")
RECENT_ERRORS_KEPT = 10
DISCONNECT_WAIT_MS = 10_000

TIMESTAMP_REQUIRED: frozenset[str] = frozenset({
    EventType.CHAT_MESSAGE.value,
    EventType.GIFT.value,
    EventType.PAYPIGGY.value,
    EventType.GIFT_PAYPIGGY.value,
    EventType.VIEWER_COUNT.value,
    EventType.STREAM_STATUS.value,
})

DEFAULT_EVENT_NAMES: dict[str, dict[str, str]] = {
    "twitch": {
        "on_chat": "channel.chat.message",
        "on_gift": "channel.cheer",
        "on_paypiggy": "channel.subscribe",
        "on_gift_paypiggy": "channel.subscription.gift",
    },
    "youtube": {
        "on_chat": "item",
        "on_gift": "item",
        "on_paypiggy": "item",
        "on_gift_paypiggy": "item",
    },
    "tiktok": {
        "on_chat": "chat",
        "on_gift": "gift",
        "on_paypiggy": "subscribe",
        "on_viewer_count": "roomUser",
    },
}
"""Raw event name assumed for a default handler called without one.

Twitch names are EventSub subscription types and TikTok names webcast
events; YouTube reads the item type from the payload.
"""

CONNECTION_LOST_STATUSES: frozenset[str] = frozenset({"disconnected", "closed", "error"})


@dataclass
class PlatformEntry:
    """Health record and instance of one platform."""

    instance: Any = None
    state: PlatformState = PlatformState.UNINITIALIZED
    enabled: bool = False
    connected_at: Optional[int] = None
    """Epoch milliseconds of the last successful connect."""
    last_error: Optional[str] = None
    attempts: int = 0
    failures: int = 0
    last_updated: Optional[str] = None
    stream_cutoffs: dict[str, int] = field(default_factory=dict)
    """Stream id to connection time in epoch microseconds."""


class PlatformLifecycleService:
    """Manage platform instances from construction to cleanup.

    Args:
        config: Platform configuration; a mapping is validated into
            :class:`PlatformsConfig`.
        event_bus: Bus receiving ``platform:event`` envelopes from the
            default handlers.
        stream_detector: Liveness gate for Twitch and YouTube.
        dependency_factory: Object exposing ``create_<platform>_dependencies
            (config, shared_dependencies)``.
        connection_factory: Used by platform modules to build their clients;
            passed to them through the dependency mapping.
        clock: Time source for connection times and status timestamps.
        handler_factory: ``handler_factory(platform)`` returning handlers,
            consulted before the defaults.
        shared_dependencies: Passed to every dependency factory method.
        settings: Source of the reconnect backoff settings.
        pipeline: Delivery pipeline for normalized events; built on
            *event_bus* when omitted.
        normalizer: Raw payload normalizer for the default handlers.
        retry: Per-platform reconnect backoff; built from *settings* when
            omitted.
    """

    def __init__(
        self,
        config: PlatformsConfig | Mapping[str, Any] | None,
        event_bus: EventBus | None,
        stream_detector: StreamDetector | None = None,
        dependency_factory: Any = None,
        connection_factory: PlatformConnectionFactory | None = None,
        clock: Clock | None = None,
        handler_factory: HandlerFactory | None = None,
        shared_dependencies: Mapping[str, Any] | None = None,
        settings: Settings | None = None,
        pipeline: EventPipeline | None = None,
        normalizer: EventNormalizer | None = None,
        retry: AdaptiveRetry | None = None,
    ) -> None:
        if config is None:
            config = PlatformsConfig()
        elif not isinstance(config, PlatformsConfig):
            config = PlatformsConfig.model_validate(dict(config))
        self.config = config
        self.event_bus = event_bus
        self.stream_detector = stream_detector
        self.dependency_factory = dependency_factory
        self.connection_factory = connection_factory or PlatformConnectionFactory()
        self._clock = clock or SystemClock()
        self.handler_factory = handler_factory
        self.shared_dependencies = dict(shared_dependencies or {})
        self._settings = settings or get_settings()
        self.normalizer = normalizer or EventNormalizer(clock=self._clock)
        if pipeline is None and event_bus is not None:
            pipeline = EventPipeline(
                event_bus,
                platforms_config=self.config,
                cutoffs=self.get_stream_cutoffs,
                clock=self._clock,
                settings=self._settings,
            )
        self.pipeline = pipeline
        self.retry = retry or AdaptiveRetry(
            base_delay_ms=self._settings.retry_base_delay_ms,
            max_delay_ms=self._settings.retry_max_delay_ms,
            multiplier=self._settings.retry_multiplier,
            clock=self._clock,
        )

        self.entries: dict[str, PlatformEntry] = {}
        self.stream_statuses: dict[str, dict[str, Any]] = {}
        self.recent_errors: list[dict[str, Any]] = []
        self._background: dict[str, asyncio.Task[None]] = {}
        self._connectors: dict[str, Callable[[], Awaitable[Any]]] = {}
        self._reconnects: dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Health bookkeeping
    # ------------------------------------------------------------------

    def _entry(self, platform: str) -> PlatformEntry:
        entry = self.entries.get(platform)
        if entry is None:
            entry = self.entries[platform] = PlatformEntry()
        return entry

    def _set_state(self, platform: str, state: PlatformState, error: str | None = None) -> PlatformEntry:
        entry = self._entry(platform)
        if state is PlatformState.INITIALIZING:
            entry.attempts += 1
        entry.state = state
        entry.last_updated = iso_now(self._clock)
        if state is PlatformState.READY:
            entry.last_error = None
        elif error is not None:
            entry.last_error = error
        return entry

    def _mark_ready(self, platform: str) -> None:
        entry = self._entry(platform)
        if entry.state is PlatformState.READY:
            return
        entry.connected_at = self._clock.now_ms()
        self.record_stream_connection(platform, CONNECTION_CUTOFF_KEY, entry.connected_at * 1000)
        self.retry.reset(platform)
        self._set_state(platform, PlatformState.READY)
        logger.info("lifecycle: %s ready", platform)

    def _mark_failure(self, platform: str, error: BaseException | str) -> None:
        message = error if isinstance(error, str) else extract_error_message(error)
        entry = self._set_state(platform, PlatformState.ERROR, message)
        entry.failures += 1
        self.retry.increment(platform)
        self.recent_errors.append({"platform": platform, "message": message, "timestamp": entry.last_updated})
        del self.recent_errors[:-RECENT_ERRORS_KEPT]

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize_all(
        self,
        modules: Mapping[str, Any],
        handlers: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Build and connect every enabled platform in *modules*.

        Failures are recorded on the platform's entry and never raised;
        other platforms still initialize.

        Args:
            modules: Platform name to platform class.
            handlers: Per-platform handler mappings, optionally with a
                ``"default"`` key.

        Returns:
            Platform name to instance for every platform that was built.
        """
        logger.info("lifecycle: initializing platform connections")
        for platform, platform_class in modules.items():
            platform_config = self.config.for_platform(platform)
            entry = self._entry(platform)
            if platform_config is None or not platform_config.enabled:
                entry.enabled = False
                logger.debug("lifecycle: skipping %s — disabled or not configured", platform)
                continue
            entry.enabled = True
            self._set_state(platform, PlatformState.INITIALIZING)

            if platform == "youtube" and not platform_config.username:
                logger.error("lifecycle: youtube is enabled but no username is configured")
                self._mark_failure(platform, "Missing username")
                continue

            try:
                instance = self.create_platform_instance(platform, platform_class, platform_config)
                entry.instance = instance
                resolved = self.resolve_event_handlers(platform, handlers)
                await self._connect_with_detection(platform, instance, resolved, platform_config)
            except Exception as exc:  # noqa: BLE001
                logger.error("lifecycle: failed to initialize %s — %s", platform, exc)
                self._mark_failure(platform, exc)

        return {name: entry.instance for name, entry in self.entries.items() if entry.instance is not None}

    def create_platform_instance(self, platform: str, platform_class: Any, config: Any) -> Any:
        """Instantiate *platform_class*, with dependencies when a factory method exists.

        Raises:
            PlatformConnectionError: When *platform_class* is not callable or
                the instance lacks the platform interface.
        """
        if not callable(platform_class):
            raise PlatformConnectionError(f"Invalid platform class for {platform}", platform)

        factory_method = getattr(self.dependency_factory, f"create_{platform}_dependencies", None)
        if callable(factory_method):
            dependencies = factory_method(config, self.shared_dependencies)
            if isinstance(dependencies, dict):
                dependencies.setdefault("connection_factory", self.connection_factory)
                dependencies.setdefault(
                    "record_stream_connection", functools.partial(self.record_stream_connection, platform)
                )
            logger.debug("lifecycle: %s instance created via dependency factory", platform)
            instance = platform_class(config, dependencies)
        else:
            logger.debug("lifecycle: no dependency factory for %s — creating without dependencies", platform)
            instance = platform_class(config)

        missing = [name for name in REQUIRED_METHODS if not callable(getattr(instance, name, None))]
        if missing:
            raise PlatformConnectionError(
                f"Platform {platform} is missing required methods: {', '.join(missing)}",
                platform,
            )
        return instance

    async def _connect_with_detection(
        self,
        platform: str,
        instance: Any,
        handlers: Mapping[str, Any],
        config: Any,
    ) -> None:
        async def connect() -> Any:
            logger.info("lifecycle: connecting to %s", platform)
            await instance.initialize(handlers)
            self._mark_ready(platform)
            return instance

        self._connectors[platform] = connect

        async def on_status(status: str, message: str) -> None:
            normalized = status.lower() if isinstance(status, str) else status
            timestamp = iso_now(self._clock)
            self.stream_statuses[platform] = {
                "status": normalized,
                "message": message,
                "timestamp": timestamp,
                "is_live": normalized == "live",
            }
            logger.info("lifecycle: %s stream status %s — %s", platform, normalized, message)
            if normalized in ("error", "failed"):
                self._mark_failure(platform, message)
            await self.emit_platform_event(
                platform,
                EventType.STREAM_STATUS.value,
                {"status": normalized, "message": message, "is_live": normalized == "live", "timestamp": timestamp},
            )

        if platform in BACKGROUND_PLATFORMS:
            logger.info("lifecycle: initializing %s in background", platform)
            self._background[platform] = asyncio.get_running_loop().create_task(
                self._initialize_in_background(platform, connect),
                name=f"platform-init-{platform}",
            )
            return

        if self.stream_detector is None:
            raise PlatformConnectionError("Stream detection unavailable", platform)
        await self.stream_detector.start_stream_detection(platform, config, connect, on_status)

    async def _initialize_in_background(self, platform: str, connect: Callable[[], Awaitable[Any]]) -> None:
        try:
            await connect()
            logger.info("lifecycle: %s background initialization completed", platform)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("lifecycle: %s background initialization failed — %s", platform, exc)
            self._mark_failure(platform, exc)

    async def wait_for_background_inits(self, timeout_ms: int = 30_000) -> None:
        """Wait up to *timeout_ms* for background initializations to settle."""
        tasks = [task for task in self._background.values() if not task.done()]
        if not tasks:
            return
        logger.info("lifecycle: waiting for %d background initialization(s)", len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=timeout_ms / 1000)
        if pending:
            logger.warning("lifecycle: %d background initialization(s) still running after %dms", len(pending), timeout_ms)

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    async def handle_connection_lost(self, platform: str, error: BaseException | str | None = None) -> int | None:
        """Mark *platform* failed and schedule a reconnect after its backoff.

        The failure advances the platform's :class:`AdaptiveRetry` counter,
        so consecutive losses wait longer; a successful connect resets it.

        Returns:
            The reconnect delay in milliseconds, or ``None`` when *platform*
            has no connected instance to reconnect.
        """
        self._mark_failure(platform, error if error is not None else "Connection lost")
        entry = self.entries.get(platform)
        if platform not in self._connectors or entry is None or entry.instance is None:
            return None
        delay_ms = self.retry.calculate(platform)
        self._cancel_reconnect(platform)
        logger.warning("lifecycle: %s connection lost — reconnecting in %dms", platform, delay_ms)
        self._reconnects[platform] = asyncio.get_running_loop().create_task(
            self._reconnect_after(platform, delay_ms),
            name=f"platform-reconnect-{platform}",
        )
        return delay_ms

    async def _reconnect_after(self, platform: str, delay_ms: int) -> None:
        await self._clock.sleep(delay_ms / 1000.0)
        if self._reconnects.get(platform) is asyncio.current_task():
            del self._reconnects[platform]
        connect = self._connectors.get(platform)
        if connect is None:
            return
        self._set_state(platform, PlatformState.INITIALIZING)
        try:
            await connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("lifecycle: reconnect to %s failed — %s", platform, exc)
            await self.handle_connection_lost(platform, exc)

    def _cancel_reconnect(self, platform: str) -> None:
        task = self._reconnects.pop(platform, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def resolve_event_handlers(self, platform: str, provided: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
        """Return the handlers for *platform*.

        Order: ``provided[platform]``, ``provided["default"]``, the handler
        factory, then :meth:`create_default_event_handlers`.
        """
        if provided:
            if provided.get(platform):
                return provided[platform]
            if provided.get("default"):
                return provided["default"]
        if callable(self.handler_factory):
            produced = self.handler_factory(platform)
            if produced:
                return produced
        return self.create_default_event_handlers(platform)

    def create_default_event_handlers(self, platform: str) -> dict[str, Callable[..., Awaitable[Any]]]:
        """Handlers feeding platform callbacks into the event pipeline.

        Chat, monetization and viewer-count handlers take ``(data,
        event_name=None)``.  *data* is either a canonical event or a raw
        platform payload; raw payloads are normalized as *event_name*, or
        as the platform's entry in :data:`DEFAULT_EVENT_NAMES`.  They return
        whether the pipeline accepted the event.

        Status, connection and error handlers publish ``platform:event``
        envelopes directly and return the number of subscribers reached.  A
        connection callback reporting a lost connection also schedules a
        reconnect.
        """

        def ingester(handler_name: str) -> Callable[..., Awaitable[bool]]:
            async def handler(data: Any, event_name: str | None = None) -> bool:
                return await self.ingest_platform_event(platform, handler_name, data, event_name)

            return handler

        def publisher(event_type: EventType) -> Callable[[Any], Awaitable[int]]:
            async def handler(data: Any) -> int:
                return await self.emit_platform_event(platform, event_type.value, data)

            return handler

        async def on_connection(data: Any) -> int:
            delivered = await self.emit_platform_event(platform, EventType.CONNECTION.value, data)
            status = data.get("status") if isinstance(data, Mapping) else None
            if status in CONNECTION_LOST_STATUSES:
                reason = data.get("error") or data.get("reason") or f"Connection {status}"
                await self.handle_connection_lost(platform, reason if isinstance(reason, BaseException) else str(reason))
            return delivered

        on_paypiggy = ingester("on_paypiggy")
        return {
            "on_chat": ingester("on_chat"),
            "on_gift": ingester("on_gift"),
            "on_paypiggy": on_paypiggy,
            "on_membership": on_paypiggy,
            "on_gift_paypiggy": ingester("on_gift_paypiggy"),
            "on_viewer_count": ingester("on_viewer_count"),
            "on_stream_status": publisher(EventType.STREAM_STATUS),
            "on_stream_detected": publisher(EventType.STREAM_DETECTED),
            "on_connection": on_connection,
            "on_error": publisher(EventType.ERROR),
        }

    async def ingest_platform_event(
        self,
        platform: str,
        handler_name: str,
        data: Any,
        event_name: str | None = None,
    ) -> bool:
        """Normalize *data* when needed and run it through the pipeline.

        Returns:
            True when the pipeline published the event or handed it to the
            gift aggregator; False when it was rejected, filtered or there is
            no pipeline.
        """
        if self.pipeline is None:
            logger.debug("lifecycle: no event pipeline for %s %s", platform, handler_name)
            return False
        event = self._canonical_event(platform, handler_name, data, event_name)
        if event is None:
            return False
        return await self.pipeline.process(event)

    def _canonical_event(
        self,
        platform: str,
        handler_name: str,
        data: Any,
        event_name: str | None,
    ) -> dict[str, Any] | None:
        if not isinstance(data, Mapping):
            logger.warning("lifecycle: %s %s payload is not a mapping — dropped: %r", platform, handler_name, data)
            return None
        event_type = data.get("type")
        if isinstance(event_type, str) and event_type.startswith("platform:"):
            if event_type in TIMESTAMP_REQUIRED and not data.get("timestamp"):
                logger.warning("lifecycle: %s event %s missing timestamp — dropped", platform, event_type)
                return None
            return {**data, "platform": data.get("platform") or platform}

        name = event_name or DEFAULT_EVENT_NAMES.get(platform, {}).get(handler_name)
        try:
            if name is not None:
                return self.normalizer.normalize(platform, name, data)
            if handler_name == "on_viewer_count":
                if not data.get("timestamp"):
                    logger.warning("lifecycle: viewer count for %s missing timestamp — dropped", platform)
                    return None
                return viewer_count_event(platform, data.get("count"), str(data["timestamp"]), self._clock)
        except NormalizationError as exc:
            logger.warning("lifecycle: rejected %s %s payload — %s", platform, handler_name, exc)
            return None
        logger.warning("lifecycle: no event name for %s %s payload — dropped", platform, handler_name)
        return None

    async def emit_platform_event(self, platform: str, event_type: str, data: Any) -> int:
        """Publish ``{platform, type, data}`` on the bus; return subscribers reached."""
        if self.event_bus is None:
            logger.debug("lifecycle: no event bus for %s event %s", platform, event_type)
            return 0
        sanitized = sanitize_envelope_data(platform, event_type, data)
        if event_type in TIMESTAMP_REQUIRED and (not isinstance(sanitized, Mapping) or not sanitized.get("timestamp")):
            logger.warning("lifecycle: %s event %s missing timestamp — dropped", platform, event_type)
            return 0
        return await self.event_bus.publish(
            PLATFORM_EVENT,
            {"platform": platform, "type": event_type, "data": sanitized},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_platform_available(self, platform: str) -> bool:
        entry = self.entries.get(platform)
        return entry is not None and entry.instance is not None

    def get_platform(self, platform: str) -> Any:
        entry = self.entries.get(platform)
        return entry.instance if entry is not None else None

    def get_all_platforms(self) -> dict[str, Any]:
        return {name: entry.instance for name, entry in self.entries.items() if entry.instance is not None}

    def get_platform_connection_time(self, platform: str) -> int | None:
        entry = self.entries.get(platform)
        return entry.connected_at if entry is not None else None

    def record_stream_connection(self, platform: str, stream_id: str, time_micros: int | None = None) -> int:
        """Record when the connection to *stream_id* went live.

        Events of that stream at or before the returned cutoff (epoch
        microseconds) are treated as replayed history.  Platform modules get
        this method, bound to their platform, as the
        ``record_stream_connection`` dependency; the platform-wide connection
        time is kept under ``CONNECTION_CUTOFF_KEY``.
        """
        cutoff = time_micros if time_micros is not None else self._clock.now_ms() * 1000
        self._entry(platform).stream_cutoffs[stream_id] = cutoff
        logger.debug("lifecycle: %s stream %s connected — cutoff=%d", platform, stream_id, cutoff)
        return cutoff

    def get_stream_cutoffs(self, platform: str) -> dict[str, int]:
        entry = self.entries.get(platform)
        return dict(entry.stream_cutoffs) if entry is not None else {}

    def get_status(self) -> dict[str, Any]:
        def named(state: PlatformState) -> list[str]:
            return [name for name, entry in self.entries.items() if entry.enabled and entry.state is state]

        return {
            "timestamp": iso_now(self._clock),
            "initialized_platforms": named(PlatformState.READY),
            "initializing_platforms": named(PlatformState.INITIALIZING),
            "failed_platforms": [
                {"name": name, "last_error": entry.last_error, "failures": entry.failures}
                for name, entry in self.entries.items()
                if entry.enabled and entry.state is PlatformState.ERROR
            ],
            "disabled_platforms": [name for name, entry in self.entries.items() if not entry.enabled],
            "stream_statuses": {name: dict(status) for name, status in self.stream_statuses.items()},
            "connection_times": {
                name: entry.connected_at for name, entry in self.entries.items() if entry.connected_at is not None
            },
            "background_initializations": len(self._background),
            "pending_reconnects": sorted(self._reconnects),
            "retry_counts": {name: self.retry.get_retry_count(name) for name in self.entries},
            "recent_errors": list(self.recent_errors),
        }

    # ------------------------------------------------------------------
    # Reconfiguration and teardown
    # ------------------------------------------------------------------

    async def update_config(self, platform: str, config: Any) -> None:
        """Replace *platform*'s config section and return it to ``UNINITIALIZED``.

        A running instance is cleaned up; the next :meth:`initialize_all`
        builds a new one.
        """
        current = self.config.for_platform(platform)
        if current is None:
            raise PlatformConnectionError(f"Unsupported platform: {platform}", platform)
        section_type = type(current)
        section = config if isinstance(config, section_type) else section_type.model_validate(dict(config))
        self.config = self.config.model_copy(update={platform: section})
        if self.pipeline is not None:
            self.pipeline.config = self.config
        self._cancel_reconnect(platform)
        self._connectors.pop(platform, None)
        self.retry.reset(platform)
        if self.stream_detector is not None:
            self.stream_detector.stop_stream_detection(platform)
            self.stream_detector.stop_continuous_monitoring(platform)
        entry = self._entry(platform)
        await self._cleanup_instance(platform, entry)
        entry.connected_at = None
        entry.stream_cutoffs.clear()
        self._set_state(platform, PlatformState.UNINITIALIZED)
        logger.info("lifecycle: %s configuration updated", platform)

    async def _cleanup_instance(self, platform: str, entry: PlatformEntry) -> None:
        instance, entry.instance = entry.instance, None
        if instance is None:
            return
        closer = getattr(instance, "cleanup", None)
        if not callable(closer):
            closer = getattr(instance, "disconnect", None)
        if not callable(closer):
            logger.error("lifecycle: unable to clean up %s — no cleanup() or disconnect()", platform)
            return
        try:
            result = closer()
            if inspect.isawaitable(result):
                await result
            logger.info("lifecycle: cleaned up %s", platform)
        except Exception as exc:  # noqa: BLE001
            logger.error("lifecycle: error disconnecting from %s — %s", platform, exc)

    async def disconnect_all(self) -> None:
        """Wait for background inits, then clean up every platform.

        Pending reconnects are cancelled and pending TikTok gift windows are
        flushed.  Idempotent.
        """
        logger.info("lifecycle: cleaning up all platforms")
        await self.wait_for_background_inits(DISCONNECT_WAIT_MS)
        for task in self._background.values():
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._background.clear()
        for platform in list(self._reconnects):
            self._cancel_reconnect(platform)
        self._connectors.clear()
        if self.stream_detector is not None:
            await self.stream_detector.cleanup()
        for platform, entry in list(self.entries.items()):
            await self._cleanup_instance(platform, entry)
            entry.connected_at = None
            entry.stream_cutoffs.pop(CONNECTION_CUTOFF_KEY, None)
            if entry.enabled:
                self._set_state(platform, PlatformState.UNINITIALIZED)
        if self.pipeline is not None:
            await self.pipeline.cleanup()

    def dispose(self) -> None:
        """Forget every platform, status and error without cleaning up instances."""
        for task in [*self._background.values(), *self._reconnects.values()]:
            task.cancel()
        self._background.clear()
        self._reconnects.clear()
        self._connectors.clear()
        self.entries.clear()
        self.stream_statuses.clear()
        self.recent_errors.clear()
