"""Debounced aggregation of TikTok combo gift bursts.

TikTok reports a combo as a stream of gift messages whose ``repeatCount``
is cumulative (1, 2, 3, ...).  The aggregator keeps one pending window per
``user_id-gift_type`` key, replaces the window's count with the newest
``repeatCount`` and restarts a debounce timer on every update.  When the
timer fires, one aggregated gift event is emitted and the window cleared.

Usage::

    aggregator = TikTokGiftAggregator(emit=pipeline.deliver_aggregated, clock=clock)
    aggregator.add(gift_event)
    ...
    await aggregator.cleanup()
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from stream_aggregator.config.settings import Settings, get_settings
from stream_aggregator.core.clock import Clock, SystemClock
from stream_aggregator.core.exceptions import NormalizationError

logger = logging.getLogger(__name__)

DUPLICATE_WINDOW_MS = 1000

EmitCallback = Callable[[dict[str, Any]], Union[Awaitable[Any], Any]]


@dataclass
class _Window:
    username: str
    total_count: int
    unit_amount: float
    last_processed: int
    latest: dict[str, Any]
    updates: int = 1
    timer: Optional[asyncio.Task[None]] = field(default=None, repr=False)


class TikTokGiftAggregator:
    """Collapse combo bursts into one gift event per window.

    Args:
        emit: Called with each aggregated gift event; may be a coroutine
            function.
        delay_ms: Debounce delay; defaults to ``settings.gift_aggregation_delay_ms``.
        clock: Time source for duplicate detection and the debounce timer.
        settings: Settings override (tests).
    """

    def __init__(
        self,
        emit: EmitCallback,
        delay_ms: int | None = None,
        *,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._emit = emit
        self._settings = settings or get_settings()
        self.delay_ms = delay_ms if delay_ms is not None else self._settings.gift_aggregation_delay_ms
        self._clock = clock or SystemClock()
        self._windows: dict[str, _Window] = {}
        self.stats = {"received": 0, "duplicates": 0, "emitted": 0}

    @staticmethod
    def window_key(event: Mapping[str, Any]) -> str:
        return f"{event.get('user_id')}-{event.get('gift_type')}"

    def add(self, event: Mapping[str, Any]) -> bool:
        """Fold a normalized TikTok gift event into its window.

        Returns:
            False when the event was ignored as a duplicate, True otherwise.

        Raises:
            NormalizationError: When ``user_id``, ``gift_type`` or a positive
                ``gift_count`` is missing.
        """
        user_id = event.get("user_id")
        if not user_id:
            raise NormalizationError("TikTok gift aggregation requires user_id", "tiktok", dict(event))
        gift_type = event.get("gift_type")
        if not isinstance(gift_type, str) or not gift_type:
            raise NormalizationError("TikTok gift aggregation requires gift_type", "tiktok", dict(event))
        gift_count = event.get("gift_count")
        if isinstance(gift_count, bool) or not isinstance(gift_count, int) or gift_count <= 0:
            raise NormalizationError("TikTok gift aggregation requires gift_count", "tiktok", dict(event))

        self.stats["received"] += 1
        key = self.window_key(event)
        now = self._clock.now_ms()
        window = self._windows.get(key)
        if window is not None:
            is_terminal = bool(event.get("repeat_end"))
            if (
                not is_terminal
                and window.total_count == gift_count
                and now - window.last_processed < DUPLICATE_WINDOW_MS
            ):
                self.stats["duplicates"] += 1
                logger.debug(
                    "gift_aggregator: ignoring duplicate — key=%s count=%d since=%dms",
                    key,
                    gift_count,
                    now - window.last_processed,
                )
                return False
            window.total_count = gift_count
            window.unit_amount = event.get("unit_amount", window.unit_amount)
            window.last_processed = now
            window.latest = dict(event)
            window.updates += 1
            if window.timer is not None:
                window.timer.cancel()
        else:
            window = _Window(
                username=str(event.get("username") or ""),
                total_count=gift_count,
                unit_amount=event.get("unit_amount", 0),
                last_processed=now,
                latest=dict(event),
            )
            self._windows[key] = window

        window.timer = asyncio.get_running_loop().create_task(
            self._fire_after_delay(key, window), name=f"gift-aggregate-{key}"
        )
        logger.debug("gift_aggregator: window updated — key=%s total=%d", key, gift_count)
        return True

    async def _fire_after_delay(self, key: str, window: _Window) -> None:
        await self._clock.sleep(self.delay_ms / 1000)
        if self._windows.get(key) is not window:
            return
        window.timer = None
        await self._fire(key)

    def _build_aggregate(self, window: _Window) -> dict[str, Any]:
        count = window.total_count
        unit_amount = window.unit_amount
        amount = unit_amount * count
        aggregated = dict(window.latest)
        aggregated.update(
            {
                "gift_count": count,
                "unit_amount": unit_amount,
                "amount": int(amount) if float(amount).is_integer() else amount,
                "is_aggregated": True,
                "aggregated_count": count,
            }
        )
        return aggregated

    async def _fire(self, key: str) -> None:
        window = self._windows.pop(key, None)
        if window is None:
            return
        aggregated = self._build_aggregate(window)
        logger.info(
            "gift_aggregator: %s sent %dx %s — amount=%s",
            window.username,
            window.total_count,
            aggregated.get("gift_type"),
            aggregated["amount"],
        )
        self.stats["emitted"] += 1
        try:
            result = self._emit(aggregated)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("gift_aggregator: emit failed for %s", key)

    async def flush(self) -> int:
        """Emit every pending window immediately; return how many were emitted."""
        keys = list(self._windows)
        for key in keys:
            window = self._windows.get(key)
            if window is not None and window.timer is not None:
                window.timer.cancel()
                window.timer = None
            await self._fire(key)
        return len(keys)

    def pending_keys(self) -> list[str]:
        return list(self._windows)

    async def cleanup(self) -> None:
        """Cancel all timers and drop pending windows without emitting."""
        windows = list(self._windows.values())
        self._windows.clear()
        for window in windows:
            if window.timer is not None:
                window.timer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await window.timer
                window.timer = None
