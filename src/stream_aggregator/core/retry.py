"""Adaptive per-platform reconnection backoff.

Each platform keeps its own failure counter.  The delay before the next
connection attempt grows geometrically with that counter and is clamped to
``[BASE_DELAY_MS, MAX_DELAY_MS]``::

    delay = min(MAX_DELAY_MS, BASE_DELAY_MS * MULTIPLIER ** count)

The counter is reset when a connection succeeds.  Token refresh uses a
separate, jittered schedule (:func:`refresh_backoff_delay`).

Usage::

    retry = AdaptiveRetry()
    delay_ms = retry.increment("youtube")   # 2600 after the first failure
    retry.reset("youtube")                  # back to 2000
"""

from __future__ import annotations

import logging
import math
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from stream_aggregator.core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_DELAY_MS: int = 2000
MAX_DELAY_MS: int = 60000
BACKOFF_MULTIPLIER: float = 1.3

REFRESH_INITIAL_DELAY_MS: int = 1000
REFRESH_MAX_DELAY_MS: int = 8000
REFRESH_JITTER_RATIO: float = 0.2
REFRESH_MIN_DELAY_MS: int = 100
REFRESH_MAX_ATTEMPTS: int = 3


# ---------------------------------------------------------------------------
# Platform reconnection backoff
# ---------------------------------------------------------------------------


class AdaptiveRetry:
    """Per-platform exponential backoff counter with a hard cap.

    Counters are only mutated by the owning platform's transport callbacks,
    so each platform holds an independent cell.

    Args:
        base_delay_ms: Delay for a counter of zero.
        max_delay_ms: Upper bound on any returned delay.
        multiplier: Growth factor per failure.
        clock: Time source used by :meth:`execute_with_retry`.
    """

    def __init__(
        self,
        base_delay_ms: int = BASE_DELAY_MS,
        max_delay_ms: int = MAX_DELAY_MS,
        multiplier: float = BACKOFF_MULTIPLIER,
        clock: Clock | None = None,
    ) -> None:
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.multiplier = multiplier
        self._clock = clock or SystemClock()
        self._counts: dict[str, int] = {}

    def calculate(self, platform: str) -> int:
        """Return the delay for *platform*'s current counter without mutating it."""
        return self._delay_for(self._counts.get(platform, 0))

    def increment(self, platform: str) -> int:
        """Record a failure for *platform* and return the new delay."""
        self._counts[platform] = self._counts.get(platform, 0) + 1
        delay = self.calculate(platform)
        logger.debug(
            "retry: %s failure #%d — next attempt in %dms",
            platform,
            self._counts[platform],
            delay,
        )
        return delay

    def reset(self, platform: str) -> None:
        """Zero the counter for *platform* after a successful connection."""
        if self._counts.get(platform):
            logger.debug("retry: %s counter reset", platform)
        self._counts[platform] = 0

    def get_retry_count(self, platform: str) -> int:
        return self._counts.get(platform, 0)

    def has_exceeded_max_retries(self, platform: str, max_retries: float | None) -> bool:
        """Return True once *platform* has failed *max_retries* times.

        A missing, non-positive or infinite limit means retries are unlimited.
        """
        if max_retries is None or max_retries <= 0 or math.isinf(max_retries):
            return False
        return self.get_retry_count(platform) >= max_retries

    def total_retry_time(self, attempts: int) -> int:
        """Return the cumulative delay in ms of the first *attempts* retries."""
        return sum(self._delay_for(count) for count in range(max(0, attempts)))

    async def execute_with_retry(
        self,
        platform: str,
        operation: Callable[[], Awaitable[T]],
        max_retries: int | None = None,
    ) -> T:
        """Await *operation* until it succeeds, backing off between attempts.

        Args:
            platform: Counter to use.
            operation: Zero-argument factory returning a fresh awaitable.
            max_retries: Failure budget; ``None`` or non-positive is unlimited.

        Returns:
            The first successful result.

        Raises:
            Exception: The last failure once the budget is exhausted.
        """
        while True:
            try:
                result = await operation()
            except Exception as exc:  # noqa: BLE001
                delay = self.increment(platform)
                if self.has_exceeded_max_retries(platform, max_retries):
                    logger.warning(
                        "retry: %s giving up after %d attempts — %s",
                        platform,
                        self.get_retry_count(platform),
                        extract_error_message(exc),
                    )
                    raise
                logger.info(
                    "retry: %s attempt failed (%s) — retrying in %dms",
                    platform,
                    extract_error_message(exc),
                    delay,
                )
                await self._clock.sleep(delay / 1000.0)
                continue
            self.reset(platform)
            return result

    def _delay_for(self, count: int) -> int:
        raw = self.base_delay_ms * (self.multiplier ** max(0, count))
        return int(max(self.base_delay_ms, min(self.max_delay_ms, raw)))


# ---------------------------------------------------------------------------
# Token refresh backoff
# ---------------------------------------------------------------------------


def refresh_backoff_delay(attempt: int, rng: random.Random | None = None) -> int:
    """Return the jittered delay in ms before refresh retry *attempt* (1-based).

    The base delay starts at 1000 ms and doubles per attempt up to 8000 ms.
    Jitter of ±20% is applied as an integer drawn from ``[-range, +range]``
    and the result is floored at 100 ms.
    """
    rng = rng or random.Random()
    base = min(REFRESH_MAX_DELAY_MS, REFRESH_INITIAL_DELAY_MS * 2 ** max(0, attempt - 1))
    jitter_range = int(base * REFRESH_JITTER_RATIO)
    jitter = rng.randint(-jitter_range, jitter_range) if jitter_range else 0
    return max(REFRESH_MIN_DELAY_MS, base + jitter)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def extract_error_message(error: Any) -> str:
    """Return a non-empty human-readable message for *error*.

    Handles exceptions, HTTP status errors (``error.response.status_code``),
    mappings with a ``message``/``error`` key and plain strings.
    """
    if error is None:
        return "Unknown error"
    if isinstance(error, str):
        return error or "Unknown error"
    if isinstance(error, dict):
        for key in ("message", "error", "error_description"):
            value = error.get(key)
            if value:
                return str(value)
        return "Unknown error"
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    text = str(error).strip()
    if status is not None and not text:
        return f"HTTP {status}"
    return text or type(error).__name__
