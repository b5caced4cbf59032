"""Time source abstraction.

Every component that reads wall time or waits on a timer takes a ``Clock``
so tests can substitute a deterministic implementation.  Times are epoch
milliseconds, matching the ``expiresAt`` field of the token store file.

Usage::

    from stream_aggregator.core.clock import SystemClock

    clock = SystemClock()
    started = clock.now_ms()
    await clock.sleep(0.5)
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Minimal time interface consumed by the core."""

    def now_ms(self) -> int:
        """Return the current time as integer epoch milliseconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for *seconds*."""
        ...


class SystemClock:
    """Wall-clock implementation backed by :func:`time.time`."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


def ms_to_iso(epoch_ms: int | float) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string with ``Z`` suffix."""
    dt = datetime.fromtimestamp(epoch_ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_now(clock: Clock | None = None) -> str:
    """Return the current time of *clock* (or the system) as ISO-8601 UTC."""
    now = clock.now_ms() if clock is not None else int(time.time() * 1000)
    return ms_to_iso(now)
