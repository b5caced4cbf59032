"""Shared pytest fixtures for Stream Aggregator tests.

Fixture summary
---------------
clock           — FakeClock whose sleeps complete immediately, advancing time.
manual_clock    — FakeClock whose sleeps wait for an explicit ``advance()``.
settings        — Settings built from the test environment.
bus             — Fresh EventBus.
token_store     — TokenStore backed by a temporary file.

No test needs network access: HTTP is mocked with ``respx`` and platform
SDKs with ``unittest.mock``.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test environment bootstrap
# ---------------------------------------------------------------------------
# Set before application modules are imported so that Settings() picks up
# the test values during collection.

_TEST_ENV_DEFAULTS: dict[str, str] = {
    "APP_ENV": "test",
    "TWITCH_CLIENT_ID": "test-client-id",
    "TWITCH_CLIENT_SECRET": "test-client-secret",
    "LOG_LEVEL": "INFO",
}

for _key, _default in _TEST_ENV_DEFAULTS.items():
    os.environ.setdefault(_key, _default)

from stream_aggregator.auth.token_store import TokenStore  # noqa: E402
from stream_aggregator.config.settings import Settings, get_settings  # noqa: E402
from stream_aggregator.events.bus import EventBus  # noqa: E402

# Clear the lru_cache so Settings() re-reads from the patched environment.
get_settings.cache_clear()

START_MS = 1_700_000_000_000
"""2023-11-14T22:13:20Z; the default start time of every FakeClock."""


# ---------------------------------------------------------------------------
# Fake clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic clock.

    With ``auto_advance`` (the default) ``sleep`` moves time forward by the
    requested amount and yields once to the event loop.  Without it,
    ``sleep`` blocks until :meth:`advance` moves time past its deadline.
    """

    def __init__(self, start_ms: int = START_MS, auto_advance: bool = True) -> None:
        self.current_ms = start_ms
        self.auto_advance = auto_advance
        self.sleeps: list[float] = []
        self._waiters: list[tuple[int, asyncio.Future[None]]] = []

    def now_ms(self) -> int:
        return self.current_ms

    def advance(self, ms: int | float) -> None:
        self.current_ms += int(ms)
        still_waiting = []
        for deadline, future in self._waiters:
            if future.done():
                continue
            if deadline <= self.current_ms:
                future.set_result(None)
            else:
                still_waiting.append((deadline, future))
        self._waiters = still_waiting

    async def advance_and_settle(self, ms: int | float, rounds: int = 10) -> None:
        """Advance time, then let woken tasks run."""
        self.advance(ms)
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self.auto_advance:
            self.advance(seconds * 1000)
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append((self.current_ms + int(seconds * 1000), future))
        await future

    @property
    def pending_sleeps(self) -> int:
        return sum(1 for _, future in self._waiters if not future.done())


async def settle(rounds: int = 10) -> None:
    """Yield to the event loop *rounds* times so scheduled tasks can run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manual_clock() -> FakeClock:
    return FakeClock(auto_advance=False)


@pytest.fixture
def settings() -> Settings:
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def token_store(tmp_path: Path) -> TokenStore:
    return TokenStore(tmp_path / "token-store.json")
