"""Unit tests for stream_aggregator.core.retry."""

from __future__ import annotations

import random
from unittest.mock import MagicMock

import pytest

from stream_aggregator.core.retry import (
    BASE_DELAY_MS,
    MAX_DELAY_MS,
    AdaptiveRetry,
    extract_error_message,
    refresh_backoff_delay,
)


class TestAdaptiveRetry:
    """Per-platform counters grow geometrically and reset on success."""

    def test_initial_delay_is_base(self) -> None:
        assert AdaptiveRetry().calculate("youtube") == BASE_DELAY_MS

    def test_increment_grows_by_multiplier(self) -> None:
        retry = AdaptiveRetry()

        assert retry.increment("youtube") == 2600
        assert retry.increment("youtube") == 3380
        assert retry.get_retry_count("youtube") == 2

    def test_delay_is_capped(self) -> None:
        retry = AdaptiveRetry()
        for _ in range(50):
            delay = retry.increment("tiktok")

        assert delay == MAX_DELAY_MS

    def test_reset_returns_to_base(self) -> None:
        retry = AdaptiveRetry()
        retry.increment("twitch")
        retry.increment("twitch")

        retry.reset("twitch")

        assert retry.get_retry_count("twitch") == 0
        assert retry.calculate("twitch") == BASE_DELAY_MS

    def test_platforms_are_independent(self) -> None:
        retry = AdaptiveRetry()
        retry.increment("twitch")

        assert retry.get_retry_count("youtube") == 0
        assert retry.calculate("youtube") == BASE_DELAY_MS

    @pytest.mark.parametrize("limit", [None, 0, -1, float("inf")])
    def test_unlimited_retry_limits(self, limit) -> None:
        retry = AdaptiveRetry()
        for _ in range(100):
            retry.increment("twitch")

        assert retry.has_exceeded_max_retries("twitch", limit) is False

    def test_exceeds_finite_limit(self) -> None:
        retry = AdaptiveRetry()
        retry.increment("twitch")
        assert retry.has_exceeded_max_retries("twitch", 2) is False

        retry.increment("twitch")
        assert retry.has_exceeded_max_retries("twitch", 2) is True

    def test_total_retry_time(self) -> None:
        assert AdaptiveRetry().total_retry_time(3) == 2000 + 2600 + 3380
        assert AdaptiveRetry().total_retry_time(0) == 0


class TestExecuteWithRetry:
    """execute_with_retry sleeps between failures on the injected clock."""

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self, clock) -> None:
        retry = AdaptiveRetry(clock=clock)
        outcomes = [RuntimeError("boom"), RuntimeError("boom"), "ok"]

        async def operation():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = await retry.execute_with_retry("youtube", operation)

        assert result == "ok"
        assert clock.sleeps == [2.6, 3.38]
        assert retry.get_retry_count("youtube") == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self, clock) -> None:
        retry = AdaptiveRetry(clock=clock)
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            raise ConnectionError("refused")

        with pytest.raises(ConnectionError):
            await retry.execute_with_retry("tiktok", operation, max_retries=3)

        assert calls == 3
        assert len(clock.sleeps) == 2


class TestRefreshBackoffDelay:
    """Token refresh delays double from 1 s to 8 s with ±20% jitter."""

    @pytest.mark.parametrize(
        ("attempt", "low", "high"),
        [(1, 800, 1200), (2, 1600, 2400), (3, 3200, 4800), (4, 6400, 9600), (9, 6400, 9600)],
    )
    def test_delay_within_jitter_band(self, attempt, low, high) -> None:
        rng = random.Random(attempt)
        for _ in range(25):
            assert low <= refresh_backoff_delay(attempt, rng) <= high

    def test_delay_is_deterministic_with_seeded_rng(self) -> None:
        assert refresh_backoff_delay(2, random.Random(7)) == refresh_backoff_delay(2, random.Random(7))


class TestExtractErrorMessage:
    """extract_error_message never returns an empty string."""

    def test_none(self) -> None:
        assert extract_error_message(None) == "Unknown error"

    def test_plain_string(self) -> None:
        assert extract_error_message("bad thing") == "bad thing"
        assert extract_error_message("") == "Unknown error"

    def test_mapping_keys(self) -> None:
        assert extract_error_message({"message": "m"}) == "m"
        assert extract_error_message({"error_description": "d"}) == "d"
        assert extract_error_message({}) == "Unknown error"

    def test_exception_without_text_uses_type_name(self) -> None:
        assert extract_error_message(ValueError()) == "ValueError"

    def test_http_error_without_text_uses_status(self) -> None:
        class _Silent(Exception):
            def __str__(self) -> str:
                return ""

        error = _Silent()
        error.response = MagicMock(status_code=503)

        assert extract_error_message(error) == "HTTP 503"
