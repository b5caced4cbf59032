"""Unit tests for raw timestamp resolution."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from stream_aggregator.events.timestamps import (
    is_iso_timestamp,
    iso_to_epoch_us,
    resolve_timestamp,
    resolve_timestamp_ms,
    to_epoch_ms,
)

_MS = 1_714_587_723_120


class TestToEpochMs:
    @pytest.mark.parametrize(
        "value",
        [
            _MS / 1000,
            _MS,
            str(_MS),
            _MS * 1000,
            str(_MS * 1000),
            _MS * 1_000_000,
            "2024-05-01T18:22:03.120Z",
            "2024-05-01T18:22:03.120+00:00",
        ],
    )
    def test_magnitudes_and_strings(self, value) -> None:
        assert to_epoch_ms(value) == pytest.approx(_MS)

    def test_naive_datetime_treated_as_utc(self) -> None:
        value = datetime(2024, 5, 1, 18, 22, 3, 120_000)

        assert to_epoch_ms(value) == pytest.approx(_MS)

    @pytest.mark.parametrize("value", [None, "", "soon", 0, -5, True, float("nan"), float("inf"), {}])
    def test_unusable_values(self, value) -> None:
        assert to_epoch_ms(value) is None


class TestResolveTimestamp:
    def test_valid_value_rendered_as_iso(self, clock) -> None:
        assert resolve_timestamp(_MS * 1000, clock=clock) == "2024-05-01T18:22:03.120Z"

    def test_fallback_to_clock(self, clock) -> None:
        assert resolve_timestamp_ms("garbage", clock=clock) == clock.now_ms()
        assert resolve_timestamp(None, clock=clock) == "2023-11-14T22:13:20.000Z"


class TestIsoHelpers:
    def test_iso_to_epoch_us(self) -> None:
        assert iso_to_epoch_us("2024-05-01T18:22:03.120Z") == _MS * 1000
        assert iso_to_epoch_us("nope") is None

    def test_is_iso_timestamp(self) -> None:
        assert is_iso_timestamp(datetime.now(timezone.utc).isoformat()) is True
        assert is_iso_timestamp(_MS) is False
        assert is_iso_timestamp("not a time") is False
