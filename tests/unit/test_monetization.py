"""Unit tests for MonetizationDetector."""

from __future__ import annotations

import pytest

from stream_aggregator.events.monetization import (
    TIKTOK_GIFT,
    TWITCH_BITS,
    YOUTUBE_SUPERCHAT,
    MonetizationDetector,
)


@pytest.fixture
def detector(clock) -> MonetizationDetector:
    return MonetizationDetector(clock)


class TestTwitchBits:
    def test_single_hundred_bit_cheer(self, detector: MonetizationDetector) -> None:
        result = detector.detect({"message": "Cheer100 nice stream"}, "twitch")

        assert result.detected is True
        assert result.type == TWITCH_BITS
        assert result.details["total_bits"] == 100
        assert result.details["cheermotes"] == ["Cheer100"]
        assert result.details["total_bits"] != 10000

    def test_multiple_cheermotes_summed(self, detector: MonetizationDetector) -> None:
        result = detector.detect({"message": {"original": "Cheer100 Kappa50 gg", "text": "gg"}}, "Twitch")

        assert result.details["total_bits"] == 150
        assert result.details["cheermote_count"] == 2

    @pytest.mark.parametrize("message", ["no cheers here", "Cheer0", ""])
    def test_no_bits(self, detector: MonetizationDetector, message) -> None:
        assert detector.detect({"message": message}, "twitch").detected is False


class TestYouTubeSuperChat:
    def test_super_chat(self, detector: MonetizationDetector) -> None:
        result = detector.detect({"amount": 5.0, "currency": "USD"}, "youtube")

        assert result.type == YOUTUBE_SUPERCHAT
        assert result.details == {"amount": 5.0, "currency": "USD", "is_anonymous": False}

    def test_plain_chat_not_detected(self, detector: MonetizationDetector) -> None:
        assert detector.detect({"message": "hi"}, "youtube").detected is False

    @pytest.mark.parametrize(
        "payload",
        [{"amount": 5}, {"amount": -1, "currency": "USD"}, {"amount": True, "currency": "USD"}, {"isAnonymous": True}],
    )
    def test_invalid_payload_reports_error(self, detector: MonetizationDetector, payload) -> None:
        result = detector.detect(payload, "youtube")

        assert result.detected is False
        assert result.error.startswith("YouTube SuperChat detection requires")


class TestTikTokGift:
    def test_gift(self, detector: MonetizationDetector) -> None:
        result = detector.detect({"giftType": "Rose", "giftCount": 3, "amount": 3, "currency": "coins"}, "tiktok")

        assert result.type == TIKTOK_GIFT
        assert result.details["gift_count"] == 3

    def test_missing_amount(self, detector: MonetizationDetector) -> None:
        result = detector.detect({"gift_type": "Rose", "gift_count": 1, "currency": "coins"}, "tiktok")

        assert result.error == "TikTok gift detection requires positive amount"


class TestDetectGuards:
    def test_non_mapping_payload(self, detector: MonetizationDetector) -> None:
        result = detector.detect("Cheer100", "twitch")

        assert result.detected is False
        assert result.error == "payload must be a mapping"

    @pytest.mark.parametrize("platform", [None, ""])
    def test_invalid_platform(self, detector: MonetizationDetector, platform) -> None:
        assert detector.detect({}, platform).error == "platform must be a non-empty string"

    def test_unknown_platform_not_detected(self, detector: MonetizationDetector) -> None:
        result = detector.detect({"message": "Cheer100"}, "kick")

        assert result.detected is False
        assert result.error is None


class TestMetrics:
    def test_counts_by_type(self, detector: MonetizationDetector, clock) -> None:
        detector.detect({"message": "Cheer100"}, "twitch")
        detector.detect({"message": "hi"}, "twitch")
        detector.detect({"amount": 2, "currency": "EUR"}, "youtube")
        clock.advance(5_000)

        metrics = detector.get_metrics()

        assert metrics["total_detections"] == 3
        assert metrics["detections_by_type"] == {TWITCH_BITS: 1, YOUTUBE_SUPERCHAT: 1}
        assert metrics["uptime"] == 5_000

    def test_errors_not_counted(self, detector: MonetizationDetector) -> None:
        detector.detect(None, "twitch")

        assert detector.get_metrics()["total_detections"] == 0

    def test_reset(self, detector: MonetizationDetector) -> None:
        detector.detect({"message": "Cheer100"}, "twitch")

        detector.reset_metrics()

        assert detector.get_metrics()["total_detections"] == 0
        assert detector.get_metrics()["detections_by_type"] == {}
