"""Monetization detection for chat and gift payloads.

Usage::

    detector = MonetizationDetector()
    result = detector.detect({"message": "Cheer100 nice stream"}, "twitch")
    if result.detected:
        logger.info("bits: %d", result.details["total_bits"])

Detection never raises: invalid payloads produce a result with
``detected=False`` and ``error`` set.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from stream_aggregator.core.clock import Clock, SystemClock
from stream_aggregator.events.canonical import finite_number

logger = logging.getLogger(__name__)

TWITCH_BITS = "twitch_bits"
YOUTUBE_SUPERCHAT = "youtube_superchat"
TIKTOK_GIFT = "tiktok_gift"

_CHEERMOTE_RE = re.compile(r"\b[A-Za-z]+\d+\b")
_TRAILING_DIGITS_RE = re.compile(r"\d+$")
_SMOOTHING = 0.1


@dataclass
class DetectionResult:
    detected: bool = False
    type: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    timing_ms: float = 0.0


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _message_text(payload: Mapping[str, Any]) -> str:
    message = payload.get("message")
    if isinstance(message, Mapping):
        message = message.get("original", message.get("text"))
    return message if isinstance(message, str) else ""


class MonetizationDetector:
    """Detect bits, Super Chats and TikTok gifts; keep detection metrics.

    Args:
        clock: Clock for the ``uptime`` metric.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self.reset_metrics()

    def detect(self, payload: Any, platform: Any) -> DetectionResult:
        started = time.perf_counter()
        try:
            if not isinstance(payload, Mapping):
                raise ValueError("payload must be a mapping")
            if not isinstance(platform, str) or not platform:
                raise ValueError("platform must be a non-empty string")
            normalized = platform.lower()
            if normalized == "twitch":
                result = self.detect_twitch_bits(payload)
            elif normalized == "youtube":
                result = self.detect_youtube_superchat(payload)
            elif normalized == "tiktok":
                result = self.detect_tiktok_gift(payload)
            else:
                result = DetectionResult()
        except ValueError as exc:
            result = DetectionResult(error=str(exc))
            result.timing_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.debug("monetization: detection failed for %s — %s", platform, exc)
            return result

        elapsed_ms = (time.perf_counter() - started) * 1000
        result.timing_ms = round(elapsed_ms, 2)
        self._update_metrics(result, elapsed_ms)
        return result

    # ------------------------------------------------------------------
    # Platform detectors
    # ------------------------------------------------------------------

    @staticmethod
    def detect_twitch_bits(payload: Mapping[str, Any]) -> DetectionResult:
        message = _message_text(payload)
        if not message:
            return DetectionResult()
        cheermotes: list[str] = []
        total_bits = 0
        for token in _CHEERMOTE_RE.findall(message):
            digits = _TRAILING_DIGITS_RE.search(token)
            amount = int(digits.group(0)) if digits else 0
            if amount > 0:
                cheermotes.append(token)
                total_bits += amount
        if not cheermotes:
            return DetectionResult()
        return DetectionResult(
            detected=True,
            type=TWITCH_BITS,
            details={
                "cheermotes": cheermotes,
                "total_bits": total_bits,
                "message_length": len(message),
                "cheermote_count": len(cheermotes),
            },
        )

    @staticmethod
    def detect_youtube_superchat(payload: Mapping[str, Any]) -> DetectionResult:
        amount = payload.get("amount")
        currency = payload.get("currency")
        is_anonymous = _first(payload, "is_anonymous", "isAnonymous") is True
        if amount is None and currency is None and not is_anonymous:
            return DetectionResult()
        if amount is None or currency is None:
            raise ValueError("YouTube SuperChat detection requires amount and currency")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
            raise ValueError("YouTube SuperChat detection requires positive numeric amount")
        if not isinstance(currency, str) or not currency.strip():
            raise ValueError("YouTube SuperChat detection requires currency")
        return DetectionResult(
            detected=True,
            type=YOUTUBE_SUPERCHAT,
            details={"amount": amount, "currency": currency, "is_anonymous": is_anonymous},
        )

    @staticmethod
    def detect_tiktok_gift(payload: Mapping[str, Any]) -> DetectionResult:
        gift_type = _first(payload, "gift_type", "giftType")
        raw_count = _first(payload, "gift_count", "giftCount")
        if gift_type is None and raw_count is None:
            return DetectionResult()
        if not isinstance(gift_type, str) or not gift_type.strip():
            raise ValueError("TikTok gift detection requires gift_type")
        gift_count = finite_number(raw_count)
        if gift_count is None or gift_count <= 0:
            raise ValueError("TikTok gift detection requires positive gift_count")
        amount = finite_number(payload.get("amount"))
        if amount is None or amount <= 0:
            raise ValueError("TikTok gift detection requires positive amount")
        currency = payload.get("currency")
        if not isinstance(currency, str) or not currency.strip():
            raise ValueError("TikTok gift detection requires currency")
        return DetectionResult(
            detected=True,
            type=TIKTOK_GIFT,
            details={
                "gift_type": gift_type,
                "gift_count": int(gift_count) if gift_count.is_integer() else gift_count,
                "amount": amount,
                "currency": currency,
            },
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _update_metrics(self, result: DetectionResult, elapsed_ms: float) -> None:
        self._metrics["total_detections"] += 1
        if result.detected and result.type:
            by_type = self._metrics["detections_by_type"]
            by_type[result.type] = by_type.get(result.type, 0) + 1
        self._metrics["average_detection_time"] = (
            self._metrics["average_detection_time"] * (1 - _SMOOTHING) + elapsed_ms * _SMOOTHING
        )

    def get_metrics(self) -> dict[str, Any]:
        return {
            "total_detections": self._metrics["total_detections"],
            "detections_by_type": dict(self._metrics["detections_by_type"]),
            "average_detection_time": self._metrics["average_detection_time"],
            "uptime": self._clock.now_ms() - self._metrics["last_reset_time"],
        }

    def reset_metrics(self) -> None:
        self._metrics: dict[str, Any] = {
            "total_detections": 0,
            "detections_by_type": {},
            "average_detection_time": 0.0,
            "last_reset_time": self._clock.now_ms(),
        }
