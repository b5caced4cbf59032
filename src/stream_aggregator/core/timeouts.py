"""Criticality-tiered timeouts for Twitch auth HTTP calls.

User-initiated operations fail fast; background work tolerates slow links.
A network-quality multiplier scales every tier.
"""

from __future__ import annotations

from enum import Enum


class Criticality(str, Enum):
    """How urgently the caller needs the result."""

    IMMEDIATE = "immediate"
    NORMAL = "normal"
    LOW = "low"


class NetworkQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


TIMEOUTS_MS: dict[Criticality, dict[str, int]] = {
    Criticality.IMMEDIATE: {"validate": 2000, "refresh": 3000},
    Criticality.NORMAL: {"validate": 3000, "refresh": 5000},
    Criticality.LOW: {"validate": 5000, "refresh": 8000},
}
"""Per-tier timeouts in milliseconds for token validation and refresh."""

NETWORK_MULTIPLIERS: dict[NetworkQuality, float] = {
    NetworkQuality.EXCELLENT: 0.8,
    NetworkQuality.GOOD: 1.0,
    NetworkQuality.FAIR: 1.5,
    NetworkQuality.POOR: 2.0,
}

OAUTH_FLOW_TIMEOUT_S: float = 600.0
"""End-to-end budget for the interactive OAuth flow."""


def timeout_for(
    operation: str,
    criticality: Criticality = Criticality.NORMAL,
    quality: NetworkQuality = NetworkQuality.GOOD,
) -> float:
    """Return the timeout in seconds for *operation* (``validate``/``refresh``).

    Raises:
        KeyError: If *operation* is not a known operation name.
    """
    base_ms = TIMEOUTS_MS[Criticality(criticality)][operation]
    return base_ms * NETWORK_MULTIPLIERS[NetworkQuality(quality)] / 1000.0


def criticality_for(context: dict | None) -> Criticality:  # type: ignore[type-arg]
    """Derive the criticality tier from an operation context mapping."""
    context = context or {}
    if context.get("user_initiated") or context.get("is_streaming"):
        return Criticality.IMMEDIATE
    if context.get("background"):
        return Criticality.LOW
    return Criticality.NORMAL
