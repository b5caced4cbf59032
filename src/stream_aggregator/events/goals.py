"""Per-platform donation goal accumulation.

Gifts contribute ``unit_amount * gift_count`` (the event's ``amount``): a
100-bit cheer adds 100.  Paypiggy events add a configured equivalent in the
goal's currency.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from stream_aggregator.config.platforms import GoalsConfig

logger = logging.getLogger(__name__)


@dataclass
class GoalState:
    current: float
    target: float
    currency: str

    @property
    def percentage(self) -> float:
        return round(self.current / self.target * 100, 1) if self.target > 0 else 0.0


_DEFAULTS: dict[str, tuple[float, str]] = {
    "tiktok": (1000, "coins"),
    "youtube": (1.00, "dollars"),
    "twitch": (100, "bits"),
}


def _invalid_platform(platform: Any) -> dict[str, Any]:
    return {
        "success": False,
        "error": f"Invalid platform: {platform}. Supported platforms: tiktok, youtube, twitch",
    }


class GoalTracker:
    """Track progress toward each platform's donation goal.

    Args:
        goals: Goal configuration; enabled platforms take their configured
            target and currency, the rest keep the defaults.
    """

    def __init__(self, goals: GoalsConfig | None = None) -> None:
        self.goals = goals or GoalsConfig()
        self.state: dict[str, GoalState] = {}
        self.reset()

    def reset(self) -> None:
        self.state = {}
        for platform, (target, currency) in _DEFAULTS.items():
            if getattr(self.goals, f"{platform}_goal_enabled", False):
                target = getattr(self.goals, f"{platform}_goal_target", target) or target
                currency = getattr(self.goals, f"{platform}_goal_currency", currency) or currency
            self.state[platform] = GoalState(current=0, target=target, currency=currency)

    def add_donation(self, platform: Any, amount: Any) -> dict[str, Any]:
        """Add *amount* to *platform*'s goal.

        Returns:
            ``{success, current, new_total, target, currency, percentage,
            goal_completed}`` on success, ``{success: False, error}`` for an
            unknown platform or a non-positive amount.
        """
        if not isinstance(platform, str) or platform.lower() not in self.state:
            return _invalid_platform(platform)
        try:
            value = float(amount)
        except (TypeError, ValueError):
            value = math.nan
        if isinstance(amount, bool) or not math.isfinite(value) or value <= 0:
            return {"success": False, "error": f"Donation amount must be positive number, received: {amount}"}

        goal = self.state[platform.lower()]
        previous = goal.current
        goal.current += value
        logger.debug("goals: %s goal updated — %s → %s %s", platform, previous, goal.current, goal.currency)
        return {
            "success": True,
            "current": previous,
            "new_total": goal.current,
            "target": goal.target,
            "currency": goal.currency,
            "percentage": goal.percentage,
            "goal_completed": goal.current >= goal.target,
        }

    def add_gift(self, event: Mapping[str, Any]) -> dict[str, Any]:
        """Add a canonical gift event's value (``unit_amount * gift_count``)."""
        unit_amount = event.get("unit_amount")
        gift_count = event.get("gift_count", 1)
        if isinstance(unit_amount, (int, float)) and isinstance(gift_count, (int, float)):
            amount = unit_amount * gift_count
        else:
            amount = event.get("amount")
        return self.add_donation(event.get("platform"), amount)

    def paypiggy_value(self, platform: str) -> float | None:
        return {
            "tiktok": self.goals.tiktok_paypiggy_equivalent,
            "youtube": self.goals.youtube_paypiggy_price,
            "twitch": self.goals.twitch_paypiggy_equivalent,
        }.get(platform.lower() if isinstance(platform, str) else "")

    def add_paypiggy(self, platform: Any) -> dict[str, Any]:
        value = self.paypiggy_value(platform) if isinstance(platform, str) else None
        if value is None:
            return _invalid_platform(platform)
        result = self.add_donation(platform, value)
        if result["success"]:
            result["paypiggy_value"] = value
        return result

    def get_goal(self, platform: str) -> GoalState | None:
        return self.state.get(platform.lower())

    def format_goal(self, platform: str) -> str:
        goal = self.state.get(platform.lower())
        if goal is None:
            return ""
        if goal.currency == "dollars":
            return f"${goal.current:.2f}/${goal.target:.2f}"
        return f"{goal.current:g}/{goal.target:g} {goal.currency}"
