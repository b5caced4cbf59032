"""Unit tests for GoalTracker."""

from __future__ import annotations

import pytest

from stream_aggregator.config.platforms import GoalsConfig
from stream_aggregator.events.goals import GoalTracker
from stream_aggregator.events.twitch import normalize_twitch_event


class TestDefaults:
    def test_default_targets(self) -> None:
        tracker = GoalTracker()

        assert tracker.get_goal("tiktok").target == 1000
        assert tracker.get_goal("youtube").currency == "dollars"
        assert tracker.get_goal("TWITCH").currency == "bits"

    def test_enabled_goal_uses_configured_target(self) -> None:
        tracker = GoalTracker(GoalsConfig(twitch_goal_enabled=True, twitch_goal_target=500))

        assert tracker.get_goal("twitch").target == 500

    def test_disabled_goal_keeps_default(self) -> None:
        tracker = GoalTracker(GoalsConfig(twitch_goal_target=500))

        assert tracker.get_goal("twitch").target == 100


class TestDonations:
    def test_hundred_bit_cheer_adds_hundred(self) -> None:
        tracker = GoalTracker(GoalsConfig(twitch_goal_enabled=True, twitch_goal_target=1000))
        cheer = normalize_twitch_event("channel.cheer", {"user_id": "1", "user_name": "a", "bits": 100})

        result = tracker.add_gift(cheer)

        assert result["success"] is True
        assert result["new_total"] == 100
        assert result["new_total"] != 10000
        assert result["percentage"] == 10.0
        assert result["goal_completed"] is False

    def test_gift_value_is_unit_times_count(self) -> None:
        tracker = GoalTracker()

        result = tracker.add_gift({"platform": "tiktok", "unit_amount": 5, "gift_count": 3, "amount": 999})

        assert result["new_total"] == 15

    def test_amount_used_without_unit_amount(self) -> None:
        tracker = GoalTracker()

        assert tracker.add_gift({"platform": "youtube", "amount": 2.5})["new_total"] == 2.5

    def test_goal_completion(self) -> None:
        tracker = GoalTracker()

        tracker.add_donation("twitch", 60)
        result = tracker.add_donation("twitch", 40)

        assert result["current"] == 60
        assert result["goal_completed"] is True
        assert result["percentage"] == 100.0

    @pytest.mark.parametrize("amount", [0, -5, "abc", None, True, float("inf")])
    def test_invalid_amount(self, amount) -> None:
        result = GoalTracker().add_donation("tiktok", amount)

        assert result["success"] is False
        assert result["error"].startswith("Donation amount must be positive number")

    @pytest.mark.parametrize("platform", ["kick", None, 3])
    def test_invalid_platform(self, platform) -> None:
        result = GoalTracker().add_donation(platform, 10)

        assert result["success"] is False
        assert result["error"].startswith(f"Invalid platform: {platform}")

    def test_numeric_string_amount_accepted(self) -> None:
        assert GoalTracker().add_donation("tiktok", "25")["new_total"] == 25


class TestPaypiggy:
    @pytest.mark.parametrize(("platform", "value"), [("tiktok", 50), ("youtube", 4.99), ("twitch", 350)])
    def test_paypiggy_equivalents(self, platform, value) -> None:
        result = GoalTracker().add_paypiggy(platform)

        assert result["paypiggy_value"] == value
        assert result["new_total"] == pytest.approx(value)

    def test_unknown_platform(self) -> None:
        assert GoalTracker().add_paypiggy("kick")["success"] is False


class TestFormatting:
    def test_dollar_goal(self) -> None:
        tracker = GoalTracker()
        tracker.add_donation("youtube", 0.5)

        assert tracker.format_goal("youtube") == "$0.50/$1.00"

    def test_unit_goal(self) -> None:
        tracker = GoalTracker()
        tracker.add_donation("tiktok", 250)

        assert tracker.format_goal("tiktok") == "250/1000 coins"

    def test_reset(self) -> None:
        tracker = GoalTracker()
        tracker.add_donation("tiktok", 250)

        tracker.reset()

        assert tracker.get_goal("tiktok").current == 0
        assert tracker.format_goal("kick") == ""
