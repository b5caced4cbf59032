"""Unit tests for the criticality-tiered auth timeouts."""

from __future__ import annotations

import pytest

from stream_aggregator.core.timeouts import Criticality, NetworkQuality, criticality_for, timeout_for


class TestTimeoutFor:
    @pytest.mark.parametrize(
        ("operation", "criticality", "expected"),
        [
            ("validate", Criticality.IMMEDIATE, 2.0),
            ("refresh", Criticality.IMMEDIATE, 3.0),
            ("refresh", Criticality.NORMAL, 5.0),
            ("validate", Criticality.LOW, 5.0),
        ],
    )
    def test_tiers(self, operation, criticality, expected) -> None:
        assert timeout_for(operation, criticality) == pytest.approx(expected)

    def test_network_quality_scales(self) -> None:
        assert timeout_for("refresh", "low", NetworkQuality.POOR) == pytest.approx(16.0)
        assert timeout_for("validate", "normal", "excellent") == pytest.approx(2.4)

    def test_unknown_operation(self) -> None:
        with pytest.raises(KeyError):
            timeout_for("revoke")


class TestCriticalityFor:
    @pytest.mark.parametrize(
        ("context", "expected"),
        [
            ({"user_initiated": True}, Criticality.IMMEDIATE),
            ({"is_streaming": True, "background": True}, Criticality.IMMEDIATE),
            ({"background": True}, Criticality.LOW),
            (None, Criticality.NORMAL),
        ],
    )
    def test_context(self, context, expected) -> None:
        assert criticality_for(context) is expected
