"""Unit tests for the token-mass circuit breaker."""

from __future__ import annotations

import pytest

from memrefine.engine import evaluate


class TestEvaluate:
    def test_reduction_below_threshold_is_accepted(self):
        decision = evaluate(6000, 5000, 0.9)
        assert decision.tripped is False
        assert decision.ratio == pytest.approx(5000 / 6000)

    def test_ratio_above_threshold_trips(self):
        decision = evaluate(6000, 5900, 0.9)
        assert decision.tripped is True
        assert decision.ratio == pytest.approx(0.98333, rel=1e-4)

    def test_ratio_equal_to_threshold_is_accepted(self):
        assert evaluate(1000, 900, 0.9).tripped is False

    def test_default_threshold_rejects_growth_only(self):
        assert evaluate(100, 100, 1.0).tripped is False
        assert evaluate(100, 101, 1.0).tripped is True

    def test_zero_pre_mass_never_trips(self):
        decision = evaluate(0, 250, 0.5)
        assert decision.tripped is False
        assert decision.ratio is None

    def test_as_dict_carries_figures(self):
        data = evaluate(200, 100, 0.75).as_dict()
        assert data == {
            "tripped": False,
            "pre_mass": 200,
            "post_mass": 100,
            "threshold": 0.75,
            "ratio": 0.5,
        }
