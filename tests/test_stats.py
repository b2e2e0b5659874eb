"""Tests for the statistics primitives."""

import math

import pytest

from pulse_analytics.core import stats
from pulse_analytics.core.exceptions import DegenerateInput, InsufficientData


class TestPearson:
    def test_perfect_positive_and_negative(self):
        assert stats.pearson([1, 2, 3, 4], [2, 4, 6, 8]) == pytest.approx(1.0)
        assert stats.pearson([1, 2, 3, 4], [8, 6, 4, 2]) == pytest.approx(-1.0)

    def test_zero_variance_returns_zero(self):
        assert stats.pearson([5, 5, 5, 5], [1, 2, 3, 4]) == 0.0
        assert stats.pearson([1, 2, 3, 4], [7, 7, 7, 7]) == 0.0

    def test_missing_pairs_are_dropped(self):
        xs = [1, 2, float("nan"), 3, 4]
        ys = [2, 4, 100, 6, float("nan")]
        # (1,2) (2,4) (3,6) survive
        assert stats.pearson(xs, ys) == pytest.approx(1.0)

    def test_fewer_than_three_pairs(self):
        with pytest.raises(InsufficientData):
            stats.pearson([1, 2], [3, 4])
        with pytest.raises(InsufficientData):
            stats.pearson([1, 2, float("nan")], [3, 4, 5])

    def test_length_mismatch(self):
        with pytest.raises(DegenerateInput):
            stats.pearson([1, 2, 3], [1, 2])


class TestSignificance:
    def test_bounds(self):
        assert stats.significance(0.0, 30) == pytest.approx(1.0)
        assert stats.significance(1.0, 30) == 0.0
        assert stats.significance(0.5, 2) == 1.0
        assert stats.significance(float("nan"), 30) == 1.0

    def test_monotone_in_r_and_n(self):
        p_weak = stats.significance(0.2, 30)
        p_strong = stats.significance(0.6, 30)
        assert p_strong < p_weak
        assert stats.significance(0.3, 100) < stats.significance(0.3, 20)

    def test_symmetric_in_sign(self):
        assert stats.significance(-0.4, 25) == pytest.approx(stats.significance(0.4, 25))

    def test_known_value(self):
        # r=0.5, n=12 -> t=1.826 with 10 dof, two-sided p ~ 0.098
        assert stats.significance(0.5, 12) == pytest.approx(0.098, abs=0.002)


class TestConfidence:
    def test_seeded_from_discovery_before_trials(self):
        score = stats.confidence(0.0, 0, p_value=0.01, sample_size=30)
        assert score == pytest.approx(100 * (0.7 * 0.99 + 0.3))

    def test_accuracy_and_trials_after_validation(self):
        assert stats.confidence(80.0, 50) == pytest.approx(0.7 * 80 + 0.3 * 100 * 0.5)
        assert stats.confidence(100.0, 500) == 100.0

    def test_nothing_known(self):
        assert stats.confidence(0.0, 0) == 0.0


def test_classify_strength():
    assert stats.classify_strength(0.85) == "strong"
    assert stats.classify_strength(-0.5) == "moderate"
    assert stats.classify_strength(0.25) == "weak"
    assert stats.classify_strength(0.05) == "very_weak"


class TestCompareBuckets:
    def test_change_and_direction(self):
        values = [100, 100, 100, 100, 120, 120]
        mask = [False, False, False, False, True, True]
        result = stats.compare_buckets(values, mask)
        assert result.in_bucket_n == 2
        assert result.out_bucket_n == 4
        assert result.change_pct == pytest.approx(20.0)
        assert result.r == pytest.approx(1.0)
        assert result.sample_size == 6

    def test_empty_side_raises(self):
        with pytest.raises(InsufficientData):
            stats.compare_buckets([1, 2, 3], [True, True, True])

    def test_non_finite_values_ignored(self):
        result = stats.compare_buckets([100, math.nan, 100, 150, 150], [False, True, False, True, True])
        assert result.in_bucket_n == 2
        assert result.in_mean == pytest.approx(150.0)
