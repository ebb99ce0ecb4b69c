"""
Unit tests for the SpO2 estimator, derived metrics and rule-based insights.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest

from fingertip_ppg.insights import RuleBasedInsights, gather_insights
from fingertip_ppg.metrics import (
    HealthProfile,
    HeartRateZone,
    health_score,
    heart_rate_zone,
    rmssd,
)
from fingertip_ppg.oxygen import OxygenEstimator, combine_spo2, pulsatility_index


# ---------------------------------------------------------------------------
# Oxygen estimator tests
# ---------------------------------------------------------------------------

class TestOxygenEstimator:

    def test_pulsatility_index(self):
        assert pulsatility_index([1.0, 3.0]) == pytest.approx(1.0)
        assert pulsatility_index([]) == 0.0
        assert pulsatility_index([-1.0, 1.0]) == 0.0

    def test_documented_formula(self):
        # r1 = 1.5 -> 72.5, r2 = 2.0 -> 70.0, equal weights -> 71.25 -> clamped
        assert combine_spo2(0.6, 0.4, 0.3, 1.0, 1.0, 1.0) == 85

    def test_equal_indices_blend(self):
        # r1 = r2 = 1 -> 85 and 87
        assert combine_spo2(0.5, 0.5, 0.5, 1.0, 1.0, 1.0) == 86

    def test_weights_follow_quality(self):
        # only the red/blue estimate carries weight
        assert combine_spo2(0.5, 0.5, 0.5, 1.0, 0.0, 1.0) == 87

    def test_zero_denominator_gets_no_weight(self):
        # r2 = 0.6 -> 104 - 10.2 = 93.8
        assert combine_spo2(0.3, 0.0, 0.5, 1.0, 1.0, 1.0) == 94

    def test_no_weight_returns_default(self):
        assert combine_spo2(0.5, 0.5, 0.5, 0.0, 1.0, 1.0) == 97

    def test_clamped_high(self):
        assert combine_spo2(0.01, 1.0, 1.0, 1.0, 1.0, 1.0) == 100

    def test_needs_thirty_samples(self):
        est = OxygenEstimator()
        short = np.ones(29)
        assert est.estimate(short, short, short) is None

    def test_estimate_in_range(self):
        t = np.arange(150) / 30.0
        wave = np.sin(2 * np.pi * 1.2 * t)
        spo2 = OxygenEstimator().estimate(200 + 10 * wave, 100 + 20 * wave, 40 + 4 * wave)
        assert isinstance(spo2, int)
        assert 85 <= spo2 <= 100


# ---------------------------------------------------------------------------
# Metrics tests
# ---------------------------------------------------------------------------

class TestMetrics:

    def test_zone_default_age(self):
        # max HR 220 - 30 = 190
        assert heart_rate_zone(70) is HeartRateZone.REST
        assert heart_rate_zone(100) is HeartRateZone.VERY_LIGHT
        assert heart_rate_zone(150) is HeartRateZone.MODERATE
        assert heart_rate_zone(180) is HeartRateZone.MAXIMUM

    def test_zone_uses_profile(self):
        profile = HealthProfile(max_hr=200)
        assert heart_rate_zone(100, profile) is HeartRateZone.VERY_LIGHT
        assert heart_rate_zone(175, HealthProfile(age=60)) is HeartRateZone.MAXIMUM

    def test_zone_without_rate(self):
        assert heart_rate_zone(None) is None
        assert heart_rate_zone(0) is None

    def test_rmssd(self):
        assert rmssd([72]) == 0.0
        assert rmssd([60, 60, 60]) == 0.0
        assert rmssd([60, 75]) == pytest.approx(200.0)

    def test_health_score(self):
        assert health_score(70, 98) == 100
        assert health_score(110, 91) == 55
        assert health_score(30, 80) == 35


# ---------------------------------------------------------------------------
# Insights tests
# ---------------------------------------------------------------------------

class TestRuleBasedInsights:

    def test_health_insights(self):
        insight = RuleBasedInsights().health_insights(72, 98)
        assert insight.score == 100
        assert len(insight.insights) == 3
        assert insight.risk_factors == []

    def test_risk_factors(self):
        profile = HealthProfile(risk_factors=["Smoker"])
        insight = RuleBasedInsights().health_insights(110, 90, profile)
        assert "Smoker" in insight.risk_factors
        assert len(insight.risk_factors) == 3

    def test_tips(self):
        tips = RuleBasedInsights().health_tips(72, 98)
        assert [t.category for t in tips] == ["Exercise", "Nutrition", "Lifestyle"]

    def test_patterns_need_three_readings(self):
        analysis = RuleBasedInsights().analyze_patterns([70, 72])
        assert analysis.average is None
        assert analysis.trends[0].direction == "stable"

    def test_increasing_trend(self):
        analysis = RuleBasedInsights().analyze_patterns([60, 60, 62, 75, 80, 82])
        assert analysis.trends[0].direction == "increasing"
        assert analysis.minimum == 60
        assert analysis.maximum == 82

    def test_outlier_reported(self):
        analysis = RuleBasedInsights().analyze_patterns([70] * 9 + [120])
        assert analysis.average == pytest.approx(75.0)
        assert analysis.std_dev == pytest.approx(15.0)
        assert len(analysis.anomalies) == 1

    def test_gather_skips_patterns_with_short_history(self):
        provider = RuleBasedInsights()
        assert gather_insights(provider, 72, 98, history=[70] * 5).patterns is None
        assert gather_insights(provider, 72, 98, history=[70] * 6).patterns is not None
