"""
Tests — Status Classifier.

Covers:
    - first-match rule order (completed > critical > behind > at_risk > on_track)
    - deadline delta bands and progress-gap rules
    - tenant threshold overrides
    - expected progress from the phase window
"""

from datetime import date

import pytest

from capacity_insights.analytics.classifier import (
    DEFAULT_THRESHOLDS,
    RULES,
    ClassifierThresholds,
    classify,
    expected_progress,
)
from capacity_insights.analytics.types import BurnRateTrend, InsightStatus, TrendResult

FORECAST = date(2026, 3, 20)


def _trend(trend=BurnRateTrend.STABLE, forecast=FORECAST):
    return TrendResult(burn_rate_ist=10.0, burn_rate_plan=0.0, trend=trend,
                       forecast_completion_date=forecast, data_points=5)


NO_FORECAST = TrendResult(data_points=1)


# ═════════════════════════════════════════════════════════════════════════════
# RULE TABLE
# ═════════════════════════════════════════════════════════════════════════════

class TestRuleOrder:

    def test_rules_in_severity_order(self):
        assert [status for status, _ in RULES] == [
            InsightStatus.COMPLETED,
            InsightStatus.CRITICAL,
            InsightStatus.BEHIND,
            InsightStatus.AT_RISK,
        ]

    def test_full_progress_is_completed_regardless_of_trend(self):
        status = classify(progress_percent=100.0, deadline_delta_days=30,
                          trend=_trend(BurnRateTrend.DOWN))
        assert status is InsightStatus.COMPLETED

    def test_overbooked_is_completed(self):
        status = classify(progress_percent=125.0, deadline_delta_days=None, trend=NO_FORECAST,
                          expected_progress_percent=100.0)
        assert status is InsightStatus.COMPLETED

    def test_default_is_on_track(self):
        status = classify(progress_percent=40.0, deadline_delta_days=-10, trend=_trend())
        assert status is InsightStatus.ON_TRACK


class TestDeadlineDelta:

    @pytest.mark.parametrize("delta, expected", [
        (30, InsightStatus.CRITICAL),
        (8, InsightStatus.CRITICAL),
        (7, InsightStatus.BEHIND),
        (3, InsightStatus.BEHIND),
        (1, InsightStatus.BEHIND),
        (0, InsightStatus.AT_RISK),
        (-3, InsightStatus.AT_RISK),
        (-4, InsightStatus.ON_TRACK),
        (None, InsightStatus.ON_TRACK),
    ])
    def test_bands(self, delta, expected):
        assert classify(progress_percent=50.0, deadline_delta_days=delta,
                        trend=_trend()) is expected

    def test_scenario_three_days_late_is_behind(self):
        # burn 10 h/day, forecast day 8, deadline day 5
        status = classify(progress_percent=37.5, deadline_delta_days=3, trend=_trend())
        assert status is InsightStatus.BEHIND


class TestTrendAndProgressGap:

    def test_slowing_trend_is_at_risk(self):
        status = classify(progress_percent=50.0, deadline_delta_days=-20,
                          trend=_trend(BurnRateTrend.DOWN))
        assert status is InsightStatus.AT_RISK

    def test_slowing_and_trailing_is_behind(self):
        status = classify(progress_percent=30.0, deadline_delta_days=None,
                          trend=_trend(BurnRateTrend.DOWN, forecast=None),
                          expected_progress_percent=50.0)
        assert status is InsightStatus.BEHIND

    def test_no_forecast_far_behind_is_critical(self):
        status = classify(progress_percent=10.0, deadline_delta_days=None,
                          trend=NO_FORECAST, expected_progress_percent=60.0)
        assert status is InsightStatus.CRITICAL

    def test_no_forecast_small_gap_is_on_track(self):
        status = classify(progress_percent=40.0, deadline_delta_days=None,
                          trend=NO_FORECAST, expected_progress_percent=60.0)
        assert status is InsightStatus.ON_TRACK

    def test_gap_ignored_when_forecast_exists(self):
        status = classify(progress_percent=10.0, deadline_delta_days=-10,
                          trend=_trend(), expected_progress_percent=60.0)
        assert status is InsightStatus.ON_TRACK

    def test_missing_inputs_never_raise(self):
        status = classify(progress_percent=0.0, deadline_delta_days=None,
                          trend=NO_FORECAST, expected_progress_percent=None)
        assert status is InsightStatus.ON_TRACK


# ═════════════════════════════════════════════════════════════════════════════
# THRESHOLDS
# ═════════════════════════════════════════════════════════════════════════════

class TestThresholds:

    def test_defaults(self):
        assert DEFAULT_THRESHOLDS.critical_delay_days == 7
        assert DEFAULT_THRESHOLDS.near_miss_days == 3
        assert DEFAULT_THRESHOLDS.critical_progress_gap == 40.0
        assert DEFAULT_THRESHOLDS.behind_progress_gap == 15.0

    def test_from_settings_overrides_and_casts(self):
        thresholds = ClassifierThresholds.from_settings({
            "insight_thresholds": {"critical_delay_days": "3", "behind_progress_gap": 20},
        })
        assert thresholds.critical_delay_days == 3
        assert thresholds.behind_progress_gap == 20.0
        assert thresholds.near_miss_days == 3

    def test_from_settings_ignores_unknown_and_invalid(self):
        thresholds = ClassifierThresholds.from_settings({
            "insight_thresholds": {"bogus": 1, "near_miss_days": "soon"},
        })
        assert thresholds == DEFAULT_THRESHOLDS

    @pytest.mark.parametrize("settings", [None, {}, {"insight_thresholds": "strict"}])
    def test_from_settings_without_overrides(self, settings):
        assert ClassifierThresholds.from_settings(settings) == DEFAULT_THRESHOLDS

    def test_custom_delay_threshold(self):
        strict = ClassifierThresholds(critical_delay_days=3)
        assert classify(progress_percent=50.0, deadline_delta_days=5, trend=_trend(),
                        thresholds=strict) is InsightStatus.CRITICAL
        assert classify(progress_percent=50.0, deadline_delta_days=5,
                        trend=_trend()) is InsightStatus.BEHIND


class TestExpectedProgress:

    START, END = date(2026, 3, 1), date(2026, 3, 31)

    def test_halfway(self):
        assert expected_progress(self.START, self.END, date(2026, 3, 16)) == 50.0

    def test_clamped_before_start_and_after_deadline(self):
        assert expected_progress(self.START, self.END, date(2026, 2, 1)) == 0.0
        assert expected_progress(self.START, self.END, date(2026, 5, 1)) == 100.0

    @pytest.mark.parametrize("start, end", [
        (None, date(2026, 3, 31)),
        (date(2026, 3, 1), None),
        (date(2026, 3, 31), date(2026, 3, 1)),
        (date(2026, 3, 1), date(2026, 3, 1)),
    ])
    def test_undefined_window(self, start, end):
        assert expected_progress(start, end, date(2026, 3, 15)) is None
