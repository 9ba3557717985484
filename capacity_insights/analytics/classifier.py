"""
Status Classifier — first-match rule table.

Rules (evaluated in order, first match wins):
    1. completed  progress >= 100 %
    2. critical   forecast later than deadline by more than critical_delay_days,
                  or no forecast and progress trails the elapsed-time
                  expectation by >= critical_progress_gap points
    3. behind     forecast later than deadline within critical_delay_days,
                  or trend down and progress trails by >= behind_progress_gap
    4. at_risk    trend down, or forecast inside the near-miss band
                  (-near_miss_days <= delta <= 0)
    5. on_track   otherwise

Thresholds are tunable per tenant via ``Tenant.settings["insight_thresholds"]``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from datetime import date
from typing import Callable

from capacity_insights.analytics.types import BurnRateTrend, InsightStatus, TrendResult

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Threshold Configuration
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ClassifierThresholds:
    critical_delay_days: int = 7
    near_miss_days: int = 3
    critical_progress_gap: float = 40.0
    behind_progress_gap: float = 15.0

    @classmethod
    def from_settings(cls, settings: dict | None) -> "ClassifierThresholds":
        """Build thresholds from a tenant settings dict, ignoring unknown/invalid keys."""
        overrides = (settings or {}).get("insight_thresholds") or {}
        if not isinstance(overrides, dict):
            return DEFAULT_THRESHOLDS
        known = {f.name for f in fields(cls)}
        values = {}
        for key, raw in overrides.items():
            if key not in known:
                continue
            try:
                values[key] = int(raw) if key.endswith("_days") else float(raw)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid insight threshold %s=%r", key, raw)
        return replace(DEFAULT_THRESHOLDS, **values)


DEFAULT_THRESHOLDS = ClassifierThresholds()


@dataclass(frozen=True)
class ClassificationInput:
    progress_percent: float
    deadline_delta_days: int | None
    trend: TrendResult
    expected_progress_percent: float | None = None

    @property
    def progress_gap(self) -> float | None:
        """How far actual progress trails the time-elapsed expectation."""
        if self.expected_progress_percent is None:
            return None
        return self.expected_progress_percent - self.progress_percent


# ═════════════════════════════════════════════════════════════════════════════
# Rules
# ═════════════════════════════════════════════════════════════════════════════

def _is_completed(c: ClassificationInput, t: ClassifierThresholds) -> bool:
    return c.progress_percent >= 100


def _is_critical(c: ClassificationInput, t: ClassifierThresholds) -> bool:
    if c.deadline_delta_days is not None and c.deadline_delta_days > t.critical_delay_days:
        return True
    gap = c.progress_gap
    return not c.trend.has_forecast and gap is not None and gap >= t.critical_progress_gap


def _is_behind(c: ClassificationInput, t: ClassifierThresholds) -> bool:
    if c.deadline_delta_days is not None and 0 < c.deadline_delta_days <= t.critical_delay_days:
        return True
    gap = c.progress_gap
    return c.trend.trend is BurnRateTrend.DOWN and gap is not None and gap >= t.behind_progress_gap


def _is_at_risk(c: ClassificationInput, t: ClassifierThresholds) -> bool:
    if c.trend.trend is BurnRateTrend.DOWN:
        return True
    return c.deadline_delta_days is not None and -t.near_miss_days <= c.deadline_delta_days <= 0


RULES: list[tuple[InsightStatus, Callable[[ClassificationInput, ClassifierThresholds], bool]]] = [
    (InsightStatus.COMPLETED, _is_completed),
    (InsightStatus.CRITICAL, _is_critical),
    (InsightStatus.BEHIND, _is_behind),
    (InsightStatus.AT_RISK, _is_at_risk),
]


def classify(
    *,
    progress_percent: float,
    deadline_delta_days: int | None,
    trend: TrendResult,
    expected_progress_percent: float | None = None,
    thresholds: ClassifierThresholds = DEFAULT_THRESHOLDS,
) -> InsightStatus:
    """Return the first matching status, ``on_track`` if no rule fires."""
    c = ClassificationInput(
        progress_percent=progress_percent,
        deadline_delta_days=deadline_delta_days,
        trend=trend,
        expected_progress_percent=expected_progress_percent,
    )
    for status, rule in RULES:
        if rule(c, thresholds):
            return status
    return InsightStatus.ON_TRACK


def expected_progress(start: date | None, deadline: date | None, as_of: date) -> float | None:
    """Share of the phase's calendar window already elapsed, in percent (0..100)."""
    if start is None or deadline is None or deadline <= start:
        return None
    elapsed = (as_of - start).days
    total = (deadline - start).days
    return round(min(100.0, max(0.0, elapsed / total * 100)), 1)
