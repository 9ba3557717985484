"""
Trend & Forecast Engine.

Derives the IST burn rate, its direction and a completion forecast from a
phase's snapshot history. Days are calendar days throughout.

Usage:
    from capacity_insights.analytics.trend import compute_trend
    result = compute_trend(snapshots)               # as_of = newest snapshot
    result = compute_trend(snapshots, as_of=today)
"""

from __future__ import annotations

import math
from datetime import date, timedelta
from typing import Sequence

from capacity_insights.analytics.types import BurnRateTrend, DataQuality, TrendResult

# ── Tunables ─────────────────────────────────────────────────────────────
MIN_SNAPSHOTS = 2
REGRESSION_MIN_POINTS = 4          # below this use (last - first) / days
TREND_TOLERANCE = 0.10             # relative change for up / down
GOOD_DATA_POINTS = 5
LIMITED_DATA_POINTS = 3
HOURS_PER_PERSON_DAY = 8.0


def compute_trend(history: Sequence, as_of: date | None = None,
                  *, tolerance: float = TREND_TOLERANCE) -> TrendResult:
    """
    Compute burn rate, trend and forecast for one phase.

    Args:
        history: Snapshots (anything with snapshot_date, ist_hours, plan_hours,
                 soll_hours). Order does not matter; they are sorted here.
        as_of: Forecast anchor. Defaults to the newest snapshot date.
        tolerance: Relative change needed for an ``up`` / ``down`` trend.

    Returns:
        TrendResult. With fewer than two snapshots every value is None.
    """
    points = sorted(history, key=lambda s: s.snapshot_date)
    if len(points) < MIN_SNAPSHOTS:
        return TrendResult(data_points=len(points))

    first, last = points[0], points[-1]
    span_days = (last.snapshot_date - first.snapshot_date).days
    if span_days <= 0:
        return TrendResult(data_points=len(points))

    burn_ist = _burn_rate(points, span_days)
    burn_plan = ((last.plan_hours or 0.0) - (first.plan_hours or 0.0)) / span_days
    anchor = as_of or last.snapshot_date

    return TrendResult(
        burn_rate_ist=round(burn_ist, 2),
        burn_rate_plan=round(burn_plan, 2),
        trend=_classify_trend(points, tolerance),
        forecast_completion_date=forecast_completion(
            remaining_hours=(last.soll_hours or 0.0) - (last.ist_hours or 0.0),
            burn_rate=burn_ist,
            as_of=anchor,
        ),
        data_points=len(points),
    )


def forecast_completion(*, remaining_hours: float, burn_rate: float | None,
                        as_of: date) -> date | None:
    """Project the completion date.

    Already at (or over) budget → ``as_of``. No positive burn → None.
    """
    if remaining_hours <= 0:
        return as_of
    if burn_rate is None or burn_rate <= 0:
        return None
    return as_of + timedelta(days=math.ceil(remaining_hours / burn_rate))


def data_quality(data_points: int) -> DataQuality:
    if data_points >= GOOD_DATA_POINTS:
        return DataQuality.GOOD
    if data_points >= LIMITED_DATA_POINTS:
        return DataQuality.LIMITED
    return DataQuality.INSUFFICIENT


def capacity_gap(*, remaining_hours: float, plan_hours: float, ist_hours: float) -> float:
    """Outstanding hours not yet covered by planned allocations (never negative)."""
    still_planned = max(0.0, plan_hours - ist_hours)
    return max(0.0, remaining_hours - still_planned)


def capacity_gap_days(gap_hours: float) -> float:
    return round(gap_hours / HOURS_PER_PERSON_DAY, 1)


# ── internals ────────────────────────────────────────────────────────────

def _burn_rate(points: Sequence, span_days: int) -> float:
    if len(points) < REGRESSION_MIN_POINTS:
        return ((points[-1].ist_hours or 0.0) - (points[0].ist_hours or 0.0)) / span_days

    origin = points[0].snapshot_date
    xs = [(p.snapshot_date - origin).days for p in points]
    ys = [p.ist_hours or 0.0 for p in points]
    n = len(points)
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    sxx = sum((x - mean_x) ** 2 for x in xs)
    if sxx == 0:
        return 0.0
    sxy = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    return sxy / sxx


def _interval_rates(points: Sequence) -> list[float]:
    rates = []
    for prev, cur in zip(points, points[1:]):
        days = (cur.snapshot_date - prev.snapshot_date).days
        if days > 0:
            rates.append(((cur.ist_hours or 0.0) - (prev.ist_hours or 0.0)) / days)
    return rates


def _classify_trend(points: Sequence, tolerance: float) -> BurnRateTrend:
    """Compare the mean daily rate of the newest third against the oldest third."""
    rates = _interval_rates(points)
    if len(rates) < 2:
        return BurnRateTrend.STABLE

    k = max(1, len(rates) // 3)
    earlier = sum(rates[:k]) / k
    recent = sum(rates[-k:]) / k

    band = abs(earlier) * tolerance
    if recent > earlier + band:
        return BurnRateTrend.UP
    if recent < earlier - band:
        return BurnRateTrend.DOWN
    return BurnRateTrend.STABLE
