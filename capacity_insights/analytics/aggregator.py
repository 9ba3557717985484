"""
Insight Aggregator — phase → project → tenant roll-ups.

Pure functions; the persistence side lives in
``capacity_insights.services.insight_service``.
"""

from __future__ import annotations

from collections import Counter
from datetime import date
from typing import Iterable, Sequence

from capacity_insights.analytics import trend as trend_engine
from capacity_insights.analytics.classifier import (
    DEFAULT_THRESHOLDS,
    ClassifierThresholds,
    classify,
    expected_progress,
)
from capacity_insights.analytics.types import (
    BurnRateTrend,
    InsightStatus,
    PhaseInsightData,
    ProjectInsightData,
    ProjectSummaryRow,
    RiskProject,
    TenantSummaryData,
)

TOP_RISK_PROJECTS = 3
RISK_STATUSES = (InsightStatus.AT_RISK, InsightStatus.BEHIND, InsightStatus.CRITICAL)


# ── Phase ────────────────────────────────────────────────────────────────

def build_phase_insight(
    *,
    tenant_id: int,
    project_id: int,
    phase,
    history: Sequence,
    as_of: date,
    thresholds: ClassifierThresholds = DEFAULT_THRESHOLDS,
) -> PhaseInsightData:
    """Derive trend, forecast, progress and status for one phase.

    ``phase`` needs id, name, start_date, end_date, budget_hours.
    ``history`` is the phase's snapshot list (any order).
    """
    points = sorted(history, key=lambda s: s.snapshot_date)
    latest = points[-1] if points else None

    soll = float(latest.soll_hours if latest else (phase.budget_hours or 0.0))
    ist = float(latest.ist_hours if latest else 0.0)
    plan = float(latest.plan_hours if latest else 0.0)
    remaining = max(0.0, soll - ist)
    progress = round(ist / soll * 100, 1) if soll > 0 else 0.0

    result = trend_engine.compute_trend(points, as_of=as_of)

    deadline = phase.end_date
    deadline_delta = None
    if deadline is not None and result.forecast_completion_date is not None:
        deadline_delta = (result.forecast_completion_date - deadline).days
    days_remaining = (deadline - as_of).days if deadline is not None else None

    expected = expected_progress(phase.start_date, deadline, as_of)
    status = classify(
        progress_percent=progress,
        deadline_delta_days=deadline_delta,
        trend=result,
        expected_progress_percent=expected,
        thresholds=thresholds,
    )

    gap = trend_engine.capacity_gap(remaining_hours=remaining, plan_hours=plan, ist_hours=ist)

    return PhaseInsightData(
        tenant_id=tenant_id,
        project_id=project_id,
        phase_id=phase.id,
        phase_name=phase.name,
        insight_date=as_of,
        status=status,
        trend=result,
        soll_hours=soll,
        ist_hours=ist,
        plan_hours=plan,
        remaining_hours=round(remaining, 2),
        progress_percent=progress,
        expected_progress_percent=expected,
        deadline=deadline,
        deadline_delta_days=deadline_delta,
        days_remaining=days_remaining,
        capacity_gap_hours=round(gap, 2),
        capacity_gap_days=trend_engine.capacity_gap_days(gap),
        data_quality=trend_engine.data_quality(result.data_points),
        start_date=phase.start_date,
        description=getattr(phase, "description", None),
    )


# ── Project ──────────────────────────────────────────────────────────────

def weighted_progress(phases: Sequence[PhaseInsightData]) -> float | None:
    """Budget-weighted mean of phase progress, each phase capped at 100 %."""
    if not phases:
        return None
    total_soll = sum(p.soll_hours for p in phases)
    if total_soll <= 0:
        return round(sum(min(p.progress_percent, 100.0) for p in phases) / len(phases), 1)
    weighted = sum(p.soll_hours * min(p.progress_percent, 100.0) for p in phases)
    return round(weighted / total_soll, 1)


def worst_status(statuses: Iterable[InsightStatus]) -> InsightStatus:
    statuses = list(statuses)
    if not statuses:
        return InsightStatus.ON_TRACK
    return max(statuses, key=lambda s: s.severity)


def build_project_insight(
    *,
    tenant_id: int,
    project_id: int,
    project_name: str,
    insight_date: date,
    phases: Sequence[PhaseInsightData],
    phases_failed: int = 0,
) -> ProjectInsightData:
    """Roll up already-built phase insights of one project.

    ``phases_failed`` counts phases whose insight could not be built this run;
    they have no forecast, so the projected completion stays open.
    """
    counts = Counter(p.status for p in phases)

    outstanding = [p for p in phases if p.has_outstanding_hours]
    without_forecast = [p for p in outstanding if not p.trend.has_forecast]
    forecasts = [p.trend.forecast_completion_date for p in (outstanding or phases)
                 if p.trend.has_forecast]
    if without_forecast or phases_failed:
        projected = None
    else:
        projected = max(forecasts) if forecasts else None

    deadlines = [p.deadline for p in phases if p.deadline is not None]
    latest_deadline = max(deadlines) if deadlines else None
    delta = (projected - latest_deadline).days if projected and latest_deadline else None

    return ProjectInsightData(
        tenant_id=tenant_id,
        project_id=project_id,
        project_name=project_name,
        insight_date=insight_date,
        status=worst_status(counts.elements()),
        phases_count=len(phases),
        status_counts=dict(counts),
        overall_progress_percent=weighted_progress(phases),
        total_soll_hours=round(sum(p.soll_hours for p in phases), 2),
        total_ist_hours=round(sum(p.ist_hours for p in phases), 2),
        total_remaining_hours=round(sum(p.remaining_hours for p in phases), 2),
        latest_phase_deadline=latest_deadline,
        projected_completion_date=projected,
        project_deadline_delta=delta,
        forecast_incomplete=bool(without_forecast) or phases_failed > 0,
        phases_without_forecast=len(without_forecast) + phases_failed,
        critical_phase_names=[p.phase_name for p in phases
                              if p.status is InsightStatus.CRITICAL],
        at_risk_phase_names=[p.phase_name for p in phases
                             if p.status in (InsightStatus.AT_RISK, InsightStatus.BEHIND)],
    )


# ── Tenant ───────────────────────────────────────────────────────────────

def majority_trend(trends: Iterable[BurnRateTrend | None]) -> BurnRateTrend | None:
    """Most frequent trend; a tie for first place yields ``stable``."""
    counts = Counter(t for t in trends if t is not None)
    if not counts:
        return None
    ranked = counts.most_common()
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return BurnRateTrend.STABLE
    return ranked[0][0]


def top_risk_projects(rows: Sequence[ProjectSummaryRow],
                      limit: int = TOP_RISK_PROJECTS) -> list[RiskProject]:
    risky = [r for r in rows if r.status in RISK_STATUSES]
    risky.sort(key=lambda r: (-r.status.severity, -r.phases_at_risk, r.project_id))
    return [
        RiskProject(id=r.project_id, name=r.project_name,
                    status=r.status, phases_at_risk=r.phases_at_risk)
        for r in risky[:limit]
    ]


def build_tenant_summary(
    *,
    tenant_id: int,
    rows: Sequence[ProjectSummaryRow],
    phase_trends: Iterable[BurnRateTrend | None] = (),
    limit: int = TOP_RISK_PROJECTS,
) -> TenantSummaryData:
    """Dashboard aggregate over the latest insight of every project."""
    if not rows:
        return TenantSummaryData(tenant_id=tenant_id)

    progresses = [r.overall_progress_percent for r in rows
                  if r.overall_progress_percent is not None]
    stamps = [r.generated_at for r in rows if r.generated_at is not None]

    return TenantSummaryData(
        tenant_id=tenant_id,
        total_projects=len(rows),
        projects_on_track=sum(1 for r in rows if r.status is InsightStatus.ON_TRACK),
        projects_at_risk=sum(1 for r in rows if r.status in RISK_STATUSES),
        critical_phases_count=sum(r.phases_critical for r in rows),
        average_progress_percent=(
            round(sum(progresses) / len(progresses), 1) if progresses else None
        ),
        burn_rate_trend=majority_trend(phase_trends),
        top_risk_projects=top_risk_projects(rows, limit),
        last_updated_at=max(stamps) if stamps else None,
    )
