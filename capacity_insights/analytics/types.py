"""
Enums and result dataclasses shared by the analytics domain.

All values here are plain Python objects so the calculations can be unit
tested without an app context. Persistence lives in
``capacity_insights.services.insight_service``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class InsightStatus(str, Enum):
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BEHIND = "behind"
    CRITICAL = "critical"
    COMPLETED = "completed"

    @property
    def severity(self) -> int:
        """Higher = worse. ``completed`` ranks below ``on_track``."""
        return _SEVERITY[self]


_SEVERITY = {
    InsightStatus.COMPLETED: 0,
    InsightStatus.ON_TRACK: 1,
    InsightStatus.AT_RISK: 2,
    InsightStatus.BEHIND: 3,
    InsightStatus.CRITICAL: 4,
}


class BurnRateTrend(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class DataQuality(str, Enum):
    GOOD = "good"
    LIMITED = "limited"
    INSUFFICIENT = "insufficient"


# ═════════════════════════════════════════════════════════════════════════════
# Data Classes
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SnapshotPoint:
    """One day of phase history. ``PhaseSnapshot`` rows satisfy the same shape."""
    snapshot_date: date
    ist_hours: float
    plan_hours: float = 0.0
    soll_hours: float = 0.0


@dataclass(frozen=True)
class TrendResult:
    burn_rate_ist: float | None = None
    burn_rate_plan: float | None = None
    trend: BurnRateTrend | None = None
    forecast_completion_date: date | None = None
    data_points: int = 0

    @property
    def has_forecast(self) -> bool:
        return self.forecast_completion_date is not None


@dataclass
class PhaseInsightData:
    """Everything derived for one phase on one day (texts excluded)."""
    tenant_id: int
    project_id: int
    phase_id: int
    phase_name: str
    insight_date: date
    status: InsightStatus
    trend: TrendResult
    soll_hours: float
    ist_hours: float
    plan_hours: float
    remaining_hours: float
    progress_percent: float
    expected_progress_percent: float | None
    deadline: date | None
    deadline_delta_days: int | None
    days_remaining: int | None
    capacity_gap_hours: float
    capacity_gap_days: float
    data_quality: DataQuality
    start_date: date | None = None
    description: str | None = None

    @property
    def has_outstanding_hours(self) -> bool:
        return self.remaining_hours > 0 and self.status is not InsightStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "phase_id": self.phase_id,
            "phase_name": self.phase_name,
            "insight_date": self.insight_date.isoformat(),
            "status": self.status.value,
            "burn_rate_ist": self.trend.burn_rate_ist,
            "burn_rate_plan": self.trend.burn_rate_plan,
            "burn_rate_trend": self.trend.trend.value if self.trend.trend else None,
            "forecast_completion_date": (
                self.trend.forecast_completion_date.isoformat()
                if self.trend.forecast_completion_date else None
            ),
            "deadline_delta_days": self.deadline_delta_days,
            "days_remaining": self.days_remaining,
            "progress_percent": self.progress_percent,
            "remaining_hours": self.remaining_hours,
            "capacity_gap_hours": self.capacity_gap_hours,
            "capacity_gap_days": self.capacity_gap_days,
            "data_quality": self.data_quality.value,
        }


@dataclass
class ProjectInsightData:
    tenant_id: int
    project_id: int
    project_name: str
    insight_date: date
    status: InsightStatus
    phases_count: int
    status_counts: dict[InsightStatus, int]
    overall_progress_percent: float | None
    total_soll_hours: float
    total_ist_hours: float
    total_remaining_hours: float
    latest_phase_deadline: date | None
    projected_completion_date: date | None
    project_deadline_delta: int | None
    forecast_incomplete: bool
    phases_without_forecast: int
    critical_phase_names: list[str] = field(default_factory=list)
    at_risk_phase_names: list[str] = field(default_factory=list)

    def count(self, status: InsightStatus) -> int:
        return self.status_counts.get(status, 0)

    @property
    def phases_at_risk(self) -> int:
        """Phases in any risk state (at_risk, behind, critical)."""
        return (self.count(InsightStatus.AT_RISK)
                + self.count(InsightStatus.BEHIND)
                + self.count(InsightStatus.CRITICAL))

    def to_summary_row(self, generated_at: datetime | None = None) -> "ProjectSummaryRow":
        return ProjectSummaryRow(
            project_id=self.project_id,
            project_name=self.project_name,
            status=self.status,
            phases_at_risk=self.phases_at_risk,
            phases_critical=self.count(InsightStatus.CRITICAL),
            overall_progress_percent=self.overall_progress_percent,
            generated_at=generated_at,
        )


@dataclass
class RiskProject:
    id: int
    name: str
    status: InsightStatus
    phases_at_risk: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "phases_at_risk": self.phases_at_risk,
        }


@dataclass
class TenantSummaryData:
    tenant_id: int
    total_projects: int = 0
    projects_on_track: int = 0
    projects_at_risk: int = 0
    critical_phases_count: int = 0
    average_progress_percent: float | None = None
    burn_rate_trend: BurnRateTrend | None = None
    top_risk_projects: list[RiskProject] = field(default_factory=list)
    last_updated_at: datetime | None = None


@dataclass
class ProjectSummaryRow:
    """Latest known state of one project, as read back for the tenant roll-up."""
    project_id: int
    project_name: str
    status: InsightStatus
    phases_at_risk: int
    phases_critical: int
    overall_progress_percent: float | None
    generated_at: datetime | None = None
