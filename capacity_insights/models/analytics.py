"""
Capacity Insights
Analytics models — snapshots, insights, tenant summary, pipeline runs.

Models:
    - PhaseSnapshot: Append-only daily point-in-time capture of a phase
    - PhaseInsight: Derived per-phase analysis for one day
    - ProjectInsight: Phase insights rolled up to the project
    - TenantInsightSummary: One dashboard row per tenant, replaced every run
    - PipelineRun: Run report + state machine for every pipeline invocation
"""

from datetime import datetime, timezone

from capacity_insights.models import db
from capacity_insights.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

INSIGHT_STATUSES = {"on_track", "at_risk", "behind", "critical", "completed"}
BURN_RATE_TRENDS = {"up", "down", "stable"}
DATA_QUALITIES = {"good", "limited", "insufficient"}
TEXT_SOURCES = {"llm", "fallback"}

RUN_TYPES = {"snapshots", "insights", "refresh"}
RUN_TRIGGERS = {"cron", "scheduler", "cli", "manual"}
RUN_STATUSES = {"pending", "running", "completed", "completed_with_errors"}


def _iso(value):
    return value.isoformat() if value else None


class PhaseSnapshot(TenantModel):
    """
    Daily capture of a phase's hours.

    Rows are never updated. A second capture for the same
    (phase_id, snapshot_date) is rejected by the unique constraint.
    """

    __tablename__ = "phase_snapshots"
    __table_args__ = (
        db.UniqueConstraint("phase_id", "snapshot_date", name="uq_phase_snapshot_phase_date"),
        db.Index("ix_phase_snapshots_tenant_date", "tenant_id", "snapshot_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    phase_id = db.Column(db.Integer, db.ForeignKey("project_phases.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    snapshot_date = db.Column(db.Date, nullable=False)
    ist_hours = db.Column(db.Float, nullable=False, default=0.0, comment="Booked hours to date")
    plan_hours = db.Column(db.Float, nullable=False, default=0.0, comment="Allocated hours")
    soll_hours = db.Column(db.Float, nullable=False, default=0.0, comment="Budget hours")
    allocations_count = db.Column(db.Integer, nullable=False, default=0)
    allocated_users_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "phase_id": self.phase_id,
            "snapshot_date": _iso(self.snapshot_date),
            "ist_hours": self.ist_hours,
            "plan_hours": self.plan_hours,
            "soll_hours": self.soll_hours,
            "allocations_count": self.allocations_count,
            "allocated_users_count": self.allocated_users_count,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<PhaseSnapshot phase={self.phase_id} {self.snapshot_date}>"


class PhaseInsight(TenantModel):
    __tablename__ = "phase_insights"
    __table_args__ = (
        db.UniqueConstraint("phase_id", "insight_date", name="uq_phase_insight_phase_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    phase_id = db.Column(db.Integer, db.ForeignKey("project_phases.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    insight_date = db.Column(db.Date, nullable=False, index=True)
    generated_at = db.Column(db.DateTime(timezone=True),
                             default=lambda: datetime.now(timezone.utc))
    status = db.Column(db.String(20), nullable=False,
                       comment="on_track, at_risk, behind, critical, completed")

    # Trend & forecast
    burn_rate_ist = db.Column(db.Float, nullable=True, comment="Booked hours per calendar day")
    burn_rate_plan = db.Column(db.Float, nullable=True, comment="Planned hours added per day")
    burn_rate_trend = db.Column(db.String(10), nullable=True, comment="up, down, stable")
    forecast_completion_date = db.Column(db.Date, nullable=True)
    deadline_delta_days = db.Column(db.Integer, nullable=True,
                                    comment="forecast - deadline; positive = late")
    days_remaining = db.Column(db.Integer, nullable=True, comment="Calendar days to deadline")

    # Progress & capacity
    progress_percent = db.Column(db.Float, nullable=True)
    remaining_hours = db.Column(db.Float, nullable=True)
    capacity_gap_hours = db.Column(db.Float, nullable=True)
    capacity_gap_days = db.Column(db.Float, nullable=True, comment="Person-days of 8h")

    data_quality = db.Column(db.String(20), nullable=True, comment="good, limited, insufficient")
    data_points_count = db.Column(db.Integer, default=0)

    # Texts
    summary_text = db.Column(db.Text, default="")
    detail_text = db.Column(db.Text, default="")
    recommendation_text = db.Column(db.Text, default="")
    text_source = db.Column(db.String(20), default="fallback", comment="llm, fallback")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "phase_id": self.phase_id,
            "insight_date": _iso(self.insight_date),
            "generated_at": _iso(self.generated_at),
            "status": self.status,
            "burn_rate_ist": self.burn_rate_ist,
            "burn_rate_plan": self.burn_rate_plan,
            "burn_rate_trend": self.burn_rate_trend,
            "forecast_completion_date": _iso(self.forecast_completion_date),
            "deadline_delta_days": self.deadline_delta_days,
            "days_remaining": self.days_remaining,
            "progress_percent": self.progress_percent,
            "remaining_hours": self.remaining_hours,
            "capacity_gap_hours": self.capacity_gap_hours,
            "capacity_gap_days": self.capacity_gap_days,
            "data_quality": self.data_quality,
            "data_points_count": self.data_points_count,
            "summary_text": self.summary_text,
            "detail_text": self.detail_text,
            "recommendation_text": self.recommendation_text,
            "text_source": self.text_source,
        }

    def __repr__(self):
        return f"<PhaseInsight phase={self.phase_id} {self.insight_date} [{self.status}]>"


class ProjectInsight(TenantModel):
    __tablename__ = "project_insights"
    __table_args__ = (
        db.UniqueConstraint("project_id", "insight_date", name="uq_project_insight_project_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    insight_date = db.Column(db.Date, nullable=False, index=True)
    generated_at = db.Column(db.DateTime(timezone=True),
                             default=lambda: datetime.now(timezone.utc))
    status = db.Column(db.String(20), nullable=False)

    phases_count = db.Column(db.Integer, default=0)
    phases_on_track = db.Column(db.Integer, default=0)
    phases_at_risk = db.Column(db.Integer, default=0)
    phases_behind = db.Column(db.Integer, default=0)
    phases_critical = db.Column(db.Integer, default=0)
    phases_completed = db.Column(db.Integer, default=0)

    overall_progress_percent = db.Column(db.Float, nullable=True)
    total_soll_hours = db.Column(db.Float, default=0.0)
    total_ist_hours = db.Column(db.Float, default=0.0)
    total_remaining_hours = db.Column(db.Float, default=0.0)

    latest_phase_deadline = db.Column(db.Date, nullable=True)
    projected_completion_date = db.Column(db.Date, nullable=True)
    project_deadline_delta = db.Column(db.Integer, nullable=True)
    forecast_incomplete = db.Column(db.Boolean, default=False,
                                    comment="An outstanding phase has no forecast")
    phases_without_forecast = db.Column(db.Integer, default=0)

    summary_text = db.Column(db.Text, default="")
    detail_text = db.Column(db.Text, default="")
    recommendation_text = db.Column(db.Text, default="")
    text_source = db.Column(db.String(20), default="fallback")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "insight_date": _iso(self.insight_date),
            "generated_at": _iso(self.generated_at),
            "status": self.status,
            "phases_count": self.phases_count,
            "phases_on_track": self.phases_on_track,
            "phases_at_risk": self.phases_at_risk,
            "phases_behind": self.phases_behind,
            "phases_critical": self.phases_critical,
            "phases_completed": self.phases_completed,
            "overall_progress_percent": self.overall_progress_percent,
            "total_soll_hours": self.total_soll_hours,
            "total_ist_hours": self.total_ist_hours,
            "total_remaining_hours": self.total_remaining_hours,
            "latest_phase_deadline": _iso(self.latest_phase_deadline),
            "projected_completion_date": _iso(self.projected_completion_date),
            "project_deadline_delta": self.project_deadline_delta,
            "forecast_incomplete": self.forecast_incomplete,
            "phases_without_forecast": self.phases_without_forecast,
            "summary_text": self.summary_text,
            "detail_text": self.detail_text,
            "recommendation_text": self.recommendation_text,
            "text_source": self.text_source,
        }

    def __repr__(self):
        return f"<ProjectInsight project={self.project_id} {self.insight_date} [{self.status}]>"


class TenantInsightSummary(TenantModel):
    """Dashboard aggregate. Exactly one row per tenant."""

    __tablename__ = "tenant_insight_summaries"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", name="uq_tenant_insight_summary_tenant"),
    )

    id = db.Column(db.Integer, primary_key=True)
    total_projects = db.Column(db.Integer, default=0)
    projects_on_track = db.Column(db.Integer, default=0)
    projects_at_risk = db.Column(db.Integer, default=0,
                                 comment="at_risk + behind + critical")
    critical_phases_count = db.Column(db.Integer, default=0)
    average_progress_percent = db.Column(db.Float, nullable=True)
    burn_rate_trend = db.Column(db.String(10), nullable=True)
    top_risk_projects = db.Column(db.JSON, default=list,
                                  comment="[{id, name, status, phases_at_risk}]")
    last_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "tenant_id": self.tenant_id,
            "total_projects": self.total_projects,
            "projects_on_track": self.projects_on_track,
            "projects_at_risk": self.projects_at_risk,
            "critical_phases_count": self.critical_phases_count,
            "average_progress_percent": self.average_progress_percent,
            "burn_rate_trend": self.burn_rate_trend,
            "top_risk_projects": self.top_risk_projects or [],
            "last_updated_at": _iso(self.last_updated_at),
        }


class PipelineRun(db.Model):
    """
    One row per pipeline invocation.

    States: pending → running → completed | completed_with_errors.
    ``tenant_id`` is set for manual refreshes and NULL for cross-tenant runs.
    """

    __tablename__ = "pipeline_runs"

    id = db.Column(db.Integer, primary_key=True)
    run_type = db.Column(db.String(20), nullable=False, comment="snapshots, insights, refresh")
    trigger = db.Column(db.String(20), nullable=False, default="cron",
                        comment="cron, scheduler, cli, manual")
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="SET NULL"),
                          nullable=True, index=True)
    as_of_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(30), nullable=False, default="pending")
    counts = db.Column(db.JSON, default=dict)
    errors = db.Column(db.JSON, default=list)
    timed_out = db.Column(db.Boolean, default=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "run_type": self.run_type,
            "trigger": self.trigger,
            "tenant_id": self.tenant_id,
            "as_of_date": _iso(self.as_of_date),
            "status": self.status,
            "counts": self.counts or {},
            "errors": self.errors or [],
            "timed_out": self.timed_out,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_ms": self.duration_ms,
        }

    def __repr__(self):
        return f"<PipelineRun {self.id} {self.run_type} [{self.status}]>"
