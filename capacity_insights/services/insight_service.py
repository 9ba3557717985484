"""
InsightService — builds and persists phase, project and tenant insights.

Per tenant:
    1. For each project, build every phase insight first (trend → status → texts)
    2. Roll the phase insights of that project up into the project insight
    3. Rebuild the tenant dashboard summary from the latest project insights

Rows for (entity, insight_date) are replaced wholesale on a same-day rerun;
older dates stay as history.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func

from capacity_insights.ai.text_generator import (
    GeneratedTexts,
    InsightTextGenerator,
    PhaseTextInput,
    ProjectTextInput,
)
from capacity_insights.analytics import aggregator
from capacity_insights.analytics.classifier import ClassifierThresholds
from capacity_insights.analytics.types import (
    BurnRateTrend,
    InsightStatus,
    PhaseInsightData,
    ProjectInsightData,
    ProjectSummaryRow,
    TenantSummaryData,
)
from capacity_insights.core.exceptions import NotFoundError
from capacity_insights.models import db
from capacity_insights.models.analytics import (
    PhaseInsight,
    ProjectInsight,
    TenantInsightSummary,
)
from capacity_insights.models.auth import Tenant
from capacity_insights.models.planning import Project, ProjectPhase
from capacity_insights.services.availability import AvailabilityAnalyzer, AvailabilityContext
from capacity_insights.services.run_report import RunDeadline, RunReport, check_deadline
from capacity_insights.services.snapshot_service import SnapshotService
from capacity_insights.services.weather_service import WeatherContextProvider, WeatherDay

logger = logging.getLogger(__name__)

ENRICHED_STATUSES = (InsightStatus.AT_RISK, InsightStatus.BEHIND, InsightStatus.CRITICAL)
AVAILABILITY_WINDOW_DAYS = 14
HISTORY_LIMIT = 30


class InsightService:

    def __init__(
        self,
        text_generator: InsightTextGenerator,
        *,
        weather: WeatherContextProvider | None = None,
        availability: AvailabilityAnalyzer | None = None,
        weather_days: int = 3,
    ):
        self.text_generator = text_generator
        self.weather = weather
        self.availability = availability
        self.weather_days = weather_days

    # ═════════════════════════════════════════════════════════════════
    #  Generation
    # ═════════════════════════════════════════════════════════════════

    def generate_insights(
        self,
        as_of: date,
        tenant_ids: list[int] | None = None,
        *,
        report: RunReport | None = None,
        deadline: RunDeadline | None = None,
        run_id: int | None = None,
    ) -> RunReport:
        """
        Counts: tenants_processed, phases_processed, phase_insights_created,
        projects_processed, project_insights_created.
        """
        report = report if report is not None else RunReport()

        q = Tenant.query.filter(Tenant.is_active.is_(True))
        if tenant_ids is not None:
            q = q.filter(Tenant.id.in_(tenant_ids))

        for tenant in q.order_by(Tenant.id).all():
            if not check_deadline(report, deadline):
                break
            report.incr("tenants_processed")
            self._generate_for_tenant(tenant, as_of, report, deadline, run_id)
            db.session.commit()

            try:
                with db.session.begin_nested():
                    self.refresh_tenant_summary(tenant.id)
                db.session.commit()
            except Exception as exc:
                report.add_error(f"Tenant summary failed: {exc}", tenant_id=tenant.id)
                logger.warning("Tenant summary failed: %s", exc,
                               extra={"tenant_id": tenant.id, "run_id": run_id})

        return report

    def _generate_for_tenant(self, tenant: Tenant, as_of: date, report: RunReport,
                             deadline: RunDeadline | None, run_id: int | None) -> None:
        thresholds = ClassifierThresholds.from_settings(tenant.settings)
        by_project: dict[int, list[ProjectPhase]] = defaultdict(list)
        for phase in SnapshotService.eligible_phases(tenant.id, as_of):
            by_project[phase.project_id].append(phase)

        availability_cache: dict[str, AvailabilityContext | None] = {}

        for project_id, phases in by_project.items():
            if not check_deadline(report, deadline):
                return
            project = phases[0].project
            built: list[PhaseInsightData] = []
            failed = 0

            for phase in phases:
                if not check_deadline(report, deadline):
                    return
                report.incr("phases_processed")
                log_ctx = {"tenant_id": tenant.id, "project_id": project_id,
                           "phase_id": phase.id, "run_id": run_id}
                try:
                    data = aggregator.build_phase_insight(
                        tenant_id=tenant.id,
                        project_id=project_id,
                        phase=phase,
                        history=SnapshotService.history(phase.id, until=as_of, limit=HISTORY_LIMIT),
                        as_of=as_of,
                        thresholds=thresholds,
                    )
                    texts = self.text_generator.generate_phase_texts(
                        self._phase_text_input(data, project, as_of, availability_cache)
                    )
                    with db.session.begin_nested():
                        self.save_phase_insight(data, texts)
                except Exception as exc:
                    failed += 1
                    report.add_error(str(exc), tenant_id=tenant.id,
                                     project_id=project_id, phase_id=phase.id)
                    logger.warning("Phase insight failed: %s", exc, extra=log_ctx)
                    continue
                built.append(data)
                report.incr("phase_insights_created")

            report.incr("projects_processed")
            if not built:
                report.add_error(
                    f"Project insight skipped: {failed} phase insight(s) failed",
                    tenant_id=tenant.id, project_id=project_id,
                )
                continue

            try:
                pdata = aggregator.build_project_insight(
                    tenant_id=tenant.id,
                    project_id=project_id,
                    project_name=project.name,
                    insight_date=as_of,
                    phases=built,
                    phases_failed=failed,
                )
                texts = self.text_generator.generate_project_texts(ProjectTextInput(project=pdata))
                with db.session.begin_nested():
                    self.save_project_insight(pdata, texts)
            except Exception as exc:
                report.add_error(str(exc), tenant_id=tenant.id, project_id=project_id)
                logger.warning("Project insight failed: %s", exc,
                               extra={"tenant_id": tenant.id, "project_id": project_id,
                                      "run_id": run_id})
                continue
            report.incr("project_insights_created")

    def _phase_text_input(self, data: PhaseInsightData, project: Project, as_of: date,
                          availability_cache: dict) -> PhaseTextInput:
        text_input = PhaseTextInput(phase=data, project_name=project.name)
        if data.status not in ENRICHED_STATUSES:
            return text_input

        if self.weather is not None and project.has_location:
            text_input.weather = self._weather_context(project, as_of)

        if self.availability is not None:
            if "context" not in availability_cache:
                availability_cache["context"] = self._availability_context(data.tenant_id, as_of)
            text_input.availability = availability_cache["context"]
        return text_input

    def _weather_context(self, project: Project, as_of: date) -> list[WeatherDay] | None:
        try:
            return self.weather.get_forecast(
                project.latitude, project.longitude, self.weather_days, today=as_of,
            )
        except Exception as exc:
            logger.warning("Weather context unavailable: %s", exc,
                           extra={"tenant_id": project.tenant_id, "project_id": project.id})
            return None

    def _availability_context(self, tenant_id: int, as_of: date) -> AvailabilityContext | None:
        try:
            return self.availability.get_tenant_context(
                tenant_id, as_of, as_of + timedelta(days=AVAILABILITY_WINDOW_DAYS - 1),
            )
        except Exception as exc:
            logger.warning("Availability context unavailable: %s", exc,
                           extra={"tenant_id": tenant_id})
            return None

    # ═════════════════════════════════════════════════════════════════
    #  Persistence
    # ═════════════════════════════════════════════════════════════════

    @staticmethod
    def save_phase_insight(data: PhaseInsightData, texts: GeneratedTexts) -> PhaseInsight:
        row = PhaseInsight.query.filter_by(
            phase_id=data.phase_id, insight_date=data.insight_date,
        ).first()
        if row is None:
            row = PhaseInsight(tenant_id=data.tenant_id, phase_id=data.phase_id,
                               insight_date=data.insight_date)
            db.session.add(row)

        row.generated_at = datetime.now(timezone.utc)
        row.status = data.status.value
        row.burn_rate_ist = data.trend.burn_rate_ist
        row.burn_rate_plan = data.trend.burn_rate_plan
        row.burn_rate_trend = data.trend.trend.value if data.trend.trend else None
        row.forecast_completion_date = data.trend.forecast_completion_date
        row.deadline_delta_days = data.deadline_delta_days
        row.days_remaining = data.days_remaining
        row.progress_percent = data.progress_percent
        row.remaining_hours = data.remaining_hours
        row.capacity_gap_hours = data.capacity_gap_hours
        row.capacity_gap_days = data.capacity_gap_days
        row.data_quality = data.data_quality.value
        row.data_points_count = data.trend.data_points
        row.summary_text = texts.summary_text
        row.detail_text = texts.detail_text
        row.recommendation_text = texts.recommendation_text
        row.text_source = texts.source
        db.session.flush()
        return row

    @staticmethod
    def save_project_insight(data: ProjectInsightData, texts: GeneratedTexts) -> ProjectInsight:
        row = ProjectInsight.query.filter_by(
            project_id=data.project_id, insight_date=data.insight_date,
        ).first()
        if row is None:
            row = ProjectInsight(tenant_id=data.tenant_id, project_id=data.project_id,
                                 insight_date=data.insight_date)
            db.session.add(row)

        row.generated_at = datetime.now(timezone.utc)
        row.status = data.status.value
        row.phases_count = data.phases_count
        row.phases_on_track = data.count(InsightStatus.ON_TRACK)
        row.phases_at_risk = data.count(InsightStatus.AT_RISK)
        row.phases_behind = data.count(InsightStatus.BEHIND)
        row.phases_critical = data.count(InsightStatus.CRITICAL)
        row.phases_completed = data.count(InsightStatus.COMPLETED)
        row.overall_progress_percent = data.overall_progress_percent
        row.total_soll_hours = data.total_soll_hours
        row.total_ist_hours = data.total_ist_hours
        row.total_remaining_hours = data.total_remaining_hours
        row.latest_phase_deadline = data.latest_phase_deadline
        row.projected_completion_date = data.projected_completion_date
        row.project_deadline_delta = data.project_deadline_delta
        row.forecast_incomplete = data.forecast_incomplete
        row.phases_without_forecast = data.phases_without_forecast
        row.summary_text = texts.summary_text
        row.detail_text = texts.detail_text
        row.recommendation_text = texts.recommendation_text
        row.text_source = texts.source
        db.session.flush()
        return row

    @staticmethod
    def refresh_tenant_summary(tenant_id: int) -> TenantInsightSummary:
        """Replace the tenant's summary row from the latest project / phase insights."""
        rows = [
            ProjectSummaryRow(
                project_id=pi.project_id,
                project_name=name,
                status=InsightStatus(pi.status),
                phases_at_risk=(pi.phases_at_risk or 0) + (pi.phases_behind or 0)
                + (pi.phases_critical or 0),
                phases_critical=pi.phases_critical or 0,
                overall_progress_percent=pi.overall_progress_percent,
                generated_at=pi.generated_at,
            )
            for pi, name in _latest_project_insights(tenant_id)
        ]
        trends = [
            BurnRateTrend(t) if t else None
            for (t,) in _latest_phase_insights(tenant_id).with_entities(PhaseInsight.burn_rate_trend)
        ]
        summary = aggregator.build_tenant_summary(tenant_id=tenant_id, rows=rows, phase_trends=trends)
        return InsightService._save_summary(summary)

    @staticmethod
    def _save_summary(summary: TenantSummaryData) -> TenantInsightSummary:
        row = TenantInsightSummary.query.filter_by(tenant_id=summary.tenant_id).first()
        if row is None:
            row = TenantInsightSummary(tenant_id=summary.tenant_id)
            db.session.add(row)
        row.total_projects = summary.total_projects
        row.projects_on_track = summary.projects_on_track
        row.projects_at_risk = summary.projects_at_risk
        row.critical_phases_count = summary.critical_phases_count
        row.average_progress_percent = summary.average_progress_percent
        row.burn_rate_trend = summary.burn_rate_trend.value if summary.burn_rate_trend else None
        row.top_risk_projects = [p.to_dict() for p in summary.top_risk_projects]
        row.last_updated_at = summary.last_updated_at
        db.session.flush()
        return row

    # ═════════════════════════════════════════════════════════════════
    #  Reads (dashboard)
    # ═════════════════════════════════════════════════════════════════

    @staticmethod
    def get_tenant_summary(tenant_id: int) -> dict | None:
        """None means no insight run has completed for this tenant yet."""
        row = TenantInsightSummary.query.filter_by(tenant_id=tenant_id).first()
        if row is None or not row.total_projects:
            return None
        return row.to_dict()

    @staticmethod
    def get_project_insight(tenant_id: int, project_id: int) -> dict:
        project = Project.query.filter_by(id=project_id, tenant_id=tenant_id).first()
        if project is None:
            raise NotFoundError(resource="Project", resource_id=project_id, tenant_id=tenant_id)
        latest = (ProjectInsight.query
                  .filter_by(tenant_id=tenant_id, project_id=project_id)
                  .order_by(ProjectInsight.insight_date.desc())
                  .first())
        phases = []
        if latest is not None:
            phases = [
                pi.to_dict() for pi in PhaseInsight.query
                .join(ProjectPhase, ProjectPhase.id == PhaseInsight.phase_id)
                .filter(ProjectPhase.project_id == project_id,
                        PhaseInsight.tenant_id == tenant_id,
                        PhaseInsight.insight_date == latest.insight_date)
                .order_by(PhaseInsight.phase_id)
                .all()
            ]
        return {
            "project": project.to_dict(),
            "insight": latest.to_dict() if latest else None,
            "phases": phases,
        }

    @staticmethod
    def get_phase_insight(tenant_id: int, phase_id: int, *, history_days: int = 14) -> dict:
        phase = ProjectPhase.query.filter_by(id=phase_id, tenant_id=tenant_id).first()
        if phase is None:
            raise NotFoundError(resource="Phase", resource_id=phase_id, tenant_id=tenant_id)
        rows = (PhaseInsight.query
                .filter_by(tenant_id=tenant_id, phase_id=phase_id)
                .order_by(PhaseInsight.insight_date.desc())
                .limit(history_days)
                .all())
        return {
            "phase": phase.to_dict(),
            "insight": rows[0].to_dict() if rows else None,
            "history": [
                {"insight_date": r.insight_date.isoformat(), "status": r.status,
                 "progress_percent": r.progress_percent,
                 "burn_rate_ist": r.burn_rate_ist,
                 "forecast_completion_date": (r.forecast_completion_date.isoformat()
                                              if r.forecast_completion_date else None)}
                for r in reversed(rows)
            ],
        }


# ── latest-per-entity queries ────────────────────────────────────────────

def _latest_project_insights(tenant_id: int):
    latest = (
        db.session.query(ProjectInsight.project_id,
                         func.max(ProjectInsight.insight_date).label("insight_date"))
        .filter(ProjectInsight.tenant_id == tenant_id)
        .group_by(ProjectInsight.project_id)
        .subquery()
    )
    return (
        db.session.query(ProjectInsight, Project.name)
        .join(latest, (ProjectInsight.project_id == latest.c.project_id)
              & (ProjectInsight.insight_date == latest.c.insight_date))
        .join(Project, Project.id == ProjectInsight.project_id)
        .filter(Project.status == "active")
        .order_by(ProjectInsight.project_id)
        .all()
    )


def _latest_phase_insights(tenant_id: int):
    latest = (
        db.session.query(PhaseInsight.phase_id,
                         func.max(PhaseInsight.insight_date).label("insight_date"))
        .filter(PhaseInsight.tenant_id == tenant_id)
        .group_by(PhaseInsight.phase_id)
        .subquery()
    )
    return (
        PhaseInsight.query
        .join(latest, (PhaseInsight.phase_id == latest.c.phase_id)
              & (PhaseInsight.insight_date == latest.c.insight_date))
        .join(ProjectPhase, ProjectPhase.id == PhaseInsight.phase_id)
        .filter(ProjectPhase.status == "active")
    )
