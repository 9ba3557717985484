"""
Tests — Insight Service & Pipeline Orchestrator (end-to-end over SQLite).

Covers:
    - snapshot history → phase / project / tenant insight rows
    - same-day rerun replaces insight rows
    - PipelineRun lifecycle, counts and run budget
    - ConfigurationError before any write
    - failed phases: surviving phases roll up with an incomplete forecast
    - weather / availability enrichment of at-risk phases
    - dashboard reads and tenant isolation
"""

import itertools
from datetime import date, timedelta
from unittest.mock import MagicMock, patch

import pytest

from capacity_insights.ai.text_generator import InsightTextGenerator
from capacity_insights.analytics import aggregator
from capacity_insights.core.exceptions import ConfigurationError, NotFoundError
from capacity_insights.models import db
from capacity_insights.models.analytics import (
    PhaseInsight,
    PipelineRun,
    ProjectInsight,
    TenantInsightSummary,
)
from capacity_insights.models.auth import Tenant
from capacity_insights.models.planning import Project, ProjectPhase, TimeEntry
from capacity_insights.services.availability import AvailabilityContext, UserAvailability
from capacity_insights.services.insight_service import InsightService
from capacity_insights.services.pipeline import (
    INSIGHT_COUNT_KEYS,
    SNAPSHOT_COUNT_KEYS,
    PipelineOrchestrator,
)
from capacity_insights.services.snapshot_service import SnapshotService
from capacity_insights.services.weather_service import WeatherDay

DAY1 = date(2026, 3, 1)
AS_OF = date(2026, 3, 3)


def _create_project(tenant_id, name="Wohnanlage Nord", latitude=None, longitude=None):
    project = Project(tenant_id=tenant_id, name=name, status="active",
                      latitude=latitude, longitude=longitude)
    db.session.add(project)
    db.session.commit()
    return project


def _create_phase(tenant_id, project_id, name="Rohbau", budget_hours=80.0):
    phase = ProjectPhase(tenant_id=tenant_id, project_id=project_id, name=name,
                         budget_hours=budget_hours, start_date=DAY1,
                         end_date=date(2026, 3, 5), status="active")
    db.session.add(phase)
    db.session.commit()
    return phase


def _book_and_capture(tenant_id, phases_with_hours, days=3):
    """Book ``hours`` per day on each phase and capture that day's snapshot."""
    for offset in range(days):
        day = DAY1 + timedelta(days=offset)
        for phase, daily in phases_with_hours:
            hours = daily[offset] if isinstance(daily, (list, tuple)) else daily
            db.session.add(TimeEntry(tenant_id=tenant_id, phase_id=phase.id, date=day, hours=hours))
        db.session.commit()
        SnapshotService.generate_snapshots(day, [tenant_id])


def _scenario(tenant_id, daily=10.0, **project_kwargs):
    """Budget 80 h, deadline Mar 5, ``daily`` hours booked Mar 1-3."""
    project = _create_project(tenant_id, **project_kwargs)
    phase = _create_phase(tenant_id, project.id)
    _book_and_capture(tenant_id, [(phase, daily)])
    return project, phase


def _orchestrator(**kwargs):
    kwargs.setdefault("text_generator_factory", lambda: InsightTextGenerator(None))
    return PipelineOrchestrator(**kwargs)


# ═════════════════════════════════════════════════════════════════════════════
# GENERATION
# ═════════════════════════════════════════════════════════════════════════════

class TestInsightGeneration:

    def test_behind_scenario_end_to_end(self, default_tenant):
        project, phase = _scenario(default_tenant.id)

        result = _orchestrator().run_insights(AS_OF, tenant_ids=[default_tenant.id])

        assert result.run.status == "completed"
        assert result.report.get("phase_insights_created") == 1
        assert result.report.get("project_insights_created") == 1

        insight = PhaseInsight.query.filter_by(phase_id=phase.id, insight_date=AS_OF).one()
        assert insight.status == "behind"
        assert insight.burn_rate_ist == 10.0
        assert insight.forecast_completion_date == date(2026, 3, 8)
        assert insight.deadline_delta_days == 3
        assert insight.days_remaining == 2
        assert insight.progress_percent == 37.5
        assert insight.remaining_hours == 50.0
        assert insight.data_points_count == 3
        assert insight.text_source == "fallback"
        assert insight.summary_text == "Rohbau is behind: forecast 3 days after the deadline."

        pinsight = ProjectInsight.query.filter_by(project_id=project.id).one()
        assert pinsight.status == "behind"
        assert pinsight.phases_behind == 1
        assert pinsight.overall_progress_percent == 37.5
        assert pinsight.projected_completion_date == date(2026, 3, 8)
        assert pinsight.project_deadline_delta == 3
        assert pinsight.forecast_incomplete is False

        summary = InsightService.get_tenant_summary(default_tenant.id)
        assert summary["total_projects"] == 1
        assert summary["projects_at_risk"] == 1
        assert summary["average_progress_percent"] == 37.5
        assert summary["top_risk_projects"] == [
            {"id": project.id, "name": "Wohnanlage Nord", "status": "behind", "phases_at_risk": 1},
        ]

    def test_completed_phase(self, default_tenant):
        _, phase = _scenario(default_tenant.id, daily=[30.0, 30.0, 20.0])

        _orchestrator().run_insights(AS_OF, tenant_ids=[default_tenant.id])

        insight = PhaseInsight.query.filter_by(phase_id=phase.id).one()
        assert insight.status == "completed"
        assert insight.progress_percent == 100.0
        assert insight.summary_text == "Rohbau is completed, exactly on budget."
        summary = InsightService.get_tenant_summary(default_tenant.id)
        assert summary["projects_on_track"] == 0
        assert summary["projects_at_risk"] == 0

    def test_llm_texts_from_config(self, default_tenant):
        _, phase = _scenario(default_tenant.id)

        PipelineOrchestrator().run_insights(AS_OF, tenant_ids=[default_tenant.id])

        insight = PhaseInsight.query.filter_by(phase_id=phase.id).one()
        assert insight.text_source == "llm"
        assert insight.summary_text.startswith("Phase: Rohbau (project: Wohnanlage Nord)")

    def test_tenant_thresholds_apply(self, default_tenant):
        default_tenant.settings = {"insight_thresholds": {"critical_delay_days": 2}}
        db.session.commit()
        _, phase = _scenario(default_tenant.id)

        _orchestrator().run_insights(AS_OF, tenant_ids=[default_tenant.id])

        assert PhaseInsight.query.filter_by(phase_id=phase.id).one().status == "critical"

    def test_same_day_rerun_replaces_rows(self, default_tenant):
        project, phase = _scenario(default_tenant.id)
        _orchestrator().run_insights(AS_OF, tenant_ids=[default_tenant.id])
        first = PhaseInsight.query.filter_by(phase_id=phase.id).one()
        first_id, first_generated = first.id, first.generated_at

        _orchestrator().run_insights(AS_OF, tenant_ids=[default_tenant.id])

        rows = PhaseInsight.query.filter_by(phase_id=phase.id).all()
        assert len(rows) == 1
        assert rows[0].id == first_id
        assert rows[0].generated_at >= first_generated
        assert ProjectInsight.query.filter_by(project_id=project.id).count() == 1
        assert TenantInsightSummary.query.filter_by(tenant_id=default_tenant.id).count() == 1
        assert PipelineRun.query.filter_by(run_type="insights").count() == 2

    def test_failed_phase_leaves_project_forecast_incomplete(self, default_tenant):
        project = _create_project(default_tenant.id)
        ok = _create_phase(default_tenant.id, project.id, name="Rohbau")
        broken = _create_phase(default_tenant.id, project.id, name="Elektro")
        _book_and_capture(default_tenant.id, [(ok, 10.0), (broken, 10.0)])
        real_build = aggregator.build_phase_insight

        def _build(**kwargs):
            if kwargs["phase"].name == "Elektro":
                raise RuntimeError("corrupt snapshot")
            return real_build(**kwargs)

        with patch.object(aggregator, "build_phase_insight", side_effect=_build):
            result = _orchestrator().run_insights(AS_OF, tenant_ids=[default_tenant.id])

        report = result.report
        assert report.get("phase_insights_created") == 1
        assert report.get("projects_processed") == 1
        assert report.get("project_insights_created") == 1
        assert [e["message"] for e in report.errors] == ["corrupt snapshot"]
        assert report.errors[0]["phase_id"] == broken.id
        assert result.run.status == "completed_with_errors"
        assert PhaseInsight.query.filter_by(phase_id=ok.id).count() == 1

        row = ProjectInsight.query.filter_by(project_id=project.id).one()
        assert row.phases_count == 1
        assert row.total_soll_hours == 80.0
        assert row.forecast_incomplete is True
        assert row.phases_without_forecast == 1
        assert row.projected_completion_date is None

    def test_all_phases_failed_skips_project_insight(self, default_tenant):
        project = _create_project(default_tenant.id)
        _create_phase(default_tenant.id, project.id, name="Rohbau")
        _create_phase(default_tenant.id, project.id, name="Elektro")
        _book_and_capture(default_tenant.id, [])

        with patch.object(aggregator, "build_phase_insight",
                          side_effect=RuntimeError("corrupt snapshot")):
            result = _orchestrator().run_insights(AS_OF, tenant_ids=[default_tenant.id])

        report = result.report
        assert report.get("phase_insights_created") == 0
        assert report.get("project_insights_created") == 0
        messages = [e["message"] for e in report.errors]
        assert messages.count("corrupt snapshot") == 2
        assert "Project insight skipped: 2 phase insight(s) failed" in messages
        assert ProjectInsight.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# ENRICHMENT
# ═════════════════════════════════════════════════════════════════════════════

class TestEnrichment:

    def _providers(self):
        weather = MagicMock()
        weather.get_forecast.return_value = [
            WeatherDay(date=AS_OF, rating="poor", weather_code=65),
        ]
        availability = MagicMock()
        availability.get_tenant_context.return_value = AvailabilityContext(
            start=AS_OF, end=AS_OF + timedelta(days=13),
            available=[UserAvailability(user_id=1, name="Anna Berg",
                                        capacity_hours=80.0, allocated_hours=24.0)],
        )
        return weather, availability

    def test_at_risk_phase_gets_weather_and_colleagues(self, default_tenant):
        _, phase = _scenario(default_tenant.id, latitude=48.137, longitude=11.575)
        weather, availability = self._providers()

        InsightService(InsightTextGenerator(None), weather=weather,
                       availability=availability).generate_insights(AS_OF, [default_tenant.id])

        weather.get_forecast.assert_called_once_with(48.137, 11.575, 3, today=AS_OF)
        availability.get_tenant_context.assert_called_once_with(
            default_tenant.id, AS_OF, AS_OF + timedelta(days=13),
        )
        text = PhaseInsight.query.filter_by(phase_id=phase.id).one().recommendation_text
        assert "Anna Berg (56 h free)" in text
        assert "Poor construction weather expected on 2026-03-03" in text

    def test_completed_phase_not_enriched(self, default_tenant):
        _scenario(default_tenant.id, daily=[30.0, 30.0, 20.0], latitude=48.1, longitude=11.5)
        weather, availability = self._providers()

        InsightService(InsightTextGenerator(None), weather=weather,
                       availability=availability).generate_insights(AS_OF, [default_tenant.id])

        weather.get_forecast.assert_not_called()
        availability.get_tenant_context.assert_not_called()

    def test_project_without_location_skips_weather(self, default_tenant):
        _scenario(default_tenant.id)
        weather, availability = self._providers()

        InsightService(InsightTextGenerator(None), weather=weather,
                       availability=availability).generate_insights(AS_OF, [default_tenant.id])

        weather.get_forecast.assert_not_called()

    def test_availability_failure_does_not_fail_phase(self, default_tenant):
        _, phase = _scenario(default_tenant.id)
        availability = MagicMock()
        availability.get_tenant_context.side_effect = RuntimeError("planning db down")

        report = InsightService(InsightTextGenerator(None),
                                availability=availability).generate_insights(AS_OF, [default_tenant.id])

        assert report.errors == []
        assert PhaseInsight.query.filter_by(phase_id=phase.id).count() == 1

    def test_weather_failure_does_not_fail_phase(self, default_tenant):
        _, phase = _scenario(default_tenant.id, latitude=48.137, longitude=11.575)
        weather, availability = self._providers()
        weather.get_forecast.side_effect = RuntimeError("weather cache locked")

        report = InsightService(InsightTextGenerator(None), weather=weather,
                                availability=availability).generate_insights(AS_OF, [default_tenant.id])

        assert report.errors == []
        assert report.get("phase_insights_created") == 1
        text = PhaseInsight.query.filter_by(phase_id=phase.id).one().recommendation_text
        assert "Anna Berg (56 h free)" in text
        assert "construction weather" not in text


# ═════════════════════════════════════════════════════════════════════════════
# ORCHESTRATOR
# ═════════════════════════════════════════════════════════════════════════════

class TestOrchestrator:

    def test_snapshot_run_recorded(self, default_tenant):
        project = _create_project(default_tenant.id)
        _create_phase(default_tenant.id, project.id)

        result = _orchestrator().run_snapshots(AS_OF, trigger="cli")

        run = db.session.get(PipelineRun, result.run.id)
        assert run.run_type == "snapshots"
        assert run.trigger == "cli"
        assert run.status == "completed"
        assert run.as_of_date == AS_OF
        assert run.counts["snapshots_created"] == 1
        assert run.started_at is not None and run.finished_at is not None
        assert run.duration_ms is not None

        body = result.to_response(SNAPSHOT_COUNT_KEYS)
        assert body["snapshotsCreated"] == 1
        assert body["skippedExisting"] == 0
        assert body["tenantsProcessed"] == 1
        assert body["status"] == "completed"
        assert body["runId"] == run.id
        assert body["timedOut"] is False

    def test_configuration_error_before_any_write(self, default_tenant):
        _scenario(default_tenant.id)
        factory = MagicMock(side_effect=ConfigurationError("ANTHROPIC_API_KEY"))

        with pytest.raises(ConfigurationError):
            PipelineOrchestrator(text_generator_factory=factory).run_insights(AS_OF)

        assert PipelineRun.query.filter_by(run_type="insights").count() == 0
        assert PhaseInsight.query.count() == 0

    def test_run_budget_exhausted(self, default_tenant):
        _scenario(default_tenant.id)
        ticks = itertools.count(0, 100)

        result = _orchestrator(budget_seconds=150, clock=lambda: next(ticks)).run_insights(
            AS_OF, tenant_ids=[default_tenant.id],
        )

        assert result.report.timed_out is True
        assert result.run.timed_out is True
        assert result.run.status == "completed_with_errors"
        assert result.report.get("phase_insights_created") == 0
        assert any("Run budget of 150s exceeded" in e["message"] for e in result.report.errors)
        body = result.to_response(INSIGHT_COUNT_KEYS)
        assert body["timedOut"] is True
        assert body["phaseInsightsCreated"] == 0

    def test_aborted_run_is_finished_and_reraised(self, default_tenant):
        _scenario(default_tenant.id)

        with patch.object(SnapshotService, "generate_snapshots", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                _orchestrator().run_snapshots(AS_OF + timedelta(days=1))

        run = PipelineRun.query.filter_by(run_type="snapshots").order_by(PipelineRun.id.desc()).first()
        assert run.status == "completed_with_errors"
        assert run.errors[-1]["message"] == "Run aborted: boom"


# ═════════════════════════════════════════════════════════════════════════════
# READS
# ═════════════════════════════════════════════════════════════════════════════

class TestReads:

    def test_summary_none_before_first_run(self, default_tenant):
        assert InsightService.get_tenant_summary(default_tenant.id) is None

    def test_inactive_project_leaves_summary(self, default_tenant):
        project, _ = _scenario(default_tenant.id)
        _orchestrator().run_insights(AS_OF, tenant_ids=[default_tenant.id])

        project.status = "paused"
        db.session.commit()
        InsightService.refresh_tenant_summary(default_tenant.id)
        db.session.commit()

        assert InsightService.get_tenant_summary(default_tenant.id) is None

    def test_project_insight_with_phases(self, default_tenant):
        project, phase = _scenario(default_tenant.id)
        _orchestrator().run_insights(AS_OF, tenant_ids=[default_tenant.id])

        data = InsightService.get_project_insight(default_tenant.id, project.id)

        assert data["project"]["id"] == project.id
        assert data["insight"]["status"] == "behind"
        assert [p["phase_id"] for p in data["phases"]] == [phase.id]

    def test_project_without_insight(self, default_tenant):
        project = _create_project(default_tenant.id)
        data = InsightService.get_project_insight(default_tenant.id, project.id)
        assert data["insight"] is None
        assert data["phases"] == []

    def test_phase_history_oldest_first(self, default_tenant):
        _, phase = _scenario(default_tenant.id)
        orchestrator = _orchestrator()
        orchestrator.run_insights(AS_OF - timedelta(days=1), tenant_ids=[default_tenant.id])
        orchestrator.run_insights(AS_OF, tenant_ids=[default_tenant.id])

        data = InsightService.get_phase_insight(default_tenant.id, phase.id)

        assert data["insight"]["insight_date"] == AS_OF.isoformat()
        assert [h["insight_date"] for h in data["history"]] == ["2026-03-02", "2026-03-03"]
        short = InsightService.get_phase_insight(default_tenant.id, phase.id, history_days=1)
        assert len(short["history"]) == 1

    def test_cross_tenant_lookup_is_not_found(self, default_tenant):
        other = Tenant(name="Bau AG", slug="bau-ag")
        db.session.add(other)
        db.session.commit()
        project = _create_project(other.id)
        phase = _create_phase(other.id, project.id)

        with pytest.raises(NotFoundError):
            InsightService.get_project_insight(default_tenant.id, project.id)
        with pytest.raises(NotFoundError):
            InsightService.get_phase_insight(default_tenant.id, phase.id)
