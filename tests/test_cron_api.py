"""
Tests — Cron trigger endpoints (/api/cron/*).

Covers:
    - shared-secret check (missing, wrong, unconfigured)
    - run report body in camelCase
    - ?date= backfill and validation
    - configuration error on the insight run
    - weather cache refresh and purge
"""

from datetime import date, timedelta

from capacity_insights.models import db
from capacity_insights.models.analytics import PhaseInsight, PipelineRun
from capacity_insights.models.planning import Project, ProjectPhase, TimeEntry
from capacity_insights.models.weather import WeatherCache
from capacity_insights.services.snapshot_service import SnapshotService

SECRET_HEADERS = {"Authorization": "Bearer test-cron-secret"}


def _create_phase(tenant_id, budget_hours=80.0):
    project = Project(tenant_id=tenant_id, name="Wohnanlage Nord", status="active")
    db.session.add(project)
    db.session.commit()
    phase = ProjectPhase(tenant_id=tenant_id, project_id=project.id, name="Rohbau",
                         budget_hours=budget_hours, start_date=date(2026, 3, 1),
                         end_date=date(2026, 3, 5), status="active")
    db.session.add(phase)
    db.session.commit()
    return phase


def _capture_history(phase, days=3, hours=10.0):
    for offset in range(days):
        day = date(2026, 3, 1) + timedelta(days=offset)
        db.session.add(TimeEntry(tenant_id=phase.tenant_id, phase_id=phase.id, date=day, hours=hours))
        db.session.commit()
        SnapshotService.generate_snapshots(day, [phase.tenant_id])


# ═════════════════════════════════════════════════════════════════════════════
# AUTH
# ═════════════════════════════════════════════════════════════════════════════

class TestCronAuth:

    def test_missing_secret_header(self, client):
        res = client.get("/api/cron/snapshots")
        assert res.status_code == 401
        assert res.get_json() == {"error": "unauthorized", "code": "ERR_UNAUTHORIZED"}

    def test_wrong_secret(self, client):
        res = client.post("/api/cron/insights", headers={"Authorization": "Bearer nope"})
        assert res.status_code == 401
        assert PipelineRun.query.count() == 0

    def test_secret_without_bearer_prefix(self, client):
        res = client.get("/api/cron/snapshots", headers={"Authorization": "test-cron-secret"})
        assert res.status_code == 401

    def test_unconfigured_secret(self, app, client, monkeypatch):
        monkeypatch.setitem(app.config, "CRON_SECRET", None)
        res = client.get("/api/cron/snapshots", headers=SECRET_HEADERS)
        assert res.status_code == 500
        assert res.get_json()["error"] == "cron_not_configured"

    def test_jwt_is_not_accepted(self, client, default_tenant, auth_headers):
        res = client.get("/api/cron/snapshots", headers=auth_headers(default_tenant.id, role="admin"))
        assert res.status_code == 401


# ═════════════════════════════════════════════════════════════════════════════
# SNAPSHOTS
# ═════════════════════════════════════════════════════════════════════════════

class TestCronSnapshots:

    def test_run_report(self, client, default_tenant):
        _create_phase(default_tenant.id)

        res = client.get("/api/cron/snapshots?date=2026-03-03", headers=SECRET_HEADERS)

        assert res.status_code == 200
        data = res.get_json()
        assert data["tenantsProcessed"] == 1
        assert data["phasesProcessed"] == 1
        assert data["snapshotsCreated"] == 1
        assert data["skippedExisting"] == 0
        assert data["errors"] == []
        assert data["timedOut"] is False
        assert data["status"] == "completed"
        assert isinstance(data["durationMs"], int)
        run = db.session.get(PipelineRun, data["runId"])
        assert (run.run_type, run.trigger, run.as_of_date) == ("snapshots", "cron", date(2026, 3, 3))

    def test_second_call_is_idempotent(self, client, default_tenant):
        _create_phase(default_tenant.id)
        client.post("/api/cron/snapshots?date=2026-03-03", headers=SECRET_HEADERS)

        data = client.post("/api/cron/snapshots?date=2026-03-03", headers=SECRET_HEADERS).get_json()

        assert data["snapshotsCreated"] == 0
        assert data["skippedExisting"] == 1

    def test_unit_error_reported(self, client, default_tenant):
        phase = _create_phase(default_tenant.id, budget_hours=None)

        res = client.get("/api/cron/snapshots?date=2026-03-03", headers=SECRET_HEADERS)

        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "completed_with_errors"
        assert data["errors"][0]["phase_id"] == phase.id

    def test_invalid_date(self, client):
        res = client.get("/api/cron/snapshots?date=03.03.2026", headers=SECRET_HEADERS)
        assert res.status_code == 400
        data = res.get_json()
        assert data["code"] == "ERR_VALIDATION_INVALID"
        assert data["details"] == {"date": "03.03.2026"}
        assert PipelineRun.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# INSIGHTS
# ═════════════════════════════════════════════════════════════════════════════

class TestCronInsights:

    def test_run_report(self, client, default_tenant):
        phase = _create_phase(default_tenant.id)
        _capture_history(phase)

        res = client.post("/api/cron/insights?date=2026-03-03", headers=SECRET_HEADERS)

        assert res.status_code == 200
        data = res.get_json()
        assert data["tenantsProcessed"] == 1
        assert data["phasesProcessed"] == 1
        assert data["phaseInsightsCreated"] == 1
        assert data["projectsProcessed"] == 1
        assert data["projectInsightsCreated"] == 1
        assert data["status"] == "completed"
        insight = PhaseInsight.query.filter_by(phase_id=phase.id).one()
        assert insight.status == "behind"
        assert insight.text_source == "llm"

    def test_missing_llm_key(self, app, client, default_tenant, monkeypatch):
        monkeypatch.setitem(app.config, "INSIGHTS_LLM_PROVIDER", "openai")
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        res = client.post("/api/cron/insights", headers=SECRET_HEADERS)

        assert res.status_code == 500
        assert res.get_json()["error"] == "OPENAI_API_KEY is not configured"
        assert PipelineRun.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# WEATHER
# ═════════════════════════════════════════════════════════════════════════════

class TestCronWeather:

    def test_requires_secret(self, client):
        assert client.post("/api/cron/weather").status_code == 401

    def test_purges_old_days_when_weather_disabled(self, client):
        stale = date.today() - timedelta(days=10)
        db.session.add(WeatherCache(latitude=48.14, longitude=11.58,
                                    forecast_date=stale, rating="poor"))
        db.session.commit()

        res = client.post("/api/cron/weather", headers=SECRET_HEADERS)

        assert res.status_code == 200
        data = res.get_json()
        assert data["enabled"] is False
        assert data["refreshed"] == 0
        assert data["rowsPurged"] == 1
        assert WeatherCache.query.count() == 0
