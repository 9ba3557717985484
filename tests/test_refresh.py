"""
Tests — Manual Refresh (cooldown service, orchestrator, API).

Covers:
    - cooldown claim / rejection / expiry
    - waitMinutes rounding
    - refresh runs snapshots + insights for one tenant
    - configuration errors do not consume the cooldown
    - POST / GET /api/v1/insights/refresh: roles, 429 body, status
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from capacity_insights.core.exceptions import ConfigurationError, NotFoundError, RateLimitedError
from capacity_insights.models import db
from capacity_insights.models.analytics import PipelineRun
from capacity_insights.models.auth import Tenant
from capacity_insights.models.planning import Project, ProjectPhase, TimeEntry
from capacity_insights.services.pipeline import PipelineOrchestrator
from capacity_insights.services.refresh_service import RefreshService, wait_minutes

NOW = datetime(2026, 3, 3, 9, 30, tzinfo=timezone.utc)
URL = "/api/v1/insights/refresh"


def _set_last_refresh(tenant, value):
    tenant.insights_last_refresh_at = value
    db.session.commit()


def _create_phase_with_bookings(tenant_id):
    project = Project(tenant_id=tenant_id, name="Wohnanlage Nord", status="active")
    db.session.add(project)
    db.session.commit()
    phase = ProjectPhase(tenant_id=tenant_id, project_id=project.id, name="Rohbau",
                         budget_hours=80.0, start_date=date(2026, 3, 1),
                         end_date=date(2026, 3, 5), status="active")
    db.session.add(phase)
    db.session.commit()
    db.session.add(TimeEntry(tenant_id=tenant_id, phase_id=phase.id,
                             date=date(2026, 3, 1), hours=10.0))
    db.session.commit()
    return phase


# ═════════════════════════════════════════════════════════════════════════════
# COOLDOWN SERVICE
# ═════════════════════════════════════════════════════════════════════════════

class TestCooldown:

    def test_first_claim_succeeds(self, default_tenant):
        claimed = RefreshService.claim(default_tenant.id, now=NOW)
        assert claimed == NOW
        db.session.refresh(default_tenant)
        assert default_tenant.insights_last_refresh_at.replace(tzinfo=timezone.utc) == NOW

    def test_claim_inside_cooldown_rejected(self, default_tenant):
        _set_last_refresh(default_tenant, NOW - timedelta(minutes=10))

        with pytest.raises(RateLimitedError) as exc_info:
            RefreshService.claim(default_tenant.id, now=NOW)

        assert exc_info.value.wait_minutes == 50
        assert exc_info.value.next_refresh_at == NOW + timedelta(minutes=50)

    def test_rejection_keeps_original_timestamp(self, default_tenant):
        last = NOW - timedelta(minutes=10)
        _set_last_refresh(default_tenant, last)

        with pytest.raises(RateLimitedError):
            RefreshService.claim(default_tenant.id, now=NOW)

        db.session.refresh(default_tenant)
        assert default_tenant.insights_last_refresh_at.replace(tzinfo=timezone.utc) == last

    def test_claim_after_cooldown(self, default_tenant):
        _set_last_refresh(default_tenant, NOW - timedelta(minutes=60))
        assert RefreshService.claim(default_tenant.id, now=NOW) == NOW

    def test_custom_cooldown(self, default_tenant):
        _set_last_refresh(default_tenant, NOW - timedelta(minutes=10))
        assert RefreshService.claim(default_tenant.id, cooldown_minutes=5, now=NOW) == NOW

    def test_unknown_tenant(self):
        with pytest.raises(NotFoundError):
            RefreshService.claim(99999, now=NOW)

    @pytest.mark.parametrize("remaining, expected", [
        (timedelta(seconds=1), 1),
        (timedelta(seconds=59), 1),
        (timedelta(minutes=1), 1),
        (timedelta(minutes=49, seconds=1), 50),
        (timedelta(minutes=50), 50),
        (timedelta(seconds=-30), 1),
    ])
    def test_wait_minutes(self, remaining, expected):
        assert wait_minutes(NOW + remaining, NOW) == expected

    def test_status_never_refreshed(self, default_tenant):
        status = RefreshService.status(default_tenant.id, now=NOW)
        assert status == {
            "lastRefreshAt": None,
            "canRefresh": True,
            "nextRefreshAt": None,
            "waitMinutes": 0,
            "rateLimitMinutes": 60,
        }

    def test_status_inside_cooldown(self, default_tenant):
        _set_last_refresh(default_tenant, NOW - timedelta(minutes=10))
        status = RefreshService.status(default_tenant.id, now=NOW)
        assert status["canRefresh"] is False
        assert status["waitMinutes"] == 50
        assert status["nextRefreshAt"] == (NOW + timedelta(minutes=50)).isoformat()


# ═════════════════════════════════════════════════════════════════════════════
# ORCHESTRATED REFRESH
# ═════════════════════════════════════════════════════════════════════════════

class TestRunRefresh:

    def test_refresh_runs_both_stages(self, default_tenant):
        _create_phase_with_bookings(default_tenant.id)
        orchestrator = PipelineOrchestrator()

        body = orchestrator.run_refresh(default_tenant.id, as_of=date(2026, 3, 3), now=NOW)

        assert body["success"] is True
        assert body["lastRefreshAt"] == NOW.isoformat()
        assert body["snapshotsCreated"] == 1
        assert body["insightsCreated"] == 1
        assert body["projectInsightsCreated"] == 1
        assert body["errorsCount"] == 0
        assert body["status"] == "completed"
        run = db.session.get(PipelineRun, body["runId"])
        assert (run.run_type, run.trigger, run.tenant_id) == ("refresh", "manual", default_tenant.id)
        assert run.counts["snapshots_created"] == 1
        assert run.counts["phase_insights_created"] == 1

    def test_only_the_requesting_tenant_is_processed(self, default_tenant):
        other = Tenant(name="Bau AG", slug="bau-ag")
        db.session.add(other)
        db.session.commit()
        _create_phase_with_bookings(default_tenant.id)
        _create_phase_with_bookings(other.id)

        body = PipelineOrchestrator().run_refresh(other.id, as_of=date(2026, 3, 3), now=NOW)

        assert body["snapshotsCreated"] == 1
        assert body["insightsCreated"] == 1

    def test_second_refresh_rate_limited_without_run(self, default_tenant):
        orchestrator = PipelineOrchestrator()
        orchestrator.run_refresh(default_tenant.id, as_of=date(2026, 3, 3), now=NOW)

        with pytest.raises(RateLimitedError):
            orchestrator.run_refresh(default_tenant.id, as_of=date(2026, 3, 3),
                                     now=NOW + timedelta(minutes=5))

        assert PipelineRun.query.filter_by(run_type="refresh").count() == 1

    def test_configuration_error_keeps_cooldown_free(self, default_tenant):
        factory = MagicMock(side_effect=ConfigurationError("OPENAI_API_KEY"))

        with pytest.raises(ConfigurationError):
            PipelineOrchestrator(text_generator_factory=factory).run_refresh(default_tenant.id, now=NOW)

        db.session.refresh(default_tenant)
        assert default_tenant.insights_last_refresh_at is None
        assert PipelineRun.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# API
# ═════════════════════════════════════════════════════════════════════════════

class TestRefreshAPI:

    def test_refresh_ok(self, client, default_tenant, auth_headers):
        _create_phase_with_bookings(default_tenant.id)

        res = client.post(URL, headers=auth_headers(default_tenant.id, role="planer"))

        assert res.status_code == 200
        data = res.get_json()
        assert data["success"] is True
        assert data["snapshotsCreated"] == 1
        assert "lastRefreshAt" in data and "runId" in data

    def test_admin_may_refresh(self, client, default_tenant, auth_headers):
        res = client.post(URL, headers=auth_headers(default_tenant.id, role="admin"))
        assert res.status_code == 200

    def test_second_refresh_429(self, client, default_tenant, auth_headers):
        headers = auth_headers(default_tenant.id)
        assert client.post(URL, headers=headers).status_code == 200

        res = client.post(URL, headers=headers)

        assert res.status_code == 429
        data = res.get_json()
        assert data["success"] is False
        assert data["error"] == "rate_limited"
        assert data["waitMinutes"] == 60
        assert data["nextRefreshAt"]

    def test_wait_minutes_after_ten_minutes(self, client, default_tenant, auth_headers):
        _set_last_refresh(default_tenant, datetime.now(timezone.utc) - timedelta(minutes=10))

        res = client.post(URL, headers=auth_headers(default_tenant.id))

        assert res.status_code == 429
        assert res.get_json()["waitMinutes"] == 50

    def test_gewerk_forbidden(self, client, default_tenant, auth_headers):
        res = client.post(URL, headers=auth_headers(default_tenant.id, role="gewerk"))
        assert res.status_code == 403
        db.session.refresh(default_tenant)
        assert default_tenant.insights_last_refresh_at is None

    def test_no_token(self, client):
        res = client.post(URL)
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHORIZED"

    def test_invalid_token(self, client):
        res = client.post(URL, headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    def test_misconfigured_provider_500(self, app, client, default_tenant, auth_headers, monkeypatch):
        monkeypatch.setitem(app.config, "INSIGHTS_LLM_PROVIDER", "anthropic")
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

        res = client.post(URL, headers=auth_headers(default_tenant.id))

        assert res.status_code == 500
        assert res.get_json()["code"] == "ERR_CONFIGURATION"
        db.session.refresh(default_tenant)
        assert default_tenant.insights_last_refresh_at is None

    def test_status_endpoint(self, client, default_tenant, auth_headers):
        res = client.get(URL, headers=auth_headers(default_tenant.id, role="viewer"))
        assert res.status_code == 200
        data = res.get_json()
        assert data["canRefresh"] is True
        assert data["rateLimitMinutes"] == 60

    def test_status_after_refresh(self, client, default_tenant, auth_headers):
        client.post(URL, headers=auth_headers(default_tenant.id))

        data = client.get(URL, headers=auth_headers(default_tenant.id, role="gewerk")).get_json()

        assert data["canRefresh"] is False
        assert data["waitMinutes"] == 60
        assert data["lastRefreshAt"] is not None
