"""
Insights API blueprint — dashboard reads and the manual refresh.

Endpoints (JWT, tenant from the token):
    POST /api/v1/insights/refresh           — run snapshots + insights now (planer, admin)
    GET  /api/v1/insights/refresh           — cooldown status
    GET  /api/v1/insights/summary           — tenant dashboard aggregate
    GET  /api/v1/insights/projects/<id>     — latest project insight with its phases
    GET  /api/v1/insights/phases/<id>       — latest phase insight with recent history
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from capacity_insights.core.exceptions import (
    ConfigurationError,
    NotFoundError,
    RateLimitedError,
)
from capacity_insights.middleware.jwt_auth import require_tenant_roles
from capacity_insights.services.insight_service import InsightService
from capacity_insights.services.pipeline import PipelineOrchestrator
from capacity_insights.services.refresh_service import RefreshService
from capacity_insights.utils.errors import E, api_error

logger = logging.getLogger(__name__)

insights_bp = Blueprint("insights", __name__, url_prefix="/api/v1/insights")

REFRESH_ROLES = ("planer", "admin")


def _cooldown_minutes() -> int:
    return current_app.config.get("INSIGHTS_REFRESH_COOLDOWN_MINUTES", 60)


# ── Refresh ──────────────────────────────────────────────────────────────


@insights_bp.route("/refresh", methods=["POST"])
@require_tenant_roles(*REFRESH_ROLES)
def refresh():
    """Manual refresh, at most once per cooldown window per tenant."""
    tenant_id = g.jwt_tenant_id
    try:
        result = PipelineOrchestrator.from_config().run_refresh(tenant_id)
    except RateLimitedError as exc:
        return jsonify({
            "success": False,
            "error": "rate_limited",
            "nextRefreshAt": exc.next_refresh_at.isoformat(),
            "waitMinutes": exc.wait_minutes,
        }), 429
    except ConfigurationError as exc:
        logger.error("Manual refresh refused: %s", exc, extra={"tenant_id": tenant_id})
        return api_error(E.CONFIGURATION, "Insight generation is not configured")
    except NotFoundError:
        return api_error(E.NOT_FOUND, "Tenant not found")

    logger.info("Manual refresh by user %s", g.jwt_user_id, extra={"tenant_id": tenant_id})
    return jsonify(result), 200


@insights_bp.route("/refresh", methods=["GET"])
@require_tenant_roles()
def refresh_status():
    try:
        return jsonify(RefreshService.status(g.jwt_tenant_id,
                                             cooldown_minutes=_cooldown_minutes())), 200
    except NotFoundError:
        return api_error(E.NOT_FOUND, "Tenant not found")


# ── Reads ────────────────────────────────────────────────────────────────


@insights_bp.route("/summary", methods=["GET"])
@require_tenant_roles()
def summary():
    """``{"summary": null}`` until the first insight run for the tenant."""
    return jsonify({"summary": InsightService.get_tenant_summary(g.jwt_tenant_id)}), 200


@insights_bp.route("/projects/<int:project_id>", methods=["GET"])
@require_tenant_roles()
def project_insight(project_id):
    try:
        return jsonify(InsightService.get_project_insight(g.jwt_tenant_id, project_id)), 200
    except NotFoundError:
        return api_error(E.NOT_FOUND, "Project not found")


@insights_bp.route("/phases/<int:phase_id>", methods=["GET"])
@require_tenant_roles()
def phase_insight(phase_id):
    days = request.args.get("days", 14, type=int)
    days = min(max(days, 1), 90)
    try:
        return jsonify(InsightService.get_phase_insight(
            g.jwt_tenant_id, phase_id, history_days=days,
        )), 200
    except NotFoundError:
        return api_error(E.NOT_FOUND, "Phase not found")
