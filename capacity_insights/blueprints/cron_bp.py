"""
Cron trigger blueprint.

Called by the platform scheduler with a shared secret:

    Authorization: Bearer <CRON_SECRET>

Endpoints:
    GET|POST /api/cron/snapshots   — capture today's phase snapshots
    GET|POST /api/cron/insights    — build insights from the snapshot history
    GET|POST /api/cron/weather     — warm the weather cache, purge old days

The pipeline endpoints accept ``?date=YYYY-MM-DD`` for backfills and answer
with the full run report (operators only; end users never see raw error
messages).
"""

import hmac
import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from capacity_insights.blueprints import parse_date_arg
from capacity_insights.core.exceptions import ConfigurationError, ValidationError
from capacity_insights.services.pipeline import (
    INSIGHT_COUNT_KEYS,
    SNAPSHOT_COUNT_KEYS,
    PipelineOrchestrator,
)
from capacity_insights.services.weather_service import refresh_weather_cache
from capacity_insights.utils.errors import E, api_error

logger = logging.getLogger(__name__)

cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


def require_cron_secret(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        secret = current_app.config.get("CRON_SECRET")
        if not secret:
            logger.error("CRON_SECRET is not configured; rejecting cron call to %s", request.path)
            return api_error(E.CONFIGURATION, "cron_not_configured")
        supplied = request.headers.get("Authorization", "")
        if not hmac.compare_digest(supplied.encode(), f"Bearer {secret}".encode()):
            logger.warning("Cron call with invalid secret from %s", request.remote_addr)
            return api_error(E.UNAUTHORIZED, "unauthorized")
        return fn(*args, **kwargs)
    return wrapper


@cron_bp.route("/snapshots", methods=["GET", "POST"])
@require_cron_secret
def snapshots():
    try:
        as_of = parse_date_arg()
    except ValidationError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc), details=exc.details)

    result = PipelineOrchestrator.from_config().run_snapshots(as_of, trigger="cron")
    return jsonify(result.to_response(SNAPSHOT_COUNT_KEYS)), 200


@cron_bp.route("/insights", methods=["GET", "POST"])
@require_cron_secret
def insights():
    try:
        as_of = parse_date_arg()
    except ValidationError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc), details=exc.details)

    try:
        result = PipelineOrchestrator.from_config().run_insights(as_of, trigger="cron")
    except ConfigurationError as exc:
        logger.error("Insight run refused: %s", exc)
        return api_error(E.CONFIGURATION, f"{exc.setting} is not configured")
    return jsonify(result.to_response(INSIGHT_COUNT_KEYS)), 200


@cron_bp.route("/weather", methods=["GET", "POST"])
@require_cron_secret
def weather():
    return jsonify(refresh_weather_cache()), 200
