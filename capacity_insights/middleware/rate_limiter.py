"""
Rate limiting configuration.

Applies per-blueprint HTTP rate limits using Flask-Limiter. The Limiter
instance is created in ``capacity_insights/__init__.py`` with no default
limits; this module applies limits per route category.

This is request throttling only. The one-refresh-per-hour business rule for
manual insight refreshes is persisted per tenant (see
``services/refresh_service.py``).

Usage:
    from capacity_insights.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)


def tenant_rate_limit_key():
    """Dynamic rate limit key: tenant_id if available, else remote IP."""
    tenant_id = getattr(g, "jwt_tenant_id", None)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Insights API:  60/minute per tenant
        - Cron triggers: 10/minute per IP (brute-force guard on the secret)
        - Health check:  exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("insights")
    if bp:
        limiter.limit("60/minute", key_func=tenant_rate_limit_key)(bp)

    bp = app.blueprints.get("cron")
    if bp:
        limiter.limit("10/minute")(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — insights: 60/min/tenant, cron: 10/min")
