"""
JWT Auth Middleware — resolves the caller of /api/v1/insights routes.

Tokens are issued by the main planning application; this service only
verifies them. The verified claims land on ``g.access`` and, for the
route code, on ``g.jwt_user_id`` / ``g.jwt_tenant_id`` / ``g.jwt_roles``.

    Authorization: Bearer <token>
"""

import logging
from functools import wraps

import jwt as pyjwt
from flask import g, request

from capacity_insights.services.jwt_service import verify_access_token
from capacity_insights.utils.errors import E, api_error

logger = logging.getLogger(__name__)

PROTECTED_PREFIX = "/api/v1/insights"


def init_jwt_middleware(app):

    @app.before_request
    def _resolve_caller():
        g.access = None
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_roles = ()

        if not request.path.startswith(PROTECTED_PREFIX):
            return
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme != "Bearer" or not token:
            return

        try:
            claims = verify_access_token(token)
        except pyjwt.InvalidTokenError as exc:
            logger.info("Rejected access token on %s: %s", request.path, exc)
            return

        g.access = claims
        g.jwt_user_id = claims.user_id
        g.jwt_tenant_id = claims.tenant_id
        g.jwt_roles = claims.roles


def require_tenant_roles(*roles):
    """Route decorator: 401 without a tenant-scoped token, 403 when none of ``roles`` match."""

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            claims = getattr(g, "access", None)
            if claims is None or claims.tenant_id is None:
                return api_error(E.UNAUTHORIZED, "Authentication required")
            if roles and not claims.has_any_role(*roles):
                return api_error(E.FORBIDDEN, "Insufficient permissions")
            return fn(*args, **kwargs)
        return wrapper
    return decorator
