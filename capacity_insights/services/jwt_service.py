"""
Access tokens shared with the planning application.

The planning app signs HS256 tokens with ``JWT_SECRET_KEY`` (falls back to
``SECRET_KEY``). This service verifies them and can mint tokens for
service accounts and tests.

Claims:
    sub        user id (string, RFC 7519)
    tenant_id  tenant the user acts for; insight routes need it
    roles      e.g. ["planer"], ["admin"], ["gewerk"], ["viewer"]
    type       always "access"
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

ALGORITHM = "HS256"
TOKEN_TYPE = "access"
DEFAULT_TTL_SECONDS = 900
LEEWAY_SECONDS = 30


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    tenant_id: int | None
    roles: tuple[str, ...] = field(default_factory=tuple)

    def has_any_role(self, *roles: str) -> bool:
        return bool(set(self.roles) & set(roles))


def _signing_key() -> str:
    cfg = current_app.config
    return cfg.get("JWT_SECRET_KEY") or cfg["SECRET_KEY"]


def issue_access_token(claims: AccessClaims, ttl_seconds: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_seconds or current_app.config.get("JWT_ACCESS_EXPIRES", DEFAULT_TTL_SECONDS)
    payload = {
        "sub": str(claims.user_id),
        "roles": list(claims.roles),
        "type": TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
        "jti": uuid.uuid4().hex,
    }
    if claims.tenant_id is not None:
        payload["tenant_id"] = claims.tenant_id
    return jwt.encode(payload, _signing_key(), algorithm=ALGORITHM)


def verify_access_token(token: str) -> AccessClaims:
    """Raises ``jwt.InvalidTokenError`` (incl. expiry) for anything unusable."""
    payload = jwt.decode(token, _signing_key(), algorithms=[ALGORITHM],
                         leeway=LEEWAY_SECONDS, options={"require": ["exp", "sub"]})
    if payload.get("type") != TOKEN_TYPE:
        raise jwt.InvalidTokenError(f"not an access token: {payload.get('type')!r}")

    tenant_id = payload.get("tenant_id")
    if tenant_id is not None and not isinstance(tenant_id, int):
        raise jwt.InvalidTokenError("tenant_id must be an integer")
    return AccessClaims(
        user_id=payload["sub"],
        tenant_id=tenant_id,
        roles=tuple(payload.get("roles") or ()),
    )
