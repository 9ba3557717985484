"""
Manual refresh cooldown.

One manual refresh per tenant per cooldown window. The last refresh
time lives on ``tenants.insights_last_refresh_at`` and is claimed with a
single conditional UPDATE, so two workers racing for the same tenant
cannot both win.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, update

from capacity_insights.core.exceptions import NotFoundError, RateLimitedError
from capacity_insights.models import db
from capacity_insights.models.auth import Tenant

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MINUTES = 60


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def wait_minutes(next_refresh_at: datetime, now: datetime) -> int:
    return max(1, math.ceil((next_refresh_at - now).total_seconds() / 60))


class RefreshService:

    @staticmethod
    def claim(tenant_id: int, *, cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
              now: datetime | None = None) -> datetime:
        """
        Take the tenant's refresh slot and commit it.

        Returns the claimed timestamp. Raises RateLimitedError inside the
        cooldown and NotFoundError for an unknown tenant.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=cooldown_minutes)

        result = db.session.execute(
            update(Tenant)
            .where(
                Tenant.id == tenant_id,
                or_(Tenant.insights_last_refresh_at.is_(None),
                    Tenant.insights_last_refresh_at <= cutoff),
            )
            .values(insights_last_refresh_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.session.commit()
            logger.info("Manual refresh claimed", extra={"tenant_id": tenant_id})
            return now

        db.session.rollback()
        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError(resource="Tenant", resource_id=tenant_id)

        next_at = _aware(tenant.insights_last_refresh_at) + timedelta(minutes=cooldown_minutes)
        waiting = wait_minutes(next_at, now)
        logger.info("Manual refresh rejected, %d minutes left", waiting,
                    extra={"tenant_id": tenant_id})
        raise RateLimitedError(next_refresh_at=next_at, wait_minutes=waiting)

    @staticmethod
    def status(tenant_id: int, *, cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
               now: datetime | None = None) -> dict:
        now = now or datetime.now(timezone.utc)
        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError(resource="Tenant", resource_id=tenant_id)

        last = _aware(tenant.insights_last_refresh_at)
        next_at = last + timedelta(minutes=cooldown_minutes) if last else None
        can_refresh = next_at is None or next_at <= now
        return {
            "lastRefreshAt": last.isoformat() if last else None,
            "canRefresh": can_refresh,
            "nextRefreshAt": None if can_refresh else next_at.isoformat(),
            "waitMinutes": 0 if can_refresh else wait_minutes(next_at, now),
            "rateLimitMinutes": cooldown_minutes,
        }
