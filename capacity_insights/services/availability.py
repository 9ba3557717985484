"""
Availability Analyzer.

Computes free capacity per user in a date window so recommendations for
at-risk phases can name colleagues who still have room.

    capacity    = working days (Mon–Fri) × 8 h, minus absence days
    allocated   = sum of allocation hours in the window
    free        = capacity − allocated
    utilization = allocated / capacity

Usage:
    analyzer = AvailabilityAnalyzer()
    per_user = analyzer.get_availability([1, 2], date(2026, 3, 2), date(2026, 3, 13))
    context = analyzer.get_tenant_context(tenant_id, start, end)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta

from sqlalchemy import func

from capacity_insights.models import db
from capacity_insights.models.auth import User
from capacity_insights.models.planning import Absence, Allocation

logger = logging.getLogger(__name__)

HOURS_PER_DAY = 8.0
MIN_FREE_HOURS = 8.0          # at least one free day to count as available
MAX_AVAILABLE_USERS = 5
MAX_OVERLOADED_USERS = 3


@dataclass
class UserAvailability:
    user_id: int
    name: str
    capacity_hours: float
    allocated_hours: float
    absence_days: int = 0

    @property
    def free_hours(self) -> float:
        return round(self.capacity_hours - self.allocated_hours, 1)

    @property
    def utilization_percent(self) -> float:
        if self.capacity_hours <= 0:
            return 100.0 if self.allocated_hours > 0 else 0.0
        return round(self.allocated_hours / self.capacity_hours * 100, 1)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "capacity_hours": self.capacity_hours,
            "allocated_hours": self.allocated_hours,
            "free_hours": self.free_hours,
            "utilization_percent": self.utilization_percent,
            "absence_days": self.absence_days,
        }


@dataclass
class AvailabilityContext:
    start: date
    end: date
    available: list[UserAvailability] = field(default_factory=list)
    overloaded: list[UserAvailability] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.available and not self.overloaded


def working_days(start: date, end: date) -> list[date]:
    """Mon–Fri dates in [start, end]."""
    days = []
    current = start
    while current <= end:
        if current.weekday() < 5:
            days.append(current)
        current += timedelta(days=1)
    return days


class AvailabilityAnalyzer:

    def get_availability(self, user_ids: list[int], start: date,
                         end: date) -> dict[int, UserAvailability]:
        """Per-user free / busy figures for the window [start, end]."""
        if not user_ids or end < start:
            return {}

        workdays = set(working_days(start, end))
        users = User.query.filter(User.id.in_(user_ids)).all()

        allocated = dict(
            db.session.query(Allocation.user_id, func.coalesce(func.sum(Allocation.planned_hours), 0.0))
            .filter(
                Allocation.user_id.in_(user_ids),
                Allocation.date >= start,
                Allocation.date <= end,
            )
            .group_by(Allocation.user_id)
            .all()
        )

        absent_days: dict[int, set[date]] = {}
        absences = Absence.query.filter(
            Absence.user_id.in_(user_ids),
            Absence.start_date <= end,
            Absence.end_date >= start,
        ).all()
        for absence in absences:
            span = working_days(max(absence.start_date, start), min(absence.end_date, end))
            absent_days.setdefault(absence.user_id, set()).update(d for d in span if d in workdays)

        result = {}
        for user in users:
            off = len(absent_days.get(user.id, ()))
            result[user.id] = UserAvailability(
                user_id=user.id,
                name=user.full_name or user.email,
                capacity_hours=(len(workdays) - off) * HOURS_PER_DAY,
                allocated_hours=float(allocated.get(user.id, 0.0) or 0.0),
                absence_days=off,
            )
        return result

    def get_tenant_context(self, tenant_id: int, start: date, end: date) -> AvailabilityContext:
        """Most available and most overloaded active users of a tenant."""
        user_ids = [
            uid for (uid,) in db.session.query(User.id).filter(
                User.tenant_id == tenant_id, User.status == "active",
            ).all()
        ]
        per_user = list(self.get_availability(user_ids, start, end).values())

        available = sorted(
            (u for u in per_user if u.free_hours >= MIN_FREE_HOURS),
            key=lambda u: u.free_hours, reverse=True,
        )
        overloaded = sorted(
            (u for u in per_user if u.utilization_percent > 100),
            key=lambda u: u.utilization_percent, reverse=True,
        )
        return AvailabilityContext(
            start=start,
            end=end,
            available=available[:MAX_AVAILABLE_USERS],
            overloaded=overloaded[:MAX_OVERLOADED_USERS],
        )
