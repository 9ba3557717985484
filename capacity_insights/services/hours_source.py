"""
Hours source — booked (IST) and planned (PLAN) hours per phase.

IST hours come from TimeTac bookings synced into ``time_entries``;
PLAN hours are the phase's allocations over any date.
"""

from datetime import date

from sqlalchemy import func

from capacity_insights.models import db
from capacity_insights.models.planning import Allocation, TimeEntry


class HoursSource:
    """Narrow read interface used by the snapshot generator."""

    @staticmethod
    def sum_actual_hours(phase_id: int, as_of: date) -> float:
        total = db.session.query(func.coalesce(func.sum(TimeEntry.hours), 0.0)).filter(
            TimeEntry.phase_id == phase_id,
            TimeEntry.date <= as_of,
        ).scalar()
        return float(total or 0.0)

    @staticmethod
    def sum_planned_hours(phase_id: int) -> float:
        total = db.session.query(func.coalesce(func.sum(Allocation.planned_hours), 0.0)).filter(
            Allocation.phase_id == phase_id,
        ).scalar()
        return float(total or 0.0)

    @staticmethod
    def allocation_counts(phase_id: int) -> tuple[int, int]:
        """Return (allocations, distinct allocated users) for a phase."""
        count, users = db.session.query(
            func.count(Allocation.id),
            func.count(func.distinct(Allocation.user_id)),
        ).filter(Allocation.phase_id == phase_id).one()
        return int(count or 0), int(users or 0)
