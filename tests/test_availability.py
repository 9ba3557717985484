"""
Tests — Availability Analyzer.

Covers:
    - working days (Mon–Fri)
    - capacity minus absences, allocated and free hours
    - tenant context: available vs. overloaded users
"""

from datetime import date

from capacity_insights.models import db
from capacity_insights.models.auth import Tenant, User
from capacity_insights.models.planning import Absence, Allocation, Project, ProjectPhase
from capacity_insights.services.availability import (
    AvailabilityAnalyzer,
    UserAvailability,
    working_days,
)

MONDAY = date(2026, 3, 2)
SUNDAY = date(2026, 3, 8)


def _create_user(tenant_id, email, full_name=None, status="active"):
    user = User(tenant_id=tenant_id, email=email, full_name=full_name, status=status)
    db.session.add(user)
    db.session.commit()
    return user


def _create_phase(tenant_id):
    project = Project(tenant_id=tenant_id, name="Wohnanlage Nord")
    db.session.add(project)
    db.session.commit()
    phase = ProjectPhase(tenant_id=tenant_id, project_id=project.id, name="Rohbau", budget_hours=200.0)
    db.session.add(phase)
    db.session.commit()
    return phase


def _allocate(phase, user, day, hours):
    db.session.add(Allocation(tenant_id=phase.tenant_id, phase_id=phase.id,
                              user_id=user.id, date=day, planned_hours=hours))
    db.session.commit()


def _absent(user, start, end, kind="vacation"):
    db.session.add(Absence(tenant_id=user.tenant_id, user_id=user.id, type=kind,
                           start_date=start, end_date=end))
    db.session.commit()


# ═════════════════════════════════════════════════════════════════════════════
# WORKING DAYS & FIGURES
# ═════════════════════════════════════════════════════════════════════════════

class TestWorkingDays:

    def test_full_week(self):
        days = working_days(MONDAY, SUNDAY)
        assert len(days) == 5
        assert days[0] == MONDAY
        assert all(d.weekday() < 5 for d in days)

    def test_weekend_only(self):
        assert working_days(date(2026, 3, 7), SUNDAY) == []

    def test_empty_window(self):
        assert working_days(SUNDAY, MONDAY) == []


class TestUserAvailability:

    def test_free_and_utilization(self):
        u = UserAvailability(user_id=1, name="Anna", capacity_hours=40.0, allocated_hours=30.0)
        assert u.free_hours == 10.0
        assert u.utilization_percent == 75.0

    def test_no_capacity(self):
        busy = UserAvailability(user_id=1, name="Anna", capacity_hours=0.0, allocated_hours=8.0)
        idle = UserAvailability(user_id=2, name="Ben", capacity_hours=0.0, allocated_hours=0.0)
        assert busy.utilization_percent == 100.0
        assert idle.utilization_percent == 0.0


class TestGetAvailability:

    def test_allocations_inside_window_only(self, default_tenant):
        phase = _create_phase(default_tenant.id)
        anna = _create_user(default_tenant.id, "anna@example.com", "Anna Berg")
        _allocate(phase, anna, MONDAY, 8.0)
        _allocate(phase, anna, date(2026, 3, 3), 8.0)
        _allocate(phase, anna, date(2026, 3, 10), 8.0)    # next week

        result = AvailabilityAnalyzer().get_availability([anna.id], MONDAY, SUNDAY)

        a = result[anna.id]
        assert a.name == "Anna Berg"
        assert a.capacity_hours == 40.0
        assert a.allocated_hours == 16.0
        assert a.free_hours == 24.0
        assert a.utilization_percent == 40.0

    def test_absence_reduces_capacity(self, default_tenant):
        ben = _create_user(default_tenant.id, "ben@example.com")
        _absent(ben, date(2026, 3, 4), date(2026, 3, 5))
        _absent(ben, date(2026, 3, 7), date(2026, 3, 9), kind="sick")   # weekend + next Monday

        result = AvailabilityAnalyzer().get_availability([ben.id], MONDAY, SUNDAY)

        b = result[ben.id]
        assert b.absence_days == 2
        assert b.capacity_hours == 24.0
        assert b.name == "ben@example.com"

    def test_overlapping_absences_count_once(self, default_tenant):
        ben = _create_user(default_tenant.id, "ben@example.com")
        _absent(ben, date(2026, 3, 2), date(2026, 3, 4))
        _absent(ben, date(2026, 3, 4), date(2026, 3, 5), kind="sick")

        b = AvailabilityAnalyzer().get_availability([ben.id], MONDAY, SUNDAY)[ben.id]

        assert b.absence_days == 4
        assert b.capacity_hours == 8.0

    def test_empty_inputs(self):
        analyzer = AvailabilityAnalyzer()
        assert analyzer.get_availability([], MONDAY, SUNDAY) == {}
        assert analyzer.get_availability([1], SUNDAY, MONDAY) == {}


# ═════════════════════════════════════════════════════════════════════════════
# TENANT CONTEXT
# ═════════════════════════════════════════════════════════════════════════════

class TestTenantContext:

    def test_available_and_overloaded(self, default_tenant):
        phase = _create_phase(default_tenant.id)
        anna = _create_user(default_tenant.id, "anna@example.com", "Anna Berg")
        ben = _create_user(default_tenant.id, "ben@example.com", "Ben Kraus")
        carl = _create_user(default_tenant.id, "carl@example.com", "Carl Huber")
        for day in working_days(MONDAY, SUNDAY):
            _allocate(phase, ben, day, 10.0)     # 50 of 40 h
            _allocate(phase, carl, day, 7.0)     # 35 of 40 h, 5 h free
        _allocate(phase, anna, MONDAY, 8.0)

        context = AvailabilityAnalyzer().get_tenant_context(default_tenant.id, MONDAY, SUNDAY)

        assert [u.name for u in context.available] == ["Anna Berg"]
        assert context.available[0].free_hours == 32.0
        assert [u.name for u in context.overloaded] == ["Ben Kraus"]
        assert context.overloaded[0].utilization_percent == 125.0
        assert not context.is_empty

    def test_inactive_and_foreign_users_ignored(self, default_tenant):
        other = Tenant(name="Bau AG", slug="bau-ag")
        db.session.add(other)
        db.session.commit()
        _create_user(default_tenant.id, "gone@example.com", status="inactive")
        _create_user(other.id, "foreign@example.com")

        context = AvailabilityAnalyzer().get_tenant_context(default_tenant.id, MONDAY, SUNDAY)

        assert context.is_empty

    def test_available_sorted_by_free_hours(self, default_tenant):
        phase = _create_phase(default_tenant.id)
        users = [_create_user(default_tenant.id, f"u{i}@example.com", f"User {i}") for i in range(3)]
        _allocate(phase, users[0], MONDAY, 24.0)
        _allocate(phase, users[1], MONDAY, 8.0)

        context = AvailabilityAnalyzer().get_tenant_context(default_tenant.id, MONDAY, SUNDAY)

        assert [u.name for u in context.available] == ["User 2", "User 1", "User 0"]
