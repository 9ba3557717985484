"""
Capacity Insights
Planning models — projects, phases, allocations, absences, time entries.

These tables are owned by the planning application and its sync jobs
(Asana for phases, TimeTac for booked hours). The insight pipeline only
reads them.

Models:
    - Project: Construction project (optionally geo-located)
    - ProjectPhase: Budgeted phase (Gewerk) of a project
    - Allocation: Planned hours of a user on a phase for a single day
    - Absence: Vacation / sickness / training of a user
    - TimeEntry: Booked (actual) hours of a user on a phase
"""

from datetime import datetime, timezone

from capacity_insights.models import db
from capacity_insights.models.base import TenantModel


PROJECT_STATUSES = {"planning", "active", "paused", "completed", "cancelled"}
PHASE_STATUSES = {"planned", "active", "completed", "cancelled"}
ABSENCE_TYPES = {"vacation", "sick", "training", "other"}


class Project(TenantModel):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), default="active", index=True,
                       comment="planning, active, paused, completed, cancelled")
    address = db.Column(db.String(300), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    phases = db.relationship("ProjectPhase", back_populates="project",
                             lazy="select", order_by="ProjectPhase.id")

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "status": self.status,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"


class ProjectPhase(TenantModel):
    __tablename__ = "project_phases"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), default="active", index=True,
                       comment="planned, active, completed, cancelled")
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True, comment="Deadline")
    budget_hours = db.Column(db.Float, nullable=True, comment="SOLL hours")
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    project = db.relationship("Project", back_populates="phases")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "budget_hours": self.budget_hours,
        }

    def __repr__(self):
        return f"<ProjectPhase {self.id}: {self.name}>"


class Allocation(TenantModel):
    __tablename__ = "allocations"
    __table_args__ = (
        db.Index("ix_allocations_user_date", "user_id", "date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    phase_id = db.Column(db.Integer, db.ForeignKey("project_phases.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=True, index=True)
    date = db.Column(db.Date, nullable=False)
    planned_hours = db.Column(db.Float, default=0.0)

    def to_dict(self):
        return {
            "id": self.id,
            "phase_id": self.phase_id,
            "user_id": self.user_id,
            "date": self.date.isoformat() if self.date else None,
            "planned_hours": self.planned_hours,
        }


class Absence(TenantModel):
    __tablename__ = "absences"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    type = db.Column(db.String(20), default="vacation",
                     comment="vacation, sick, training, other")
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
        }


class TimeEntry(TenantModel):
    __tablename__ = "time_entries"

    id = db.Column(db.Integer, primary_key=True)
    phase_id = db.Column(db.Integer, db.ForeignKey("project_phases.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                        nullable=True)
    date = db.Column(db.Date, nullable=False, index=True)
    hours = db.Column(db.Float, nullable=False, default=0.0)
    external_id = db.Column(db.String(100), nullable=True, comment="TimeTac booking id")

    def to_dict(self):
        return {
            "id": self.id,
            "phase_id": self.phase_id,
            "user_id": self.user_id,
            "date": self.date.isoformat() if self.date else None,
            "hours": self.hours,
        }
