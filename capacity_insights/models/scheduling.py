"""
Scheduled job registry.

One row per registered job (``phase_snapshots``, ``insight_generation``,
``weather_refresh``).
The external trigger decides when a job runs; the row keeps its default
daily schedule, the enable switch and the outcome of recent runs. Jobs
that drive the pipeline return its run report, so ``last_pipeline_run_id``
points at the matching ``pipeline_runs`` row.
"""

from datetime import datetime, timezone

from capacity_insights.models import db


class ScheduledJob(db.Model):
    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    schedule_config = db.Column(db.JSON, default=dict, comment='{"hour": "5", "minute": "15", ...}')
    status = db.Column(db.String(20), default="active", comment="active, paused")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_success_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success, failed")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    last_pipeline_run_id = db.Column(db.Integer, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    consecutive_failures = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        now = datetime.now(timezone.utc)
        self.last_run_at = now
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1

        if isinstance(result, dict) and result.get("runId") is not None:
            self.last_pipeline_run_id = result["runId"]

        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.consecutive_failures = (self.consecutive_failures or 0) + 1
            self.last_error = str(error) if error else None
        else:
            self.consecutive_failures = 0
            self.last_success_at = now

    def to_dict(self):
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "schedule_config": self.schedule_config,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": _iso(self.last_run_at),
            "last_success_at": _iso(self.last_success_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "last_pipeline_run_id": self.last_pipeline_run_id,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
