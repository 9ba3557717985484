"""capacity_insights_tables

Creates the insight pipeline tables:
  - phase_snapshots            — append-only daily capture per phase
  - phase_insights             — derived per-phase analysis per day
  - project_insights           — phase insights rolled up per project and day
  - tenant_insight_summaries   — one dashboard row per tenant
  - pipeline_runs              — run reports (snapshots / insights / refresh)
  - scheduled_jobs             — job registry and run history
  - weather_cache              — Open-Meteo forecast days per coordinate
and adds ``tenants.insights_last_refresh_at`` (manual refresh cooldown).

Planning tables (projects, project_phases, allocations, ...) belong to the
planning application and are not touched here.

Tables are created conditionally so the migration is safe against databases
that already received them via db.create_all() in development.

Revision ID: c1a7e3f90b21
Revises:
Create Date: 2026-03-02 09:12:44.118203
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'c1a7e3f90b21'
down_revision = None
branch_labels = None
depends_on = None


def _texts():
    return [
        sa.Column("summary_text", sa.Text(), nullable=True),
        sa.Column("detail_text", sa.Text(), nullable=True),
        sa.Column("recommendation_text", sa.Text(), nullable=True),
        sa.Column("text_source", sa.String(length=20), nullable=True,
                  comment="llm, fallback"),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Tenant cooldown column ────────────────────────────────────────────
    tenant_cols = {c["name"] for c in inspector.get_columns("tenants")}
    if "insights_last_refresh_at" not in tenant_cols:
        op.add_column("tenants", sa.Column("insights_last_refresh_at",
                                           sa.DateTime(timezone=True), nullable=True))

    # ── Phase snapshots ───────────────────────────────────────────────────
    if "phase_snapshots" not in existing:
        op.create_table(
            "phase_snapshots",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("phase_id", sa.Integer(), nullable=False),
            sa.Column("snapshot_date", sa.Date(), nullable=False),
            sa.Column("ist_hours", sa.Float(), nullable=False, server_default="0",
                      comment="Booked hours to date"),
            sa.Column("plan_hours", sa.Float(), nullable=False, server_default="0",
                      comment="Allocated hours"),
            sa.Column("soll_hours", sa.Float(), nullable=False, server_default="0",
                      comment="Budget hours"),
            sa.Column("allocations_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("allocated_users_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["phase_id"], ["project_phases.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("phase_id", "snapshot_date", name="uq_phase_snapshot_phase_date"),
        )
        op.create_index("ix_phase_snapshots_tenant_id", "phase_snapshots", ["tenant_id"])
        op.create_index("ix_phase_snapshots_phase_id", "phase_snapshots", ["phase_id"])
        op.create_index("ix_phase_snapshots_tenant_date", "phase_snapshots",
                        ["tenant_id", "snapshot_date"])

    # ── Phase insights ────────────────────────────────────────────────────
    if "phase_insights" not in existing:
        op.create_table(
            "phase_insights",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("phase_id", sa.Integer(), nullable=False),
            sa.Column("insight_date", sa.Date(), nullable=False),
            sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="on_track, at_risk, behind, critical, completed"),
            sa.Column("burn_rate_ist", sa.Float(), nullable=True),
            sa.Column("burn_rate_plan", sa.Float(), nullable=True),
            sa.Column("burn_rate_trend", sa.String(length=10), nullable=True),
            sa.Column("forecast_completion_date", sa.Date(), nullable=True),
            sa.Column("deadline_delta_days", sa.Integer(), nullable=True),
            sa.Column("days_remaining", sa.Integer(), nullable=True),
            sa.Column("progress_percent", sa.Float(), nullable=True),
            sa.Column("remaining_hours", sa.Float(), nullable=True),
            sa.Column("capacity_gap_hours", sa.Float(), nullable=True),
            sa.Column("capacity_gap_days", sa.Float(), nullable=True),
            sa.Column("data_quality", sa.String(length=20), nullable=True),
            sa.Column("data_points_count", sa.Integer(), nullable=True),
            *_texts(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["phase_id"], ["project_phases.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("phase_id", "insight_date", name="uq_phase_insight_phase_date"),
        )
        op.create_index("ix_phase_insights_tenant_id", "phase_insights", ["tenant_id"])
        op.create_index("ix_phase_insights_phase_id", "phase_insights", ["phase_id"])
        op.create_index("ix_phase_insights_insight_date", "phase_insights", ["insight_date"])

    # ── Project insights ──────────────────────────────────────────────────
    if "project_insights" not in existing:
        op.create_table(
            "project_insights",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("insight_date", sa.Date(), nullable=False),
            sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("phases_count", sa.Integer(), nullable=True),
            sa.Column("phases_on_track", sa.Integer(), nullable=True),
            sa.Column("phases_at_risk", sa.Integer(), nullable=True),
            sa.Column("phases_behind", sa.Integer(), nullable=True),
            sa.Column("phases_critical", sa.Integer(), nullable=True),
            sa.Column("phases_completed", sa.Integer(), nullable=True),
            sa.Column("overall_progress_percent", sa.Float(), nullable=True),
            sa.Column("total_soll_hours", sa.Float(), nullable=True),
            sa.Column("total_ist_hours", sa.Float(), nullable=True),
            sa.Column("total_remaining_hours", sa.Float(), nullable=True),
            sa.Column("latest_phase_deadline", sa.Date(), nullable=True),
            sa.Column("projected_completion_date", sa.Date(), nullable=True),
            sa.Column("project_deadline_delta", sa.Integer(), nullable=True),
            sa.Column("forecast_incomplete", sa.Boolean(), nullable=True),
            sa.Column("phases_without_forecast", sa.Integer(), nullable=True),
            *_texts(),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "insight_date",
                                name="uq_project_insight_project_date"),
        )
        op.create_index("ix_project_insights_tenant_id", "project_insights", ["tenant_id"])
        op.create_index("ix_project_insights_project_id", "project_insights", ["project_id"])
        op.create_index("ix_project_insights_insight_date", "project_insights", ["insight_date"])

    # ── Tenant summaries ──────────────────────────────────────────────────
    if "tenant_insight_summaries" not in existing:
        op.create_table(
            "tenant_insight_summaries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("total_projects", sa.Integer(), nullable=True),
            sa.Column("projects_on_track", sa.Integer(), nullable=True),
            sa.Column("projects_at_risk", sa.Integer(), nullable=True),
            sa.Column("critical_phases_count", sa.Integer(), nullable=True),
            sa.Column("average_progress_percent", sa.Float(), nullable=True),
            sa.Column("burn_rate_trend", sa.String(length=10), nullable=True),
            sa.Column("top_risk_projects", sa.JSON(), nullable=True),
            sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", name="uq_tenant_insight_summary_tenant"),
        )
        op.create_index("ix_tenant_insight_summaries_tenant_id", "tenant_insight_summaries",
                        ["tenant_id"])

    # ── Pipeline runs ─────────────────────────────────────────────────────
    if "pipeline_runs" not in existing:
        op.create_table(
            "pipeline_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("run_type", sa.String(length=20), nullable=False),
            sa.Column("trigger", sa.String(length=20), nullable=False, server_default="cron"),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("as_of_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="pending",
                      comment="pending, running, completed, completed_with_errors"),
            sa.Column("counts", sa.JSON(), nullable=True),
            sa.Column("errors", sa.JSON(), nullable=True),
            sa.Column("timed_out", sa.Boolean(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_pipeline_runs_tenant_id", "pipeline_runs", ["tenant_id"])

    # ── Scheduled jobs ────────────────────────────────────────────────────
    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("last_pipeline_run_id", sa.Integer(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("consecutive_failures", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )

    # ── Weather cache ─────────────────────────────────────────────────────
    if "weather_cache" not in existing:
        op.create_table(
            "weather_cache",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("latitude", sa.Float(), nullable=False),
            sa.Column("longitude", sa.Float(), nullable=False),
            sa.Column("forecast_date", sa.Date(), nullable=False),
            sa.Column("weather_code", sa.Integer(), nullable=True),
            sa.Column("temp_min", sa.Float(), nullable=True),
            sa.Column("temp_max", sa.Float(), nullable=True),
            sa.Column("precipitation_probability", sa.Integer(), nullable=True),
            sa.Column("wind_speed_max", sa.Float(), nullable=True),
            sa.Column("rating", sa.String(length=20), nullable=False),
            sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("latitude", "longitude", "forecast_date",
                                name="uq_weather_cache_coord_date"),
        )


def downgrade():
    for table in (
        "weather_cache",
        "scheduled_jobs",
        "pipeline_runs",
        "tenant_insight_summaries",
        "project_insights",
        "phase_insights",
        "phase_snapshots",
    ):
        op.drop_table(table)
    with op.batch_alter_table("tenants") as batch_op:
        batch_op.drop_column("insights_last_refresh_at")
