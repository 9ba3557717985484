"""
SnapshotService — daily point-in-time capture of phase hours.

For every active tenant, every active phase of an active project whose
start date is on or before the snapshot date gets one PhaseSnapshot row
per day. Rows are append-only:

  - an existing (phase_id, snapshot_date) row is left alone → skipped_existing
  - a concurrent writer losing the unique-constraint race → skipped_existing
  - a phase that cannot be captured (e.g. no budget) → errors[], run continues
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from capacity_insights.core.exceptions import ValidationError
from capacity_insights.models import db
from capacity_insights.models.analytics import PhaseSnapshot
from capacity_insights.models.auth import Tenant
from capacity_insights.models.planning import Project, ProjectPhase
from capacity_insights.services.hours_source import HoursSource
from capacity_insights.services.run_report import RunDeadline, RunReport, check_deadline

logger = logging.getLogger(__name__)


class SnapshotService:
    """Captures and reads phase snapshots."""

    # ── Capture ───────────────────────────────────────────────────────

    @staticmethod
    def generate_snapshots(
        as_of: date,
        tenant_ids: list[int] | None = None,
        *,
        report: RunReport | None = None,
        deadline: RunDeadline | None = None,
        hours=HoursSource,
        run_id: int | None = None,
    ) -> RunReport:
        """
        Capture snapshots for ``as_of``.

        Counts: tenants_processed, phases_processed, snapshots_created,
        skipped_existing. Commits once per tenant.
        """
        report = report if report is not None else RunReport()

        for tenant in SnapshotService._tenants(tenant_ids):
            if not check_deadline(report, deadline):
                break
            report.incr("tenants_processed")

            for phase in SnapshotService.eligible_phases(tenant.id, as_of):
                if not check_deadline(report, deadline):
                    break
                report.incr("phases_processed")
                log_ctx = {"tenant_id": tenant.id, "phase_id": phase.id, "run_id": run_id}
                try:
                    with db.session.begin_nested():
                        created = SnapshotService._capture_phase(phase, as_of, hours)
                except IntegrityError:
                    # Another writer inserted the same (phase, date) first
                    created = False
                    logger.info("Snapshot already written concurrently", extra=log_ctx)
                except Exception as exc:
                    report.add_error(str(exc), tenant_id=tenant.id,
                                     project_id=phase.project_id, phase_id=phase.id)
                    logger.warning("Snapshot failed: %s", exc, extra=log_ctx)
                    continue

                report.incr("snapshots_created" if created else "skipped_existing")

            db.session.commit()

        logger.info(
            "Snapshots for %s: created=%d skipped=%d errors=%d",
            as_of, report.get("snapshots_created"), report.get("skipped_existing"),
            len(report.errors), extra={"run_id": run_id},
        )
        return report

    @staticmethod
    def _capture_phase(phase: ProjectPhase, as_of: date, hours) -> bool:
        """Insert today's row. Returns False if it already exists."""
        exists = db.session.query(PhaseSnapshot.id).filter_by(
            phase_id=phase.id, snapshot_date=as_of,
        ).first()
        if exists:
            return False

        if phase.budget_hours is None:
            raise ValidationError("Phase has no budget hours", details={"phase_id": phase.id})

        allocations, users = hours.allocation_counts(phase.id)
        db.session.add(PhaseSnapshot(
            tenant_id=phase.tenant_id,
            phase_id=phase.id,
            snapshot_date=as_of,
            ist_hours=round(hours.sum_actual_hours(phase.id, as_of), 2),
            plan_hours=round(hours.sum_planned_hours(phase.id), 2),
            soll_hours=float(phase.budget_hours),
            allocations_count=allocations,
            allocated_users_count=users,
        ))
        db.session.flush()
        return True

    # ── Query ─────────────────────────────────────────────────────────

    @staticmethod
    def _tenants(tenant_ids: list[int] | None) -> list[Tenant]:
        q = Tenant.query.filter(Tenant.is_active.is_(True))
        if tenant_ids is not None:
            q = q.filter(Tenant.id.in_(tenant_ids))
        return q.order_by(Tenant.id).all()

    @staticmethod
    def eligible_phases(tenant_id: int, as_of: date) -> list[ProjectPhase]:
        """Active phases of active projects that have started by ``as_of``."""
        return (
            ProjectPhase.query
            .join(Project, Project.id == ProjectPhase.project_id)
            .filter(
                ProjectPhase.tenant_id == tenant_id,
                ProjectPhase.status == "active",
                Project.status == "active",
                or_(ProjectPhase.start_date.is_(None), ProjectPhase.start_date <= as_of),
            )
            .order_by(ProjectPhase.project_id, ProjectPhase.id)
            .all()
        )

    @staticmethod
    def history(phase_id: int, *, until: date | None = None,
                limit: int | None = None) -> list[PhaseSnapshot]:
        """Snapshots of a phase, oldest → newest (the newest ``limit`` if given)."""
        q = PhaseSnapshot.query.filter_by(phase_id=phase_id)
        if until is not None:
            q = q.filter(PhaseSnapshot.snapshot_date <= until)
        if limit:
            rows = q.order_by(PhaseSnapshot.snapshot_date.desc()).limit(limit).all()
            return list(reversed(rows))
        return q.order_by(PhaseSnapshot.snapshot_date).all()
