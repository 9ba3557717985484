"""
PipelineOrchestrator — one entry point for scheduled, cron and manual runs.

Every invocation gets a PipelineRun row:

    pending → running → completed | completed_with_errors

Configuration problems (an LLM provider without its key) surface as
ConfigurationError before the run row or any data is written. Unit errors
never abort a run; they end up in the report that is persisted on the row.

Usage:
    orchestrator = PipelineOrchestrator.from_config()
    result = orchestrator.run_snapshots(trigger="cron")
    result.to_response(SNAPSHOT_COUNT_KEYS)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable

from flask import current_app, has_app_context

from capacity_insights.ai.text_generator import InsightTextGenerator
from capacity_insights.models import db
from capacity_insights.models.analytics import PipelineRun
from capacity_insights.services.availability import AvailabilityAnalyzer
from capacity_insights.services.hours_source import HoursSource
from capacity_insights.services.insight_service import InsightService
from capacity_insights.services.refresh_service import RefreshService
from capacity_insights.services.run_report import RunDeadline, RunReport
from capacity_insights.services.snapshot_service import SnapshotService
from capacity_insights.services.weather_service import WeatherContextProvider

logger = logging.getLogger(__name__)

SNAPSHOT_COUNT_KEYS = (
    "tenants_processed",
    "phases_processed",
    "snapshots_created",
    "skipped_existing",
)
INSIGHT_COUNT_KEYS = (
    "tenants_processed",
    "phases_processed",
    "phase_insights_created",
    "projects_processed",
    "project_insights_created",
)


def camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass
class PipelineResult:
    run: PipelineRun
    report: RunReport

    def to_response(self, keys: tuple[str, ...]) -> dict:
        """Operator-facing body: counts in camelCase plus the full error list."""
        body = {camel(key): self.report.get(key) for key in keys}
        body.update({
            "errors": list(self.report.errors),
            "timedOut": self.report.timed_out,
            "status": self.run.status,
            "runId": self.run.id,
            "durationMs": self.run.duration_ms,
        })
        return body


class PipelineOrchestrator:

    def __init__(
        self,
        *,
        text_generator_factory: Callable[[], InsightTextGenerator] = InsightTextGenerator.from_config,
        weather: WeatherContextProvider | None = None,
        availability: AvailabilityAnalyzer | None = None,
        hours=HoursSource,
        budget_seconds: float | None = None,
        cooldown_minutes: int = 60,
        weather_days: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.text_generator_factory = text_generator_factory
        self.weather = weather
        self.availability = availability
        self.hours = hours
        self.budget_seconds = budget_seconds
        self.cooldown_minutes = cooldown_minutes
        self.weather_days = weather_days
        self.clock = clock

    @classmethod
    def from_config(cls) -> "PipelineOrchestrator":
        cfg = current_app.config if has_app_context() else {}
        return cls(
            weather=WeatherContextProvider.from_config(),
            availability=AvailabilityAnalyzer(),
            budget_seconds=cfg.get("PIPELINE_RUN_BUDGET_SECONDS", 300),
            cooldown_minutes=cfg.get("INSIGHTS_REFRESH_COOLDOWN_MINUTES", 60),
            weather_days=cfg.get("WEATHER_FORECAST_DAYS", 3),
        )

    # ═════════════════════════════════════════════════════════════════
    #  Entry points
    # ═════════════════════════════════════════════════════════════════

    def run_snapshots(self, as_of: date | None = None, *, trigger: str = "cron",
                      tenant_ids: list[int] | None = None) -> PipelineResult:
        as_of = as_of or date.today()
        run = self._start_run("snapshots", trigger, as_of)
        report, deadline = RunReport(), self._deadline()
        self._execute(run, report, deadline, lambda: SnapshotService.generate_snapshots(
            as_of, tenant_ids, report=report, deadline=deadline, hours=self.hours, run_id=run.id,
        ))
        return PipelineResult(run=run, report=report)

    def run_insights(self, as_of: date | None = None, *, trigger: str = "cron",
                     tenant_ids: list[int] | None = None) -> PipelineResult:
        as_of = as_of or date.today()
        service = self._insight_service()
        run = self._start_run("insights", trigger, as_of)
        report, deadline = RunReport(), self._deadline()
        self._execute(run, report, deadline, lambda: service.generate_insights(
            as_of, tenant_ids, report=report, deadline=deadline, run_id=run.id,
        ))
        return PipelineResult(run=run, report=report)

    def run_refresh(self, tenant_id: int, *, as_of: date | None = None,
                    now: datetime | None = None) -> dict:
        """
        Manual refresh for one tenant: cooldown gate, then snapshots and
        insights in a single run.

        Raises RateLimitedError inside the cooldown.
        """
        as_of = as_of or date.today()
        service = self._insight_service()
        claimed_at = RefreshService.claim(
            tenant_id, cooldown_minutes=self.cooldown_minutes, now=now,
        )
        run = self._start_run("refresh", "manual", as_of, tenant_id=tenant_id)
        report, deadline = RunReport(), self._deadline()

        def stages():
            snapshots = SnapshotService.generate_snapshots(
                as_of, [tenant_id], deadline=deadline, hours=self.hours, run_id=run.id,
            )
            report.absorb(snapshots, keys=("snapshots_created", "skipped_existing"))
            if snapshots.timed_out:
                return
            report.absorb(service.generate_insights(
                as_of, [tenant_id], deadline=deadline, run_id=run.id,
            ))

        self._execute(run, report, deadline, stages)
        return {
            "success": True,
            "lastRefreshAt": claimed_at.isoformat(),
            "snapshotsCreated": report.get("snapshots_created"),
            "insightsCreated": report.get("phase_insights_created"),
            "projectInsightsCreated": report.get("project_insights_created"),
            "errorsCount": len(report.errors),
            "status": run.status,
            "runId": run.id,
        }

    # ═════════════════════════════════════════════════════════════════
    #  Run lifecycle
    # ═════════════════════════════════════════════════════════════════

    def _insight_service(self) -> InsightService:
        return InsightService(
            self.text_generator_factory(),
            weather=self.weather,
            availability=self.availability,
            weather_days=self.weather_days,
        )

    def _deadline(self) -> RunDeadline:
        return RunDeadline(self.budget_seconds, clock=self.clock)

    @staticmethod
    def _start_run(run_type: str, trigger: str, as_of: date,
                   tenant_id: int | None = None) -> PipelineRun:
        run = PipelineRun(run_type=run_type, trigger=trigger, as_of_date=as_of,
                          tenant_id=tenant_id, status="pending")
        db.session.add(run)
        db.session.commit()

        run.status = "running"
        run.started_at = datetime.now(timezone.utc)
        db.session.commit()
        logger.info("Pipeline run started: %s (%s) for %s", run_type, trigger, as_of,
                    extra={"run_id": run.id, "tenant_id": tenant_id})
        return run

    @staticmethod
    def _execute(run: PipelineRun, report: RunReport, deadline: RunDeadline,
                 stage: Callable[[], object]) -> None:
        try:
            stage()
        except Exception as exc:
            db.session.rollback()
            report.add_error(f"Run aborted: {exc}")
            PipelineOrchestrator._finish_run(run, report, deadline)
            logger.exception("Pipeline run %s aborted", run.id, extra={"run_id": run.id})
            raise
        PipelineOrchestrator._finish_run(run, report, deadline)

    @staticmethod
    def _finish_run(run: PipelineRun, report: RunReport, deadline: RunDeadline) -> None:
        run.counts = dict(report.counts)
        run.errors = list(report.errors)
        run.timed_out = report.timed_out
        run.status = report.status
        run.finished_at = datetime.now(timezone.utc)
        run.duration_ms = deadline.elapsed_ms()
        db.session.commit()

        log = logger.warning if report.errors else logger.info
        log("Pipeline run %s finished: %s (%d errors)", run.id, run.status, len(report.errors),
            extra={"run_id": run.id, "duration_ms": run.duration_ms})
