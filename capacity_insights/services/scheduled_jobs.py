"""
Capacity Insights
Scheduled Jobs.

Jobs:
    - phase_snapshots: Daily capture of phase hours (05:00)
    - insight_generation: Trend, status and texts from the snapshots (05:15)
    - weather_refresh: Forecast cache warm-up and cleanup (04:30)

The pipeline jobs delegate to PipelineOrchestrator, the same code path as the cron
endpoints and the manual refresh.
"""

from __future__ import annotations

from typing import Any

from capacity_insights.services.pipeline import (
    INSIGHT_COUNT_KEYS,
    SNAPSHOT_COUNT_KEYS,
    PipelineOrchestrator,
)
from capacity_insights.services.scheduler_service import register_job
from capacity_insights.services.weather_service import refresh_weather_cache


@register_job("phase_snapshots")
def capture_phase_snapshots(app) -> dict[str, Any]:
    """Capture today's PhaseSnapshot for every active phase of every tenant."""
    result = PipelineOrchestrator.from_config().run_snapshots(trigger="scheduler")
    return result.to_response(SNAPSHOT_COUNT_KEYS)


@register_job("insight_generation")
def generate_insights(app) -> dict[str, Any]:
    """Build phase, project and tenant insights from the snapshot history."""
    result = PipelineOrchestrator.from_config().run_insights(trigger="scheduler")
    return result.to_response(INSIGHT_COUNT_KEYS)


@register_job("weather_refresh")
def refresh_weather(app) -> dict[str, Any]:
    """Warm the weather cache for all project locations and purge stale days."""
    return refresh_weather_cache()
