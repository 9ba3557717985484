"""
Capacity Insights
Insight Text Generator.

Produces summary / detail / recommendation texts for phase and project
insights.

    1. Completed (and not-yet-started) phases get fixed texts, no LLM call
    2. Primary path: TextGenerationBackend (LLM via the gateway), bounded by
       INSIGHTS_LLM_TIMEOUT; returns texts or raises TextGenerationError
    3. Fallback: deterministic templates built from the numbers

Text generation never fails a unit.

Usage:
    generator = InsightTextGenerator.from_config()
    texts = generator.generate_phase_texts(PhaseTextInput(phase=data, project_name="..."))
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field

from flask import current_app, has_app_context

from capacity_insights.ai.gateway import LLMGateway
from capacity_insights.ai.prompt_registry import PromptRegistry
from capacity_insights.analytics.types import (
    InsightStatus,
    PhaseInsightData,
    ProjectInsightData,
)
from capacity_insights.core.exceptions import TextGenerationError
from capacity_insights.services.availability import AvailabilityContext
from capacity_insights.services.weather_service import WeatherDay

logger = logging.getLogger(__name__)

SOURCE_LLM = "llm"
SOURCE_FALLBACK = "fallback"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_TEXT_KEYS = ("summary", "detail", "recommendation")

# Shared by all backends; a timed-out call keeps its worker until the client gives up
_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="insight-text")


@dataclass
class GeneratedTexts:
    summary_text: str
    detail_text: str
    recommendation_text: str
    source: str = SOURCE_FALLBACK

    def to_dict(self) -> dict:
        return {
            "summary_text": self.summary_text,
            "detail_text": self.detail_text,
            "recommendation_text": self.recommendation_text,
            "source": self.source,
        }


@dataclass
class PhaseTextInput:
    phase: PhaseInsightData
    project_name: str = ""
    weather: list[WeatherDay] | None = None
    availability: AvailabilityContext | None = None

    @property
    def is_enhanced(self) -> bool:
        return bool(self.weather) or (self.availability is not None
                                      and not self.availability.is_empty)


@dataclass
class ProjectTextInput:
    project: ProjectInsightData
    extra: dict = field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════
#  Backends
# ═══════════════════════════════════════════════════════════════════════════

class TextGenerationBackend(ABC):
    """Capability: turn a named prompt + variables into the three texts."""

    @abstractmethod
    def generate(self, prompt_name: str, variables: dict) -> dict:
        """Return {"summary", "detail", "recommendation"}; raise TextGenerationError."""
        ...


class LLMTextBackend(TextGenerationBackend):

    def __init__(self, gateway: LLMGateway, registry: PromptRegistry | None = None,
                 *, timeout: float = 20.0, max_tokens: int = 500):
        self.gateway = gateway
        self.registry = registry or PromptRegistry()
        self.timeout = timeout
        self.max_tokens = max_tokens

    def generate(self, prompt_name: str, variables: dict) -> dict:
        try:
            messages = self.registry.render(prompt_name, **variables)
        except (KeyError, TypeError) as exc:
            raise TextGenerationError(f"Prompt {prompt_name!r} could not be rendered: {exc}") from exc
        future = _EXECUTOR.submit(
            self.gateway.chat, messages,
            purpose=prompt_name, max_retries=1,
            max_tokens=self.max_tokens, timeout=self.timeout,
        )
        try:
            result = future.result(timeout=self.timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise TextGenerationError(f"LLM call timed out after {self.timeout}s") from exc
        except Exception as exc:
            raise TextGenerationError(str(exc)) from exc
        return parse_text_response(result.get("content") or "")


def parse_text_response(content: str) -> dict:
    """Extract and validate the JSON object from an LLM response."""
    match = _JSON_OBJECT.search(content)
    if not match:
        raise TextGenerationError("LLM response contained no JSON object")
    try:
        data = json.loads(match.group())
    except json.JSONDecodeError as exc:
        raise TextGenerationError(f"Malformed LLM JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise TextGenerationError("LLM JSON is not an object")
    texts = {}
    for key in _TEXT_KEYS:
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            raise TextGenerationError(f"LLM JSON missing '{key}'")
        texts[key] = value.strip()
    return texts


# ═══════════════════════════════════════════════════════════════════════════
#  Generator
# ═══════════════════════════════════════════════════════════════════════════

class InsightTextGenerator:

    def __init__(self, backend: TextGenerationBackend | None = None):
        self.backend = backend

    @classmethod
    def from_config(cls) -> "InsightTextGenerator":
        """Build from app config. Raises ConfigurationError for a provider without key."""
        cfg = current_app.config if has_app_context() else {}
        gateway = LLMGateway(
            provider=cfg.get("INSIGHTS_LLM_PROVIDER"),
            model=cfg.get("INSIGHTS_LLM_MODEL"),
        )
        if not gateway.available:
            return cls(backend=None)
        return cls(backend=LLMTextBackend(
            gateway,
            timeout=cfg.get("INSIGHTS_LLM_TIMEOUT", 20.0),
            max_tokens=cfg.get("INSIGHTS_LLM_MAX_TOKENS", 500),
        ))

    # ── phase ────────────────────────────────────────────────────────────

    def generate_phase_texts(self, data: PhaseTextInput) -> GeneratedTexts:
        phase = data.phase
        if phase.status is InsightStatus.COMPLETED:
            return completed_phase_texts(phase)
        if _not_started(phase):
            return not_started_phase_texts(phase)

        variables = phase_prompt_variables(data)
        texts = self._try_backend("phase_insight", variables, phase_id=phase.phase_id)
        if texts is not None:
            return texts
        return fallback_phase_texts(data)

    # ── project ──────────────────────────────────────────────────────────

    def generate_project_texts(self, data: ProjectTextInput) -> GeneratedTexts:
        variables = project_prompt_variables(data.project)
        variables.update(data.extra)
        texts = self._try_backend("project_insight", variables, project_id=data.project.project_id)
        if texts is not None:
            return texts
        return fallback_project_texts(data.project)

    def _try_backend(self, prompt_name: str, variables: dict, **log_ctx) -> GeneratedTexts | None:
        if self.backend is None:
            return None
        try:
            result = self.backend.generate(prompt_name, variables)
        except TextGenerationError as exc:
            logger.warning("Text generation fell back to templates: %s", exc, extra=log_ctx)
            return None
        except Exception as exc:
            logger.exception("Text backend raised unexpectedly, using templates: %s", exc, extra=log_ctx)
            return None
        return GeneratedTexts(
            summary_text=result["summary"],
            detail_text=result["detail"],
            recommendation_text=result["recommendation"],
            source=SOURCE_LLM,
        )


# ═══════════════════════════════════════════════════════════════════════════
#  Prompt variables
# ═══════════════════════════════════════════════════════════════════════════

def _fmt(value, suffix: str = "", none: str = "n/a") -> str:
    if value is None:
        return none
    if isinstance(value, float):
        value = f"{value:g}" if value == int(value) else f"{value:.1f}"
    return f"{value}{suffix}"


def _date(value) -> str:
    return value.isoformat() if value else "n/a"


def phase_prompt_variables(data: PhaseTextInput) -> dict:
    p = data.phase
    return {
        "phase_name": p.phase_name,
        "project_name": data.project_name or "n/a",
        "status": p.status.value,
        "progress_percent": _fmt(p.progress_percent),
        "ist_hours": _fmt(p.ist_hours),
        "soll_hours": _fmt(p.soll_hours),
        "plan_hours": _fmt(p.plan_hours),
        "remaining_hours": _fmt(p.remaining_hours),
        "burn_rate": _fmt(p.trend.burn_rate_ist),
        "trend": p.trend.trend.value if p.trend.trend else "n/a",
        "deadline": _date(p.deadline),
        "days_remaining": _fmt(p.days_remaining),
        "forecast_date": _date(p.trend.forecast_completion_date),
        "deadline_delta": _fmt(p.deadline_delta_days),
        "capacity_gap_hours": _fmt(p.capacity_gap_hours),
        "capacity_gap_days": _fmt(p.capacity_gap_days),
        "data_quality": p.data_quality.value,
        "context": _context_block(data),
    }


def _context_block(data: PhaseTextInput) -> str:
    lines = []
    if data.weather:
        lines.append("Weather next days: " + "; ".join(
            f"{d.date.isoformat()} {d.description} ({d.rating})" for d in data.weather
        ))
    if data.availability and data.availability.available:
        lines.append("Available colleagues: " + ", ".join(
            f"{u.name} ({_fmt(u.free_hours)} h free)" for u in data.availability.available
        ))
    if data.availability and data.availability.overloaded:
        lines.append("Overloaded colleagues: " + ", ".join(
            f"{u.name} ({_fmt(u.utilization_percent)}%)" for u in data.availability.overloaded
        ))
    return "\n".join(lines)


def project_prompt_variables(p: ProjectInsightData) -> dict:
    return {
        "project_name": p.project_name,
        "status": p.status.value,
        "phases_count": p.phases_count,
        "phases_on_track": p.count(InsightStatus.ON_TRACK),
        "phases_at_risk": p.count(InsightStatus.AT_RISK),
        "phases_behind": p.count(InsightStatus.BEHIND),
        "phases_critical": p.count(InsightStatus.CRITICAL),
        "phases_completed": p.count(InsightStatus.COMPLETED),
        "progress_percent": _fmt(p.overall_progress_percent),
        "ist_hours": _fmt(p.total_ist_hours),
        "soll_hours": _fmt(p.total_soll_hours),
        "remaining_hours": _fmt(p.total_remaining_hours),
        "deadline": _date(p.latest_phase_deadline),
        "forecast_date": (_date(p.projected_completion_date) if not p.forecast_incomplete
                          else f"unknown ({p.phases_without_forecast} phases without forecast)"),
        "deadline_delta": _fmt(p.project_deadline_delta),
        "critical_phases": ", ".join(p.critical_phase_names) or "none",
        "at_risk_phases": ", ".join(p.at_risk_phase_names) or "none",
    }


# ═══════════════════════════════════════════════════════════════════════════
#  Fixed & fallback texts
# ═══════════════════════════════════════════════════════════════════════════

def _not_started(p: PhaseInsightData) -> bool:
    return (p.ist_hours <= 0 and p.trend.data_points < 2
            and p.status is InsightStatus.ON_TRACK)


def completed_phase_texts(p: PhaseInsightData) -> GeneratedTexts:
    over = round(p.ist_hours - p.soll_hours, 1)
    if over > 0:
        budget = f"{_fmt(over)} h over budget"
        recommendation = "Review why the budget was exceeded before estimating similar phases."
    elif over < 0:
        budget = f"{_fmt(-over)} h under budget"
        recommendation = "No action needed. Free the remaining allocations for other phases."
    else:
        budget = "exactly on budget"
        recommendation = "No action needed."
    return GeneratedTexts(
        summary_text=f"{p.phase_name} is completed, {budget}.",
        detail_text=(f"{_fmt(p.ist_hours)} of {_fmt(p.soll_hours)} budgeted hours booked "
                     f"({_fmt(p.progress_percent)}%)."),
        recommendation_text=recommendation,
        source=SOURCE_FALLBACK,
    )


def not_started_phase_texts(p: PhaseInsightData) -> GeneratedTexts:
    start = f" Planned start: {p.start_date.isoformat()}." if p.start_date else ""
    return GeneratedTexts(
        summary_text=f"{p.phase_name} has not started yet.",
        detail_text=(f"No hours booked against a budget of {_fmt(p.soll_hours)} h; "
                     f"{_fmt(p.plan_hours)} h are planned.{start}"),
        recommendation_text=("Check that allocations cover the budget before work begins."
                             if p.capacity_gap_hours > 0 else "No action needed yet."),
        source=SOURCE_FALLBACK,
    )


def fallback_phase_texts(data: PhaseTextInput) -> GeneratedTexts:
    p = data.phase
    name = p.phase_name

    if p.status is InsightStatus.CRITICAL:
        if p.deadline_delta_days is not None:
            summary = f"{name} is critical: forecast {p.deadline_delta_days} days after the deadline."
        else:
            summary = f"{name} is critical: progress is far behind schedule."
    elif p.status is InsightStatus.BEHIND:
        if p.deadline_delta_days is not None and p.deadline_delta_days > 0:
            summary = f"{name} is behind: forecast {p.deadline_delta_days} days after the deadline."
        else:
            summary = f"{name} is behind: booking pace is slowing while progress lags."
    elif p.status is InsightStatus.AT_RISK:
        if p.trend.trend is not None and p.trend.trend.value == "down":
            summary = f"{name} is at risk: the booking pace is slowing."
        else:
            summary = f"{name} is at risk: the forecast is close to the deadline."
    else:
        summary = f"{name} is on track at {_fmt(p.progress_percent)}% of budget."

    detail_parts = [
        f"{_fmt(p.ist_hours)} of {_fmt(p.soll_hours)} h booked ({_fmt(p.progress_percent)}%), "
        f"{_fmt(p.remaining_hours)} h remaining."
    ]
    if p.trend.burn_rate_ist is not None:
        trend = f", trend {p.trend.trend.value}" if p.trend.trend else ""
        detail_parts.append(f"Burn rate {_fmt(p.trend.burn_rate_ist)} h/day{trend}.")
    else:
        detail_parts.append("Not enough history for a burn rate yet.")
    if p.trend.forecast_completion_date and p.deadline:
        detail_parts.append(
            f"Forecast completion {p.trend.forecast_completion_date.isoformat()} "
            f"vs. deadline {p.deadline.isoformat()}."
        )
    elif p.deadline:
        detail_parts.append(f"Deadline {p.deadline.isoformat()}; no completion forecast possible.")

    return GeneratedTexts(
        summary_text=summary,
        detail_text=" ".join(detail_parts),
        recommendation_text=_fallback_recommendation(data),
        source=SOURCE_FALLBACK,
    )


def _fallback_recommendation(data: PhaseTextInput) -> str:
    p = data.phase
    if p.status is InsightStatus.ON_TRACK:
        return "No action needed. Keep the current staffing."

    parts = []
    if p.capacity_gap_hours > 0:
        parts.append(f"Plan about {_fmt(p.capacity_gap_days)} additional person-days "
                     f"({_fmt(p.capacity_gap_hours)} h) to cover the remaining budget.")
    elif p.trend.trend is not None and p.trend.trend.value == "down":
        parts.append("Check why bookings slowed down and whether planned staff is on site.")
    else:
        parts.append("Increase staffing or agree a new deadline with the client.")

    if data.availability and data.availability.available:
        names = ", ".join(
            f"{u.name} ({_fmt(u.free_hours)} h free)" for u in data.availability.available[:3]
        )
        parts.append(f"Available: {names}.")

    if data.weather:
        poor = [d.date.isoformat() for d in data.weather if d.rating == "poor"]
        if poor:
            parts.append(f"Poor construction weather expected on {', '.join(poor)}; "
                         "schedule indoor work for those days.")
    return " ".join(parts)


def fallback_project_texts(p: ProjectInsightData) -> GeneratedTexts:
    name = p.project_name
    risky = p.phases_at_risk

    if p.status is InsightStatus.COMPLETED:
        summary = f"{name}: all {p.phases_count} phases are completed."
    elif p.status is InsightStatus.ON_TRACK:
        summary = f"{name} is on track at {_fmt(p.overall_progress_percent)}% overall progress."
    else:
        summary = f"{name} is {p.status.value.replace('_', ' ')}: {risky} of {p.phases_count} phases need attention."

    detail = (
        f"{_fmt(p.total_ist_hours)} of {_fmt(p.total_soll_hours)} h booked, "
        f"{_fmt(p.total_remaining_hours)} h remaining. "
        f"{p.count(InsightStatus.ON_TRACK)} on track, {p.count(InsightStatus.AT_RISK)} at risk, "
        f"{p.count(InsightStatus.BEHIND)} behind, {p.count(InsightStatus.CRITICAL)} critical, "
        f"{p.count(InsightStatus.COMPLETED)} completed."
    )
    if p.forecast_incomplete:
        detail += f" No project forecast: {p.phases_without_forecast} phases lack a forecast."
    elif p.projected_completion_date and p.latest_phase_deadline:
        detail += (f" Projected completion {p.projected_completion_date.isoformat()} "
                   f"vs. deadline {p.latest_phase_deadline.isoformat()}.")

    if p.critical_phase_names:
        recommendation = f"Prioritise the critical phases: {', '.join(p.critical_phase_names)}."
    elif p.at_risk_phase_names:
        recommendation = f"Review staffing for: {', '.join(p.at_risk_phase_names)}."
    else:
        recommendation = "No action needed."

    return GeneratedTexts(
        summary_text=summary,
        detail_text=detail,
        recommendation_text=recommendation,
        source=SOURCE_FALLBACK,
    )
