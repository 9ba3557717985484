"""
Capacity Insights
Prompt Registry.

YAML-based prompt template management with:
    - Built-in default templates for phase / project insight texts
    - Optional overrides loaded from INSIGHTS_PROMPTS_DIR (*.yaml)
    - {{variable}} substitution
    - Version tracking

Usage:
    from capacity_insights.ai.prompt_registry import PromptRegistry
    registry = PromptRegistry()
    messages = registry.render("phase_insight", phase_name="Rohbau", status="behind")
"""

import logging
import os
import re
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


class PromptTemplate:
    """A single prompt template with metadata."""

    def __init__(self, name: str, version: str, system: str, user: str,
                 description: str = "", metadata: dict | None = None):
        self.name = name
        self.version = version
        self.system = system
        self.user = user
        self.description = description
        self.metadata = metadata or {}

    def render(self, **variables) -> list[dict]:
        """
        Render template with variables, returning chat messages.

        Returns:
            List of message dicts: [{"role": "system", "content": "..."}, ...]
        """
        system_rendered = self._substitute(self.system, variables)
        user_rendered = self._substitute(self.user, variables)

        messages = []
        if system_rendered.strip():
            messages.append({"role": "system", "content": system_rendered})
        if user_rendered.strip():
            messages.append({"role": "user", "content": user_rendered})
        return messages

    @staticmethod
    def _substitute(template: str, variables: dict) -> str:
        """Replace {{var}} placeholders with values."""
        def replacer(match):
            key = match.group(1).strip()
            return str(variables.get(key, f"{{{{{key}}}}}"))
        return re.sub(r'\{\{(\s*\w+\s*)\}\}', replacer, template)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "system_preview": self.system[:200],
            "user_preview": self.user[:200],
        }


class PromptRegistry:
    """
    Registry for loading and managing prompt templates.

    Built-in defaults are registered first; YAML files in ``prompts_dir``
    with the same name/version replace them.
    """

    def __init__(self, prompts_dir: str | None = None):
        self._prompts_dir = prompts_dir or os.getenv("INSIGHTS_PROMPTS_DIR")
        self._templates: dict[str, dict[str, PromptTemplate]] = {}  # name → {version → template}
        for tpl in _DEFAULT_TEMPLATES:
            self._register(tpl)
        if self._prompts_dir:
            self._load_from_dir(Path(self._prompts_dir))

    def _load_from_dir(self, prompts_path: Path):
        if not prompts_path.exists():
            logger.info("Prompts directory not found: %s. Using defaults only.", prompts_path)
            return

        for yaml_file in sorted(prompts_path.glob("*.yaml")):
            try:
                with open(yaml_file, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                logger.error("Failed to load prompt %s: %s", yaml_file.name, e)
                continue
            if not data or not isinstance(data, dict):
                continue

            tpl = PromptTemplate(
                name=data.get("name", yaml_file.stem),
                version=str(data.get("version", "v1")),
                system=str(data.get("system") or ""),
                user=str(data.get("user") or ""),
                description=str(data.get("description") or ""),
                metadata=data.get("metadata") or {},
            )
            self._register(tpl)
            logger.info("Loaded prompt template: %s (%s) from %s",
                        tpl.name, tpl.version, yaml_file.name)

    def _register(self, template: PromptTemplate):
        self._templates.setdefault(template.name, {})[template.version] = template

    def get(self, name: str, version: str = "v1") -> PromptTemplate | None:
        """Get a prompt template by name and version."""
        return self._templates.get(name, {}).get(version)

    def render(self, name: str, version: str = "v1", **variables) -> list[dict]:
        """
        Render a prompt template with variables.

        Raises:
            KeyError: If template not found.
        """
        tpl = self.get(name, version)
        if not tpl:
            raise KeyError(f"Prompt template not found: {name} {version}")
        return tpl.render(**variables)

    def list_templates(self) -> list[dict]:
        return [tpl.to_dict() for versions in self._templates.values() for tpl in versions.values()]


# ── Built-in Default Templates ────────────────────────────────────────────────

_SYSTEM = (
    "You are an analyst for a construction company's capacity planning. "
    "You explain the state of project phases (trades) to site managers in short, "
    "factual sentences.\n\n"
    "Rules:\n"
    "- Use only the figures given; never invent numbers or dates\n"
    "- Hours are booked (IST), planned (PLAN) and budgeted (SOLL) hours\n"
    "- summary: one sentence, max 120 characters\n"
    "- detail: 2-3 sentences with the key figures\n"
    "- recommendation: one concrete, actionable step\n\n"
    "Respond with valid JSON only: "
    '{"summary": "...", "detail": "...", "recommendation": "..."}'
)

_DEFAULT_TEMPLATES = [
    PromptTemplate(
        name="phase_insight",
        version="v1",
        description="Summary / detail / recommendation for one project phase",
        system=_SYSTEM,
        user=(
            "Phase: {{phase_name}} (project: {{project_name}})\n"
            "Status: {{status}}\n"
            "Progress: {{progress_percent}}% ({{ist_hours}} of {{soll_hours}} h booked)\n"
            "Planned hours: {{plan_hours}} h, remaining: {{remaining_hours}} h\n"
            "Burn rate: {{burn_rate}} h/day, trend: {{trend}}\n"
            "Deadline: {{deadline}} ({{days_remaining}} days left)\n"
            "Forecast completion: {{forecast_date}} ({{deadline_delta}} days vs. deadline)\n"
            "Capacity gap: {{capacity_gap_hours}} h ({{capacity_gap_days}} person-days)\n"
            "Data quality: {{data_quality}}\n"
            "{{context}}"
        ),
    ),
    PromptTemplate(
        name="project_insight",
        version="v1",
        description="Roll-up texts for a project across all of its phases",
        system=_SYSTEM,
        user=(
            "Project: {{project_name}}\n"
            "Status: {{status}}\n"
            "Phases: {{phases_count}} total, {{phases_on_track}} on track, "
            "{{phases_at_risk}} at risk, {{phases_behind}} behind, "
            "{{phases_critical}} critical, {{phases_completed}} completed\n"
            "Overall progress (budget-weighted): {{progress_percent}}%\n"
            "Hours: {{ist_hours}} of {{soll_hours}} h booked, {{remaining_hours}} h remaining\n"
            "Latest phase deadline: {{deadline}}\n"
            "Projected completion: {{forecast_date}} ({{deadline_delta}} days vs. deadline)\n"
            "Critical phases: {{critical_phases}}\n"
            "At-risk phases: {{at_risk_phases}}"
        ),
    ),
]
