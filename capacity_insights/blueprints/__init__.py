"""
Capacity Insights
Blueprint registry.
"""

from datetime import date

from flask import request

from capacity_insights.core.exceptions import ValidationError


def parse_date_arg(name: str = "date") -> date | None:
    """Optional ``?date=YYYY-MM-DD`` query parameter. Raises ValidationError."""
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid {name}: expected YYYY-MM-DD",
                              details={name: raw}) from exc
