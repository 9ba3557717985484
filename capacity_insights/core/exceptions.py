"""
Exception hierarchy for the insight pipeline.

Blueprints and the orchestrator handle these types once and map them to
consistent behaviour:

    NotFoundError       → 404
    ValidationError     → unit error (recorded in the run report) / 422
    ConfigurationError  → fatal for the whole run, raised before any write / 500
    RateLimitedError    → expected rejection of a manual refresh / 429
    TextGenerationError → primary text path failed; caller falls back

Usage:
    from capacity_insights.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Project", resource_id=42)
    raise ValidationError("Phase has no budget", details={"phase_id": 7})
"""

from datetime import datetime


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Cross-tenant lookups raise this too, so a 404 never confirms that a
    record exists in another tenant.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when source data is well-formed but unusable (e.g. missing budget)."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(Exception):
    """Missing secret or credential. Aborts the run before any write.

    Args:
        setting: Name of the missing/invalid environment variable.
    """

    def __init__(self, setting: str, message: str | None = None) -> None:
        self.setting = setting
        super().__init__(message or f"{setting} is not configured")


class RateLimitedError(Exception):
    """A manual refresh was requested inside the tenant's cooldown window."""

    def __init__(self, next_refresh_at: datetime, wait_minutes: int) -> None:
        self.next_refresh_at = next_refresh_at
        self.wait_minutes = wait_minutes
        super().__init__(f"Refresh available in {wait_minutes} minutes")


class TextGenerationError(Exception):
    """The generative-text backend was unavailable, timed out or returned junk."""
