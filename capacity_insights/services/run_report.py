"""
Run report and wall-clock budget shared by every pipeline stage.

A stage never lets a unit error escape: it records it on the report and
moves on. The orchestrator persists the report on the PipelineRun row.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable

STATUS_COMPLETED = "completed"
STATUS_COMPLETED_WITH_ERRORS = "completed_with_errors"


@dataclass
class RunReport:
    counts: Counter = field(default_factory=Counter)
    errors: list[dict] = field(default_factory=list)
    timed_out: bool = False

    def incr(self, key: str, amount: int = 1) -> None:
        self.counts[key] += amount

    def add_error(self, message: str, *, tenant_id: int | None = None,
                  project_id: int | None = None, phase_id: int | None = None) -> None:
        self.errors.append({
            "tenant_id": tenant_id,
            "project_id": project_id,
            "phase_id": phase_id,
            "message": message,
        })

    def mark_timed_out(self, budget_seconds: float) -> None:
        if not self.timed_out:
            self.timed_out = True
            self.add_error(f"Run budget of {budget_seconds:g}s exceeded; remaining units skipped")

    def absorb(self, other: "RunReport", keys: tuple[str, ...] | None = None) -> None:
        """Fold another stage's report into this one (only ``keys`` counts, if given)."""
        for key, value in other.counts.items():
            if keys is None or key in keys:
                self.counts[key] += value
        self.errors.extend(other.errors)
        self.timed_out = self.timed_out or other.timed_out

    @property
    def status(self) -> str:
        if self.errors or self.timed_out:
            return STATUS_COMPLETED_WITH_ERRORS
        return STATUS_COMPLETED

    def get(self, key: str) -> int:
        return self.counts.get(key, 0)

    def to_dict(self) -> dict:
        return {
            **{key: self.counts.get(key, 0) for key in sorted(self.counts)},
            "errors": list(self.errors),
            "timed_out": self.timed_out,
            "status": self.status,
        }


class RunDeadline:
    """Wall-clock budget for one run. ``None`` budget never expires."""

    def __init__(self, budget_seconds: float | None,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.budget_seconds = budget_seconds
        self._clock = clock
        self._started = clock()

    def expired(self) -> bool:
        if self.budget_seconds is None:
            return False
        return self._clock() - self._started >= self.budget_seconds

    def elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)


def check_deadline(report: RunReport, deadline: RunDeadline | None) -> bool:
    """True if the run may start another unit; marks the report otherwise."""
    if deadline is None or not deadline.expired():
        return True
    report.mark_timed_out(deadline.budget_seconds)
    return False
