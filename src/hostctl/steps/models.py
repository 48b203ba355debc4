"""Data models for provisioning steps and their outcomes."""
from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..exit_codes import ExitCode

if TYPE_CHECKING:
    from ..mutators import Mutator
    from ..probes import StateProbe


class StepStatus(str, Enum):
    """Outcome of a single step."""

    SATISFIED = "satisfied"
    APPLIED = "applied"
    PLANNED = "planned"
    WARNING = "warning"
    FAILED = "failed"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the step aborted the run."""
        return self is StepStatus.FAILED


@dataclass(frozen=True)
class Step:
    """An idempotent unit of provisioning work.

    ``probe`` answers whether the step is already satisfied; ``mutators`` run in
    order when it is not. Steps without a probe always run their mutators and
    count as satisfied when none of them changed anything. ``fatal`` steps abort
    the run on failure; non-fatal ones are logged as warnings. ``verify``
    re-runs the probe after applying and fails the step if it still reports
    the state as missing.
    """

    id: str
    description: str
    mutators: tuple[Mutator, ...]
    probe: StateProbe | None = None
    fatal: bool = True
    verify: bool = False

    def matches(self, selector: str) -> bool:
        """Return ``True`` when *selector* names this step or one of its prefixes."""
        return self.id == selector or self.id.startswith(f"{selector}.")


@dataclass(frozen=True)
class StepOutcome:
    """Result of running (or planning) one step."""

    step_id: str
    status: StepStatus
    message: str
    fatal: bool
    duration_ms: int = 0
    error_kind: str | None = None
    exit_code: int = ExitCode.OK
    details: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {
            "id": self.step_id,
            "status": self.status.value,
            "message": self.message,
            "fatal": self.fatal,
            "duration_ms": self.duration_ms,
        }
        if self.error_kind is not None:
            payload["error_kind"] = self.error_kind
            payload["exit_code"] = int(self.exit_code)
        if self.details:
            payload["details"] = list(self.details)
        return payload


@dataclass(frozen=True)
class RunReport:
    """Ordered step outcomes plus the derived exit code."""

    outcomes: tuple[StepOutcome, ...]
    dry_run: bool = False
    aborted_by: str | None = None
    pending: tuple[str, ...] = field(default_factory=tuple)

    @property
    def exit_code(self) -> int:
        """Exit code of the aborting step, or 0 when the run completed."""
        for outcome in self.outcomes:
            if outcome.status is StepStatus.FAILED:
                return int(outcome.exit_code)
        return int(ExitCode.OK)

    @property
    def aborted(self) -> bool:
        """Return ``True`` when a fatal step stopped the run."""
        return self.aborted_by is not None

    def counts(self) -> dict[str, int]:
        """Return the number of outcomes per status, including zero counts."""
        counter = Counter(outcome.status for outcome in self.outcomes)
        return {status.value: counter.get(status, 0) for status in StepStatus}

    def by_status(self, status: StepStatus) -> Sequence[StepOutcome]:
        """Return outcomes with *status*, in run order."""
        return [outcome for outcome in self.outcomes if outcome.status is status]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "summary": {
                "totals": self.counts(),
                "exit_code": self.exit_code,
                "aborted": self.aborted,
                "aborted_by": self.aborted_by,
                "dry_run": self.dry_run,
            },
            "steps": [outcome.to_dict() for outcome in self.outcomes],
            "pending": list(self.pending),
        }


__all__ = ["RunReport", "Step", "StepOutcome", "StepStatus"]
