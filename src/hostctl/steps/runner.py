"""Sequential execution of provisioning steps."""
from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence

from ..context import HostContext
from ..errors import HostctlError, ValidationError
from ..exit_codes import ExitCode
from ..logging import OperationScope
from .models import RunReport, Step, StepOutcome, StepStatus

OutcomeCallback = Callable[[StepOutcome], None]


def _classify(exc: HostctlError | OSError) -> tuple[str, int]:
    """Return the error kind and exit code recorded for *exc*."""
    if isinstance(exc, HostctlError):
        return exc.kind, int(exc.exit_code)
    return "os-error", int(ExitCode.ENVIRONMENT)


def select_steps(
    steps: Sequence[Step],
    *,
    only: Iterable[str] = (),
    skip: Iterable[str] = (),
) -> list[Step]:
    """Filter *steps* by id or id prefix, preserving declared order."""
    only_list = [item for item in only if item]
    skip_list = [item for item in skip if item]
    for selector in (*only_list, *skip_list):
        if not any(step.matches(selector) for step in steps):
            raise ValidationError(f"Unknown step selector: {selector}")
    selected: list[Step] = []
    for step in steps:
        if only_list and not any(step.matches(sel) for sel in only_list):
            continue
        if any(step.matches(sel) for sel in skip_list):
            continue
        selected.append(step)
    return selected


class StepRunner:
    """Run steps in order: probe, then apply when not already satisfied.

    A failing fatal step aborts the run; effects of earlier steps stay in
    place. A failing non-fatal step is reported as a warning and the run
    continues.
    """

    def __init__(
        self,
        context: HostContext,
        *,
        scope: OperationScope | None = None,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        self.context = context
        self.scope = scope
        self.on_outcome = on_outcome

    def run(self, steps: Sequence[Step]) -> RunReport:
        """Execute *steps* and return the report."""
        outcomes: list[StepOutcome] = []
        aborted_by: str | None = None
        pending: tuple[str, ...] = ()
        for index, step in enumerate(steps):
            outcome = self.run_step(step)
            outcomes.append(outcome)
            if outcome.status is StepStatus.FAILED:
                aborted_by = step.id
                pending = tuple(remaining.id for remaining in steps[index + 1 :])
                break
        return RunReport(
            outcomes=tuple(outcomes),
            dry_run=self.context.dry_run,
            aborted_by=aborted_by,
            pending=pending,
        )

    def run_step(self, step: Step) -> StepOutcome:
        """Probe and, when needed, apply a single step."""
        started = time.monotonic()
        outcome = self._execute(step)
        outcome = StepOutcome(
            step_id=outcome.step_id,
            status=outcome.status,
            message=outcome.message,
            fatal=outcome.fatal,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_kind=outcome.error_kind,
            exit_code=outcome.exit_code,
            details=outcome.details,
        )
        if self.scope is not None:
            self.scope.add_step(step.id, status=outcome.status.value, detail=outcome.message)
        if self.on_outcome is not None:
            self.on_outcome(outcome)
        return outcome

    def _execute(self, step: Step) -> StepOutcome:
        try:
            satisfied = step.probe.check(self.context) if step.probe is not None else False
        except (HostctlError, OSError) as exc:
            if self.context.dry_run:
                return self._outcome(step, StepStatus.PLANNED, f"state unknown: {exc}")
            kind, exit_code = _classify(exc)
            return self._failure(step, str(exc), kind, exit_code)
        except Exception as exc:  # noqa: BLE001 - template and regex errors from probes
            message = f"unexpected {type(exc).__name__}: {exc}"
            if self.context.dry_run:
                return self._outcome(step, StepStatus.PLANNED, f"state unknown: {message}")
            return self._failure(step, message, "unexpected", ExitCode.PROVIDER)

        if satisfied:
            return self._outcome(step, StepStatus.SATISFIED, "already satisfied")

        if self.context.dry_run:
            planned = tuple(mutator.describe() for mutator in step.mutators)
            return self._outcome(step, StepStatus.PLANNED, "would apply", details=planned)

        details: list[str] = []
        changed = False
        try:
            for mutator in step.mutators:
                result = mutator.apply(self.context)
                changed = changed or result.changed
                if result.detail:
                    details.append(result.detail)
            if step.verify and step.probe is not None and not step.probe.check(self.context):
                return self._failure(
                    step,
                    f"state still unsatisfied after apply: {step.probe.describe()}",
                    "verification",
                    ExitCode.PROVIDER,
                )
        except (HostctlError, OSError) as exc:
            kind, exit_code = _classify(exc)
            return self._failure(step, str(exc), kind, exit_code)
        except Exception as exc:  # noqa: BLE001 - recorded on the outcome and aborts fatal steps
            return self._failure(
                step,
                f"unexpected {type(exc).__name__}: {exc}",
                "unexpected",
                ExitCode.PROVIDER,
            )

        status = StepStatus.APPLIED if changed else StepStatus.SATISFIED
        message = "applied" if changed else "no changes needed"
        return self._outcome(step, status, message, details=tuple(details))

    @staticmethod
    def _outcome(
        step: Step,
        status: StepStatus,
        message: str,
        *,
        details: tuple[str, ...] = (),
    ) -> StepOutcome:
        return StepOutcome(
            step_id=step.id,
            status=status,
            message=message,
            fatal=step.fatal,
            details=details,
        )

    @staticmethod
    def _failure(step: Step, message: str, kind: str, exit_code: int) -> StepOutcome:
        return StepOutcome(
            step_id=step.id,
            status=StepStatus.FAILED if step.fatal else StepStatus.WARNING,
            message=message,
            fatal=step.fatal,
            error_kind=kind,
            exit_code=exit_code,
        )


__all__ = ["StepRunner", "select_steps"]
