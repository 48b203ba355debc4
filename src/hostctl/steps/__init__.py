"""Step definitions and the sequential step runner."""
from .models import RunReport, Step, StepOutcome, StepStatus
from .runner import StepRunner, select_steps

__all__ = [
    "RunReport",
    "Step",
    "StepOutcome",
    "StepRunner",
    "StepStatus",
    "select_steps",
]
