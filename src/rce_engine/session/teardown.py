"""
Ordered teardown with per-step retries.

A failing step is logged and recorded, and the remaining steps still run.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class TeardownStep:
    """
    One step of a shutdown sequence.

    Attributes:
        name: Label used in logs and the report
        action: Callable (sync or async) performing the step
        attempts: Overrides the sequence's default attempt count
    """
    name: str
    action: Callable[[], Any]
    attempts: Optional[int] = None


@dataclass
class StepOutcome:
    name: str
    ok: bool
    attempts: int
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "ok": self.ok, "attempts": self.attempts}
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class TeardownReport:
    """Aggregated outcome of a teardown sequence."""
    outcomes: List[StepOutcome] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes)

    @property
    def failed(self) -> List[StepOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    def get(self, name: str) -> Optional[StepOutcome]:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None

    def merge(self, other: "TeardownReport") -> "TeardownReport":
        return TeardownReport(outcomes=self.outcomes + other.outcomes, skipped=self.skipped and other.skipped)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "steps": [outcome.to_dict() for outcome in self.outcomes],
        }


async def run_teardown(steps: Sequence[TeardownStep], attempts: int = 1) -> TeardownReport:
    """
    Run steps in order, retrying each up to its attempt count.

    Args:
        steps: Steps to run
        attempts: Default attempt count per step

    Returns:
        TeardownReport with one outcome per step
    """
    report = TeardownReport()
    for step in steps:
        max_attempts = max(1, step.attempts or attempts)
        outcome = StepOutcome(name=step.name, ok=False, attempts=0)
        for attempt in range(1, max_attempts + 1):
            outcome.attempts = attempt
            try:
                result = step.action()
                if inspect.isawaitable(result):
                    result = await result
                outcome.ok = True
                outcome.result = result
                outcome.error = None
                break
            except Exception as e:
                outcome.error = str(e) or type(e).__name__
                logger.warning(f"[teardown] {step.name} failed (attempt {attempt}/{max_attempts}): {outcome.error}")
        if outcome.ok:
            logger.debug(f"[teardown] {step.name}: ok")
        else:
            logger.error(f"[teardown] {step.name}: giving up after {outcome.attempts} attempt(s)")
        report.outcomes.append(outcome)
    return report
