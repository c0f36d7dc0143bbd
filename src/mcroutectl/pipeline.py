"""Execution strategies for ordered pipelines of named steps.

``install`` uses :class:`AbortOnFirstError`: the first failing step stops the
run and its exception propagates. ``uninstall`` uses :class:`ContinueOnError`:
every step runs and failures are collected for reporting.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .logging import OperationScope

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Step:
    """A named unit of work."""

    name: str
    action: Callable[[], Any]


@dataclass(slots=True)
class StepOutcome:
    """Result of running one step."""

    name: str
    status: str
    value: Any = None
    error: str | None = None


@dataclass(slots=True)
class PipelineResult:
    """Outcomes of every step that ran."""

    outcomes: list[StepOutcome] = field(default_factory=list)

    @property
    def failures(self) -> list[StepOutcome]:
        """Return the outcomes that failed."""
        return [outcome for outcome in self.outcomes if outcome.status == "error"]

    @property
    def ok(self) -> bool:
        """Return ``True`` when no step failed."""
        return not self.failures

    def value(self, name: str) -> Any:
        """Return the value produced by step *name*."""
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome.value
        raise KeyError(name)


class ExecutionStrategy:
    """Run steps in order, recording each on an optional operation scope."""

    def __init__(self, op: OperationScope | None = None) -> None:
        """Attach the operation scope that receives step records."""
        self.op = op

    def run(self, steps: Sequence[Step]) -> PipelineResult:
        """Execute *steps* in order."""
        result = PipelineResult()
        for step in steps:
            try:
                value = step.action()
            except Exception as exc:
                outcome = StepOutcome(name=step.name, status="error", error=str(exc))
                result.outcomes.append(outcome)
                self._record(outcome)
                self.on_error(step, exc)
                continue
            outcome = StepOutcome(name=step.name, status="success", value=value)
            result.outcomes.append(outcome)
            self._record(outcome)
        return result

    def on_error(self, step: Step, exc: Exception) -> None:
        """Decide what happens after *step* raised *exc*."""
        raise NotImplementedError

    def _record(self, outcome: StepOutcome) -> None:
        if self.op is None:
            return
        detail = outcome.error if outcome.error else _describe(outcome.value)
        self.op.add_step(outcome.name, status=outcome.status, detail=detail)


class AbortOnFirstError(ExecutionStrategy):
    """Fail-fast: re-raise the first error so later steps never run."""

    def on_error(self, step: Step, exc: Exception) -> None:
        """Propagate *exc*."""
        raise exc


class ContinueOnError(ExecutionStrategy):
    """Best-effort: log the error and move on to the next step."""

    def on_error(self, step: Step, exc: Exception) -> None:
        """Swallow *exc* after logging it; it stays in the pipeline result."""
        LOGGER.warning("Step %s failed: %s", step.name, exc)


def _describe(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return str(value)
    return type(value).__name__


__all__ = [
    "AbortOnFirstError",
    "ContinueOnError",
    "ExecutionStrategy",
    "PipelineResult",
    "Step",
    "StepOutcome",
]
