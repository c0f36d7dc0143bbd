"""Tests for pipeline execution strategies."""
from __future__ import annotations

from pathlib import Path

import pytest

from mcroutectl.logging import StructuredLogger
from mcroutectl.pipeline import AbortOnFirstError, ContinueOnError, Step


def _boom() -> None:
    raise RuntimeError("boom")


def test_abort_stops_at_first_failure() -> None:
    """Steps after a failure never run and the error propagates."""
    ran: list[str] = []
    steps = [
        Step("first", lambda: ran.append("first")),
        Step("second", _boom),
        Step("third", lambda: ran.append("third")),
    ]

    with pytest.raises(RuntimeError, match="boom"):
        AbortOnFirstError().run(steps)

    assert ran == ["first"]


def test_continue_runs_every_step() -> None:
    """Failures are collected while later steps keep running."""
    ran: list[str] = []
    steps = [
        Step("first", _boom),
        Step("second", lambda: ran.append("second") or 42),
    ]

    result = ContinueOnError().run(steps)

    assert ran == ["second"]
    assert result.ok is False
    assert [item.name for item in result.failures] == ["first"]
    assert result.value("second") == 42
    with pytest.raises(KeyError):
        result.value("missing")


def test_steps_are_recorded_on_operation_scope(tmp_path: Path) -> None:
    """Each outcome lands in the operation log with its status."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("uninstall") as op:
        ContinueOnError(op).run([Step("a", lambda: "done"), Step("b", _boom)])
        op.success("ok")

    assert op.steps == [
        {"name": "a", "status": "success", "detail": "done"},
        {"name": "b", "status": "error", "detail": "boom"},
    ]
