"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Sequence

import pytest


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class CommandRecorder:
    """Stand-in for ``subprocess.run`` that records argv and replays results.

    Responses are matched on the longest registered argv prefix. Each prefix
    holds a queue of results; the last one is repeated once the queue drains.
    """

    def __init__(self) -> None:
        """Start with no recorded calls and no scripted responses."""
        self.calls: list[list[str]] = []
        self.kwargs: list[dict[str, object]] = []
        self._responses: dict[tuple[str, ...], list[tuple[int, str, str]]] = {}

    def respond(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Queue a result for commands starting with *prefix*."""
        self._responses.setdefault(tuple(prefix), []).append((returncode, stdout, stderr))

    def __call__(self, args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        """Record *args* and return the scripted (or default) result."""
        argv = [str(item) for item in args]
        self.calls.append(argv)
        self.kwargs.append(dict(kwargs))
        returncode, stdout, stderr = self._lookup(argv)
        if kwargs.get("check") and returncode != 0:
            raise subprocess.CalledProcessError(returncode, argv, stdout, stderr)
        return subprocess.CompletedProcess(argv, returncode, stdout, stderr)

    def commands(self, binary: str) -> list[list[str]]:
        """Return the recorded argv lists whose first element is *binary*."""
        return [call for call in self.calls if call and call[0] == binary]

    def _lookup(self, argv: list[str]) -> tuple[int, str, str]:
        best: tuple[str, ...] | None = None
        for prefix in self._responses:
            if tuple(argv[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return 0, "", ""
        queue = self._responses[best]
        return queue.pop(0) if len(queue) > 1 else queue[0]


@pytest.fixture
def recorder(monkeypatch: pytest.MonkeyPatch) -> CommandRecorder:
    """Replace ``subprocess.run`` with a :class:`CommandRecorder`."""
    fake = CommandRecorder()
    monkeypatch.setattr(subprocess, "run", fake)
    return fake
