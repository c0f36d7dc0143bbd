"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    Every fatal install error and every usage error share ``FAILURE`` so that
    wrapper scripts only need to test for non-zero.
    """

    OK = 0
    FAILURE = 1
