"""Debian package manager provider (``apt-get`` and ``dpkg``)."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)


class PackageManagerError(RuntimeError):
    """Raised when an ``apt-get``/``dpkg`` invocation fails."""


@dataclass(slots=True)
class AptProvider:
    """Install, repair and purge packages non-interactively."""

    apt_bin: str = "apt-get"
    dpkg_bin: str = "dpkg"

    def update(self) -> subprocess.CompletedProcess[str]:
        """Refresh the package index."""
        return self._apt(["update"])

    def install(self, packages: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Install *packages*."""
        return self._apt(["install", "-y", *packages])

    def repair(self) -> subprocess.CompletedProcess[str]:
        """Fix broken dependencies left by an interrupted or failed install."""
        return self._apt(["install", "-f", "-y"])

    def purge(self, packages: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Purge *packages* together with their configuration files."""
        return self._apt(["purge", "-y", *packages])

    def autoremove(self) -> subprocess.CompletedProcess[str]:
        """Remove dependencies nothing needs anymore."""
        return self._apt(["autoremove", "-y"])

    def is_installed(self, package: str) -> bool:
        """Return whether dpkg reports *package* as installed.

        A missing ``dpkg`` binary means nothing can be installed, so it reads
        as "not installed" rather than an error.
        """
        try:
            result = subprocess.run(  # noqa: S603, S607
                [self.dpkg_bin, "-s", package],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            return False
        if result.returncode != 0:
            return False
        return "install ok installed" in (result.stdout or "")

    # ------------------------------------------------------------------
    def _apt(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.apt_bin, *args]
        env = os.environ.copy()
        env["DEBIAN_FRONTEND"] = "noninteractive"
        LOGGER.debug("Running %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
                env=env,
            )
        except FileNotFoundError as exc:
            raise PackageManagerError(f"{self.apt_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "no output"
            raise PackageManagerError(
                f"{' '.join(command)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["AptProvider", "PackageManagerError"]
