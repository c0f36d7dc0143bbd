"""Host preflight: make sure the container tooling exists before rendering.

Each dependency is checked by resolving its binary on ``PATH``. Missing tools
are installed through the package manager; a failed install gets exactly one
repair pass (``apt-get install -f``) and one retry before it is reported as
failed. Running preflight on a prepared host never calls the package manager.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from ..config import PackagesConfig
from ..providers.apt import AptProvider, PackageManagerError
from ..providers.systemd import SystemdProvider
from .group_membership import (
    GroupMembershipPlan,
    GroupMembershipSpec,
    apply_group_membership_plan,
    plan_group_membership,
)

LOGGER = logging.getLogger(__name__)

Which = Callable[[str], str | None]


class DependencyInstallError(RuntimeError):
    """Raised when a required dependency could not be installed."""


class DependencyStatus(str, Enum):
    """Outcome of :func:`ensure_dependency`."""

    ALREADY_PRESENT = "already_present"
    INSTALLED = "installed"
    FAILED = "failed"


@dataclass(slots=True)
class DependencyResult:
    """Result of ensuring a single dependency."""

    name: str
    status: DependencyStatus
    attempts: int = 0
    error: str | None = None


def ensure_dependency(
    name: str,
    install_fn: Callable[[], object],
    *,
    repair_fn: Callable[[], object] | None = None,
    which: Which = shutil.which,
) -> DependencyResult:
    """Make sure the binary *name* resolves, installing it when absent."""
    if which(name):
        return DependencyResult(name=name, status=DependencyStatus.ALREADY_PRESENT)

    try:
        install_fn()
    except PackageManagerError as first_error:
        LOGGER.debug("Install of %s failed, attempting repair: %s", name, first_error)
        if repair_fn is not None:
            try:
                repair_fn()
            except PackageManagerError as repair_error:
                LOGGER.warning("Repair before retrying %s failed: %s", name, repair_error)
        try:
            install_fn()
        except PackageManagerError as retry_error:
            return DependencyResult(
                name=name,
                status=DependencyStatus.FAILED,
                attempts=2,
                error=str(retry_error),
            )
        attempts = 2
    else:
        attempts = 1

    if not which(name):
        return DependencyResult(
            name=name,
            status=DependencyStatus.FAILED,
            attempts=attempts,
            error=f"'{name}' is still not on PATH after installation.",
        )
    return DependencyResult(name=name, status=DependencyStatus.INSTALLED, attempts=attempts)


@dataclass(slots=True)
class PreflightReport:
    """Aggregated outcome of a preflight run."""

    results: list[DependencyResult] = field(default_factory=list)
    removed_conflicts: list[str] = field(default_factory=list)
    group_plan: GroupMembershipPlan | None = None
    notices: list[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        """Return the number of host mutations performed."""
        installed = sum(1 for item in self.results if item.status is DependencyStatus.INSTALLED)
        group_changed = int(bool(self.group_plan and self.group_plan.changes_pending))
        return installed + len(self.removed_conflicts) + group_changed


@dataclass(slots=True)
class Preflight:
    """Install the container runtime and orchestrator when they are missing."""

    apt: AptProvider
    systemd: SystemdProvider
    packages: PackagesConfig = field(default_factory=PackagesConfig)
    which: Which = shutil.which

    def ensure_dependency(self, name: str, install_fn: Callable[[], object]) -> DependencyResult:
        """Ensure *name* with this host's repair pass."""
        return ensure_dependency(name, install_fn, repair_fn=self.apt.repair, which=self.which)

    def resolve_conflicts(self) -> list[str]:
        """Purge packages known to conflict with the container runtime."""
        removed: list[str] = []
        for package in self.packages.conflicts:
            if not self.apt.is_installed(package):
                continue
            self.apt.purge([package])
            removed.append(package)
        return removed

    def run(self, user: str | None) -> PreflightReport:
        """Ensure every dependency, raising on the first that cannot be met."""
        report = PreflightReport()

        def install_runtime() -> None:
            report.removed_conflicts.extend(self.resolve_conflicts())
            self.apt.update()
            self.apt.install([self.packages.docker_package])
            self.systemd.enable_now("docker")

        def install_compose() -> None:
            self.apt.install([self.packages.compose_package])

        for binary, install_fn in (
            (self.packages.docker_bin, install_runtime),
            (self.packages.compose_bin, install_compose),
        ):
            result = self.ensure_dependency(binary, install_fn)
            report.results.append(result)
            if result.status is DependencyStatus.FAILED:
                raise DependencyInstallError(
                    f"Could not install '{binary}' after one repair attempt: {result.error}"
                )

        if user:
            plan = plan_group_membership(
                GroupMembershipSpec(user=user, group=self.packages.docker_group),
                usermod_bin=self.packages.usermod_bin,
            )
            try:
                apply_group_membership_plan(plan)
            except (OSError, subprocess.CalledProcessError) as exc:
                LOGGER.warning("Could not add %s to %s: %s", user, plan.spec.group, exc)
                report.notices.append(
                    f"Could not add '{user}' to group '{plan.spec.group}': {exc}"
                )
                return report
            report.group_plan = plan
            report.notices.extend(plan.warnings)
        return report


__all__ = [
    "DependencyInstallError",
    "DependencyResult",
    "DependencyStatus",
    "Preflight",
    "PreflightReport",
    "ensure_dependency",
]
