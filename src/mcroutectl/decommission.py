"""Tear down a deployment, tolerating anything that is already gone.

Steps run in a fixed order with :class:`~mcroutectl.pipeline.ContinueOnError`
so a failure in one step never prevents the remaining cleanup. The unit is
always deregistered before the install root it points into is deleted.
"""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .config import PackagesConfig
from .logging import OperationScope
from .models import ArtifactSet
from .pipeline import ContinueOnError, PipelineResult, Step
from .ports import PortsRegistry
from .providers.apt import AptProvider
from .providers.compose import ComposeProvider
from .providers.systemd import SystemdProvider
from .state import StateRegistry

LOGGER = logging.getLogger(__name__)

SKIPPED = "skipped"


@dataclass(slots=True)
class DecommissionReport:
    """Summary of an uninstall run."""

    pipeline: PipelineResult
    removed: list[str] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        """Return one message per failed step."""
        return [f"{item.name}: {item.error}" for item in self.pipeline.failures]

    @property
    def changed(self) -> int:
        """Return the number of steps that performed work."""
        return sum(
            1
            for item in self.pipeline.outcomes
            if item.status == "success" and item.value not in (SKIPPED, False, None)
        )


@dataclass(slots=True)
class Decommissioner:
    """Stop, deregister and delete everything an install created."""

    systemd: SystemdProvider
    compose: ComposeProvider
    apt: AptProvider
    registry: StateRegistry
    ports: PortsRegistry | None = None
    packages: PackagesConfig = field(default_factory=PackagesConfig)
    reservation_name: str = "mc-router-frp"

    def decommission(
        self,
        artifacts: ArtifactSet,
        *,
        purge_dependencies: bool = False,
        op: OperationScope | None = None,
    ) -> DecommissionReport:
        """Remove *artifacts*, optionally purging the container tooling too."""
        unit = artifacts.unit_name
        registered = artifacts.registered_unit.exists()
        removed: list[str] = []

        def stop() -> object:
            if not registered:
                return SKIPPED
            self.systemd.stop(unit)
            return True

        def disable() -> object:
            if not registered:
                return SKIPPED
            self.systemd.disable(unit)
            return True

        def remove_unit() -> bool:
            if self.systemd.remove_unit(unit):
                removed.append(str(artifacts.registered_unit))
                return True
            return False

        def daemon_reload() -> object:
            if not registered:
                return SKIPPED
            self.systemd.daemon_reload()
            return True

        def compose_down() -> object:
            if not artifacts.compose_file.exists():
                return SKIPPED
            self.compose.down(artifacts.compose_file)
            return True

        def remove_install_root() -> bool:
            if not artifacts.install_root.exists():
                return False
            shutil.rmtree(artifacts.install_root)
            removed.append(str(artifacts.install_root))
            return True

        def forget_deployment() -> bool:
            cleared = self.registry.clear_deployment()
            if self.ports is not None:
                released = self.ports.release(self.reservation_name, missing_ok=True)
                cleared = cleared or released
            return cleared

        steps = [
            Step("systemd.stop", stop),
            Step("systemd.disable", disable),
            Step("systemd.remove_unit", remove_unit),
            Step("systemd.daemon_reload", daemon_reload),
            Step("compose.down", compose_down),
            Step("fs.remove_install_root", remove_install_root),
            Step("state.forget_deployment", forget_deployment),
        ]
        if purge_dependencies:
            steps.extend(self._purge_steps(removed))

        result = ContinueOnError(op).run(steps)
        return DecommissionReport(pipeline=result, removed=removed)

    def _purge_steps(self, removed: list[str]) -> list[Step]:
        packages = [self.packages.compose_package, self.packages.docker_package]

        def purge_packages() -> bool:
            self.apt.purge(packages)
            return True

        def autoremove() -> bool:
            self.apt.autoremove()
            return True

        def remove_data_dirs() -> bool:
            changed = False
            for path in self.packages.purge_paths:
                if _remove_tree(Path(path)):
                    removed.append(str(path))
                    changed = True
            return changed

        return [
            Step("apt.purge", purge_packages),
            Step("apt.autoremove", autoremove),
            Step("fs.remove_runtime_data", remove_data_dirs),
        ]


def _remove_tree(path: Path) -> bool:
    if not path.exists():
        return False
    LOGGER.debug("Removing %s", path)
    shutil.rmtree(path)
    return True


__all__ = ["DecommissionReport", "Decommissioner"]
