"""Compose preflight, materialization, activation and teardown.

``install`` is fail-fast: the first failing step aborts the run, so the unit is
never registered unless the full artifact set was written. ``uninstall`` is
best-effort. Both hold the global deployment lock while they mutate the host.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path

from .activator import ActivationResult, ServiceActivator
from .bootstrap.preflight import Preflight, PreflightReport
from .decommission import DecommissionReport, Decommissioner
from .locking import LockManager
from .logging import OperationScope
from .materializer import ConfigMaterializer
from .models import ArtifactSet, InstallParameters, RenderedArtifacts
from .pipeline import AbortOnFirstError, Step
from .ports import PortsRegistry
from .state import StateRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)

DEPLOYMENT_PENDING = "pending"
DEPLOYMENT_ACTIVE = "active"


@dataclass(slots=True)
class InstallReport:
    """Everything an install run produced."""

    artifacts: ArtifactSet
    remote_port: int
    written: list[Path] = field(default_factory=list)
    preflight: PreflightReport | None = None
    activation: ActivationResult | None = None

    @property
    def notices(self) -> list[str]:
        """Return messages the operator must see after the run."""
        return list(self.preflight.notices) if self.preflight else []

    @property
    def changed(self) -> int:
        """Return the number of host mutations performed."""
        total = len(self.written)
        if self.preflight is not None:
            total += self.preflight.changed
        if self.activation is not None:
            total += self.activation.changed
        return total


@dataclass(slots=True)
class DeploymentReconciler:
    """Own the lifecycle of the single mc-router + frps deployment."""

    preflight: Preflight
    materializer: ConfigMaterializer
    activator: ServiceActivator
    decommissioner: Decommissioner
    registry: StateRegistry
    ports: PortsRegistry
    locks: LockManager
    reservation_name: str = "mc-router-frp"

    def install(
        self,
        parameters: InstallParameters,
        *,
        owner: str | None = None,
        skip_preflight: bool = False,
        rng: random.Random | None = None,
        op: OperationScope | None = None,
    ) -> InstallReport:
        """Bring the host to the installed, running state for *parameters*."""
        with self.locks.deployment_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            ports = replace(
                self.ports,
                min_port=parameters.min_port,
                max_port=parameters.max_port,
                rng=rng or self.ports.rng,
            )

            steps: list[Step] = []
            if not skip_preflight:
                steps.append(Step("preflight", lambda: self.preflight.run(owner)))

            rendered: list[RenderedArtifacts] = []

            def reserve_port() -> int:
                return ports.reserve(self.reservation_name)

            def render() -> RenderedArtifacts:
                port = ports.get_port(self.reservation_name)
                result = self.materializer.render(parameters, remote_port=port)
                rendered.append(result)
                return result

            def write() -> list[Path]:
                return self.materializer.write(rendered[0], owner=owner)

            def activate() -> ActivationResult:
                return self.activator.activate(rendered[0].artifacts)

            def record() -> None:
                self.registry.record_deployment(
                    {
                        "install_root": str(parameters.install_root),
                        "unit": rendered[0].artifacts.unit_name,
                        "domain": parameters.domain,
                        "remote_port": rendered[0].remote_port,
                        "routing": parameters.routing_mode,
                        "status": DEPLOYMENT_PENDING,
                        "artifacts": rendered[0].artifacts.to_dict(),
                    }
                )

            def mark_active() -> None:
                deployment = self.registry.get_deployment() or {}
                deployment.update(
                    status=DEPLOYMENT_ACTIVE,
                    installed_at=datetime.now(UTC).isoformat(),
                )
                self.registry.record_deployment(deployment)

            # Recorded before activation so uninstall can find a half-started install.
            steps.extend(
                [
                    Step("ports.reserve", reserve_port),
                    Step("materializer.render", render),
                    Step("materializer.write", write),
                    Step("state.record_deployment", record),
                    Step("activator.activate", activate),
                    Step("state.mark_active", mark_active),
                ]
            )
            result = AbortOnFirstError(op).run(steps)

        return InstallReport(
            artifacts=rendered[0].artifacts,
            remote_port=rendered[0].remote_port,
            written=result.value("materializer.write"),
            preflight=None if skip_preflight else result.value("preflight"),
            activation=result.value("activator.activate"),
        )

    def uninstall(
        self,
        *,
        default_root: Path,
        purge_dependencies: bool = False,
        op: OperationScope | None = None,
    ) -> DecommissionReport:
        """Remove the recorded deployment, falling back to *default_root*."""
        with self.locks.deployment_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            artifacts = self.materializer.artifact_set(self.installed_root(default_root))
            LOGGER.debug("Decommissioning %s", artifacts.install_root)
            return self.decommissioner.decommission(
                artifacts, purge_dependencies=purge_dependencies, op=op
            )

    def installed_root(self, default_root: Path) -> Path:
        """Return the install root of the recorded deployment, if any."""
        try:
            deployment = self.registry.get_deployment()
        except StateRegistryError as exc:
            LOGGER.warning("Ignoring unreadable deployment record: %s", exc)
            return default_root
        if deployment and deployment.get("install_root"):
            return Path(str(deployment["install_root"]))
        return default_root


__all__ = ["DeploymentReconciler", "InstallReport"]
