"""Tests for the install/uninstall orchestration."""
from __future__ import annotations

import random
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from mcroutectl import materializer as materializer_module
from mcroutectl.activator import ActivationError, ActivationResult
from mcroutectl.config import PackagesConfig
from mcroutectl.decommission import Decommissioner
from mcroutectl.locking import LockManager
from mcroutectl.logging import StructuredLogger
from mcroutectl.materializer import ConfigMaterializer, MaterializeError
from mcroutectl.models import ArtifactSet, InstallParameters
from mcroutectl.ports import PortsRegistry
from mcroutectl.providers.apt import AptProvider
from mcroutectl.providers.compose import ComposeProvider
from mcroutectl.providers.systemd import SystemdProvider
from mcroutectl.reconciler import DeploymentReconciler
from mcroutectl.state import StateRegistry
from mcroutectl.templates import TemplateEngine

if TYPE_CHECKING:
    from conftest import CommandRecorder


class FakeActivator:
    """Record activation requests and optionally fail them."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.activated: list[ArtifactSet] = []

    def activate(self, artifacts: ArtifactSet) -> ActivationResult:
        self.activated.append(artifacts)
        if self.fail:
            raise ActivationError("not active", log_hints=["journalctl", "docker-compose logs"])
        return ActivationResult(unit=artifacts.unit_name, unit_changed=True, enabled_now=True)


def _reconciler(tmp_path: Path, activator: FakeActivator) -> DeploymentReconciler:
    registry = StateRegistry(tmp_path / "state")
    ports = PortsRegistry(registry, 5000, 6000)
    unit_dir = tmp_path / "systemd"
    systemd = SystemdProvider(systemd_dir=unit_dir)
    return DeploymentReconciler(
        preflight=None,  # type: ignore[arg-type]
        materializer=ConfigMaterializer(
            templates=TemplateEngine.with_overrides(None), unit_dir=unit_dir
        ),
        activator=activator,  # type: ignore[arg-type]
        decommissioner=Decommissioner(
            systemd=systemd,
            compose=ComposeProvider(),
            apt=AptProvider(),
            registry=registry,
            ports=ports,
            packages=PackagesConfig(purge_paths=()),
        ),
        registry=registry,
        ports=ports,
        locks=LockManager(tmp_path / "run", default_timeout=1.0),
    )


def _parameters(tmp_path: Path, **overrides: object) -> InstallParameters:
    values: dict[str, object] = {
        "install_root": tmp_path / "mc-router-frp",
        "domain": "example.com",
        "token": "secret-token",
    }
    values.update(overrides)
    return InstallParameters(**values)  # type: ignore[arg-type]


def test_install_records_deployment_and_reserves_port(tmp_path: Path) -> None:
    """A successful install leaves a deployment record matching the reserved port."""
    activator = FakeActivator()
    reconciler = _reconciler(tmp_path, activator)
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("install") as op:
        report = reconciler.install(
            _parameters(tmp_path), skip_preflight=True, rng=random.Random(3), op=op
        )
        op.success("done")

    deployment = reconciler.registry.get_deployment()
    assert deployment is not None
    assert deployment["install_root"] == str(tmp_path / "mc-router-frp")
    assert deployment["remote_port"] == report.remote_port
    assert deployment["status"] == "active"
    assert "installed_at" in deployment
    assert reconciler.ports.get_port("mc-router-frp") == report.remote_port
    assert activator.activated == [report.artifacts]
    assert report.artifacts.env_file.exists()
    assert [step["name"] for step in op.steps] == [
        "ports.reserve",
        "materializer.render",
        "materializer.write",
        "state.record_deployment",
        "activator.activate",
        "state.mark_active",
    ]
    assert op.lock_wait_ms is not None


def test_reinstall_reuses_reserved_port(tmp_path: Path) -> None:
    """Installing twice keeps the same remote port."""
    reconciler = _reconciler(tmp_path, FakeActivator())

    first = reconciler.install(_parameters(tmp_path), skip_preflight=True)
    second = reconciler.install(_parameters(tmp_path), skip_preflight=True)

    assert first.remote_port == second.remote_port
    assert second.written == []


def test_write_failure_never_activates(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A partial artifact set is never handed to the init system."""
    activator = FakeActivator()
    reconciler = _reconciler(tmp_path, activator)

    def broken(destination: Path, content: str, *, mode: int = 0o644) -> bool:
        raise OSError("disk full")

    monkeypatch.setattr(materializer_module, "write_text_atomic", broken)

    with pytest.raises(MaterializeError):
        reconciler.install(_parameters(tmp_path), skip_preflight=True)

    assert activator.activated == []
    assert reconciler.registry.get_deployment() is None
    assert not (tmp_path / "mc-router-frp").exists()


def test_activation_failure_leaves_pending_record(tmp_path: Path) -> None:
    """A unit that does not start is still recorded, as pending."""
    reconciler = _reconciler(tmp_path, FakeActivator(fail=True))

    with pytest.raises(ActivationError):
        reconciler.install(_parameters(tmp_path), skip_preflight=True)

    deployment = reconciler.registry.get_deployment()
    assert deployment is not None
    assert deployment["status"] == "pending"
    assert deployment["install_root"] == str(tmp_path / "mc-router-frp")
    assert "installed_at" not in deployment


def test_uninstall_after_failed_activation_removes_custom_root(
    tmp_path: Path,
    recorder: CommandRecorder,
) -> None:
    """A half-started install under a custom root is still torn down."""
    reconciler = _reconciler(tmp_path, FakeActivator(fail=True))
    custom_root = tmp_path / "custom"

    with pytest.raises(ActivationError):
        reconciler.install(_parameters(tmp_path, install_root=custom_root), skip_preflight=True)
    assert (custom_root / ".env").exists()

    report = reconciler.uninstall(default_root=tmp_path / "default")

    assert not custom_root.exists()
    assert str(custom_root) in report.removed
    assert reconciler.registry.get_deployment() is None
    assert reconciler.ports.get_port("mc-router-frp") is None


def test_uninstall_targets_recorded_root(
    tmp_path: Path,
    recorder: CommandRecorder,
) -> None:
    """Uninstall removes the root recorded at install time, not the default."""
    reconciler = _reconciler(tmp_path, FakeActivator())
    custom_root = tmp_path / "custom"
    reconciler.install(_parameters(tmp_path, install_root=custom_root), skip_preflight=True)

    report = reconciler.uninstall(default_root=tmp_path / "default")

    assert not custom_root.exists()
    assert str(custom_root) in report.removed
    assert reconciler.registry.get_deployment() is None
    assert reconciler.ports.get_port("mc-router-frp") is None


def test_unreadable_record_falls_back_to_default_root(tmp_path: Path) -> None:
    """A corrupt deployment record does not block uninstall."""
    reconciler = _reconciler(tmp_path, FakeActivator())
    state = tmp_path / "state"
    state.mkdir()
    (state / "deployment.yml").write_text("- not\n- a mapping\n", encoding="utf-8")

    assert reconciler.installed_root(tmp_path / "default") == tmp_path / "default"
