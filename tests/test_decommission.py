"""Tests for deployment teardown."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from mcroutectl.config import PackagesConfig
from mcroutectl.decommission import Decommissioner
from mcroutectl.models import ArtifactSet
from mcroutectl.ports import PortsRegistry
from mcroutectl.providers.apt import AptProvider
from mcroutectl.providers.compose import ComposeProvider
from mcroutectl.providers.systemd import SystemdProvider
from mcroutectl.state import StateRegistry

if TYPE_CHECKING:
    from conftest import CommandRecorder

UNIT = "mc-router-frp.service"


@pytest.fixture
def artifacts(tmp_path: Path) -> ArtifactSet:
    """Return the artifact locations under the temporary directory."""
    return ArtifactSet(install_root=tmp_path / "mc-router-frp", unit_dir=tmp_path / "systemd")


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    """Return a state registry rooted in the temporary directory."""
    return StateRegistry(tmp_path / "state")


def _decommissioner(
    artifacts: ArtifactSet,
    registry: StateRegistry,
    *,
    purge_paths: tuple[Path, ...] = (),
) -> Decommissioner:
    return Decommissioner(
        systemd=SystemdProvider(systemd_dir=artifacts.unit_dir),
        compose=ComposeProvider(),
        apt=AptProvider(),
        registry=registry,
        ports=PortsRegistry(registry, 5000, 6000),
        packages=PackagesConfig(purge_paths=purge_paths),
    )


def _install(artifacts: ArtifactSet, registry: StateRegistry) -> None:
    artifacts.config_dir.mkdir(parents=True)
    artifacts.compose_file.write_text("services: {}\n", encoding="utf-8")
    artifacts.unit_dir.mkdir(parents=True)
    artifacts.registered_unit.write_text("[Unit]\n", encoding="utf-8")
    registry.record_deployment({"install_root": str(artifacts.install_root)})
    PortsRegistry(registry, 5000, 6000).reserve("mc-router-frp", requested_port=5100)


def test_empty_host_is_a_clean_noop(
    artifacts: ArtifactSet,
    registry: StateRegistry,
    recorder: CommandRecorder,
) -> None:
    """Nothing installed means no commands, no warnings and no changes."""
    report = _decommissioner(artifacts, registry).decommission(artifacts)

    assert recorder.calls == []
    assert report.warnings == []
    assert report.changed == 0


def test_full_teardown_runs_in_order(
    artifacts: ArtifactSet,
    registry: StateRegistry,
    recorder: CommandRecorder,
) -> None:
    """The unit is stopped and removed before compose and the install root go."""
    _install(artifacts, registry)

    report = _decommissioner(artifacts, registry).decommission(artifacts)

    assert recorder.calls == [
        ["systemctl", "stop", UNIT],
        ["systemctl", "disable", UNIT],
        ["systemctl", "daemon-reload"],
        ["docker-compose", "-f", str(artifacts.compose_file), "down", "--remove-orphans"],
    ]
    assert [item.name for item in report.pipeline.outcomes] == [
        "systemd.stop",
        "systemd.disable",
        "systemd.remove_unit",
        "systemd.daemon_reload",
        "compose.down",
        "fs.remove_install_root",
        "state.forget_deployment",
    ]
    assert not artifacts.registered_unit.exists()
    assert not artifacts.install_root.exists()
    assert registry.get_deployment() is None
    assert PortsRegistry(registry, 5000, 6000).get_port("mc-router-frp") is None
    assert report.warnings == []
    assert report.removed == [str(artifacts.registered_unit), str(artifacts.install_root)]


def test_failing_step_does_not_stop_cleanup(
    artifacts: ArtifactSet,
    registry: StateRegistry,
    recorder: CommandRecorder,
) -> None:
    """A failing stop is reported while every later step still runs."""
    _install(artifacts, registry)
    recorder.respond("systemctl", "stop", returncode=5, stderr="Unit not loaded.")

    report = _decommissioner(artifacts, registry).decommission(artifacts)

    assert report.warnings and report.warnings[0].startswith("systemd.stop:")
    assert not artifacts.install_root.exists()
    assert not artifacts.registered_unit.exists()


def test_missing_manifest_skips_compose(
    artifacts: ArtifactSet,
    registry: StateRegistry,
    recorder: CommandRecorder,
) -> None:
    """Without a manifest there is nothing for compose to take down."""
    artifacts.install_root.mkdir()

    report = _decommissioner(artifacts, registry).decommission(artifacts)

    assert recorder.commands("docker-compose") == []
    assert report.pipeline.value("compose.down") == "skipped"
    assert not artifacts.install_root.exists()


def test_purge_removes_tooling_and_runtime_data(
    tmp_path: Path,
    artifacts: ArtifactSet,
    registry: StateRegistry,
    recorder: CommandRecorder,
) -> None:
    """Purging also removes the container packages and their data directories."""
    data_dir = tmp_path / "var-lib-docker"
    (data_dir / "volumes").mkdir(parents=True)

    report = _decommissioner(artifacts, registry, purge_paths=(data_dir,)).decommission(
        artifacts, purge_dependencies=True
    )

    assert recorder.commands("apt-get") == [
        ["apt-get", "purge", "-y", "docker-compose", "docker.io"],
        ["apt-get", "autoremove", "-y"],
    ]
    assert not data_dir.exists()
    assert str(data_dir) in report.removed
    assert report.changed == 3
