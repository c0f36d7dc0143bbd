"""Tests for unit registration and start-up verification."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from mcroutectl.activator import ActivationError, ServiceActivator
from mcroutectl.models import ArtifactSet
from mcroutectl.providers.compose import ComposeProvider
from mcroutectl.providers.systemd import SystemdProvider

if TYPE_CHECKING:
    from conftest import CommandRecorder

UNIT = "mc-router-frp.service"


@pytest.fixture
def artifacts(tmp_path: Path) -> ArtifactSet:
    """Return an artifact set with a rendered unit file on disk."""
    artifact_set = ArtifactSet(install_root=tmp_path / "root", unit_dir=tmp_path / "systemd")
    artifact_set.install_root.mkdir()
    artifact_set.unit_file.write_text("[Unit]\nDescription=test\n", encoding="utf-8")
    return artifact_set


def _activator(artifacts: ArtifactSet) -> ServiceActivator:
    return ServiceActivator(
        systemd=SystemdProvider(systemd_dir=artifacts.unit_dir),
        compose=ComposeProvider(),
    )


def test_fresh_activation_enables_and_starts(
    artifacts: ArtifactSet,
    recorder: CommandRecorder,
) -> None:
    """A new unit is registered, reloaded, enabled, started and checked once."""
    recorder.respond("systemctl", "is-enabled", returncode=1, stdout="disabled\n")
    recorder.respond("systemctl", "is-active", returncode=3, stdout="inactive\n")
    recorder.respond("systemctl", "is-active", stdout="active\n")

    result = _activator(artifacts).activate(artifacts)

    assert recorder.calls == [
        ["systemctl", "daemon-reload"],
        ["systemctl", "is-enabled", UNIT],
        ["systemctl", "enable", UNIT],
        ["systemctl", "is-active", UNIT],
        ["systemctl", "start", UNIT],
        ["systemctl", "is-active", UNIT],
    ]
    assert artifacts.registered_unit.read_text(encoding="utf-8") == artifacts.unit_file.read_text(
        encoding="utf-8"
    )
    assert result.unit_changed is True
    assert result.enabled_now is True
    assert result.restarted is False
    assert result.changed == 3


def test_reactivation_restarts_without_enabling(
    artifacts: ArtifactSet,
    recorder: CommandRecorder,
) -> None:
    """An enabled, running unit is restarted and never enabled twice."""
    recorder.respond("systemctl", "is-enabled", stdout="enabled\n")
    recorder.respond("systemctl", "is-active", stdout="active\n")
    activator = _activator(artifacts)
    activator.activate(artifacts)
    recorder.calls.clear()

    result = activator.activate(artifacts)

    assert ["systemctl", "enable", UNIT] not in recorder.calls
    assert ["systemctl", "restart", UNIT] in recorder.calls
    assert result.unit_changed is False
    assert result.restarted is True
    assert result.steps[-1] == "systemd.verify"


def test_inactive_unit_raises_with_both_log_hints(
    artifacts: ArtifactSet,
    recorder: CommandRecorder,
) -> None:
    """A unit that does not come up reports the journal and compose log commands."""
    recorder.respond("systemctl", "is-enabled", stdout="enabled\n")
    recorder.respond("systemctl", "is-active", returncode=3, stdout="failed\n")

    with pytest.raises(ActivationError) as excinfo:
        _activator(artifacts).activate(artifacts)

    hints = excinfo.value.log_hints
    assert hints[0].startswith(f"journalctl -u {UNIT}")
    assert hints[1].startswith(f"docker-compose -f {artifacts.compose_file} logs")
    assert recorder.calls.count(["systemctl", "is-active", UNIT]) == 2
