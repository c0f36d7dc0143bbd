"""Tests for the apt/dpkg provider."""
from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from mcroutectl.providers.apt import AptProvider, PackageManagerError

if TYPE_CHECKING:
    from conftest import CommandRecorder


def test_commands_are_non_interactive(recorder: CommandRecorder) -> None:
    """Every apt-get call runs with DEBIAN_FRONTEND=noninteractive and -y."""
    apt = AptProvider()

    apt.update()
    apt.install(["docker.io"])
    apt.repair()
    apt.purge(["docker-compose", "docker.io"])
    apt.autoremove()

    assert recorder.calls == [
        ["apt-get", "update"],
        ["apt-get", "install", "-y", "docker.io"],
        ["apt-get", "install", "-f", "-y"],
        ["apt-get", "purge", "-y", "docker-compose", "docker.io"],
        ["apt-get", "autoremove", "-y"],
    ]
    for kwargs in recorder.kwargs:
        env = kwargs["env"]
        assert isinstance(env, dict)
        assert env["DEBIAN_FRONTEND"] == "noninteractive"


def test_failed_install_raises(recorder: CommandRecorder) -> None:
    """A non-zero apt-get exit raises PackageManagerError with its output."""
    recorder.respond("apt-get", "install", returncode=100, stderr="E: Unable to locate package")

    with pytest.raises(PackageManagerError, match="Unable to locate package"):
        AptProvider().install(["docker.io"])


def test_is_installed_reads_dpkg_status(recorder: CommandRecorder) -> None:
    """dpkg -s output decides whether a package is installed."""
    recorder.respond("dpkg", "-s", "containerd.io", stdout="Status: install ok installed\n")
    recorder.respond("dpkg", "-s", "docker.io", returncode=1, stderr="not installed")

    apt = AptProvider()

    assert apt.is_installed("containerd.io") is True
    assert apt.is_installed("docker.io") is False


def test_is_installed_without_dpkg(monkeypatch: pytest.MonkeyPatch) -> None:
    """A host without dpkg reports packages as absent instead of failing."""

    def missing(*args: object, **kwargs: object) -> None:
        raise FileNotFoundError("dpkg")

    monkeypatch.setattr("subprocess.run", missing)

    assert AptProvider().is_installed("containerd.io") is False
