"""State registry helpers tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from mcroutectl.state import StateRegistry, StateRegistryError


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    result = registry.read("ports.yml", default={"ports": []})

    assert result == {"ports": []}


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a registry file and reading it back succeeds."""
    registry = StateRegistry(tmp_path / "registry")
    payload = {"ports": [{"name": "mc-router-frp", "port": 5123}]}

    registry.write("ports.yml", payload)

    path = tmp_path / "registry" / "ports.yml"
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.read("ports.yml") == payload
    assert registry.read_ports()["ports"] == payload["ports"]
    assert [item.name for item in path.parent.iterdir()] == ["ports.yml"]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "ports.yml").write_text("::: not yaml :::\n")

    with pytest.raises(StateRegistryError):
        registry.read("ports.yml")


def test_deployment_record_lifecycle(tmp_path: Path) -> None:
    """A deployment can be recorded, read back and cleared."""
    registry = StateRegistry(tmp_path)
    assert registry.get_deployment() is None

    registry.record_deployment({"install_root": "/opt/mc", "remote_port": 5123})

    assert registry.get_deployment() == {"install_root": "/opt/mc", "remote_port": 5123}
    assert registry.clear_deployment() is True
    assert registry.get_deployment() is None
    assert registry.clear_deployment() is False


def test_record_deployment_requires_install_root(tmp_path: Path) -> None:
    """Deployment entries must name their install root."""
    registry = StateRegistry(tmp_path)

    with pytest.raises(StateRegistryError, match="install_root"):
        registry.record_deployment({"remote_port": 5123})


def test_deployment_file_must_hold_mapping(tmp_path: Path) -> None:
    """A malformed deployment file is reported rather than ignored."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "deployment.yml").write_text("- one\n- two\n")

    with pytest.raises(StateRegistryError, match="must contain a mapping"):
        registry.get_deployment()
