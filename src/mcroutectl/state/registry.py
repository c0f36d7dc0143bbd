"""Helpers for interacting with the mcroutectl state registry.

The registry directory (``/var/lib/mcroutectl/registry`` by default) stores
YAML artifacts: ``ports.yml`` holds port reservations and ``deployment.yml``
records what the last successful install created. Writes are atomic so an
interrupted run never leaves a half-written registry file behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

PORTS_FILE = "ports.yml"
DEPLOYMENT_FILE = "deployment.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    def remove(self, name: str) -> bool:
        """Delete a registry file, returning ``True`` when something was removed."""
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    # Convenience wrappers -------------------------------------------------
    def read_ports(self) -> Mapping[str, object]:
        """Return the contents of ``ports.yml`` (empty mapping if missing)."""
        value = self.read(PORTS_FILE, default={"ports": []})
        return value if isinstance(value, Mapping) else {"ports": []}

    def write_ports(self, ports: Iterable[object]) -> None:
        """Persist port reservations to ``ports.yml``."""
        self.write(PORTS_FILE, {"ports": list(ports)})

    # Deployment helpers -------------------------------------------------
    def get_deployment(self) -> dict[str, Any] | None:
        """Return the recorded deployment, pending or active, if any."""
        value = self.read(DEPLOYMENT_FILE, default=None)
        if value is None:
            return None
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"{self.path_for(DEPLOYMENT_FILE)} must contain a mapping.")
        deployment = value.get("deployment")
        return dict(deployment) if isinstance(deployment, Mapping) else None

    def record_deployment(self, entry: Mapping[str, object]) -> None:
        """Store *entry* as the current deployment, replacing any previous one."""
        if not entry.get("install_root"):
            raise StateRegistryError("Deployment entry missing 'install_root'.")
        self.write(DEPLOYMENT_FILE, {"deployment": dict(entry)})

    def clear_deployment(self) -> bool:
        """Forget the recorded deployment."""
        return self.remove(DEPLOYMENT_FILE)


__all__ = ["DEPLOYMENT_FILE", "PORTS_FILE", "StateRegistry", "StateRegistryError"]
