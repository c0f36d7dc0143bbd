"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from mcroutectl.locking import LockManager, LockTimeoutError


def test_deployment_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring the global lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "mcroutectl.lock"
    with manager.deployment_lock() as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert "acquired_at" in data

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.deployment_lock(timeout=0.2):
        pass


def test_deployment_lock_timeout(tmp_path: Path) -> None:
    """A second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.deployment_lock():
        with pytest.raises(LockTimeoutError):
            with manager.deployment_lock(timeout=0.1):
                pass


def test_named_lock_is_independent_of_global_lock(tmp_path: Path) -> None:
    """Named locks use their own file and do not contend with the global lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.deployment_lock():
        with manager.named_lock("fetch/client", timeout=0.2) as handle:
            assert handle.path == tmp_path / "run" / "fetch-client.lock"


def test_named_lock_rejects_blank_names(tmp_path: Path) -> None:
    """Blank lock names are rejected."""
    manager = LockManager(tmp_path / "run")

    with pytest.raises(ValueError):
        with manager.named_lock("   "):
            pass
