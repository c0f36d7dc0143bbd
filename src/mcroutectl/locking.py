"""Advisory file locks serialising mutating mcroutectl invocations.

Install and uninstall both rewrite the same artifact set and the same port
reservations, so they run under a single global lock stored in the runtime
directory. The lock file is left behind after release and carries JSON
metadata describing the last holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "mcroutectl.lock"
POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire ``flock``-based locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str = GLOBAL_LOCK_NAME) -> Path:
        """Return the filesystem path for the lock called *name*."""
        return self.runtime_dir / name

    @contextmanager
    def deployment_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global deployment lock for the duration of the block."""
        with self._acquire(self.lock_path(), timeout=timeout) as handle:
            yield handle

    @contextmanager
    def named_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold a lock dedicated to *name* (``<name>.lock``)."""
        safe = name.strip().replace("/", "-")
        if not safe:
            raise ValueError("Lock name must be a non-empty string.")
        with self._acquire(self.lock_path(f"{safe}.lock"), timeout=timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, *, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["GLOBAL_LOCK_NAME", "LockHandle", "LockManager", "LockTimeoutError"]
