"""Systemd provider for registering and driving the deployment unit."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..templates import write_text_atomic


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Thin wrapper around ``systemctl``/``journalctl`` for one unit directory."""

    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def unit_path(self, unit: str) -> Path:
        """Return the registered path for *unit*."""
        return self.systemd_dir / unit

    def install_unit(self, source: Path, unit: str) -> bool:
        """Copy the unit descriptor at *source* into the unit directory.

        Returns ``True`` when the registered file was created or changed.
        """
        content = source.read_text(encoding="utf-8")
        return write_text_atomic(self.unit_path(unit), content, mode=0o644)

    def remove_unit(self, unit: str) -> bool:
        """Delete the registered unit file; absence is not an error."""
        try:
            self.unit_path(unit).unlink()
        except FileNotFoundError:
            return False
        return True

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Ask systemd to re-read unit files."""
        return self._systemctl("daemon-reload")

    def enable(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Enable *unit* for boot-time start."""
        return self._systemctl("enable", unit)

    def disable(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Disable *unit*."""
        return self._systemctl("disable", unit)

    def start(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl("start", unit)

    def stop(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Stop *unit*."""
        return self._systemctl("stop", unit)

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit)

    def is_active(self, unit: str) -> bool:
        """Return whether systemd reports *unit* as active (single check)."""
        result = self._systemctl("is-active", unit, check=False)
        return result.returncode == 0 and (result.stdout or "").strip() == "active"

    def is_enabled(self, unit: str) -> bool:
        """Return whether *unit* is enabled."""
        result = self._systemctl("is-enabled", unit, check=False)
        return result.returncode == 0 and (result.stdout or "").strip() == "enabled"

    def enable_now(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Enable and immediately start *unit* (used for host services)."""
        return self._run_command(
            [self.systemctl_bin, "enable", "--now", unit],
            check=True,
            error_prefix=f"{self.systemctl_bin} enable --now {unit}",
        )

    def logs_hint(self, unit: str) -> str:
        """Return the command an operator runs to read the unit journal."""
        return f"{self.journalctl_bin} -u {unit} --no-pager -n 100"

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
