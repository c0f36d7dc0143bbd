"""docker-compose provider used for teardown and diagnostics."""
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path


class ComposeError(RuntimeError):
    """Raised when a docker-compose invocation fails."""


@dataclass(slots=True)
class ComposeProvider:
    """Drive ``docker-compose`` against a single manifest."""

    compose_bin: str = "docker-compose"

    def resolve_bin(self) -> str:
        """Return the absolute path of the compose binary for unit files."""
        resolved = shutil.which(self.compose_bin)
        if resolved:
            return resolved
        if Path(self.compose_bin).is_absolute():
            return self.compose_bin
        return f"/usr/bin/{self.compose_bin}"

    def down(self, manifest: Path) -> subprocess.CompletedProcess[str]:
        """Stop and remove the containers declared in *manifest*."""
        return self._run(manifest, ["down", "--remove-orphans"])

    def ps(self, manifest: Path) -> subprocess.CompletedProcess[str]:
        """Return the container listing for *manifest*."""
        return self._run(manifest, ["ps"], check=False)

    def logs_hint(self, manifest: Path) -> str:
        """Return the command an operator runs to read container logs."""
        return f"{self.compose_bin} -f {manifest} logs --tail 100"

    # ------------------------------------------------------------------
    def _run(
        self,
        manifest: Path,
        args: list[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.compose_bin, "-f", str(manifest), *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
                cwd=str(manifest.parent),
            )
        except FileNotFoundError as exc:
            raise ComposeError(f"{self.compose_bin} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "no output"
            raise ComposeError(
                f"{self.compose_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["ComposeError", "ComposeProvider"]
