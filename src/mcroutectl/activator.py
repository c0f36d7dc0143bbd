"""Register the rendered unit with systemd, start it and verify it runs."""
from __future__ import annotations

from dataclasses import dataclass, field

from .models import ArtifactSet
from .providers.compose import ComposeProvider
from .providers.systemd import SystemdProvider


class ActivationError(RuntimeError):
    """Raised when the unit does not report an active state after starting."""

    def __init__(self, message: str, *, log_hints: list[str]) -> None:
        """Store the commands operators should run to diagnose the failure."""
        super().__init__(message)
        self.log_hints = log_hints


@dataclass(slots=True)
class ActivationResult:
    """Outcome of a successful activation."""

    unit: str
    state: str = "running"
    unit_changed: bool = False
    enabled_now: bool = False
    restarted: bool = False
    steps: list[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        """Return the number of host mutations performed."""
        return int(self.unit_changed) + int(self.enabled_now) + 1


@dataclass(slots=True)
class ServiceActivator:
    """Drive the unit lifecycle after the artifact set is complete."""

    systemd: SystemdProvider
    compose: ComposeProvider

    def activate(self, artifacts: ArtifactSet) -> ActivationResult:
        """Register, enable and start the unit, then check it once."""
        unit = artifacts.unit_name
        result = ActivationResult(unit=unit)

        result.unit_changed = self.systemd.install_unit(artifacts.unit_file, unit)
        result.steps.append("systemd.install_unit")
        self.systemd.daemon_reload()
        result.steps.append("systemd.daemon_reload")

        if not self.systemd.is_enabled(unit):
            self.systemd.enable(unit)
            result.enabled_now = True
            result.steps.append("systemd.enable")

        if self.systemd.is_active(unit):
            self.systemd.restart(unit)
            result.restarted = True
            result.steps.append("systemd.restart")
        else:
            self.systemd.start(unit)
            result.steps.append("systemd.start")

        if not self.systemd.is_active(unit):
            raise ActivationError(
                f"Unit {unit} did not reach the active state.",
                log_hints=self.log_hints(artifacts),
            )
        result.steps.append("systemd.verify")
        return result

    def log_hints(self, artifacts: ArtifactSet) -> list[str]:
        """Return the two log sources to consult after a failed start."""
        return [
            self.systemd.logs_hint(artifacts.unit_name),
            self.compose.logs_hint(artifacts.compose_file),
        ]


__all__ = ["ActivationError", "ActivationResult", "ServiceActivator"]
