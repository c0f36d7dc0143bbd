"""Value objects shared by the install and uninstall pipelines."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from .config import ALLOWED_ROUTING_MODES, AppConfig

UNIT_NAME = "mc-router-frp.service"

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)(?!-)[A-Za-z0-9-]{1,63}(?<!-)(\.(?!-)[A-Za-z0-9-]{1,63}(?<!-))*$"
)


class InvalidParametersError(ValueError):
    """Raised when install parameters violate their invariants."""


@dataclass(frozen=True, slots=True)
class InstallParameters:
    """Everything an install run needs, fixed at invocation time."""

    install_root: Path
    domain: str
    router_image: str = "itzg/mc-router:latest"
    frp_image: str = "snowdreamtech/frps"
    frp_version: str = "0.60.0"
    frp_bind_addr: str = "0.0.0.0"  # noqa: S104
    bind_port: int = 7000
    router_port: int = 25565
    min_port: int = 5000
    max_port: int = 6000
    public_ip: str | None = None
    token: str | None = None
    auth_enabled: bool = True
    routing_mode: str = "env"
    project_name: str = "mc-router-frp"

    def __post_init__(self) -> None:
        """Validate the parameter invariants."""
        for label, port in (
            ("bind_port", self.bind_port),
            ("router_port", self.router_port),
            ("min_port", self.min_port),
            ("max_port", self.max_port),
        ):
            if not 1 <= port <= 65535:
                raise InvalidParametersError(f"{label} must be between 1 and 65535, got {port}.")
        if self.min_port >= self.max_port:
            raise InvalidParametersError(
                f"Port range is empty: min_port {self.min_port} must be lower than "
                f"max_port {self.max_port}."
            )
        if not _HOSTNAME_RE.match(self.domain or ""):
            raise InvalidParametersError(f"Invalid domain '{self.domain}'.")
        if self.auth_enabled and not (self.token and self.token.strip()):
            raise InvalidParametersError("A tunnel token is required when authentication is on.")
        if self.routing_mode not in ALLOWED_ROUTING_MODES:
            allowed = ", ".join(sorted(ALLOWED_ROUTING_MODES))
            raise InvalidParametersError(
                f"Unsupported routing mode '{self.routing_mode}'. Allowed: {allowed}."
            )

    @classmethod
    def from_config(cls, config: AppConfig, *, token: str | None = None) -> InstallParameters:
        """Build parameters from resolved configuration."""
        return cls(
            install_root=config.install_root,
            domain=config.domain,
            router_image=config.images.router,
            frp_image=config.images.frp,
            frp_version=config.images.frp_version,
            frp_bind_addr=config.tunnel.bind_addr,
            bind_port=config.tunnel.bind_port,
            router_port=config.router.port,
            min_port=config.ports.min,
            max_port=config.ports.max,
            public_ip=config.public_ip,
            token=token if token is not None else config.tunnel.token,
            auth_enabled=config.tunnel.auth,
            routing_mode=config.router.routing,
            project_name=config.project_name,
        )


@dataclass(frozen=True, slots=True)
class ArtifactSet:
    """Filesystem locations of every artifact a deployment owns."""

    install_root: Path
    unit_dir: Path
    unit_name: str = UNIT_NAME

    @property
    def env_file(self) -> Path:
        return self.install_root / ".env"

    @property
    def compose_file(self) -> Path:
        return self.install_root / "docker-compose.yml"

    @property
    def config_dir(self) -> Path:
        return self.install_root / "config"

    @property
    def frps_config(self) -> Path:
        return self.config_dir / "frps.ini"

    @property
    def frpc_config(self) -> Path:
        return self.config_dir / "frpc.ini"

    @property
    def routes_file(self) -> Path:
        return self.config_dir / "routes.json"

    @property
    def unit_file(self) -> Path:
        """Unit descriptor as rendered inside the install root."""
        return self.install_root / self.unit_name

    @property
    def registered_unit(self) -> Path:
        """Unit descriptor as installed for the init system."""
        return self.unit_dir / self.unit_name

    def to_dict(self) -> dict[str, str]:
        """Return the artifact paths keyed by role."""
        return {
            "install_root": str(self.install_root),
            "env_file": str(self.env_file),
            "compose_file": str(self.compose_file),
            "frps_config": str(self.frps_config),
            "frpc_config": str(self.frpc_config),
            "routes_file": str(self.routes_file),
            "unit_file": str(self.unit_file),
            "registered_unit": str(self.registered_unit),
        }


@dataclass(frozen=True, slots=True)
class RenderedFile:
    """A single artifact rendered in memory."""

    path: Path
    content: str
    mode: int
    user_editable: bool = False


@dataclass(slots=True)
class RenderedArtifacts:
    """All rendered artifacts for a run plus the port that was drawn."""

    artifacts: ArtifactSet
    remote_port: int
    files: list[RenderedFile] = field(default_factory=list)

    def contents(self) -> dict[str, str]:
        """Return the rendered text keyed by absolute path."""
        return {str(item.path): item.content for item in self.files}


__all__ = [
    "ArtifactSet",
    "InstallParameters",
    "InvalidParametersError",
    "RenderedArtifacts",
    "RenderedFile",
    "UNIT_NAME",
]
