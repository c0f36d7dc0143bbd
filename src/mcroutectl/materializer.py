"""Render and write the deployment artifact set.

Rendering is a pure function of :class:`InstallParameters` and one random
source used for the tunnel remote port. Every artifact is rendered in memory
before anything touches disk; writing then either completes for the whole set
or rolls back the files written during the run.
"""
from __future__ import annotations

import logging
import os
import pwd
import random
from dataclasses import dataclass
from pathlib import Path

from .models import ArtifactSet, InstallParameters, RenderedArtifacts, RenderedFile
from .ports import draw_port
from .templates import TemplateEngine, write_text_atomic

LOGGER = logging.getLogger(__name__)

SECRET_MODE = 0o600
PUBLIC_MODE = 0o644
ROUTER_BACKEND_HOST = "frps"


class MaterializeError(RuntimeError):
    """Raised when the artifact set cannot be written."""


def frp_env_ref(name: str) -> str:
    """Return frp's template reference to the environment variable *name*."""
    return "{{ .Envs.%s }}" % name


@dataclass(slots=True)
class ConfigMaterializer:
    """Render templates into an :class:`ArtifactSet`."""

    templates: TemplateEngine
    unit_dir: Path
    compose_bin: str = "/usr/bin/docker-compose"

    def artifact_set(self, install_root: Path) -> ArtifactSet:
        """Return the artifact locations for *install_root*."""
        return ArtifactSet(install_root=install_root, unit_dir=self.unit_dir)

    def render(
        self,
        parameters: InstallParameters,
        *,
        rng: random.Random | None = None,
        remote_port: int | None = None,
    ) -> RenderedArtifacts:
        """Render every artifact for *parameters* without writing anything."""
        if remote_port is None:
            remote_port = draw_port(
                rng or random.Random(), parameters.min_port, parameters.max_port
            )
        elif not parameters.min_port <= remote_port <= parameters.max_port:
            raise MaterializeError(
                f"Remote port {remote_port} is outside "
                f"{parameters.min_port}-{parameters.max_port}."
            )

        artifacts = self.artifact_set(parameters.install_root)
        context = self._context(parameters, artifacts, remote_port)
        rendered = RenderedArtifacts(artifacts=artifacts, remote_port=remote_port)

        def add(template: str, path: Path, mode: int, *, user_editable: bool) -> None:
            content = self.templates.render_to_string(template, context)
            rendered.files.append(
                RenderedFile(path=path, content=content, mode=mode, user_editable=user_editable)
            )

        add("env.j2", artifacts.env_file, SECRET_MODE, user_editable=True)
        add(
            "compose/docker-compose.yml.j2",
            artifacts.compose_file,
            PUBLIC_MODE,
            user_editable=False,
        )
        add("frp/frps.ini.j2", artifacts.frps_config, PUBLIC_MODE, user_editable=True)
        add("frp/frpc.ini.j2", artifacts.frpc_config, SECRET_MODE, user_editable=True)
        if parameters.routing_mode == "file":
            add("router/routes.json.j2", artifacts.routes_file, PUBLIC_MODE, user_editable=True)
        add("systemd/service.j2", artifacts.unit_file, PUBLIC_MODE, user_editable=False)
        return rendered

    def write(self, rendered: RenderedArtifacts, *, owner: str | None = None) -> list[Path]:
        """Write *rendered* to disk, returning the paths that changed."""
        artifacts = rendered.artifacts
        created_root = not artifacts.install_root.exists()
        created_config_dir = not artifacts.config_dir.exists()
        backups: dict[Path, tuple[str, int] | None] = {}
        changed: list[Path] = []
        try:
            artifacts.install_root.mkdir(parents=True, exist_ok=True)
            os.chmod(artifacts.install_root, 0o755)
            artifacts.config_dir.mkdir(parents=True, exist_ok=True)
            for item in rendered.files:
                backups[item.path] = _snapshot(item.path)
                if write_text_atomic(item.path, item.content, mode=item.mode):
                    changed.append(item.path)
            if owner:
                self._apply_ownership(rendered, owner)
        except OSError as exc:
            self._rollback(
                backups,
                created_root=created_root,
                created_config_dir=created_config_dir,
                artifacts=artifacts,
            )
            raise MaterializeError(
                f"Failed to write artifacts under {artifacts.install_root}: {exc}"
            ) from exc

        # Switching back to env routing leaves a stale routes file behind.
        if artifacts.routes_file not in backups and artifacts.routes_file.exists():
            artifacts.routes_file.unlink()
            changed.append(artifacts.routes_file)
        return changed

    # ------------------------------------------------------------------
    def _context(
        self,
        parameters: InstallParameters,
        artifacts: ArtifactSet,
        remote_port: int,
    ) -> dict[str, object]:
        router_backend = f"{ROUTER_BACKEND_HOST}:{remote_port}"
        return {
            "router_image": parameters.router_image,
            "frp_image": parameters.frp_image,
            "frp_version": parameters.frp_version,
            "frp_bind_addr": parameters.frp_bind_addr,
            "frp_port": parameters.bind_port,
            "min_port": parameters.min_port,
            "max_port": parameters.max_port,
            "router_port": parameters.router_port,
            "domain": parameters.domain,
            "public_ip": parameters.public_ip or "",
            "token": (parameters.token or "") if parameters.auth_enabled else "",
            "auth_enabled": parameters.auth_enabled,
            "remote_port": remote_port,
            "router_backend": router_backend,
            "router_mapping": f"{parameters.domain}={router_backend}",
            "routing_mode": parameters.routing_mode,
            "install_root": str(artifacts.install_root),
            "compose_file": str(artifacts.compose_file),
            "compose_bin": self.compose_bin,
            "description": f"Minecraft router and frp tunnel server ({parameters.project_name})",
            "env_ref": frp_env_ref,
        }

    def _apply_ownership(self, rendered: RenderedArtifacts, owner: str) -> None:
        if os.geteuid() != 0 or owner == "root":
            return
        try:
            entry = pwd.getpwnam(owner)
        except KeyError:
            LOGGER.debug("Skipping ownership change; unknown user %s", owner)
            return
        targets = [rendered.artifacts.install_root, rendered.artifacts.config_dir]
        targets.extend(item.path for item in rendered.files if item.user_editable)
        for path in targets:
            os.chown(path, entry.pw_uid, entry.pw_gid)

    def _rollback(
        self,
        backups: dict[Path, tuple[str, int] | None],
        *,
        created_root: bool,
        created_config_dir: bool,
        artifacts: ArtifactSet,
    ) -> None:
        for path, previous in backups.items():
            try:
                if previous is None:
                    path.unlink(missing_ok=True)
                else:
                    write_text_atomic(path, previous[0], mode=previous[1])
            except OSError as exc:
                LOGGER.debug("Rollback of %s failed: %s", path, exc)
        for directory, created in (
            (artifacts.config_dir, created_config_dir),
            (artifacts.install_root, created_root),
        ):
            if not created:
                continue
            try:
                directory.rmdir()
            except OSError as exc:
                LOGGER.debug("Could not remove %s during rollback: %s", directory, exc)


def _snapshot(path: Path) -> tuple[str, int] | None:
    """Return the current text and mode of *path*, or ``None`` if absent."""
    try:
        return path.read_text(encoding="utf-8"), path.stat().st_mode & 0o777
    except FileNotFoundError:
        return None


__all__ = ["ConfigMaterializer", "MaterializeError", "frp_env_ref"]
