"""Configuration loader for mcroutectl.

Configuration values are merged from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/mcroutectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MCROUTECTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MCROUTECTL_TUNNEL__BIND_PORT=7001
    export MCROUTECTL_PORTS__STRATEGY=sequential

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "MCROUTECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ImagesConfig:
    """Container images for the router and the tunnel server."""

    router: str = "itzg/mc-router:latest"
    frp: str = "snowdreamtech/frps"
    frp_version: str = "0.60.0"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"router": self.router, "frp": self.frp, "frp_version": self.frp_version}


@dataclass(frozen=True)
class TunnelConfig:
    """frps bind settings and authentication."""

    bind_addr: str = "0.0.0.0"  # noqa: S104 - frps must accept remote clients
    bind_port: int = 7000
    auth: bool = True
    token: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (the token is masked)."""
        return {
            "bind_addr": self.bind_addr,
            "bind_port": self.bind_port,
            "auth": self.auth,
            "token": "***" if self.token else None,
        }


@dataclass(frozen=True)
class RouterConfig:
    """mc-router listen port and routing mode."""

    port: int = 25565
    routing: str = "env"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"port": self.port, "routing": self.routing}


@dataclass(frozen=True)
class PortsConfig:
    """Range from which tunnel remote ports are allocated."""

    min: int = 5000
    max: int = 6000
    strategy: str = "random"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"min": self.min, "max": self.max, "strategy": self.strategy}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
        }


@dataclass(frozen=True)
class PackagesConfig:
    """Host package manager and container tooling."""

    apt_bin: str = "apt-get"
    dpkg_bin: str = "dpkg"
    usermod_bin: str = "usermod"
    docker_bin: str = "docker"
    compose_bin: str = "docker-compose"
    docker_package: str = "docker.io"
    compose_package: str = "docker-compose"
    conflicts: tuple[str, ...] = ("containerd.io",)
    docker_group: str = "docker"
    purge_paths: tuple[Path, ...] = (Path("/var/lib/docker"), Path("/var/lib/containerd"))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "apt_bin": self.apt_bin,
            "dpkg_bin": self.dpkg_bin,
            "usermod_bin": self.usermod_bin,
            "docker_bin": self.docker_bin,
            "compose_bin": self.compose_bin,
            "docker_package": self.docker_package,
            "compose_package": self.compose_package,
            "conflicts": list(self.conflicts),
            "docker_group": self.docker_group,
            "purge_paths": [str(path) for path in self.purge_paths],
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for mcroutectl."""

    config_file: Path
    install_root: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    project_name: str
    domain: str
    public_ip: str | None
    images: ImagesConfig
    tunnel: TunnelConfig
    router: RouterConfig
    ports: PortsConfig
    systemd: SystemdConfig
    packages: PackagesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_root": str(self.install_root),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "project_name": self.project_name,
            "domain": self.domain,
            "public_ip": self.public_ip,
            "images": self.images.to_dict(),
            "tunnel": self.tunnel.to_dict(),
            "router": self.router.to_dict(),
            "ports": self.ports.to_dict(),
            "systemd": self.systemd.to_dict(),
            "packages": self.packages.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/mcroutectl/config.yml",
    "install_root": "/opt/mc-router-frp",
    "state_dir": "/var/lib/mcroutectl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/mcroutectl",
    "runtime_dir": "/run/mcroutectl",
    "templates_dir": "/etc/mcroutectl/templates",
    "lock_timeout": 30.0,
    "project_name": "mc-router-frp",
    "domain": "example.com",
    "public_ip": None,
    "images": {
        "router": "itzg/mc-router:latest",
        "frp": "snowdreamtech/frps",
        "frp_version": "0.60.0",
    },
    "tunnel": {
        "bind_addr": "0.0.0.0",
        "bind_port": 7000,
        "auth": True,
        "token": None,
    },
    "router": {
        "port": 25565,
        "routing": "env",
    },
    "ports": {
        "min": 5000,
        "max": 6000,
        "strategy": "random",
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
    "packages": {
        "apt_bin": "apt-get",
        "dpkg_bin": "dpkg",
        "usermod_bin": "usermod",
        "docker_bin": "docker",
        "compose_bin": "docker-compose",
        "docker_package": "docker.io",
        "compose_package": "docker-compose",
        "conflicts": ["containerd.io"],
        "docker_group": "docker",
        "purge_paths": ["/var/lib/docker", "/var/lib/containerd"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PORT_STRATEGIES = {"random", "sequential"}
ALLOWED_ROUTING_MODES = {"env", "file"}
_NESTED_KEYS: dict[str, set[str]] = {
    key: set(cast(Mapping[str, object], value).keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _NESTED_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    ports_map = _as_dict(raw.get("ports"), "ports")
    strategy = ports_map.get("strategy")
    if strategy is not None and str(strategy) not in ALLOWED_PORT_STRATEGIES:
        allowed = ", ".join(sorted(ALLOWED_PORT_STRATEGIES))
        raise ConfigError(
            f"Unsupported port allocation strategy '{strategy}'. Allowed: {allowed}."
        )

    router_map = _as_dict(raw.get("router"), "router")
    routing = router_map.get("routing")
    if routing is not None and str(routing) not in ALLOWED_ROUTING_MODES:
        allowed = ", ".join(sorted(ALLOWED_ROUTING_MODES))
        raise ConfigError(f"Unsupported routing mode '{routing}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_root = _to_path(raw.get("install_root"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    images_mapping = _as_dict(raw.get("images"), "images")
    images = ImagesConfig(
        router=str(images_mapping.get("router", ImagesConfig.router)),
        frp=str(images_mapping.get("frp", ImagesConfig.frp)),
        frp_version=str(images_mapping.get("frp_version", ImagesConfig.frp_version)),
    )

    tunnel_mapping = _as_dict(raw.get("tunnel"), "tunnel")
    token_value = tunnel_mapping.get("token")
    tunnel = TunnelConfig(
        bind_addr=str(tunnel_mapping.get("bind_addr", "0.0.0.0")),  # noqa: S104
        bind_port=_expect_int(tunnel_mapping.get("bind_port"), "tunnel.bind_port", default=7000),
        auth=_expect_bool(tunnel_mapping.get("auth"), "tunnel.auth", default=True),
        token=str(token_value) if token_value not in (None, "") else None,
    )

    router_mapping = _as_dict(raw.get("router"), "router")
    router = RouterConfig(
        port=_expect_int(router_mapping.get("port"), "router.port", default=25565),
        routing=str(router_mapping.get("routing", "env")),
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        min=_expect_int(ports_mapping.get("min"), "ports.min", default=5000),
        max=_expect_int(ports_mapping.get("max"), "ports.max", default=6000),
        strategy=str(ports_mapping.get("strategy", "random")),
    )
    if ports.min >= ports.max:
        raise ConfigError(f"ports.min ({ports.min}) must be lower than ports.max ({ports.max}).")

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
    )

    packages_mapping = _as_dict(raw.get("packages"), "packages")
    defaults = PackagesConfig()
    conflicts_raw = packages_mapping.get("conflicts", list(defaults.conflicts))
    purge_raw = packages_mapping.get("purge_paths", [str(p) for p in defaults.purge_paths])
    packages = PackagesConfig(
        apt_bin=str(packages_mapping.get("apt_bin", defaults.apt_bin)),
        dpkg_bin=str(packages_mapping.get("dpkg_bin", defaults.dpkg_bin)),
        usermod_bin=str(packages_mapping.get("usermod_bin", defaults.usermod_bin)),
        docker_bin=str(packages_mapping.get("docker_bin", defaults.docker_bin)),
        compose_bin=str(packages_mapping.get("compose_bin", defaults.compose_bin)),
        docker_package=str(packages_mapping.get("docker_package", defaults.docker_package)),
        compose_package=str(packages_mapping.get("compose_package", defaults.compose_package)),
        conflicts=tuple(
            str(item) for item in _as_sequence(conflicts_raw or [], "packages.conflicts")
        ),
        docker_group=str(packages_mapping.get("docker_group", defaults.docker_group)),
        purge_paths=tuple(
            _to_path(item) for item in _as_sequence(purge_raw or [], "packages.purge_paths")
        ),
    )

    public_ip_value = raw.get("public_ip")
    domain = str(raw.get("domain", "example.com")).strip()
    if not domain:
        raise ConfigError("domain must be a non-empty string.")

    return AppConfig(
        config_file=config_file,
        install_root=install_root,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        project_name=str(raw.get("project_name", "mc-router-frp")),
        domain=domain,
        public_ip=str(public_ip_value) if public_ip_value not in (None, "") else None,
        images=images,
        tunnel=tunnel,
        router=router,
        ports=ports,
        systemd=systemd,
        packages=packages,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ALLOWED_PORT_STRATEGIES",
    "ALLOWED_ROUTING_MODES",
    "AppConfig",
    "ConfigError",
    "ImagesConfig",
    "PackagesConfig",
    "PortsConfig",
    "RouterConfig",
    "SystemdConfig",
    "TunnelConfig",
    "load_config",
]
