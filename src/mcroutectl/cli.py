"""Typer-powered command line interface for ``mcroutectl``.

``install`` prepares the host, renders the mc-router + frps artifact set and
brings the systemd unit up; ``uninstall`` (alias ``remove``) tears everything
down again. Every command records one structured operation in the operations
log and exits ``0`` on success or ``1`` on any failure, including usage errors.
"""
from __future__ import annotations

import random
import secrets
import sys
import textwrap
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .activator import ActivationError, ServiceActivator
from .bootstrap import DependencyInstallError, Preflight, resolve_invoking_user
from .config import ALLOWED_ROUTING_MODES, AppConfig, ConfigError, load_config
from .decommission import Decommissioner
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .materializer import ConfigMaterializer, MaterializeError
from .models import UNIT_NAME, InstallParameters, InvalidParametersError
from .platforms import ClientFetchError, UnsupportedPlatformError, fetch_frp_client
from .ports import PortsRegistry, PortsRegistryError
from .providers import (
    AptProvider,
    ComposeError,
    ComposeProvider,
    PackageManagerError,
    SystemdError,
    SystemdProvider,
)
from .reconciler import DeploymentReconciler
from .state import StateRegistry, StateRegistryError
from .templates import TemplateEngine

console = Console()

INSTALL_ERRORS: tuple[type[Exception], ...] = (
    ComposeError,
    DependencyInstallError,
    InvalidParametersError,
    LockTimeoutError,
    MaterializeError,
    PackageManagerError,
    PortsRegistryError,
    StateRegistryError,
    SystemdError,
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to mcroutectl's YAML config file.",
)

PURGE_DEPENDENCIES_OPTION = typer.Option(
    False,
    "--purge-dependencies",
    help="Also purge docker.io/docker-compose and delete their data directories.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Install and manage an mc-router + frp tunnel server deployment.

        The router forwards Minecraft connections by hostname; the tunnel
        server lets backends behind NAT register an outbound frp tunnel.
        """
    ).strip(),
)
ports_app = typer.Typer(help="Inspect tunnel port reservations.")
app.add_typer(ports_app, name="ports")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    ports: PortsRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    systemd: SystemdProvider
    compose: ComposeProvider
    apt: AptProvider
    materializer: ConfigMaterializer
    reconciler: DeploymentReconciler


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    registry = StateRegistry(config.registry_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    ports_registry = PortsRegistry(
        registry=registry,
        min_port=config.ports.min,
        max_port=config.ports.max,
        strategy=config.ports.strategy,
    )
    systemd_provider = SystemdProvider(
        systemd_dir=config.systemd.unit_dir,
        systemctl_bin=config.systemd.systemctl_bin,
        journalctl_bin=config.systemd.journalctl_bin,
    )
    compose_provider = ComposeProvider(compose_bin=config.packages.compose_bin)
    apt_provider = AptProvider(
        apt_bin=config.packages.apt_bin,
        dpkg_bin=config.packages.dpkg_bin,
    )
    materializer = ConfigMaterializer(
        templates=templates,
        unit_dir=config.systemd.unit_dir,
        compose_bin=compose_provider.resolve_bin(),
    )
    reconciler = DeploymentReconciler(
        preflight=Preflight(apt=apt_provider, systemd=systemd_provider, packages=config.packages),
        materializer=materializer,
        activator=ServiceActivator(systemd=systemd_provider, compose=compose_provider),
        decommissioner=Decommissioner(
            systemd=systemd_provider,
            compose=compose_provider,
            apt=apt_provider,
            registry=registry,
            ports=ports_registry,
            packages=config.packages,
            reservation_name=config.project_name,
        ),
        registry=registry,
        ports=ports_registry,
        locks=locks,
        reservation_name=config.project_name,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        ports=ports_registry,
        locks=locks,
        logger=logger,
        templates=templates,
        systemd=systemd_provider,
        compose=compose_provider,
        apt=apt_provider,
        materializer=materializer,
        reconciler=reconciler,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mcroutectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"mcroutectl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=ExitCode.FAILURE)

    try:
        _ensure_runtime(ctx, config_file, lock_timeout)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc


def _command_error(
    op: OperationScope,
    message: str,
    *,
    errors: list[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=errors or [message], rc=ExitCode.FAILURE)
    raise typer.Exit(code=ExitCode.FAILURE)


def _generate_token(rng: random.Random | None = None) -> str:
    if rng is not None:
        return f"{rng.getrandbits(128):032x}"
    return secrets.token_hex(16)


def _existing_token(env_file: Path) -> str | None:
    """Return ``FRP_TOKEN`` from a previously rendered env file."""
    try:
        lines = env_file.read_text(encoding="utf-8").splitlines()
    except OSError:
        return None
    for line in lines:
        key, sep, value = line.partition("=")
        if sep and key.strip() == "FRP_TOKEN" and value.strip():
            return value.strip()
    return None


def _build_parameters(
    config: AppConfig,
    *,
    domain: str | None = None,
    public_ip: str | None = None,
    bind_port: int | None = None,
    min_port: int | None = None,
    max_port: int | None = None,
    router_port: int | None = None,
    token: str | None = None,
    no_auth: bool = False,
    routing: str | None = None,
    install_root: Path | None = None,
    rng: random.Random | None = None,
) -> InstallParameters:
    """Merge CLI flags over configuration into validated install parameters."""
    root = install_root or config.install_root
    auth_enabled = config.tunnel.auth and not no_auth
    resolved_token = token or config.tunnel.token
    if auth_enabled and not resolved_token:
        resolved_token = _existing_token(root / ".env") or _generate_token(rng)

    tunnel = replace(
        config.tunnel,
        auth=auth_enabled,
        token=resolved_token if auth_enabled else None,
    )
    base = InstallParameters.from_config(replace(config, install_root=root, tunnel=tunnel))
    changes: dict[str, object] = {}
    for key, value in (
        ("domain", domain),
        ("public_ip", public_ip),
        ("bind_port", bind_port),
        ("min_port", min_port),
        ("max_port", max_port),
        ("router_port", router_port),
        ("routing_mode", routing),
    ):
        if value is not None:
            changes[key] = value
    return replace(base, **changes)


@app.command()
def install(
    ctx: typer.Context,
    domain: str | None = typer.Option(
        None, "--domain", help="Hostname players connect to (routes to the tunnel)."
    ),
    public_ip: str | None = typer.Option(
        None, "--public-ip", help="Address tunnel clients use to reach frps."
    ),
    bind_port: int | None = typer.Option(
        None, "--bind-port", min=1, max=65535, help="frps control port."
    ),
    min_port: int | None = typer.Option(
        None, "--min-port", min=1, max=65535, help="Lowest tunnel remote port."
    ),
    max_port: int | None = typer.Option(
        None, "--max-port", min=1, max=65535, help="Highest tunnel remote port."
    ),
    router_port: int | None = typer.Option(
        None, "--router-port", min=1, max=65535, help="Public mc-router listen port."
    ),
    token: str | None = typer.Option(
        None, "--token", help="Shared frp token (generated when omitted)."
    ),
    no_auth: bool = typer.Option(False, "--no-auth", help="Disable frp token authentication."),
    routing: str | None = typer.Option(
        None, "--routing", help="How mc-router receives its mapping (env|file)."
    ),
    install_root: Path | None = typer.Option(
        None, "--install-root", file_okay=False, help="Directory that holds the artifact set."
    ),
    skip_preflight: bool = typer.Option(
        False, "--skip-preflight", help="Do not check or install docker/docker-compose."
    ),
) -> None:
    """Install dependencies, render the deployment and start the service."""
    runtime = _get_runtime(ctx)
    args = {
        "domain": domain,
        "public_ip": public_ip,
        "bind_port": bind_port,
        "min_port": min_port,
        "max_port": max_port,
        "router_port": router_port,
        "token": "***" if token else None,
        "no_auth": no_auth,
        "routing": routing,
        "install_root": install_root,
        "skip_preflight": skip_preflight,
    }
    with runtime.logger.operation(
        "install",
        args=args,
        target={"kind": "deployment", "unit": UNIT_NAME},
    ) as op:
        if routing is not None and routing not in ALLOWED_ROUTING_MODES:
            allowed = ", ".join(sorted(ALLOWED_ROUTING_MODES))
            _command_error(op, f"Unsupported routing mode '{routing}'. Allowed: {allowed}.")
        try:
            parameters = _build_parameters(
                runtime.config,
                domain=domain,
                public_ip=public_ip,
                bind_port=bind_port,
                min_port=min_port,
                max_port=max_port,
                router_port=router_port,
                token=token,
                no_auth=no_auth,
                routing=routing,
                install_root=install_root,
            )
        except InvalidParametersError as exc:
            _command_error(op, str(exc))

        owner = resolve_invoking_user()
        try:
            report = runtime.reconciler.install(
                parameters,
                owner=owner,
                skip_preflight=skip_preflight,
                op=op,
            )
        except ActivationError as exc:
            console.print(f"[red]{exc}[/red]")
            console.print("Inspect the logs with:")
            for hint in exc.log_hints:
                console.print(f"  {hint}", markup=False)
            op.error(str(exc), errors=[str(exc), *exc.log_hints], rc=ExitCode.FAILURE)
            raise typer.Exit(code=ExitCode.FAILURE) from exc
        except INSTALL_ERRORS as exc:
            _command_error(op, str(exc))

        console.print(
            f"[green]Installed[/green] {report.artifacts.unit_name} "
            f"under {report.artifacts.install_root}."
        )
        console.print(f"  domain: {parameters.domain}")
        console.print(f"  tunnel server port: {parameters.bind_port}")
        console.print(f"  tunnel remote port: {report.remote_port}")
        console.print(f"  client config: {report.artifacts.frpc_config}")
        for notice in report.notices:
            console.print(f"[yellow]Notice:[/yellow] {notice}")

        op.success(
            "Deployment installed and running.",
            changed=report.changed,
            warnings=report.notices,
            context={
                "install_root": report.artifacts.install_root,
                "remote_port": report.remote_port,
                "written": [str(path) for path in report.written],
            },
        )


def _uninstall(ctx: typer.Context, command: str, purge_dependencies: bool) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args={"purge_dependencies": purge_dependencies},
        target={"kind": "deployment", "unit": UNIT_NAME},
    ) as op:
        try:
            report = runtime.reconciler.uninstall(
                default_root=runtime.config.install_root,
                purge_dependencies=purge_dependencies,
                op=op,
            )
        except LockTimeoutError as exc:
            _command_error(op, str(exc))

        for path in report.removed:
            console.print(f"Removed {path}")
        if report.warnings:
            for warning in report.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
            console.print("[yellow]Uninstall finished with warnings.[/yellow]")
            op.warning(
                "Uninstall finished with warnings.",
                warnings=report.warnings,
                changed=report.changed,
            )
            return

        console.print("[green]Uninstall complete.[/green]")
        op.success("Deployment removed.", changed=report.changed)


@app.command()
def uninstall(
    ctx: typer.Context,
    purge_dependencies: bool = PURGE_DEPENDENCIES_OPTION,
) -> None:
    """Stop the service and delete every artifact of the deployment."""
    _uninstall(ctx, "uninstall", purge_dependencies)


@app.command()
def remove(
    ctx: typer.Context,
    purge_dependencies: bool = PURGE_DEPENDENCIES_OPTION,
) -> None:
    """Alias for ``uninstall``."""
    _uninstall(ctx, "remove", purge_dependencies)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the recorded deployment and whether its unit is active."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        target={"kind": "deployment", "unit": UNIT_NAME},
    ) as op:
        try:
            deployment = runtime.registry.get_deployment()
        except StateRegistryError as exc:
            _command_error(op, str(exc))

        try:
            state = "active" if runtime.systemd.is_active(UNIT_NAME) else "inactive"
        except SystemdError as exc:
            state = "unknown"
            op.add_step("systemd.is_active", status="error", detail=str(exc))

        if deployment is None:
            console.print("No deployment recorded.")
            console.print(f"Unit {UNIT_NAME}: {state}")
            op.success("No deployment recorded.", context={"state": state})
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Field", style="bold")
        table.add_column("Value")
        for key in (
            "install_root",
            "unit",
            "domain",
            "remote_port",
            "routing",
            "status",
            "installed_at",
        ):
            table.add_row(key, str(deployment.get(key, "")))
        table.add_row("state", state)
        console.print(table)

        manifest = runtime.materializer.artifact_set(
            Path(str(deployment["install_root"]))
        ).compose_file
        if manifest.exists():
            try:
                listing = runtime.compose.ps(manifest)
            except ComposeError as exc:
                op.add_step("compose.ps", status="error", detail=str(exc))
            else:
                console.print((listing.stdout or "").rstrip(), markup=False, highlight=False)
                op.add_step("compose.ps", detail=f"exit {listing.returncode}")
        op.success("Reported deployment status.", context={"state": state})


@app.command()
def render(
    ctx: typer.Context,
    output: Path | None = typer.Option(
        None,
        "--output",
        file_okay=False,
        help="Write the artifact set into this directory instead of printing it.",
    ),
    seed: int | None = typer.Option(
        None, "--seed", help="Seed the port draw (and token) for reproducible output."
    ),
) -> None:
    """Render the artifact set without touching systemd or packages."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "render",
        args={"output": output, "seed": seed},
        target={"kind": "artifacts"},
    ) as op:
        rng = random.Random(seed) if seed is not None else random.Random()
        try:
            parameters = _build_parameters(
                runtime.config,
                install_root=output,
                rng=rng if seed is not None else None,
            )
            rendered = runtime.materializer.render(parameters, rng=rng)
        except (InvalidParametersError, MaterializeError) as exc:
            _command_error(op, str(exc))

        if output is None:
            for item in rendered.files:
                console.rule(str(item.path))
                console.print(item.content, markup=False, highlight=False, soft_wrap=True)
            op.success(
                "Rendered artifacts to stdout.",
                context={"remote_port": rendered.remote_port},
            )
            return

        try:
            written = runtime.materializer.write(rendered)
        except MaterializeError as exc:
            _command_error(op, str(exc))
        for path in written:
            console.print(f"Wrote {path}")
        console.print(f"Tunnel remote port: {rendered.remote_port}")
        op.success(
            f"Rendered artifacts into {output}.",
            changed=len(written),
            context={"remote_port": rendered.remote_port},
        )


@app.command("fetch-client")
def fetch_client(
    ctx: typer.Context,
    dest: Path = typer.Option(
        Path("."), "--dest", file_okay=False, help="Directory to save the archive into."
    ),
    machine: str | None = typer.Option(
        None, "--machine", help="Architecture to download for (defaults to this host)."
    ),
) -> None:
    """Download the frp release that contains the tunnel client."""
    runtime = _get_runtime(ctx)
    version = runtime.config.images.frp_version
    with runtime.logger.operation(
        "fetch-client",
        args={"dest": dest, "machine": machine},
        target={"kind": "frp-client", "version": version},
    ) as op:
        try:
            with runtime.locks.named_lock("fetch-client") as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                archive = fetch_frp_client(version, dest, machine=machine)
        except (UnsupportedPlatformError, ClientFetchError, LockTimeoutError, OSError) as exc:
            _command_error(op, str(exc))
        console.print(f"[green]Downloaded[/green] {archive}")
        op.success("Downloaded tunnel client.", changed=1, context={"archive": archive})


@ports_app.command("list")
def ports_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit port reservations as JSON instead of a table.",
    ),
) -> None:
    """List reserved tunnel ports."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        try:
            entries = runtime.ports.list_entries()
        except StateRegistryError as exc:
            _command_error(op, str(exc))

        if json_output:
            console.print_json(data={"ports": entries})
            op.success("Reported port reservations as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Owner", style="bold")
        table.add_column("Port")

        if not entries:
            table.add_row("(none)", "")
        else:
            for entry in entries:
                table.add_row(entry["name"], str(entry["port"]))

        console.print(table)
        op.success("Reported port reservations.", changed=0)


def _click_error(name: str) -> type[Exception]:
    """Return the click exception class *name* from the click build Typer uses."""
    return next(cls for cls in typer.BadParameter.__mro__ if cls.__name__ == name)


UsageError = _click_error("UsageError")
ClickException = _click_error("ClickException")


def main(argv: list[str] | None = None) -> None:
    """Console script entry point."""
    command = typer.main.get_command(app)
    try:
        rc = command.main(
            args=sys.argv[1:] if argv is None else argv,
            prog_name="mcroutectl",
            standalone_mode=False,
        )
    except UsageError as exc:
        usage_ctx = getattr(exc, "ctx", None)
        if usage_ctx is not None:
            typer.echo(usage_ctx.get_usage())
        typer.echo(f"Error: {exc.format_message()}")  # type: ignore[attr-defined]
        sys.exit(ExitCode.FAILURE)
    except ClickException as exc:
        exc.show()  # type: ignore[attr-defined]
        sys.exit(ExitCode.FAILURE)
    except typer.Abort:
        sys.exit(ExitCode.FAILURE)
    sys.exit(rc if isinstance(rc, int) else ExitCode.OK)
