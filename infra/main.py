"""
infra: CLI entrypoint.

Usage:
    infra --help
    infra service --skip mox
    infra status
    infra shutdown
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from infra import __version__
from infra.core.observability.logging_config import (
    ENV_FILE,
    ENV_FILE_LEVEL,
    resolve_level,
    setup_logging,
)


@click.group()
@click.version_option(version=__version__, prog_name="infra")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to infra.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """infra: start, inspect and stop the local service fleet."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(verbose=verbose, quiet=quiet, debug=debug),
        log_file=os.environ.get(ENV_FILE),
        log_file_level=os.environ.get(ENV_FILE_LEVEL),
        quiet_third_party=not debug,
    )


def _load_config(ctx: click.Context):  # type: ignore[no-untyped-def]
    """Load the runtime config or exit with a readable error."""
    from infra.core.config.loader import load_config
    from infra.core.errors import ConfigError

    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)


def _split(values: tuple[str, ...]) -> list[str]:
    """Flatten repeated and comma-separated service lists."""
    from infra.core.services.registry import resolve_service_id

    ids: list[str] = []
    for value in values:
        for part in value.split(","):
            part = part.strip()
            if not part:
                continue
            service_id = resolve_service_id(part)
            if service_id is None:
                raise click.BadParameter(f"Unknown service: {part}")
            ids.append(service_id)
    return ids


# ── Service ──────────────────────────────────────────────────────────


@cli.command()
@click.option("--mode", default=None, help="development or production (default: config environment).")
@click.option("--only", "only", multiple=True, help="Start only these services.")
@click.option("--skip", "skip", multiple=True, help="Do not start these services.")
@click.option("--no-nats", is_flag=True, help="Disable NATS.")
@click.option("--no-pocketbase", is_flag=True, help="Disable PocketBase.")
@click.option("--no-mox", is_flag=True, help="Disable the mail server.")
@click.option("--no-dev-docs", is_flag=True, help="Disable the Hugo docs server.")
@click.pass_context
def service(
    ctx: click.Context,
    mode: str | None,
    only: tuple[str, ...],
    skip: tuple[str, ...],
    no_nats: bool,
    no_pocketbase: bool,
    no_mox: bool,
    no_dev_docs: bool,
) -> None:
    """Start every enabled service and block until interrupted."""
    from infra.adapters.process.ports import SystemPortInspector
    from infra.adapters.process.supervisor import SubprocessSupervisor
    from infra.core.engine.sequencer import Orchestrator, run_service
    from infra.core.errors import InfraError, StartupBlockedError
    from infra.core.models.service import Options

    config = _load_config(ctx)
    options = Options(
        mode=mode or config.environment,
        only_services=_split(only),
        skip_services=_split(skip),
        no_nats=no_nats,
        no_pocketbase=no_pocketbase,
        no_mox=no_mox,
        no_dev_docs=no_dev_docs,
    )

    orchestrator = Orchestrator(
        config,
        options,
        supervisor=SubprocessSupervisor(),
        inspector=SystemPortInspector(marker=config.marker),
    )

    if not ctx.obj.get("quiet"):
        click.secho(f"🚀 Starting infra ({options.mode})...", fg="cyan", bold=True)

    try:
        run_service(orchestrator)
    except StartupBlockedError as e:
        click.secho(f"❌ Startup blocked: {e.detail or e}", fg="red")
        sys.exit(1)
    except InfraError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)

    if not ctx.obj.get("quiet"):
        click.secho("✅ All services stopped", fg="green")


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def shutdown(ctx: click.Context, as_json: bool) -> None:
    """Stop a fleet started from another terminal."""
    from infra.adapters.process.ports import SystemPortInspector
    from infra.core.engine.shutdown import shutdown_fleet
    from infra.core.models.service import Options

    config = _load_config(ctx)
    report = shutdown_fleet(
        config,
        Options(mode=config.environment),
        SystemPortInspector(marker=config.marker),
    )

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    for pid in report.orchestrators_killed:
        click.echo(f"   🛑 Stopped orchestrator (PID {pid})")
    for port in report.ports_swept:
        click.echo(f"   🧹 Freed port {port}")
    for error in report.errors:
        click.secho(f"   ⚠️  {error}", fg="yellow")

    if report.clean:
        click.secho("✅ All infra services stopped", fg="green")
    else:
        click.secho(f"⚠️  Shutdown finished with {len(report.errors)} error(s)", fg="yellow")


# ── Status ───────────────────────────────────────────────────────────


_STATE_COLORS = {
    "running": "green",
    "reclaimed": "cyan",
    "pending": "white",
    "blocked": "red",
    "error": "red",
    "stopped": "yellow",
}


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show the last persisted state of every service."""
    from infra.core.observability.health import check_fleet_health
    from infra.core.persistence.state_file import default_state_path, load_snapshot

    config = _load_config(ctx)
    snapshot = load_snapshot(default_state_path(config))
    health = check_fleet_health(snapshot)

    if as_json:
        click.echo(json.dumps({
            "snapshot": snapshot.model_dump(mode="json") if snapshot else None,
            "health": health.to_dict(),
        }, indent=2))
        return

    if snapshot is None:
        click.secho("No runtime state recorded yet. Run `infra service` first.", fg="yellow")
        return

    click.secho(f"\n📋 infra ({snapshot.environment or config.environment})", fg="cyan", bold=True)
    if snapshot.orchestrator_pid:
        click.echo(f"   Orchestrator PID: {snapshot.orchestrator_pid}")
    click.echo(f"   Updated: {snapshot.updated_at}")
    click.echo()

    for entry in snapshot.ordered():
        port = f":{entry.port}" if entry.port else ""
        pid = f" (PID {entry.pid})" if entry.pid else ""
        click.echo(f"   {entry.icon or '•'} {entry.name or entry.id}{port}  ", nl=False)
        if not entry.enabled:
            click.secho("disabled", dim=True)
            continue
        click.secho(f"{entry.state}{pid}", fg=_STATE_COLORS.get(entry.state, "white"))
        if entry.message and entry.state in ("blocked", "error"):
            click.echo(f"       {entry.message}")

    click.echo()
    color = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}.get(health.status, "white")
    click.secho(f"   Health: {health.status}", fg=color, bold=True)
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def services(ctx: click.Context, as_json: bool) -> None:
    """List the service catalog."""
    from infra.core.services.registry import catalog

    config = _load_config(ctx)
    specs = catalog(config)

    if as_json:
        click.echo(json.dumps([
            {
                "id": s.id,
                "name": s.display_name,
                "description": s.description,
                "required": s.required,
                "port": s.port,
                "additional_ports": list(s.additional_ports),
                "routes": [r.model_dump() for r in s.routes],
            }
            for s in specs
        ], indent=2))
        return

    for spec in specs:
        port = f":{spec.port}" if spec.has_port else ""
        required = " (required)" if spec.required else ""
        click.echo(f"   {spec.icon or '•'} {spec.id:<12}{port:<8}{spec.display_name}{required}")


@cli.command()
@click.option("--production", is_flag=True, help="Render the production site block.")
@click.pass_context
def routes(ctx: click.Context, production: bool) -> None:
    """Print the Caddyfile for the current service set."""
    from infra.core.models.service import Options
    from infra.core.services.registry import build_service_specs
    from infra.core.services.routes import build_proxy_template, render_caddyfile

    config = _load_config(ctx)
    options = Options(mode="production" if production else config.environment)
    specs = [s for s in build_service_specs(options, config) if s.is_enabled(options)]
    template = build_proxy_template(specs, config)
    click.echo(render_caddyfile(template, development=options.is_development), nl=False)


# ── Ports ────────────────────────────────────────────────────────────


@cli.group()
def ports() -> None:
    """Inspect service ports."""


@ports.command("inspect")
@click.argument("port", type=int)
@click.option("--service", "service_name", default=None, help="Classify against this service.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def ports_inspect(ctx: click.Context, port: int, service_name: str | None, as_json: bool) -> None:
    """Show who is listening on PORT and how it would be classified."""
    from infra.adapters.process.ports import SystemPortInspector
    from infra.core.errors import PortInspectionError
    from infra.core.models.ports import Ownership
    from infra.core.services.ports import classify_probe, format_conflict_message
    from infra.core.services.registry import catalog, resolve_service_id

    config = _load_config(ctx)

    identities: tuple[str, ...] = ()
    label = f"Port {port}"
    if service_name:
        service_id = resolve_service_id(service_name, config)
        if service_id is None:
            click.secho(f"❌ Unknown service: {service_name}", fg="red")
            sys.exit(1)
        spec = next(s for s in catalog(config) if s.id == service_id)
        identities = spec.identities
        label = spec.display_name

    try:
        raw = SystemPortInspector(marker=config.marker).inspect(port)
    except PortInspectionError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)

    probe = classify_probe(raw, None, identities, config.marker)

    if as_json:
        click.echo(json.dumps(probe.model_dump(mode="json"), indent=2))
        return

    if probe.ownership == Ownership.FREE:
        click.secho(f"✅ Port {port} is free", fg="green")
        return
    click.secho(f"⚠️  {format_conflict_message(label, probe)}", fg="yellow")


# ── Identity ─────────────────────────────────────────────────────────


@cli.group()
def identity() -> None:
    """Manage the NATS operator/account/user identity."""


@identity.command("ensure")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def identity_ensure(ctx: click.Context, as_json: bool) -> None:
    """Create the identity material if missing, then validate it."""
    from infra.core.errors import IdentityError
    from infra.core.services.identity import IdentityBootstrap

    config = _load_config(ctx)
    try:
        artifacts = IdentityBootstrap(config).ensure()
    except IdentityError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)

    summary = artifacts.summary()
    if as_json:
        click.echo(json.dumps(summary, indent=2))
        return

    click.secho("🔐 NATS identity ready", fg="green", bold=True)
    for key, value in summary.items():
        click.echo(f"   {key}: {value}")


if __name__ == "__main__":
    cli()
