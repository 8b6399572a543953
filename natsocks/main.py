"""
nat-socks — CLI entrypoint.

Usage:
    nat-socks deploy --port 1080
    nat-socks deploy --auth whitelist --whitelist 203.0.113.7,198.51.100.0/24
    nat-socks status
    nat-socks teardown --yes
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from click.core import ParameterSource
from pydantic import ValidationError

from natsocks import __version__
from natsocks.core.errors import ConfigurationError, DeploymentError
from natsocks.core.observability.logging_config import setup_logging

_AUTH_MODES = ("open", "credentialed", "whitelist")


@click.group()
@click.version_option(version=__version__, prog_name="nat-socks")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to settings.yml (default: NAT_SOCKS_CONFIG or /etc/nat-socks/settings.yml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """nat-socks — deploy a SOCKS5/HTTP proxy on a NAT or VPS host."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("NAT_SOCKS_LOG_LEVEL", "WARNING")

    setup_logging(
        level=level,
        log_file=os.environ.get("NAT_SOCKS_LOG_FILE"),
        log_file_level=os.environ.get("NAT_SOCKS_LOG_FILE_LEVEL"),
    )


# ── Shared helpers ─────────────────────────────────────────────


def _fail(error: DeploymentError) -> None:
    click.secho(f"❌ {error}", fg="red", err=True)
    if error.diagnostics:
        click.echo("", err=True)
        click.echo(error.diagnostics, err=True)
    sys.exit(1)


def _settings(ctx: click.Context):
    if "settings" in ctx.obj:
        return ctx.obj["settings"]
    from natsocks.core.config.loader import load_settings

    try:
        ctx.obj["settings"] = load_settings(ctx.obj.get("config_path"))
    except ConfigurationError as e:
        _fail(e)
    return ctx.obj["settings"]


def _host(ctx: click.Context):
    if "host" not in ctx.obj:
        from natsocks.adapters.local import LocalHost

        ctx.obj["host"] = LocalHost()
    return ctx.obj["host"]


def _is_default(ctx: click.Context, name: str) -> bool:
    return ctx.get_parameter_source(name) in (ParameterSource.DEFAULT, None)


def _interactive() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


def _build_request(
    *,
    port: int,
    backend: str,
    machine_type: str,
    auth: str,
    user: str,
    password: str | None,
    whitelist: str | None,
    allow_lockout: bool,
    http: str,
    http_port: int | None,
):
    from natsocks.core.models import DeploymentRequest
    from natsocks.core.services.config_renderer import parse_whitelist

    if auth == "credentialed":
        if not password:
            raise ConfigurationError("Credentialed mode needs a password (--password or PROXY_PASS)")
        policy = {"mode": "credentialed", "credentials": {"username": user, "password": password}}
    elif auth == "whitelist":
        policy = {
            "mode": "whitelist",
            "rules": parse_whitelist(whitelist or ""),
            "allow_lockout": allow_lockout,
        }
    else:
        policy = {"mode": "open"}

    try:
        return DeploymentRequest.model_validate({
            "port": port,
            "backend": backend,
            "machine_type": machine_type,
            "policy": policy,
            "http_listener": "explicit" if http_port is not None else http,
            "http_port": http_port,
        })
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid deployment input: {details}") from e


def _request_options(fn):
    """Options shared by ``deploy`` and ``render``."""
    options = [
        click.option("--port", "-p", type=int, default=1080, envvar="PROXY_PORT",
                     show_default=True, help="SOCKS5 listen port on this host."),
        click.option("--backend", type=click.Choice(["gost", "dante"]), default="gost",
                     show_default=True, help="Proxy implementation."),
        click.option("--machine-type", type=click.Choice(["nat", "vps"], case_sensitive=False),
                     default="nat", envvar="MACHINE_TYPE", show_default=True,
                     help="NAT hosts need a provider-side port mapping for IPv4."),
        click.option("--auth", type=click.Choice(_AUTH_MODES, case_sensitive=False),
                     default="open", envvar="AUTH_MODE", show_default=True,
                     help="Client admission policy."),
        click.option("--user", default="proxy", envvar="PROXY_USER", show_default=True,
                     help="Username for credentialed mode."),
        click.option("--password", default=None, envvar="PROXY_PASS",
                     help="Password for credentialed mode."),
        click.option("--whitelist", default=None, envvar="PROXY_WHITELIST",
                     help="Comma-separated IPs/CIDRs for whitelist mode."),
        click.option("--allow-lockout", is_flag=True,
                     help="Do not add the current SSH client to the whitelist."),
        click.option("--http", type=click.Choice(["none", "derived"]), default="none",
                     show_default=True, help="Add an HTTP listener on port+1."),
        click.option("--http-port", type=int, default=None,
                     help="Add an HTTP listener on this explicit port."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _prompt_missing(ctx: click.Context, values: dict) -> dict:
    """Ask for anything the operator did not pass, when attached to a TTY."""
    if _is_default(ctx, "port"):
        values["port"] = click.prompt(
            "SOCKS5 listen port (this host's port, not the NAT external port)",
            type=click.IntRange(1, 65535), default=values["port"],
        )
    if _is_default(ctx, "machine_type"):
        values["machine_type"] = click.prompt(
            "Machine type", type=click.Choice(["nat", "vps"]), default=values["machine_type"],
        )
    if _is_default(ctx, "auth"):
        values["auth"] = click.prompt(
            "Access mode", type=click.Choice(_AUTH_MODES), default=values["auth"],
        )
    if values["auth"] == "credentialed":
        if _is_default(ctx, "user"):
            values["user"] = click.prompt("Proxy username", default=values["user"])
        if not values["password"]:
            values["password"] = click.prompt(
                "Proxy password", hide_input=True, confirmation_prompt=True,
            )
    if values["auth"] == "whitelist" and not values["whitelist"]:
        values["whitelist"] = click.prompt("Allowed IPs/CIDRs (comma-separated)")
    return values


# ── Commands ───────────────────────────────────────────────────


@cli.command()
@_request_options
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Never prompt, use defaults.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def deploy(ctx: click.Context, assume_yes: bool, as_json: bool, **values) -> None:
    """Install, configure, start and verify the proxy (idempotent)."""
    from natsocks.core.use_cases.deploy import run_deployment

    values["auth"] = values["auth"].lower()
    values["machine_type"] = values["machine_type"].lower()
    if not assume_yes and not as_json and _interactive():
        values = _prompt_missing(ctx, values)

    settings = _settings(ctx)
    try:
        request = _build_request(**values)
        report = run_deployment(request, settings, _host(ctx), ctx.obj.get("http"))
    except DeploymentError as e:
        _fail(e)
        return

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    from natsocks.core.services.reporter import format_report

    instance = report.instance
    assert instance is not None  # set on every successful run
    click.secho("\n✅ Deployment complete", fg="green", bold=True)
    click.echo(f"   Service:  {settings.service_name} ({instance.supervision_mode.value}: {instance.ref})")
    if report.artifact:
        click.echo(f"   Version:  {report.artifact.version_output}")
    if report.profile:
        ipv6 = "ok" if report.profile.ipv6_egress else "unavailable"
        click.echo(f"   IPv6 egress: {ipv6}")
    click.echo()
    if report.connection:
        click.echo(format_report(report.connection))

    if report.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warning in report.warnings:
            click.echo(f"   • {warning}")
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def probe(ctx: click.Context, as_json: bool) -> None:
    """Detect routes and egress per IP family (read-only)."""
    from natsocks.core.services.probe import EnvironmentProbe, default_interface

    host = _host(ctx)
    profile = EnvironmentProbe(host, _settings(ctx)).probe()
    data = profile.to_dict()
    data["interface"] = default_interface(host)

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    for family in ("ipv4", "ipv6"):
        route = "✓" if data[f"{family}_route"] else "✗"
        egress = "✓" if data[f"{family}_egress"] else "✗"
        click.echo(f"   {family}: route {route}  egress {egress}")
    click.echo(f"   Preferred family: {profile.preferred_family}")
    click.echo(f"   Default interface: {data['interface']}")


@cli.command()
@_request_options
@click.option("--prefer", type=click.Choice(["ipv4", "ipv6"]), default="ipv4",
              show_default=True, help="Resolver preference to render.")
@click.option("--ipv4-only", is_flag=True, help="Render for a host without an IPv6 stack.")
@click.option("--unit", "with_unit", is_flag=True, help="Also print the systemd unit.")
@click.pass_context
def render(ctx: click.Context, prefer: str, ipv4_only: bool, with_unit: bool, **values) -> None:
    """Print the configuration a deployment would write (no host access)."""
    from natsocks.core.models import IPFamily, NetworkProfile
    from natsocks.core.services import config_renderer
    from natsocks.core.services.probe import management_origin

    values["auth"] = values["auth"].lower()
    values["machine_type"] = values["machine_type"].lower()
    settings = _settings(ctx)
    family = IPFamily(prefer)
    profile = NetworkProfile(
        ipv4_route=True,
        ipv4_egress=True,
        ipv6_route=family is IPFamily.IPV6,
        ipv6_egress=family is IPFamily.IPV6,
        ipv6_stack=not ipv4_only,
        preferred_family=family,
    )
    try:
        request = _build_request(**values)
        request = request.model_copy(update={"management_origin": management_origin()})
        config = config_renderer.render(
            request, profile,
            service_name=settings.service_name,
            nameservers=settings.nameservers,
        )
    except DeploymentError as e:
        _fail(e)
        return

    click.echo(config_renderer.render_backend_config(config), nl=False)
    if with_unit:
        binary = settings.binary_path if config.backend == "gost" else settings.dante_binary_path
        command = config_renderer.exec_command(config, binary, settings.config_path(config.backend))
        click.echo(f"\n# {settings.unit_path}")
        click.echo(config_renderer.to_systemd_unit(config, command), nl=False)
    for warning in config.warnings:
        click.secho(f"⚠️  {warning}", fg="yellow", err=True)


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show what is currently deployed."""
    from natsocks.core.use_cases.deploy import get_status

    result = get_status(_settings(ctx), _host(ctx))

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    if not result["backend"] and not result["unit_installed"]:
        click.secho("Nothing deployed.", fg="yellow")
        return

    click.secho(f"\n📋 {result['service_name']} ({result['backend'] or 'unknown backend'})",
                fg="cyan", bold=True)
    if result["unit_installed"]:
        state = result["unit_state"] or "unknown"
        color = "green" if state == "active" else "red"
        click.echo("   systemd: ", nl=False)
        click.secho(state, fg=color)
    if result["fallback_pid"]:
        click.echo(f"   detached pid: {result['fallback_pid']}")
    ports = ", ".join(str(p) for p in result["listening_ports"]) or "none"
    click.echo(f"   listening TCP ports: {ports}")

    last = result.get("last_operation")
    if last:
        status_color = {"ok": "green", "degraded": "yellow", "failed": "red"}.get(
            last["status"], "white"
        )
        click.echo(f"   last {last['operation_type']} — ", nl=False)
        click.secho(last["status"], fg=status_color, nl=False)
        click.echo(f" at {last['timestamp']}")
    last_deploy = result.get("last_deploy")
    if last_deploy and last_deploy != last:
        click.echo(f"   last deploy at {last_deploy['timestamp']} (ports {last_deploy['ports']})")
    click.echo()


@cli.command()
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def teardown(ctx: click.Context, assume_yes: bool) -> None:
    """Stop the proxy and remove its unit, config, pid file and @reboot line."""
    from natsocks.core.use_cases.deploy import run_teardown

    settings = _settings(ctx)
    if not assume_yes:
        click.confirm(f"Remove {settings.service_name} from this host?", abort=True)

    try:
        result = run_teardown(settings, _host(ctx))
    except DeploymentError as e:
        _fail(e)
        return

    click.secho(f"✅ {settings.service_name} removed", fg="green")
    if not ctx.obj.get("quiet"):
        for path in result.removed_files:
            click.echo(f"   − {path}")
        if result.killed_pids:
            click.echo(f"   killed: {', '.join(str(p) for p in result.killed_pids)}")


@cli.command()
@click.option("--limit", "-n", default=20, show_default=True, help="Number of entries.")
@click.option("--type", "operation_type", type=click.Choice(["deploy", "teardown"]),
              default=None, help="Only this kind of run.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, limit: int, operation_type: str | None, as_json: bool) -> None:
    """Show recent deploy/teardown runs from the audit ledger."""
    from natsocks.core.persistence.audit import AuditWriter

    entries = AuditWriter(_settings(ctx).audit_path).read_recent(limit, operation_type)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("No runs recorded.")
        return

    for entry in entries:
        color = {"ok": "green", "degraded": "yellow", "failed": "red"}.get(entry.status, "white")
        ports = ",".join(str(p) for p in entry.ports) or "-"
        click.echo(f"{entry.timestamp[:19]}  {entry.operation_type:<8} ", nl=False)
        click.secho(f"{entry.status:<8}", fg=color, nl=False)
        click.echo(f" {entry.backend or '-':<5} ports={ports} mode={entry.supervision_mode or '-'}")
        for err in entry.errors:
            click.echo(f"    ✗ {err}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
