"""Gatewarden CLI - Command line interface."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from gatewarden.client.orchestrator import ConnectionOrchestrator
from gatewarden.client.progress import ProgressRecord
from gatewarden.client.state import ConnectionState
from gatewarden.core.config import get_config
from gatewarden.core.exceptions import (
    GatewardenError,
    ProfileValidationError,
    StageTimeoutError,
    format_error_for_user,
)
from gatewarden.core.profile import ConnectionProfile
from gatewarden.core.validation import validate_vpn_config
from gatewarden.spa.authorizer import SpaAuthorizer
from gatewarden.vpn.rewrite import harden_and_rewrite

console = Console()

_shutdown_requested = False

BANNER = "gatewarden - knock, relay, tunnel"

LOG_LEVELS = ["debug", "info", "warning", "error"]


def _configure_logging(log_level: str, verbose: bool) -> None:
    effective_log_level = "debug" if verbose else log_level
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, effective_log_level.upper())
        ),
    )


def _error_panel(error: BaseException, title: str = "Connection Error") -> Panel:
    if isinstance(error, GatewardenError):
        return Panel(
            f"[red]{format_error_for_user(error)}[/red]",
            title=f"Error: {error.code}",
            border_style="red",
        )
    return Panel(f"[red]{format_error_for_user(error)}[/red]", title=title, border_style="red")


def _print_progress(record: ProgressRecord) -> None:
    style = "dim" if record.ok else "red"
    console.print(record.format(), style=style, markup=False, highlight=False)


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context) -> None:
    """Gatewarden - bring up a VPN tunnel behind an SPA-protected gateway.

    Sends the authorization packet, starts the local TLS relay and launches
    the tunnel client, in that order.
    """
    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        console.print("\nUsage:", style="bold")
        console.print("  gatewarden connect profile.yaml   Connect using a profile", style="dim")
        console.print("  gatewarden harden client.ovpn --host H --port P", style="dim")
        console.print("  gatewarden probe HOST PORT        Check a TCP port", style="dim")
        console.print("  gatewarden config                 Show effective settings", style="dim")
        console.print("  gatewarden version                Show version information", style="dim")


@main.command()
@click.argument("profile_path", metavar="PROFILE", type=click.Path(exists=True, dir_okay=False))
@click.option("--skip-spa", is_flag=True, help="Do not send an SPA packet (gateway port already open)")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="info",
    help="Log level",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def connect(profile_path: str, skip_spa: bool, log_level: str, verbose: bool) -> None:
    """Connect using the profile in PROFILE (YAML or TOML).

    Press Ctrl+C to disconnect. A second Ctrl+C exits immediately.
    """
    _configure_logging(log_level, verbose)

    try:
        profile = ConnectionProfile.from_file(profile_path)
    except (OSError, ValueError) as e:
        console.print(
            Panel(f"[red]{e}[/red]", title="Invalid profile", border_style="red")
        )
        sys.exit(1)

    if skip_spa:
        profile = profile.model_copy(update={"skip_authorization": True})

    sys.exit(_run_connect_with_signal_handling(profile))


def _run_connect_with_signal_handling(profile: ConnectionProfile) -> int:
    """Run the connection with Ctrl+C mapped to a clean disconnect."""
    global _shutdown_requested
    _shutdown_requested = False

    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    orchestrator = ConnectionOrchestrator(progress=_print_progress)
    stop = asyncio.Event()
    main_task = loop.create_task(run_connection(orchestrator, profile, stop))

    def request_stop() -> None:
        stop.set()
        if orchestrator.is_active:
            loop.create_task(orchestrator.logout())

    def signal_handler(sig: int, frame: object) -> None:
        """Handle Ctrl+C signal."""
        global _shutdown_requested
        if _shutdown_requested:
            console.print("\n[red]Force shutdown![/red]")
            main_task.cancel()
            return
        _shutdown_requested = True
        console.print("\n[yellow]Disconnecting...[/yellow]")
        loop.call_soon_threadsafe(request_stop)

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    exit_code = 1
    try:
        exit_code = loop.run_until_complete(main_task)
    except asyncio.CancelledError:
        pass
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
    return exit_code


async def _end_session(orchestrator: ConnectionOrchestrator) -> None:
    state = orchestrator.machine.state
    if state is ConnectionState.CONNECTED:
        await orchestrator.disconnect()
        state = orchestrator.machine.state
    if state in (ConnectionState.AUTHENTICATED, ConnectionState.ERROR):
        await orchestrator.logout()


async def run_connection(
    orchestrator: ConnectionOrchestrator,
    profile: ConnectionProfile,
    stop: asyncio.Event,
) -> int:
    """Log in, connect, then hold the tunnel until ``stop`` is set.

    Returns:
        Process exit code.
    """
    console.print(f"Connecting to {profile.host}:{profile.port}...", style="yellow")

    try:
        try:
            state = await orchestrator.login()
            if state is ConnectionState.AUTHENTICATED:
                state = await orchestrator.connect(profile)
        except GatewardenError as e:
            console.print(_error_panel(e))
            return 1

        if state is not ConnectionState.CONNECTED:
            error = orchestrator.machine.last_error
            if error is not None:
                console.print(_error_panel(error))
            else:
                console.print("[yellow]Connection cancelled.[/yellow]")
            return 1

        status = orchestrator.status()
        panel_content = (
            f"[green]Tunnel established![/green]\n\n"
            f"[bold]Gateway:[/bold] {profile.host}:{profile.port}\n"
            f"[bold]Relay:[/bold] "
            + (f"{profile.relay_accept} (pid {status.relay_pid})" if profile.relay_enabled else "disabled")
            + f"\n[bold]VPN pid:[/bold] {status.vpn_pid}"
        )
        console.print(Panel(panel_content, title="Gatewarden", border_style="green"))
        console.print("\nPress Ctrl+C to disconnect.\n", style="dim")

        await stop.wait()
        return 0
    finally:
        await _end_session(orchestrator)
        console.print("[green]Disconnected.[/green]")


@main.command()
@click.argument("config_path", metavar="CONFIG", type=click.Path(exists=True, dir_okay=False))
@click.option("--host", required=True, help="Host the tunnel client should dial")
@click.option("--port", required=True, type=click.IntRange(1, 65535), help="Port the tunnel client should dial")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write to a file instead of stdout")
def harden(config_path: str, host: str, port: int, output: str | None) -> None:
    """Print CONFIG with the remote rewritten and hardening directives added."""
    with open(config_path, encoding="utf-8", newline="") as f:
        raw = f.read()

    try:
        validate_vpn_config(raw)
    except ProfileValidationError as e:
        console.print(_error_panel(e, title="Invalid config"))
        sys.exit(1)

    result = harden_and_rewrite(raw, host, port)
    if output:
        with open(output, "w", encoding="utf-8", newline="") as f:
            f.write(result)
        console.print(f"[green]Hardened config written to[/green] {output}")
    else:
        click.echo(result, nl=False)


@main.command()
@click.argument("host")
@click.argument("port", type=click.IntRange(1, 65535))
def probe(host: str, port: int) -> None:
    """Check whether HOST accepts TCP connections on PORT."""
    authorizer = SpaAuthorizer()
    try:
        asyncio.run(authorizer.probe_port(host, port))
    except StageTimeoutError as e:
        console.print(f"[red]Closed:[/red] {e.message}")
        sys.exit(1)
    console.print(f"[green]Open:[/green] {host}:{port}")


@main.command()
def version() -> None:
    """Show version information."""
    from gatewarden import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.group(invoke_without_command=True)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only one section (timeouts, binaries)")
@click.pass_context
def config(ctx: click.Context, json_output: bool, section: str | None) -> None:
    """Show the effective configuration.

    All settings can be configured via environment variables with the
    GATEWARDEN_ prefix, or a .env file in the working directory.

    Examples:

        gatewarden config                 # Show all settings

        gatewarden config --json          # Machine-readable output

        gatewarden config check           # Look for the external binaries
    """
    if ctx.invoked_subcommand is not None:
        return

    cfg = get_config()
    display = cfg.to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        import json

        click.echo(json.dumps(display, indent=2, default=str))
        return

    console.print("[bold]Current Configuration[/bold]\n")
    for section_name, settings in display.items():
        table = Table(title=section_name.replace("_", " ").title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            env_var = f"GATEWARDEN_{key.upper()}"
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, env_var)

        console.print(table)
        console.print()


@config.command("check")
def config_check() -> None:
    """Look for fwknop, stunnel and openvpn where the settings say they are."""
    from gatewarden.core.process import find_binary

    binaries = get_config().binaries
    explicit = {
        "fwknop": binaries.fwknop_path,
        "stunnel": binaries.stunnel_path,
        "openvpn": binaries.openvpn_path,
    }

    table = Table(title="External Binaries")
    table.add_column("Binary", style="cyan")
    table.add_column("Location")

    missing = False
    for name, path in explicit.items():
        found, _ = find_binary(name, path, binaries.search_dirs)
        if found is None:
            missing = True
            table.add_row(name, "[red]not found[/red]")
        else:
            table.add_row(name, f"[green]{found}[/green]")

    console.print(table)
    if missing:
        sys.exit(1)


if __name__ == "__main__":
    main()
