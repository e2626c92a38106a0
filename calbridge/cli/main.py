"""Command-line interface for calbridge."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from calbridge import __version__
from calbridge.core.config import AppConfig, load_config
from calbridge.core.errors import CalBridgeError, CalendarNotFound, ConfigurationError
from calbridge.core.models import Calendar, CalendarAccount, ResolutionMode, SyncResult, SyncStatus
from calbridge.core.sync import SyncCoordinator
from calbridge.sources.caldav_client import RemoteCalendarClient, discover_server_url
from calbridge.utils.datetime_utils import to_iso
from calbridge.utils.logging import setup_logging

# Create Typer app
app = typer.Typer(
    name="calbridge",
    help="Two-way sync between a local appointment store and CalDAV calendars",
    add_completion=False,
)

# Create console for rich output
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file",
        exists=True,
        dir_okay=False,
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
) -> None:
    """calbridge - two-way CalDAV calendar sync."""
    ctx.ensure_object(dict)
    cfg = load_config(config_file)
    ctx.obj["config"] = cfg
    setup_logging(cfg, level_name=log_level)


async def _open_coordinator(cfg: AppConfig) -> SyncCoordinator:
    coordinator = SyncCoordinator.from_config(cfg)
    await coordinator.initialize()
    await coordinator.register_configured_calendars(cfg)
    return coordinator


async def _resolve_calendar(coordinator: SyncCoordinator, name: str) -> Calendar:
    calendar = await coordinator.calendars_db.find_calendar(name)
    if calendar is None:
        raise CalendarNotFound(f"Calendar not registered: {name}")
    return calendar


def _run(coro):
    """Run a coroutine, printing sync errors and exiting non-zero on failure."""
    try:
        return asyncio.run(coro)
    except CalBridgeError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        raise typer.Exit(1)


def _print_result(result: SyncResult) -> None:
    if result.status == SyncStatus.ALREADY_IN_PROGRESS:
        console.print(f"[yellow]Sync already in progress for {result.calendar_id}[/yellow]")
        return

    table = Table(title=f"Sync Result: {result.calendar_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Status", result.status.value)
    table.add_row("Synced", str(result.synced))
    table.add_row("Conflicts", str(len(result.conflicts)))
    table.add_row("Errors", str(len(result.errors)))
    table.add_row("Full resync", "✓" if result.full_resync else "✗")
    table.add_row("Duration", f"{result.duration_seconds:.2f}s")
    console.print(table)

    for error in result.errors:
        console.print(f"[red]  • {error}[/red]")
    if result.conflicts:
        console.print(
            "\n[yellow]Unresolved conflicts remain. "
            "List them with: calbridge sync conflicts <calendar>[/yellow]"
        )


@app.command()
def version() -> None:
    """Show version information."""
    import platform

    table = Table(title="calbridge Version Information")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", platform.python_version())
    table.add_row("Platform", platform.platform())

    console.print(table)


@app.command()
def config(
    ctx: typer.Context,
    show: bool = typer.Option(False, "--show", "-s", help="Show current configuration"),
    init: bool = typer.Option(False, "--init", "-i", help="Create a default configuration file"),
) -> None:
    """Manage configuration."""
    cfg = ctx.obj["config"]

    if init:
        config_path = cfg.general.config_file or cfg.default_config_path

        if config_path.exists():
            console.print(f"[yellow]Config file already exists:[/yellow] {config_path}")
            if not typer.confirm("Overwrite existing config?"):
                console.print("[dim]Config creation cancelled[/dim]")
                raise typer.Exit(0)

        cfg.save_to_file(config_path)
        console.print(f"[green]✓ Config file created:[/green] {config_path}")
        console.print("[yellow]Edit this file to configure your CalDAV account and calendars.[/yellow]")
        return

    if show:
        table = Table(title="calbridge Configuration")
        table.add_column("Setting", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        table.add_row("Data Directory", str(cfg.general.data_dir))
        table.add_row("Config File", str(cfg.general.config_file or "Not set"))
        table.add_row("Log Level", cfg.general.log_level)

        table.add_row("", "")
        table.add_row("[bold]CalDAV[/bold]", "")
        table.add_row("URL", cfg.caldav.url or "Not set")
        table.add_row("Username", cfg.caldav.username or "Not set")
        table.add_row("Request Timeout", f"{cfg.caldav.request_timeout}s")

        table.add_row("", "")
        table.add_row("[bold]Sync[/bold]", "")
        table.add_row("Interval", f"{cfg.sync.interval_minutes} min")
        table.add_row("Conflict Tolerance", f"{cfg.sync.conflict_tolerance_seconds}s")
        table.add_row("Max Backoff", f"{cfg.sync.max_backoff_minutes} min")

        table.add_row("", "")
        table.add_row("[bold]Calendars[/bold]", str(len(cfg.calendars)))
        for name, cal in cfg.calendars.items():
            flags = [] if cal.enabled else ["disabled"]
            if cal.read_only:
                flags.append("read-only")
            table.add_row(name, cal.url + (f" ({', '.join(flags)})" if flags else ""))

        console.print(table)
    else:
        console.print(f"[yellow]Configuration file:[/yellow] {cfg.general.config_file or 'Not set'}")
        console.print(f"[yellow]Data directory:[/yellow] {cfg.general.data_dir}")
        console.print("\n[dim]Use --show to display full configuration[/dim]")
        console.print("[dim]Use --init to create a default config file[/dim]")


@app.command("set-password")
def set_password(
    ctx: typer.Context,
    username: Optional[str] = typer.Option(
        None,
        "--username",
        "-u",
        help="CalDAV username (default: from config)",
    ),
    delete: bool = typer.Option(False, "--delete", help="Remove the stored password instead"),
) -> None:
    """Store (or remove) the CalDAV password in the system keyring."""
    from calbridge.utils.credentials import CredentialStore, account_key

    cfg = ctx.obj["config"]

    if not username:
        username = cfg.caldav.username
        if not username:
            console.print("[red]Username not specified and not found in config[/red]")
            console.print("[dim]Use --username or set CALBRIDGE_CALDAV__USERNAME[/dim]")
            raise typer.Exit(1)

    store = CredentialStore()
    key = account_key(cfg.caldav.url, username)

    if delete:
        if store.delete_password(cfg.caldav.url, username):
            console.print(f"[green]✓ Password removed for {key}[/green]")
        else:
            console.print(f"[yellow]No stored password for {key}[/yellow]")
        return

    password = typer.prompt(f"Enter CalDAV password for {key}", hide_input=True)
    password_confirm = typer.prompt("Confirm password", hide_input=True)

    if password != password_confirm:
        console.print("[red]Passwords do not match[/red]")
        raise typer.Exit(1)

    try:
        store.set_password(cfg.caldav.url, username, password)
        console.print(f"[green]✓ Password stored securely for {key}[/green]")
    except Exception as e:
        console.print(f"[red]Failed to store password: {e}[/red]")
        raise typer.Exit(1)


calendars_app = typer.Typer(help="Manage synced calendars")
app.add_typer(calendars_app, name="calendars")


@calendars_app.command("discover")
def calendars_discover(
    ctx: typer.Context,
    email: Optional[str] = typer.Option(
        None,
        "--email",
        "-e",
        help="Guess the server from an e-mail address when no URL is configured",
    ),
) -> None:
    """List event calendars available on the CalDAV server."""
    cfg = ctx.obj["config"]

    async def discover():
        server_url = cfg.caldav.url
        if not server_url:
            address = email or cfg.caldav.email
            if not address:
                raise ConfigurationError("Set caldav.url or pass --email to discover the server")
            server_url = await discover_server_url(address)
            if not server_url:
                raise ConfigurationError(f"Could not discover a CalDAV server for {address}")
            console.print(f"[cyan]Discovered server:[/cyan] {server_url}")

        account = CalendarAccount(
            account_id="default",
            server_url=server_url,
            username=cfg.caldav.username or email or "",
            email=email or cfg.caldav.email,
        )
        client = RemoteCalendarClient(
            account,
            cfg.caldav.get_password(),
            ssl_verify_cert=cfg.caldav.ssl_verify_cert,
            timeout=cfg.caldav.request_timeout,
        )
        return await client.discover_calendars()

    calendars = _run(discover())

    table = Table(title="CalDAV Calendars")
    table.add_column("Name", style="cyan")
    table.add_column("URL", style="green")
    for cal in calendars:
        table.add_row(cal["name"], cal["url"])
    console.print(table)
    console.print("[dim]Register one with: calbridge calendars add <url> --name <name>[/dim]")


@calendars_app.command("list")
def calendars_list(ctx: typer.Context) -> None:
    """List registered calendars."""
    cfg = ctx.obj["config"]

    async def list_calendars():
        coordinator = await _open_coordinator(cfg)
        return await coordinator.calendars_db.list_calendars()

    calendars = _run(list_calendars())
    if not calendars:
        console.print("[yellow]No calendars registered[/yellow]")
        return

    table = Table(title="Registered Calendars")
    table.add_column("Name", style="cyan")
    table.add_column("URL", style="green")
    table.add_column("Enabled")
    table.add_column("Read-only")
    table.add_column("Interval", justify="right")
    for cal in calendars:
        table.add_row(
            cal.display_name,
            cal.calendar_id,
            "✓" if cal.sync_enabled else "✗",
            "✓" if cal.read_only else "✗",
            f"{cal.interval_minutes or cfg.sync.interval_minutes} min",
        )
    console.print(table)


@calendars_app.command("add")
def calendars_add(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Collection URL"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
    read_only: bool = typer.Option(False, "--read-only", help="Never push local changes"),
    interval: Optional[int] = typer.Option(None, "--interval", help="Sync interval in minutes"),
) -> None:
    """Register a calendar for syncing."""
    cfg = ctx.obj["config"]

    if not url.startswith(("http://", "https://")):
        console.print("[red]Calendar URL must start with http:// or https://[/red]")
        raise typer.Exit(1)

    async def add():
        coordinator = await _open_coordinator(cfg)
        await coordinator.calendars_db.register_calendar(
            Calendar(
                calendar_id=url,
                display_name=name or url.rstrip("/").rsplit("/", 1)[-1],
                read_only=read_only,
                interval_minutes=interval,
            )
        )

    _run(add())
    console.print(f"[green]✓ Calendar registered:[/green] {url}")


sync_app = typer.Typer(help="Run syncs and resolve conflicts")
app.add_typer(sync_app, name="sync")


@sync_app.command("run")
def sync_run(
    ctx: typer.Context,
    calendar: Optional[str] = typer.Argument(None, help="Calendar URL or name (default: all enabled)"),
) -> None:
    """Synchronize one calendar, or every enabled calendar."""
    cfg = ctx.obj["config"]

    async def run_sync():
        coordinator = await _open_coordinator(cfg)
        if calendar:
            targets = [await _resolve_calendar(coordinator, calendar)]
        else:
            targets = await coordinator.calendars_db.list_calendars(enabled_only=True)
        results = []
        for target in targets:
            results.append(await coordinator.run_sync(target.calendar_id))
        return results

    results = _run(run_sync())
    if not results:
        console.print("[yellow]No calendars to sync[/yellow]")
        return

    for result in results:
        _print_result(result)

    if any(r.status == SyncStatus.FAILED for r in results):
        raise typer.Exit(1)


@sync_app.command("conflicts")
def sync_conflicts(
    ctx: typer.Context,
    calendar: str = typer.Argument(..., help="Calendar URL or name"),
) -> None:
    """List unresolved conflicts."""
    cfg = ctx.obj["config"]

    async def list_conflicts():
        coordinator = await _open_coordinator(cfg)
        target = await _resolve_calendar(coordinator, calendar)
        return await coordinator.get_conflicts(target.calendar_id)

    conflicts = _run(list_conflicts())
    if not conflicts:
        console.print("[green]No unresolved conflicts[/green]")
        return

    table = Table(title="Unresolved Conflicts")
    table.add_column("UID", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Local")
    table.add_column("Remote")
    table.add_column("Detected", style="dim")
    for conflict in conflicts:
        local = conflict.local_entity
        remote = conflict.remote_entity
        table.add_row(
            conflict.uid,
            conflict.conflict_type.value,
            "(deleted)" if local is None or local.deleted else local.title,
            "(deleted)" if remote is None or remote.deleted else remote.summary,
            to_iso(conflict.detected_at),
        )
    console.print(table)
    console.print("[dim]Resolve with: calbridge sync resolve <calendar> <uid> --mode keep-local|keep-remote|merge[/dim]")


@sync_app.command("resolve")
def sync_resolve(
    ctx: typer.Context,
    calendar: str = typer.Argument(..., help="Calendar URL or name"),
    uid: str = typer.Argument(..., help="UID of the conflicted appointment"),
    mode: ResolutionMode = typer.Option(..., "--mode", "-m", help="Resolution strategy"),
) -> None:
    """Resolve one conflict."""
    cfg = ctx.obj["config"]

    async def resolve():
        coordinator = await _open_coordinator(cfg)
        target = await _resolve_calendar(coordinator, calendar)
        conflict = await coordinator.calendars_db.get_conflict(target.calendar_id, uid)
        if conflict is None:
            return None
        return await coordinator.resolve_conflict(conflict, mode)

    result = _run(resolve())
    if result is None:
        console.print(f"[red]No unresolved conflict {uid} in {calendar}[/red]")
        raise typer.Exit(1)

    if result.success:
        console.print(f"[green]✓ Resolved {uid} with {mode.value}[/green]")
    else:
        _print_result(result)
        raise typer.Exit(1)


@sync_app.command("status")
def sync_status(ctx: typer.Context) -> None:
    """Show sync state for every registered calendar."""
    cfg = ctx.obj["config"]

    async def status():
        coordinator = await _open_coordinator(cfg)
        rows = []
        for cal in await coordinator.calendars_db.list_calendars():
            conflicts = await coordinator.get_conflicts(cal.calendar_id)
            logs = await coordinator.sync_logs_db.get_logs(cal.calendar_id, limit=1)
            rows.append((cal, len(conflicts), logs[0] if logs else None))
        return rows

    rows = _run(status())
    if not rows:
        console.print("[yellow]No calendars registered[/yellow]")
        return

    table = Table(title="Sync Status")
    table.add_column("Calendar", style="cyan")
    table.add_column("Last Sync", style="green")
    table.add_column("Token")
    table.add_column("Conflicts", justify="right")
    table.add_column("Last Run")
    for cal, conflict_count, log in rows:
        last_run = "-"
        if log:
            last_run = log["status"]
            if log.get("error_message"):
                last_run += f" [dim]({log['error_message'][:60]})[/dim]"
        table.add_row(
            cal.display_name or cal.calendar_id,
            to_iso(cal.last_sync_at) or "never",
            "✓" if cal.sync_token else "✗",
            str(conflict_count),
            last_run,
        )
    console.print(table)


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", "-h", help="Host to bind to")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to bind to")] = 8000,
    reload: Annotated[bool, typer.Option("--reload", help="Enable auto-reload (development)")] = False,
) -> None:
    """Start the calbridge API server and the periodic sync scheduler.

    Examples:
        # Start server on default port
        calbridge serve

        # Start on specific host and port
        calbridge serve --host 0.0.0.0 --port 8080
    """
    import uvicorn

    console.print(Panel.fit(
        f"[bold cyan]calbridge API Server[/bold cyan]\n\n"
        f"[white]Starting server on {host}:{port}[/white]",
        border_style="cyan"
    ))

    try:
        console.print(f"[dim]API docs: http://{host}:{port}/api/docs[/dim]")
        console.print("[dim]Press Ctrl+C to stop[/dim]\n")

        uvicorn.run(
            "calbridge.api.app:app",
            host=host,
            port=port,
            reload=reload,
            log_level="info",
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")


def main_entry() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        logging.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main_entry()
