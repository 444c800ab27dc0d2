"""Main CLI entry point for managing Argo CD connections."""

import time
from collections.abc import Sequence
from pathlib import Path

import click
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from connection_manager.config import ManagerConfig
from connection_manager.exceptions import ConnectionManagerError
from connection_manager.lifecycle import OperationOutcome
from connection_manager.logging_config import get_logger, setup_logging
from connection_manager.models.connection import AuthMethod, ConnectionInput, ConnectionProfile
from connection_manager.models.session import SessionChangeEvent
from connection_manager.service import ConnectionService

app = typer.Typer(
    name="argocd-conn",
    help="Manage named Argo CD connections and the active login",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


class TyperPrompter:
    """Terminal prompts for the interactive parts of connection intents."""

    def collect_connection(self) -> ConnectionInput | None:
        try:
            name = typer.prompt("Connection name (e.g. Production, Staging, Local)")
            server_url = typer.prompt("Argo CD server URL", default="https://localhost:8080")
            auth_method = typer.prompt(
                "Authentication method",
                type=click.Choice([m.value for m in AuthMethod]),
                default=AuthMethod.USERNAME.value,
            )
            username = None
            api_token = None
            if auth_method == AuthMethod.USERNAME.value:
                username = typer.prompt("Argo CD username")
            elif auth_method == AuthMethod.TOKEN.value:
                api_token = typer.prompt("Argo CD API token", hide_input=True)
            skip_tls_verify = typer.confirm(
                "Skip TLS verification? (for local development)", default=False
            )
        except click.exceptions.Abort:
            return None

        try:
            return ConnectionInput(
                name=name,
                server_address=server_url,
                auth_method=auth_method,
                username=username,
                api_token=api_token,
                skip_tls_verify=skip_tls_verify,
            )
        except ValidationError as e:
            console.print("[red]Validation Error:[/red]")
            for error in e.errors():
                field = ".".join(str(x) for x in error["loc"]) or "connection"
                console.print(f"  - {field}: {error['msg']}")
            return None

    def ask_password(self, profile) -> str | None:
        try:
            return typer.prompt(
                f"Password for {profile.username}@{profile.server_address}", hide_input=True
            )
        except click.exceptions.Abort:
            return None

    def pick_connection(
        self, profiles: Sequence[ConnectionProfile], purpose: str, active_id: str | None
    ) -> ConnectionProfile | None:
        console.print(_connections_table(profiles, active_id, numbered=True))
        try:
            choice = typer.prompt(f"Select connection to {purpose}", type=int)
        except click.exceptions.Abort:
            return None
        if not 1 <= choice <= len(profiles):
            console.print(f"[red]Error:[/red] Choose a number between 1 and {len(profiles)}")
            return None
        return profiles[choice - 1]

    def ask_name(self, profile: ConnectionProfile) -> str | None:
        try:
            return typer.prompt("New connection name", default=profile.name)
        except click.exceptions.Abort:
            return None

    def confirm(self, message: str) -> bool:
        try:
            return typer.confirm(message, default=False)
        except click.exceptions.Abort:
            return False


def _connections_table(
    profiles: Sequence[ConnectionProfile], active_id: str | None, numbered: bool = False
) -> Table:
    table = Table(title=f"{len(profiles)} connection(s) configured")
    if numbered:
        table.add_column("#", style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Server", style="magenta")
    table.add_column("Auth", style="green")
    table.add_column("Active", style="yellow")
    table.add_column("Id", style="dim")
    for index, profile in enumerate(profiles, start=1):
        row = [
            profile.name,
            profile.server_address,
            profile.auth_method.value.upper(),
            "✓" if profile.id == active_id else "",
            profile.id,
        ]
        if numbered:
            row.insert(0, str(index))
        table.add_row(*row)
    return table


def _build_service(ctx: typer.Context, interactive: bool = True) -> ConnectionService:
    config: ManagerConfig = ctx.obj["config"]
    return ConnectionService(config, TyperPrompter() if interactive else None)


def _report(outcome: OperationOutcome) -> None:
    if outcome.cancelled:
        console.print(f"[yellow]{escape(outcome.message)}[/yellow]")
        raise typer.Exit(code=0)
    if outcome.ok:
        console.print(f"[green]✓[/green] {escape(outcome.message)}")
        return
    step = f" ({outcome.step.value} step)" if outcome.step else ""
    console.print(f"[red]Failed{step}:[/red] {escape(outcome.message)}")
    raise typer.Exit(code=1)


def _fail(e: ConnectionManagerError) -> None:
    logger.error(f"{type(e).__name__}: {e.message}")
    console.print(f"[red]Error:[/red] {escape(e.message)}")
    if e.details:
        console.print(f"\n{escape(e.details)}")
    raise typer.Exit(code=1)


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Path to configuration file"
    ),
):
    """Global options for all commands."""
    try:
        config = ManagerConfig.from_env(config_file)
    except ConnectionManagerError as e:
        _fail(e)
    log_path = Path(log_file) if log_file else None
    setup_logging(level=config.log_level, verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")
    ctx.obj = {"config": config}


@app.command()
def version(ctx: typer.Context) -> None:
    """Show version information."""
    from connection_manager import __version__
    from connection_manager.gateway import ArgocdCli

    config: ManagerConfig = ctx.obj["config"]
    typer.echo(f"argocd-conn version {__version__}")
    client_version = ArgocdCli(binary=config.cli_binary).client_version()
    typer.echo(f"argocd CLI version {client_version or 'not found'}")


@app.command()
def add(ctx: typer.Context) -> None:
    """
    Add a connection and log in with it.

    Prompts for the connection details and, for username connections, the
    password. The connection is saved even if the login fails.
    """
    try:
        service = _build_service(ctx)
        _report(service.add_connection())
    except ConnectionManagerError as e:
        _fail(e)


@app.command("list")
def list_connections(ctx: typer.Context) -> None:
    """List configured connections."""
    try:
        service = _build_service(ctx, interactive=False)
        connections = service.get_all_connections()
    except ConnectionManagerError as e:
        _fail(e)

    if not connections:
        console.print("[yellow]No connections configured.[/yellow] Use 'argocd-conn add' to create one.")
        return
    console.print(_connections_table(connections, service.store.active_connection_id))


@app.command()
def switch(
    ctx: typer.Context,
    connection_id: str | None = typer.Argument(None, help="Id of the connection to activate"),
) -> None:
    """
    Switch the active connection.

    Logs out of the current server, activates the chosen connection and logs
    in with it. The chosen connection stays active even if the login fails.
    """
    try:
        service = _build_service(ctx)
        _report(service.switch_connection(connection_id))
    except ConnectionManagerError as e:
        _fail(e)


@app.command()
def edit(
    ctx: typer.Context,
    connection_id: str | None = typer.Argument(None, help="Id of the connection to rename"),
    name: str | None = typer.Option(None, "--name", "-n", help="New connection name"),
) -> None:
    """Rename a connection."""
    try:
        service = _build_service(ctx)
        _report(service.edit_connection(connection_id, name))
    except ConnectionManagerError as e:
        _fail(e)


@app.command()
def delete(
    ctx: typer.Context,
    connection_id: str | None = typer.Argument(None, help="Id of the connection to delete"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
) -> None:
    """
    Delete a connection.

    Deleting the active connection makes the first remaining connection active.
    The CLI login is left as it is.
    """
    try:
        service = _build_service(ctx)
        _report(service.delete_connection(connection_id, confirmed=force))
    except ConnectionManagerError as e:
        _fail(e)


@app.command()
def logout(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
) -> None:
    """Log out of the active connection and clear it."""
    try:
        service = _build_service(ctx, interactive=False)
        active = service.get_active_connection()
        if active is None:
            console.print("[yellow]No active Argo CD session to logout from[/yellow]")
            return
        if not force and not typer.confirm(
            f"Are you sure you want to logout from {active.server_address}?", default=False
        ):
            console.print("Operation cancelled")
            raise typer.Exit(code=0)
        _report(service.logout())
    except ConnectionManagerError as e:
        _fail(e)


@app.command()
def whoami(ctx: typer.Context) -> None:
    """Show account information for the active connection."""
    try:
        service = _build_service(ctx, interactive=False)
        info = service.sessions.get_account_info()
        session = service.sessions.get_active_session() if info else None
    except ConnectionManagerError as e:
        _fail(e)

    if info is None:
        console.print(
            "[yellow]No Argo CD account is currently configured.[/yellow] "
            "Use 'argocd-conn add' to configure a connection."
        )
        return

    console.print("[bold]Argo CD Account Information[/bold]\n")
    console.print(f"[bold]Server:[/bold] {info.server_url}")
    console.print(f"[bold]Authentication Method:[/bold] {info.auth_method}")
    console.print(f"[bold]Account:[/bold] {info.account_label}")
    console.print(f"[bold]Session ID:[/bold] {session.id if session else 'not authenticated'}")
    console.print(f"[bold]Skip TLS:[/bold] {'Yes' if info.skip_tls_verify else 'No'}")

    user_info = info.user_info
    if user_info:
        console.print("\n[bold]User Details:[/bold]")
        for label, value in (
            ("Username", user_info.username),
            ("Email", user_info.email),
            ("Name", user_info.name),
            ("Identity Provider", user_info.iss),
        ):
            if value:
                console.print(f"  - {label}: {value}")
        if user_info.groups:
            console.print(f"\n[bold]Groups[/bold] ({len(user_info.groups)}):")
            for group in user_info.groups:
                console.print(f"  - {group}")


@app.command()
def sessions(ctx: typer.Context) -> None:
    """Show the current authenticated session, if any."""
    try:
        service = _build_service(ctx, interactive=False)
        current = service.get_sessions()
    except ConnectionManagerError as e:
        _fail(e)

    if not current:
        console.print("[yellow]No authenticated session[/yellow]")
        return

    table = Table(title="Sessions")
    table.add_column("Id", style="cyan")
    table.add_column("Account", style="magenta")
    table.add_column("Server", style="green")
    table.add_column("Scopes", style="yellow")
    for session in current:
        table.add_row(session.id, session.account_label, session.server_address, ", ".join(session.scopes))
    console.print(table)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the connection state and UI flags."""
    try:
        service = _build_service(ctx, interactive=False)
        ui_state = service.start()
        state = service.lifecycle.current_state()
        active = service.get_active_connection()
    except ConnectionManagerError as e:
        _fail(e)

    console.print(f"[bold]State:[/bold] {state.value}")
    console.print(f"[bold]Active connection:[/bold] {active.name if active else 'none'}")
    console.print(f"[bold]CLI available:[/bold] {'yes' if ui_state.is_cli_available else 'no'}")
    console.print(f"[bold]Authenticated:[/bold] {'yes' if ui_state.is_authenticated else 'no'}")


@app.command()
def watch(
    ctx: typer.Context,
    interval: int | None = typer.Option(
        None, "--interval", "-i", min=1, help="Seconds between checks (default: refresh_interval)"
    ),
    count: int | None = typer.Option(
        None, "--count", min=1, help="Stop after this many checks"
    ),
) -> None:
    """
    Revalidate the session periodically and print changes.

    Useful to notice logins and logouts made with the argocd CLI directly.
    """
    config: ManagerConfig = ctx.obj["config"]
    interval = interval or config.refresh_interval

    def _print_event(event: SessionChangeEvent) -> None:
        for session in event.removed:
            console.print(f"[red]-[/red] {session.account_label} ({session.server_address})")
        for session in event.added:
            console.print(f"[green]+[/green] {session.account_label} ({session.server_address})")
        for session in event.changed:
            console.print(f"[yellow]~[/yellow] {session.account_label} ({session.server_address})")

    try:
        service = _build_service(ctx, interactive=False)
        service.on_sessions_changed(_print_event)
        service.start()
        checks = 1
        while count is None or checks < count:
            time.sleep(interval)
            service.sessions.refresh_sessions()
            checks += 1
    except ConnectionManagerError as e:
        _fail(e)
    except KeyboardInterrupt:
        console.print("\nStopped")
