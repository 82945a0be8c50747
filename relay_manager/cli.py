from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Coroutine
from typing import Any, TypeVar

import pyperclip
import typer
from InquirerPy import inquirer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import storage
from .controller import App, AppView, Page
from .display import DisplayServerRepository
from .errors import ManagerError
from .manual import ManualServerRepository
from .models import DisplayServer
from .provisioning import ProvisioningWaiter
from .server import check_endpoint
from .tokens import TokenManager

T = TypeVar("T")


class OrderCommands(typer.core.TyperGroup):
    """Custom group to sort commands alphabetically in help."""

    def list_commands(self, ctx):
        return sorted(super().list_commands(ctx))


app = typer.Typer(
    help="Relay Manager: keep track of manually added and cloud-provisioned relay servers.",
    cls=OrderCommands,
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)
console = Console()


@app.callback()
def main_callback(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _build_app() -> App:
    settings = storage.load_settings()
    kv = storage.JsonFileStorage()
    return App(
        AppView(),
        ManualServerRepository(kv),
        DisplayServerRepository(kv),
        TokenManager(kv),
        waiter=ProvisioningWaiter(timeout=settings.provision_timeout, poll_interval=settings.poll_interval),
    )


def _started_app() -> App:
    relay_app = _build_app()
    _run(relay_app.start())
    return relay_app


def _state_label(server: DisplayServer) -> str:
    if server.is_installing:
        return "[yellow]installing[/yellow]"
    return "[green]ready[/green]"


def _print_servers(relay_app: App) -> None:
    """Print servers table."""
    table = Table(title="Servers")
    table.add_column("", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Management API")
    table.add_column("Kind", justify="center", no_wrap=True)
    table.add_column("State", justify="center", no_wrap=True)

    selected = relay_app.view.selected_server
    for s in relay_app.view.server_list:
        marker = "*" if selected is not None and s.id == selected.id else ""
        table.add_row(marker, s.name, s.id, "managed" if s.is_managed else "manual", _state_label(s))

    console.print(table)


def _find_display(servers: list[DisplayServer], query: str) -> DisplayServer | None:
    """Find server by exact API URL, exact name, or unique partial name match."""
    for s in servers:
        if s.id == query:
            return s
    matches = [s for s in servers if s.name.lower() == query.lower()]
    if len(matches) == 1:
        return matches[0]
    contains = [s for s in servers if query.lower() in s.name.lower() or query in s.id]
    if len(contains) == 1:
        return contains[0]
    return None


def _choose_server(relay_app: App, query: str | None, action: str) -> DisplayServer:
    servers = relay_app.view.server_list
    if not servers:
        console.print("[yellow]No servers found. Add one: relay-manager add[/yellow]")
        raise typer.Exit(1)

    if query is not None:
        srv = _find_display(servers, query)
        if not srv:
            console.print("[red]Server not found[/red]")
            raise typer.Exit(1)
        return srv

    labels = {f"{s.name}  [{s.id}]": s for s in servers}
    try:
        selected_label = inquirer.select(
            message=f"Select server to {action}:",
            choices=list(labels),
            cycle=True,
            vi_mode=False,
            instruction="↑↓ navigate, search by name",
        ).execute()
    except KeyboardInterrupt:
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(0)
    return labels[selected_label]


@app.command("list", help="Show list of servers. Alias: ls")
@app.command("ls", hidden=True)
def list_servers() -> None:
    """Show list of servers."""
    relay_app = _started_app()
    if relay_app.view.current_page is Page.INTRO:
        console.print("[yellow]No servers found. Add one: relay-manager add[/yellow]")
        return
    _print_servers(relay_app)


@app.command("add", help="Add a server by its management API URL. Alias: a")
@app.command("a", hidden=True)
def add_server(
    api_url: str | None = typer.Option(None, "--api-url", help="Management API URL"),
    cert: str | None = typer.Option(None, "--cert", help="Certificate SHA-256 fingerprint"),
    config: str | None = typer.Option(None, "--config", help="JSON printed by the server installer"),
):
    """Add a manually installed server."""
    try:
        if config is None:
            api_url = api_url or typer.prompt("Management API URL")
            cert = cert or typer.prompt("Certificate SHA-256")
            config = json.dumps({"apiUrl": api_url, "certSha256": cert})
    except (KeyboardInterrupt, typer.Abort):
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(0)

    relay_app = _started_app()
    try:
        server = _run(relay_app.create_manual_server(config))
    except ManagerError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Added:[/green] {server.name}  ({server.management_api_url})")


@app.command("forget", help="Forget a manually added server. Alias: rm")
@app.command("rm", hidden=True)
def forget(query: str | None = typer.Argument(None, help="API URL/name/partial name (optional)")):
    """Forget a manual server."""
    relay_app = _started_app()
    srv = _choose_server(relay_app, query, "forget")
    if srv.is_managed:
        console.print("[red]Managed servers are removed by deleting their cloud host.[/red]")
        raise typer.Exit(1)

    try:
        if not typer.confirm(f"Forget '{srv.name}' ({srv.id})?"):
            raise typer.Exit(1)
    except (KeyboardInterrupt, typer.Abort):
        console.print("\n[dim]Cancelled.[/dim]")
        raise typer.Exit(0)

    try:
        _run(relay_app.forget_manual_server(srv.id))
    except ManagerError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print("[green]Forgotten.[/green]")


@app.command("select", help="Make a server the one shown by default. Alias: s")
@app.command("s", hidden=True)
def select(query: str | None = typer.Argument(None, help="API URL/name/partial name (optional)")):
    """Remember a server as the last displayed one."""
    relay_app = _started_app()
    srv = _choose_server(relay_app, query, "select")
    _run(relay_app.show_server(srv.id))
    console.print(f"[green]Selected:[/green] {srv.name}")


@app.command("copy-url", help="Copy management API URL to clipboard. Alias: cp")
@app.command("cp", hidden=True)
def copy_url(query: str | None = typer.Argument(None, help="API URL/name/partial name (optional)")):
    """Copy a server's management API URL."""
    relay_app = _started_app()
    srv = _choose_server(relay_app, query, "copy")
    try:
        pyperclip.copy(srv.id)
    except pyperclip.PyperclipException as e:
        console.print(f"[yellow]Failed to copy URL: {e}[/yellow]")
        raise typer.Exit(1)
    console.print("[green]URL copied.[/green]")


@app.command("ping", help="Check server availability. Alias: p")
@app.command("p", hidden=True)
def ping_server(query: str | None = typer.Argument(None, help="API URL/name/partial name (optional)")):
    """Check if a server's management API is reachable."""
    relay_app = _started_app()
    srv = _choose_server(relay_app, query, "ping")
    timeout = storage.load_settings().health_check_timeout

    console.print(f"Checking [bold]{srv.name}[/bold] ({srv.id})...")
    is_available, message, response_time = _run(check_endpoint(srv.id, timeout))
    if is_available:
        console.print(f"{srv.id} - [green]{message}[/green] [dim]({response_time:.0f}ms)[/dim]")
    else:
        console.print(f"{srv.id} - [red]{message}[/red] [dim]({response_time:.0f}ms)[/dim]")
        raise typer.Exit(1)


@app.command("health", help="Check all servers availability. Alias: h")
@app.command("h", hidden=True)
def health_check():
    """Check availability of all servers concurrently."""
    relay_app = _started_app()
    servers = [s for s in relay_app.view.server_list if not s.is_installing]
    if not servers:
        console.print("[yellow]No servers found.[/yellow]")
        raise typer.Exit(1)

    timeout = storage.load_settings().health_check_timeout
    console.print(f"Checking {len(servers)} server(s)...\n")

    async def check_all() -> list[tuple[bool, str, float]]:
        return await asyncio.gather(*(check_endpoint(s.id, timeout) for s in servers))

    table = Table(title="Server Health Check")
    table.add_column("Name", style="bold")
    table.add_column("Management API")
    table.add_column("Status")

    available_count = 0
    for srv, (is_available, message, response_time) in zip(servers, _run(check_all())):
        if is_available:
            available_count += 1
            status_style = "green"
        else:
            status_style = "red"
        table.add_row(
            srv.name,
            srv.id,
            f"[{status_style}]{message}[/{status_style}] [dim]({response_time:.0f}ms)[/dim]",
        )

    console.print(table)
    console.print(f"\n[bold]Summary:[/bold] {available_count}/{len(servers)} servers available")

    if available_count < len(servers):
        raise typer.Exit(1)


@app.command("logout")
def logout():
    """Forget the stored cloud provider token."""
    relay_app = _build_app()
    if relay_app.token_manager.get_stored_token() is None:
        console.print("[yellow]No cloud account connected.[/yellow]")
        return
    _run(relay_app.sign_out_cloud())
    console.print("[green]Cloud token removed.[/green]")


def main():
    app()


if __name__ == "__main__":
    main()
