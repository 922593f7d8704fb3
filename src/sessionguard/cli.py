"""sessionguard CLI - inspect and drive the stored session."""

import asyncio
import json
import os
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .api import ApiClient
from .auth import FileBackend, TokenStore
from .config import ClientSettings, configure_logging
from .errors import ApiError

app = typer.Typer(
    name="sessionguard",
    help="sessionguard - authenticated API client",
    no_args_is_help=True,
)
console = Console()


def _settings() -> ClientSettings:
    settings = ClientSettings()
    configure_logging(settings.log_level)
    return settings


def _store(settings: ClientSettings) -> TokenStore:
    if not settings.token_file:
        console.print("[red]SESSIONGUARD_TOKEN_FILE is not set; nothing is persisted.[/red]")
        raise typer.Exit(1)
    return TokenStore(FileBackend(settings.token_file))


def _output_result(result: Any) -> None:
    console.print_json(json.dumps(result, default=str, indent=2))


@app.command("config")
def show_config():
    """Show effective settings and where each one came from."""
    from dotenv import dotenv_values

    settings = _settings()
    dotenv = dotenv_values(".env")

    table = Table(title="sessionguard Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Source", style="dim")

    for name, value in settings.model_dump().items():
        key = f"SESSIONGUARD_{name.upper()}"
        if key in os.environ:
            source = "env"
        elif key in dotenv:
            source = ".env"
        else:
            source = "default"
        table.add_row(name, str(value) if value is not None else "[red]Not set[/red]", source)

    console.print(table)


@app.command("status")
def status():
    """Show stored token status."""
    store = _store(_settings())
    info = store.get_status()

    if not info["has_access_token"]:
        console.print("[yellow]No session stored. Log in first.[/yellow]")
        return

    user = store.get_user() or {}
    if info["is_expired"]:
        body = (
            "[bold yellow]Access Token Expired[/bold yellow]\n\n"
            "It will be refreshed on the next API call.\n"
            "Or run 'sessionguard refresh' to refresh now."
        )
    else:
        expires_in = info["expires_in_seconds"]
        hours = expires_in // 3600
        minutes = (expires_in % 3600) // 60
        body = (
            f"[bold green]Access Token Valid[/bold green]\n\n"
            f"Expires in: {hours}h {minutes}m\n"
            f"Expiring soon: {'yes' if info['expiring_soon'] else 'no'}\n"
            f"Refresh token: {'yes' if info['has_refresh_token'] else 'no'}\n"
            f"User: {user.get('email', 'N/A')}"
        )
    console.print(Panel(body, title="Session Status"))


@app.command("refresh")
def refresh():
    """Force refresh the access token."""
    settings = _settings()
    store = _store(settings)
    if not store.refresh_token:
        console.print("[red]No refresh token stored. Log in first.[/red]")
        raise typer.Exit(1)

    async def _run():
        async with ApiClient(settings, store=store) as api:
            return await api.refresh()

    console.print("[dim]Refreshing token...[/dim]")
    try:
        tokens = asyncio.run(_run())
    except ApiError as e:
        console.print(f"[red]Refresh failed: {e.message}[/red]")
        raise typer.Exit(1)

    if tokens is None:
        console.print("[red]Refresh returned no tokens.[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Token refreshed.[/green] Expires at {store.get_status()['expires_at']}")


@app.command("login")
def login(
    email: str = typer.Option(..., "--email", "-e", prompt=True, help="Account email"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, help="Account password"),
):
    """Log in and store the session in the token file."""
    settings = _settings()
    store = _store(settings)

    async def _run():
        async with ApiClient(settings, store=store) as api:
            return await api.login({"email": email, "password": password})

    try:
        user = asyncio.run(_run())
    except ApiError as e:
        console.print(f"[red]Login failed: {e.message}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Logged in as {user.get('email', email)}.[/green]")


@app.command("logout")
def logout():
    """Clear the stored session."""
    settings = _settings()
    store = _store(settings)

    async def _run():
        async with ApiClient(settings, store=store) as api:
            await api.logout()

    asyncio.run(_run())
    console.print("[green]Logged out.[/green]")


@app.command("request")
def request(
    method: str = typer.Argument(..., help="HTTP method"),
    path: str = typer.Argument(..., help="Path relative to the base URL"),
    data: Optional[str] = typer.Option(None, "--data", "-d", help="JSON request body"),
):
    """Send an authenticated request and print the JSON response."""
    settings = _settings()
    store = _store(settings)

    try:
        body = json.loads(data) if data else None
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON body: {e}[/red]")
        raise typer.Exit(1)

    async def _run():
        async with ApiClient(
            settings,
            store=store,
            on_session_ended=lambda reason: console.print(
                f"[yellow]Session ended ({reason}). Log in again.[/yellow]"
            ),
        ) as api:
            return await api.request_json(method, path, json=body)

    try:
        result = asyncio.run(_run())
    except ApiError as e:
        _output_result(e.to_dict())
        raise typer.Exit(1)

    _output_result(result)


if __name__ == "__main__":
    app()
