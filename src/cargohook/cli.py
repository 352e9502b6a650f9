"""cargohook CLI."""

import asyncio
import logging
import subprocess
import uuid
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from cargohook import __version__
from cargohook.config import get_settings

app = typer.Typer(
    name="cargohook",
    help="cargohook - outbound webhook delivery engine",
    no_args_is_help=True,
)

console = Console()

# Subcommands
db_app = typer.Typer(help="Database management commands")
deliveries_app = typer.Typer(help="Delivery record commands")
webhook_app = typer.Typer(help="Webhook commands")

app.add_typer(db_app, name="db")
app.add_typer(deliveries_app, name="deliveries")
app.add_typer(webhook_app, name="webhook")


def run_async(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Configure logging for every command."""
    level = logging.DEBUG if verbose else get_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address (defaults to settings)"),
    port: int = typer.Option(None, "--port", help="Bind port (defaults to settings)"),
):
    """Start the API server and webhook dispatcher."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"[green]API server starting on {host}:{port}[/green]")
    uvicorn.run(
        "cargohook.main:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )


@app.command()
def version():
    """Show version information."""
    console.print(f"cargohook version {__version__}")


@app.command()
def show_config():
    """Show current configuration."""
    settings = get_settings()

    table = Table(title="cargohook Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for field_name in type(settings).model_fields:
        value = getattr(settings, field_name)
        # Hide sensitive values
        if "key" in field_name.lower() or "secret" in field_name.lower():
            value = "********" if value is not None else None
        table.add_row(field_name, str(value))

    console.print(table)


# Database commands


@db_app.command("upgrade")
def db_upgrade(
    revision: str = typer.Argument("head", help="Revision to upgrade to"),
):
    """Upgrade database to a revision."""
    _run_alembic("upgrade", revision)


@db_app.command("downgrade")
def db_downgrade(
    revision: str = typer.Argument(..., help="Revision to downgrade to"),
):
    """Downgrade database to a revision."""
    _run_alembic("downgrade", revision)


@db_app.command("current")
def db_current():
    """Show current database revision."""
    _run_alembic("current")


@db_app.command("history")
def db_history():
    """Show revision history."""
    _run_alembic("history")


def _run_alembic(*args):
    """Run alembic command."""
    project_dir = Path(__file__).parent.parent.parent
    alembic_ini = project_dir / "alembic.ini"

    if not alembic_ini.exists():
        console.print(f"[red]alembic.ini not found at {alembic_ini}[/red]")
        raise typer.Exit(1)

    cmd = ["alembic", "-c", str(alembic_ini), *args]
    result = subprocess.run(cmd, cwd=project_dir)
    if result.returncode != 0:
        raise typer.Exit(result.returncode)


# Delivery commands


async def _with_dispatcher(operation):
    """Run ``operation(dispatcher)`` with a short-lived HTTP client and engine."""
    from cargohook.db.session import close_engine, get_async_session_factory
    from cargohook.webhook.dispatcher import WebhookDispatcher, create_http_client

    settings = get_settings()
    async with create_http_client(settings) as client:
        dispatcher = WebhookDispatcher(get_async_session_factory(), client, settings)
        try:
            return await operation(dispatcher)
        finally:
            await close_engine()


def _print_result(result) -> None:
    if result.success:
        console.print(
            f"[green]Delivered (status {result.status_code}, attempts {result.attempts})[/green]"
        )
    else:
        console.print(f"[red]Failed after {result.attempts} attempt(s): {result.error}[/red]")


def _parse_id(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Invalid {label} ID '{value}'[/red]")
        raise typer.Exit(1) from None


@deliveries_app.command("retry")
def deliveries_retry(
    delivery_id: str = typer.Argument(..., help="Delivery ID"),
    tenant: str = typer.Option(None, "--tenant", "-t", help="Restrict to this tenant"),
):
    """Retry a failed delivery now."""
    from cargohook.webhook.errors import WebhookError

    parsed_id = _parse_id(delivery_id, "delivery")

    try:
        result = run_async(
            _with_dispatcher(lambda dispatcher: dispatcher.retry_delivery(parsed_id, tenant))
        )
    except WebhookError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e

    _print_result(result)
    if not result.success:
        raise typer.Exit(1)


@webhook_app.command("test")
def webhook_test(
    webhook_id: str = typer.Argument(..., help="Webhook ID"),
    tenant: str = typer.Option(None, "--tenant", "-t", help="Restrict to this tenant"),
):
    """Send a test event to a webhook."""
    from cargohook.webhook.errors import WebhookError

    parsed_id = _parse_id(webhook_id, "webhook")

    try:
        result = run_async(
            _with_dispatcher(lambda dispatcher: dispatcher.send_test(parsed_id, tenant))
        )
    except WebhookError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e

    _print_result(result)
    if not result.success:
        raise typer.Exit(1)


@webhook_app.command("events")
def webhook_events():
    """List the events a webhook can subscribe to."""
    from cargohook.db.enums import SUBSCRIBABLE_EVENTS
    from cargohook.webhook.events import EVENT_LABELS

    table = Table(title="Webhook Events")
    table.add_column("Event", style="cyan")
    table.add_column("Description")

    for event in SUBSCRIBABLE_EVENTS:
        table.add_row(event.value, EVENT_LABELS[event])

    console.print(table)


if __name__ == "__main__":
    app()
