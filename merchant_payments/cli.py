"""CLI for Merchant Payments.

Operational commands: run the API, create tables, backfill correlation
ids and check gateway credentials.
"""

import asyncio
from typing import Optional

import httpx
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from merchant_payments.config import get_settings
from merchant_payments.database.connection import close_db, get_session_factory, init_db
from merchant_payments.database.repository import TransactionRepository
from merchant_payments.integrations.errors import DarajaError
from merchant_payments.integrations.token_provider import DarajaTokenProvider

app = typer.Typer(
    name="merchant-payments",
    help="M-Pesa payment requests and callback reconciliation",
    add_completion=False,
)

console = Console()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (defaults to API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (defaults to API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "merchant_payments.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        workers=1 if reload else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


@app.command("init-db")
def init_database() -> None:
    """Create database tables that do not exist yet."""

    async def _run() -> None:
        try:
            await init_db()
        finally:
            await close_db()

    try:
        asyncio.run(_run())
    except Exception as e:
        console.print(f"[red]Error:[/red] Database initialization failed: {e}")
        raise typer.Exit(1)

    console.print("[green]Database tables are ready.[/green]")


@app.command("backfill-correlation-ids")
def backfill_correlation_ids(
    batch_size: int = typer.Option(500, "--batch-size", "-b", help="Rows per batch"),
) -> None:
    """Copy CheckoutRequestID from stored gateway responses into the indexed column."""

    async def _run() -> int:
        try:
            async with get_session_factory()() as session:
                updated = await TransactionRepository(session).backfill_correlation_ids(batch_size)
                await session.commit()
                return updated
        finally:
            await close_db()

    try:
        updated = asyncio.run(_run())
    except Exception as e:
        console.print(f"[red]Error during backfill:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]Backfilled[/green] {updated} transaction(s).")


@app.command("check-token")
def check_token() -> None:
    """Acquire a Daraja access token with the configured credentials."""
    settings = get_settings()

    async def _run() -> str:
        async with httpx.AsyncClient(timeout=settings.gateway_timeout_seconds) as client:
            provider = DarajaTokenProvider(http_client=client, settings=settings)
            return await provider.get_access_token()

    try:
        token = asyncio.run(_run())
    except DarajaError as e:
        console.print(
            Panel(e.message, title="[red]Daraja API connection failed[/red]", border_style="red")
        )
        raise typer.Exit(1)

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Environment", settings.mpesa_environment)
    table.add_row("Base URL", settings.mpesa_base_url)
    table.add_row("Token", f"{token[:10]}...")
    console.print(Panel(table, title="[green]Daraja API connection successful[/green]"))


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
