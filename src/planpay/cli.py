"""
planpay command-line entry point.

Usage:
    planpay [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
import json

import click
from rich.console import Console
from rich.table import Table

from . import store
from .api.middleware import setup_logging
from .chain.networks import NETWORKS
from .config import load_settings
from .database import Database
from .errors import Failure
from .orchestrator import build_orchestrator

console = Console()


@click.group()
@click.version_option(package_name="planpay", message="%(prog)s %(version)s")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, verbose: bool):
    """planpay - plan purchases over card, exchange and on-chain payments."""
    ctx.ensure_object(dict)
    settings = load_settings()
    setup_logging(json_format=settings.use_json_logs, level="DEBUG" if verbose else settings.log_level)
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--reload", is_flag=True, help="Reload on code changes")
@click.pass_context
def serve(ctx, host: str, port: int, reload: bool):
    """Run the HTTP API."""
    import uvicorn

    console.print(f"[bold blue]planpay[/bold blue] listening on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run("planpay.api.main:create_app", factory=True, host=host, port=port, reload=reload)


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the database schema."""
    settings = ctx.obj["settings"]

    async def _run():
        database = Database(settings.database_url)
        try:
            await database.create_all()
        finally:
            await database.dispose()

    asyncio.run(_run())
    console.print("[green]Schema ready[/green]")


@cli.command("add-plan")
@click.option("--plan-id", required=True)
@click.option("--name", required=True)
@click.option("--price", required=True, type=int, help="Price in minor units (cents)")
@click.option("--points", default=0, show_default=True, type=int)
@click.option("--currency", default="USD", show_default=True)
@click.option("--description", default=None)
@click.option("--benefit", "benefits", multiple=True, help="Benefit kind, repeatable (points, premium_access)")
@click.option("--inactive", is_flag=True, help="Create the plan disabled")
@click.pass_context
def add_plan(ctx, plan_id, name, price, points, currency, description, benefits, inactive):
    """Create a catalog plan, or update one no order references yet."""
    settings = ctx.obj["settings"]
    if price <= 0:
        raise click.BadParameter("price must be positive", param_hint="--price")

    async def _run():
        database = Database(settings.database_url)
        try:
            await database.create_all()
            async with database.session() as session:
                async with session.begin():
                    return await store.save_plan(
                        session,
                        plan_id,
                        name=name,
                        description=description,
                        price=price,
                        currency=currency.upper(),
                        points_amount=points,
                        plan_type="premium" if "premium_access" in benefits else "points",
                        benefits=list(benefits) or ["points"],
                        active=not inactive,
                    )
        finally:
            await database.dispose()

    result = asyncio.run(_run())
    if isinstance(result, Failure):
        raise click.ClickException(result.message)
    console.print(f"Plan [cyan]{plan_id}[/cyan] saved ({price} {currency.upper()} minor units, {points} points)")


@cli.command()
@click.pass_context
def sweep(ctx):
    """Expire stale pending payments once and exit."""
    settings = ctx.obj["settings"]

    async def _run() -> int:
        orchestrator = build_orchestrator(settings)
        try:
            await orchestrator.database.create_all()
            return await orchestrator.expire_stale()
        finally:
            await orchestrator.close()
            await orchestrator.database.dispose()

    expired = asyncio.run(_run())
    console.print(f"Expired [yellow]{expired}[/yellow] payment(s)")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def networks(ctx, as_json: bool):
    """Show supported networks and their configuration."""
    onchain = ctx.obj["settings"].onchain
    rows = [
        {
            "chain_id": network.chain_id,
            "name": network.name,
            "symbol": network.native_symbol,
            "recipient": onchain.recipient_for(network.key),
            "confirmations": onchain.confirmations_for(network.chain_id),
        }
        for network in NETWORKS.values()
    ]
    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return

    table = Table(title="Networks")
    table.add_column("Chain ID", style="cyan", justify="right")
    table.add_column("Name", style="green")
    table.add_column("Symbol")
    table.add_column("Recipient")
    table.add_column("Confirmations", justify="right")
    for row in rows:
        table.add_row(
            str(row["chain_id"]),
            row["name"],
            row["symbol"],
            row["recipient"] or "[dim]not configured[/dim]",
            str(row["confirmations"]),
        )
    console.print(table)


if __name__ == "__main__":
    cli()
