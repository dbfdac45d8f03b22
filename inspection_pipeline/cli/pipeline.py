"""Main CLI: background worker, one-off recovery and entitlement checks."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table
import structlog

from inspection_pipeline.cli import init_db
from inspection_pipeline.config import configure_logging, get_settings
from inspection_pipeline.db.session import init_schema
from inspection_pipeline.ledger.entitlements import EntitlementRequest
from inspection_pipeline.services import Services, build_services

app = typer.Typer(
    name="inspection-pipeline",
    help="Inspection report pipeline CLI",
    add_completion=False,
)
app.add_typer(init_db.app, name="db")

console = Console()
logger = structlog.get_logger()


def _services() -> Services:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.is_production)
    services = build_services(settings)
    init_schema(services.engine)
    return services


async def run_maintenance(services: Services) -> dict[str, int]:
    """One pass of every periodic task. A failing task does not stop the others."""
    summary = {"recovered": 0, "agents_retried": 0, "delivered": 0, "blocks_deactivated": 0}

    try:
        report = await services.recovery.run()
        summary["recovered"] = report.recovered
    except Exception as e:
        logger.exception("Job recovery failed", error=str(e))

    try:
        agents = await services.recovery.sweep_agents()
        summary["agents_retried"] = agents.retried
    except Exception as e:
        logger.exception("Agent sweep failed", error=str(e))

    try:
        summary["delivered"] = await services.dispatcher.drain()
    except Exception as e:
        logger.exception("Outbox drain failed", error=str(e))

    try:
        summary["blocks_deactivated"] = services.ledger.deactivate_expired_blocks()
    except Exception as e:
        logger.exception("Block expiry sweep failed", error=str(e))

    return summary


async def _worker_loop(services: Services, once: bool) -> None:
    interval = services.settings.recovery_interval_seconds
    while True:
        summary = await run_maintenance(services)
        logger.info("Maintenance pass finished", **summary)
        if once:
            return
        await asyncio.sleep(interval)


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Run a single pass and exit"),
) -> None:
    """Run recovery, agent sweep, outbox drain and block expiry on a fixed interval."""
    services = _services()
    console.print("\n[bold cyan]Inspection Pipeline worker[/bold cyan]")
    console.print(f"Interval: [yellow]{services.settings.recovery_interval_seconds}s[/yellow]\n")

    try:
        asyncio.run(_worker_loop(services, once))
    except KeyboardInterrupt:
        console.print("\n[dim]Worker stopped[/dim]")


@app.command()
def recover() -> None:
    """Run one recovery sweep, for use from cron."""
    services = _services()
    summary = asyncio.run(run_maintenance(services))

    console.print("\n[bold green]✓ Recovery pass completed[/bold green]\n")
    for key, value in summary.items():
        console.print(f"  {key.replace('_', ' ').capitalize()}: [green]{value}[/green]")


@app.command("stuck-jobs")
def stuck_jobs() -> None:
    """List jobs past the stuck deadline."""
    services = _services()
    rows = services.recovery.find_stuck_jobs()
    if not rows:
        console.print("[green]No stuck jobs[/green]")
        return

    table = Table(title="Stuck jobs")
    for column in ("Job", "Inspection", "Type", "Status", "Seq", "Retries", "Minutes", "Recover"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            row["job_id"],
            row["inspection_id"],
            row["job_type"],
            row["status"],
            str(row["sequence_order"]),
            f"{row['retry_count']}/{row['max_retries']}",
            str(row["minutes_stuck"]),
            "[green]yes[/green]" if row["will_recover"] else "[red]no[/red]",
        )
    console.print(table)


@app.command("check-entitlement")
def check_entitlement(
    user_id: str = typer.Argument(..., help="User to check"),
    require_subscription: bool = typer.Option(False, "--require-subscription"),
    allow_blocks: bool = typer.Option(True, "--allow-blocks/--no-blocks"),
) -> None:
    """Show a user's available reports without consuming any."""
    services = _services()
    result = services.ledger.resolve(
        EntitlementRequest(
            user_id=user_id,
            require_subscription=require_subscription,
            allow_block_usage=allow_blocks,
        )
    )

    color = "green" if result.success else "red"
    console.print(f"\n[bold {color}]{result.code.value if result.code else 'OK'}[/bold {color}]")
    if result.error:
        console.print(f"[{color}]{result.error}[/{color}]")
    console.print(f"  Subscription: {result.subscription_status} (active: {result.has_active_subscription})")
    console.print(f"  Parent carryover: {result.parent_carryover}")
    console.print(f"  Subscription reports: {result.subscription_reports}")
    console.print(f"  Block reports: {result.block_reports}")
    console.print(f"  [bold]Total available:[/bold] {result.total_available_reports}\n")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8000, "--port"),
) -> None:
    """Serve the HTTP API."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.is_production)
    uvicorn.run("inspection_pipeline.api.server:app", host=host, port=port, reload=settings.debug)


if __name__ == "__main__":
    app()
