"""
CLI interface for the loan-call service.
Provides commands for serving the API, processing calls, pushing
applications to the LOS, and recovering stuck jobs.
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from loancall.config import get_settings
from loancall.errors import LoanCallError
from loancall.logging_config import get_logger, setup_logging
from loancall.services import Services

app = typer.Typer(
    name="loancall",
    help="Mortgage call transcription, loan extraction and LOS sync",
    add_completion=False,
)
console = Console()
log = get_logger(__name__)


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


async def _with_services(fn):
    services = Services.build(get_settings())
    await services.start()
    try:
        return await fn(services)
    finally:
        await services.stop()


@app.command()
def serve(
    reload: bool = typer.Option(False, help="Auto-reload on code changes"),
):
    """Run the HTTP API."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)
    uvicorn.run(
        "loancall.server:build_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=reload,
    )


@app.command()
def process(
    call_id: str = typer.Argument(..., help="ID of the call job to process"),
):
    """Transcribe and analyse one call job."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do(services: Services):
        return await services.processor.process(call_id)

    try:
        result = _run(_with_services(_do))
    except LoanCallError as e:
        console.print(f"[red]✗ {e.message}[/red]")
        raise typer.Exit(code=1)

    job = result.job
    colour = {"completed": "green", "error": "red"}.get(job.status.value, "yellow")
    console.print(f"\n[{colour}]Call {job.id}: {job.status.value}[/{colour}]")
    if job.error_message:
        console.print(f"  Cause:        {job.error_message}")
    if job.transcript:
        console.print(f"  Transcript:   {len(job.transcript)} chars")
    if job.summary:
        console.print(f"  Summary:      {job.summary}")
    if job.loan_info:
        for k, v in job.loan_info.to_json_dict().items():
            console.print(f"  {k + ':':<14}{v}")


@app.command()
def push(
    application_id: str = typer.Argument(..., help="ID of the loan application"),
):
    """Push a loan application to Encompass."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do(services: Services):
        return await services.pusher.push(application_id)

    try:
        result = _run(_with_services(_do))
    except LoanCallError as e:
        console.print(f"[red]✗ Push failed:[/red] {e.message}")
        raise typer.Exit(code=1)

    note = " (already pushed)" if result.already_pushed else ""
    console.print(f"\n[green]✓ Encompass ID:[/green] {result.encompass_id}{note}")


@app.command()
def sweep(
    limit: int = typer.Option(50, help="Maximum number of stuck jobs to re-run"),
):
    """Re-run processing jobs whose lease has expired (e.g. after a crash)."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do(services: Services):
        return await services.processor.recover_stale(limit=limit)

    results = _run(_with_services(_do))
    if not results:
        console.print("[green]No stuck jobs.[/green]")
        return

    table = Table(title="Recovered jobs")
    table.add_column("Call ID", style="cyan")
    table.add_column("Status")
    table.add_column("Cause")
    for r in results:
        table.add_row(r.job.id, r.job.status.value, r.job.error_message or "")
    console.print(table)
    log.info("sweep_finished", recovered=len(results))


@app.command()
def status():
    """Show call job counts by status."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do(services: Services):
        counts = await services.db.count_calls_by_status()
        stale = await services.db.get_stale_calls(limit=1000)
        return counts, len(stale)

    counts, stale = _run(_with_services(_do))

    table = Table(title="Call Jobs")
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right", style="green")
    for key in ("processing", "completed", "error"):
        table.add_row(key, str(counts.get(key, 0)))
    table.add_row("stuck (no live lease)", str(stale))
    console.print(table)


if __name__ == "__main__":
    app()
