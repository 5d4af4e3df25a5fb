from __future__ import annotations

import asyncio
import sqlite3
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .db import connect, init_db
from .logging import setup_cli_logging
from .models import Outcome
from .repositories import SqliteRepository
from .services import build_services
from .settings import load_settings

app = typer.Typer(
    add_completion=False,
    help="glint_video: playback id resolution, repair and webhook API",
    rich_markup_mode="rich",
)
console = Console()


_OUTCOME_STYLE = {
    Outcome.RESOLVED: "green",
    Outcome.PENDING: "yellow",
    Outcome.FAILED: "red",
}


def _print_next_steps(steps: list[str]) -> None:
    console.print("\n[bold green]✓ Done![/bold green]")
    if steps:
        console.print("\n[bold]Next steps:[/bold]")
        for i, step in enumerate(steps, 1):
            console.print(f"  {i}. {step}")


async def _with_services(settings, fn):
    svc = build_services(settings)
    try:
        return await fn(svc)
    finally:
        await svc.aclose()


@app.callback()
def _root():
    """
    [bold]glint_video[/bold]: turn stored video references into working stream URLs.

    [bold]Examples:[/bold]
      python -m glint_video status
      python -m glint_video resolve <upload-or-asset-id>
      python -m glint_video reconcile --dry-run
      python -m glint_video run
    """


@app.command("status", help="Show store stats and configuration")
def status():
    s = load_settings()

    console.print(Panel.fit(
        "\n".join([
            f"[bold]Database:[/bold]     {s.GV_DB_PATH}",
            f"[bold]API Server:[/bold]   http://{s.GV_API_HOST}:{s.GV_API_PORT}",
            f"[bold]Provider:[/bold]     {s.GV_PROVIDER_BASE_URL}",
            f"[bold]Credentials:[/bold]  {'set' if s.GV_PROVIDER_TOKEN_ID and s.GV_PROVIDER_TOKEN_SECRET else '[red](not set)[/red]'}",
            f"[bold]Stream host:[/bold]  {s.GV_STREAM_HOST}",
            f"[bold]Seed file:[/bold]    {s.GV_SEED_FILE or '[dim](none)[/dim]'}",
        ]),
        title="[bold]Configuration[/bold]",
    ))

    try:
        conn = connect(s.GV_DB_PATH)
        init_db(conn)
        total = conn.execute("SELECT COUNT(*) FROM videos").fetchone()[0]
        by_status = dict(
            conn.execute("SELECT lifecycle_status, COUNT(*) FROM videos GROUP BY lifecycle_status").fetchall()
        )
        conn.close()
    except sqlite3.Error as e:
        console.print(f"[yellow]Database not ready:[/yellow] {e}")
        console.print("\n[dim]Run[/dim] [cyan]glint_video init[/cyan] [dim]to get started.[/dim]")
        return

    t = Table(title="[bold]Records[/bold]", show_header=False)
    t.add_column("Metric", style="bold")
    t.add_column("Value", style="cyan", justify="right")
    t.add_row("Total", f"{total:,}")
    for name in ("pending", "ready", "errored", "deleted"):
        t.add_row(name.capitalize(), f"{int(by_status.get(name, 0)):,}")
    console.print(t)


@app.command("init", help="Create or migrate the SQLite store")
def init():
    s = load_settings()
    conn = connect(s.GV_DB_PATH)
    init_db(conn)
    conn.close()
    console.print(f"[green]Initialized[/green] {s.GV_DB_PATH}")
    filled = SqliteRepository(s).backfill_identifiers()
    if filled:
        console.print(f"[green]Backfilled[/green] provider ids on {filled:,} record(s)")


@app.command("add", help="Register a pending record for a stored reference")
def add(
    owner_id: Annotated[str, typer.Argument(help="Owning user id")],
    raw_reference: Annotated[str, typer.Argument(help="Upload id, asset id, playback id or stream URL")],
    record_id: Annotated[Optional[str], typer.Option("--id", help="Explicit record id")] = None,
):
    s = load_settings()
    setup_cli_logging(s)
    svc = build_services(s)
    try:
        rec = svc.repo.insert_record(owner_id, raw_reference, record_id=record_id)
    except (ValueError, sqlite3.IntegrityError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    console.print(f"[green]Added[/green] record [cyan]{rec.record_id}[/cyan] ({svc.resolver.classify(raw_reference).kind.value})")


@app.command("resolve", help="Resolve a reference (or a stored record with --record)")
def resolve(
    ref: Annotated[str, typer.Argument(help="Reference, or record id with --record")],
    record: Annotated[bool, typer.Option("--record", help="Treat REF as a record id and patch it")] = False,
):
    s = load_settings()
    setup_cli_logging(s)

    async def _run(svc):
        if not record:
            ident = svc.resolver.classify(ref)
            return ident, await svc.resolver.resolve_identifier(ident), None
        rec = svc.repo.get_record(ref)
        if rec is None:
            return None, None, None
        ident = svc.resolver.identify_record(rec)
        result, written = await svc.resolver.resolve_record(rec, svc.repo)
        return ident, result, written

    ident, result, written = asyncio.run(_with_services(s, _run))
    if result is None:
        console.print(f"[red]Error:[/red] record not found: {ref}")
        raise typer.Exit(code=1)

    style = _OUTCOME_STYLE.get(result.outcome, "white")
    lines = [
        f"[bold]Kind:[/bold]     {ident.kind.value}",
        f"[bold]Outcome:[/bold]  [{style}]{result.outcome.value}[/{style}]",
    ]
    if result.playback_url:
        lines.append(f"[bold]URL:[/bold]      [cyan]{result.playback_url}[/cyan]")
    if result.reason:
        lines.append(f"[bold]Reason:[/bold]   {result.reason.value}")
    if result.asset_id:
        lines.append(f"[bold]Asset:[/bold]    {result.asset_id}")
    if written:
        lines.append(f"[bold]Record:[/bold]   {written}")
    if result.user_message:
        lines.append(f"\n[dim]{result.user_message}[/dim]")
    console.print(Panel.fit("\n".join(lines), title="Resolution"))
    if result.outcome is Outcome.FAILED:
        raise typer.Exit(code=2)


@app.command("reconcile", help="Scan records and repair broken playback URLs")
def reconcile(
    owner_id: Annotated[Optional[str], typer.Option("--owner", help="Only this owner's records")] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run/--apply", help="Report without writing")] = False,
    concurrency: Annotated[Optional[int], typer.Option(help="Max concurrent provider lookups")] = None,
):
    """Repair records whose playback URL is missing or malformed.

    Healthy records are never re-resolved. Terminal failures are marked so the
    app can ask for a re-upload; transient ones are left for a later pass.
    """

    s = load_settings()
    events_file = setup_cli_logging(s)

    async def _run(svc):
        records = svc.repo.iter_records(owner_id=owner_id)
        return await svc.batch(dry_run=dry_run, concurrency=concurrency).reconcile(records)

    summary = asyncio.run(_with_services(s, _run))

    title = "Reconcile (dry run)" if summary.dry_run else "Reconcile"
    console.print(Panel.fit(
        f"  Scanned:   [cyan]{summary.scanned:,}[/cyan]\n"
        f"  Patched:   [green]{summary.patched:,}[/green]\n"
        f"  Skipped:   [dim]{summary.skipped:,}[/dim]\n"
        f"  Terminal:  [red]{summary.terminal:,}[/red]\n"
        f"  Deferred:  [yellow]{summary.deferred:,}[/yellow]\n"
        f"  Malformed: [yellow]{summary.malformed:,}[/yellow]\n"
        f"  Failed:    [red]{summary.failed:,}[/red]",
        title=title,
    ))
    if summary.deferred:
        _print_next_steps(["Run [cyan]glint_video reconcile[/cyan] again later for deferred records"])
    if events_file and not summary.dry_run and (summary.patched or summary.terminal):
        console.print(f"[dim]Writes logged to {events_file}[/dim]")


@app.command("run", help="Start the API server (webhooks + resolve endpoints)")
def run(
    host: Annotated[
        Optional[str],
        typer.Option(help="Host to bind"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option(help="Port to bind"),
    ] = None,
):
    """Start the FastAPI server."""
    import uvicorn

    from .logging import setup_api_logging

    s = load_settings()
    host = host or s.GV_API_HOST
    port = port or s.GV_API_PORT

    log_file = setup_api_logging(s)

    console.print(Panel.fit(
        f"[bold]API Server starting...[/bold]\n\n"
        f"  URL:     [cyan]http://{host}:{port}[/cyan]\n"
        f"  Webhook: [cyan]http://{host}:{port}/webhooks/mux[/cyan]\n"
        f"  Docs:    [cyan]http://{host}:{port}/docs[/cyan]\n\n"
        f"  Logs: [cyan]{log_file}[/cyan]\n\n"
        f"[dim]Press CTRL+C to stop[/dim]",
        title="[bold green]glint_video API[/bold green]",
    ))

    uvicorn.run(
        "glint_video.app:app",
        host=host,
        port=port,
        reload=False,
        access_log=bool(getattr(s, "GV_API_LOG_ACCESS", False)),
        log_config=None,
    )
