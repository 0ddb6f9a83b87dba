from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from codex_sessions.core.config import default_config_path, load_config
from codex_sessions.core.log import configure_logging
from codex_sessions.core.monitor import RescanReport, SessionMonitor, format_bytes
from codex_sessions.errors import ConfigError
from codex_sessions.ingest.parse_cache import ParseStateCache
from codex_sessions.sender import CodexCliSender
from codex_sessions.storage import create_repository
from codex_sessions.storage.base import SessionRepository
from codex_sessions.storage.models import MIB, MonitorConfig, OutboxMessage, OutboxStatus

app = typer.Typer(help="Incrementally import Codex CLI session logs")
console = Console()

_config_path: Path | None = None

STATUS_STYLES = {
    OutboxStatus.PENDING: "yellow",
    OutboxStatus.SENDING: "cyan",
    OutboxStatus.SENT: "green",
    OutboxStatus.FAILED: "red",
}


@app.callback()
def main(
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Config file (default: {default_config_path()})",
    ),
):
    """Incrementally import Codex CLI session logs."""
    global _config_path
    _config_path = config


def get_config() -> MonitorConfig:
    try:
        config = load_config(_config_path)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(1) from None
    configure_logging(status=config.status_log, debug=config.debug_log)
    return config


def get_repository(config: MonitorConfig) -> SessionRepository:
    return create_repository(config.db_path)


def _render_report(report: RescanReport) -> None:
    merge = report.merge
    lines = [
        "",
        f"Files discovered:  {report.file_count}",
        f"Files parsed:      {report.parsed_count}",
        f"Files skipped:     {report.skipped_count} (unchanged)",
        f"Bytes parsed:      {format_bytes(report.parsed_bytes)}",
        "",
        "[bold]Merge:[/bold]",
        f"  New sessions:      {merge.inserted}",
        f"  Appended:          {merge.appended}",
        f"  Replaced:          {merge.replaced}",
        f"  Duplicates:        {merge.duplicates_removed}",
        f"  Outbox delivered:  {merge.outbox_deleted}",
        "",
    ]
    if report.did_hit_budget:
        lines.append("[yellow]Scan budget reached; run scan again to continue.[/yellow]")
        lines.append("")

    if report.parsed_count:
        title = f"[green]✓ Scan Complete[/green] ({report.duration_seconds:.2f}s)"
    else:
        title = "[dim]Scan Complete (no changes)[/dim]"
    console.print(Panel.fit("\n".join(lines), title=title))


@app.command()
def scan(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Drop all imported sessions and rebuild from the logs",
    ),
    clear_cache: bool = typer.Option(
        False,
        "--clear-cache",
        help="Delete parse-state cache files before scanning",
    ),
    budget_mb: float | None = typer.Option(
        None,
        "--budget-mb",
        min=0,
        help="Bytes (in MB) to parse in this scan; 0 is unlimited",
    ),
):
    """Run one rescan of the sessions directory."""
    config = get_config()
    if budget_mb is not None:
        config.scan = config.scan.model_copy(update={"scan_budget_bytes": int(budget_mb * MIB)})

    cache = ParseStateCache(config.cache_dir)
    if clear_cache:
        removed = cache.clear()
        console.print(f"[dim]Removed {removed} cache file(s)[/dim]")

    repository = get_repository(config)
    monitor = SessionMonitor(config.sessions_dir, config, repository=repository)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task("Scanning sessions...", total=None)
        report = asyncio.run(monitor.rescan(force=force))

    if report is None:
        console.print("[red]Rescan was rejected.[/red]")
        raise typer.Exit(1)
    _render_report(report)


@app.command()
def watch():
    """Watch the sessions directory and keep the database current."""
    config = get_config()
    repository = get_repository(config)
    monitor = SessionMonitor(
        config.sessions_dir,
        config,
        sender=CodexCliSender(timeout=config.sender_timeout_seconds),
    )

    async def _run() -> None:
        await monitor.start(repository)
        mode = "filesystem events" if monitor.stats.watcher_active else "polling"
        console.print(f"[dim]Watching {config.sessions_dir} ({mode}); Ctrl-C to stop[/dim]")
        try:
            await asyncio.Event().wait()
        finally:
            await monitor.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


@app.command()
def queue(
    session_id: str = typer.Argument(..., help="Codex session id to resume"),
    text: str = typer.Argument(..., help="Message to send"),
    cwd: str | None = typer.Option(
        None,
        "--cwd",
        help="Working directory for the Codex CLI (default: the session's cwd)",
    ),
):
    """Queue a message for delivery to a Codex session."""
    if not text.strip():
        console.print("[red]Message text is empty.[/red]")
        raise typer.Exit(1)

    config = get_config()
    repository = get_repository(config)
    if cwd is None:
        matches = [s for s in repository.fetch_sessions() if s.id == session_id]
        cwd = matches[0].cwd if matches else ""

    message = OutboxMessage(session_id=session_id, text=text, cwd=cwd)
    repository.insert_outbox(message)
    repository.save()
    console.print(f"[green]✓ Queued[/green] {message.id} for session {session_id}")


@app.command()
def outbox(
    drain: bool = typer.Option(
        False,
        "--drain",
        help="Send pending messages once before listing",
    ),
):
    """List outbox entries."""
    config = get_config()
    repository = get_repository(config)

    if drain:
        monitor = SessionMonitor(
            config.sessions_dir,
            config,
            sender=CodexCliSender(timeout=config.sender_timeout_seconds),
            repository=repository,
        )
        had_pending = asyncio.run(monitor.drain_outbox())
        if not had_pending:
            console.print("[dim]No pending messages.[/dim]")

    entries = repository.fetch_outbox()
    if not entries:
        console.print("[dim]Outbox is empty.[/dim]")
        return

    table = Table(title="Outbox")
    table.add_column("Created")
    table.add_column("Session", overflow="fold")
    table.add_column("Status")
    table.add_column("Text", overflow="fold")
    table.add_column("Error", overflow="fold")
    for entry in entries:
        style = STATUS_STYLES.get(entry.status, "")
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.session_id,
            f"[{style}]{entry.status.value}[/{style}]",
            entry.text,
            entry.last_error,
        )
    console.print(table)


@app.command()
def status():
    """Show imported session counts and effective configuration."""
    config = get_config()
    repository = get_repository(config)
    pending = repository.fetch_outbox(status=OutboxStatus.PENDING)
    scan_config = config.scan
    budget = (
        format_bytes(scan_config.scan_budget_bytes)
        if scan_config.scan_budget_bytes
        else "unlimited"
    )
    tail = (
        f"> {format_bytes(scan_config.tail_threshold_bytes)} "
        f"(last {format_bytes(scan_config.tail_bytes)})"
        if scan_config.tail_enabled
        else "disabled"
    )

    lines = [
        "[bold]Database:[/bold]",
        f"  Sessions: {repository.count_sessions()}",
        f"  Messages: {repository.count_messages()}",
        f"  Pending outbox: {len(pending)}",
        "",
        "[bold]Paths:[/bold]",
        f"  Sessions dir: {config.sessions_dir}",
        f"  Database:     {config.db_path}",
        f"  Parse cache:  {config.cache_dir}",
        "",
        "[bold]Scanning:[/bold]",
        f"  Budget per rescan: {budget}",
        f"  Tail scan:         {tail}",
        f"  Max line size:     {format_bytes(scan_config.max_line_bytes)}",
        f"  Polling forced:    {'yes' if config.enable_polling else 'no'}",
    ]
    console.print(Panel.fit("\n".join(lines), title="Codex Sessions Status"))


if __name__ == "__main__":
    app()
