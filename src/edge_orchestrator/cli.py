"""Typer CLI for inspecting and maintaining persisted orchestrator state."""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import load_repositories, settings
from .exceptions import OrchestratorError
from .logging_config import setup_logging
from .persistence import SnapshotStore
from .session_registry import SessionRegistry

app = typer.Typer(
    name="edge-orchestrator",
    help="Edge Orchestrator - inspect sessions and routing state",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    "active": "green",
    "paused": "yellow",
    "complete": "blue",
    "error": "red",
}


def _format_ms(value: int) -> str:
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _open_store(state_db: Optional[Path]) -> SnapshotStore:
    return SnapshotStore(state_db or settings.state_db_path)


async def _load_registry(store: SnapshotStore) -> SessionRegistry:
    registry = SessionRegistry()
    document = await store.load()
    if document and "registry" in document:
        registry.restore_state(document["registry"])
    return registry


def _load_or_exit(state_db: Optional[Path]) -> SessionRegistry:
    try:
        return asyncio.run(_load_registry(_open_store(state_db)))
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)


def _state_db_option():
    return typer.Option(None, "--state-db", help="Snapshot database (defaults to STATE_DIR)")


@app.callback()
def main(debug: bool = typer.Option(False, "--debug", help="Enable debug logging")):
    setup_logging(level=settings.LOG_LEVEL, debug=debug or settings.DEBUG)


@app.command()
def sessions(
    state_db: Optional[Path] = _state_db_option(),
    status: Optional[str] = typer.Option(None, "--status", help="Only show sessions in this status"),
):
    """List persisted sessions."""
    registry = _load_or_exit(state_db)
    rows = sorted(registry.get_all_sessions(), key=lambda s: s.updated_at, reverse=True)
    if status:
        rows = [s for s in rows if s.status.value == status]
    if not rows:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table(title=f"{len(rows)} session(s)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Issue")
    table.add_column("Status")
    table.add_column("Backend")
    table.add_column("Entries", justify="right")
    table.add_column("Updated")

    for session in rows:
        style = STATUS_STYLES.get(session.status.value, "white")
        backend = session.backend_session.backend.value if session.backend_session else "-"
        table.add_row(
            session.id,
            session.issue_context.issue_identifier if session.issue_context else "-",
            f"[{style}]{session.status.value}[/{style}]",
            backend,
            str(len(registry.get_entries(session.id))),
            _format_ms(session.updated_at),
        )
    console.print(table)


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Internal session id"),
    state_db: Optional[Path] = _state_db_option(),
):
    """Show one session and its transcript."""
    registry = _load_or_exit(state_db)
    session = registry.get_session(session_id)
    if session is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(1)

    parent = registry.get_parent_session_id(session_id)
    children = registry.get_child_session_ids(session_id)
    lines = [
        f"[bold]Status:[/bold] {session.status.value}",
        f"[bold]Workspace:[/bold] {session.workspace.path}",
        f"[bold]Repository:[/bold] {session.repository_id or '-'}",
    ]
    if session.backend_session:
        lines.append(
            f"[bold]Backend:[/bold] {session.backend_session.backend.value} "
            f"({session.backend_session.session_id})"
        )
    if session.metadata.model:
        lines.append(f"[bold]Model:[/bold] {session.metadata.model}")
    lines.append(f"[bold]Cost:[/bold] ${session.metadata.total_cost_usd:.4f}")
    if parent:
        lines.append(f"[bold]Parent:[/bold] {parent}")
    if children:
        lines.append(f"[bold]Children:[/bold] {', '.join(children)}")

    title = session.issue_context.issue_identifier if session.issue_context else session.id
    console.print(Panel.fit("\n".join(lines), title=title, border_style="blue"))

    for entry in registry.get_entries(session_id):
        label = entry.type
        if entry.metadata and entry.metadata.tool_name:
            label = f"{entry.type}:{entry.metadata.tool_name}"
        error = entry.metadata and (entry.metadata.is_error or entry.metadata.tool_result_error)
        style = "red" if error else "dim"
        content = entry.content if len(entry.content) <= 200 else entry.content[:200] + "..."
        console.print(f"[{style}]{label:>16}[/{style}] {content}")


@app.command()
def cleanup(
    max_age_hours: Optional[int] = typer.Option(
        None, "--max-age-hours", help="Retention window (defaults to SESSION_RETENTION_HOURS)"
    ),
    state_db: Optional[Path] = _state_db_option(),
):
    """Remove sessions idle longer than the retention window and save the snapshot."""
    hours = max_age_hours if max_age_hours is not None else settings.SESSION_RETENTION_HOURS

    async def run() -> int:
        store = _open_store(state_db)
        document = await store.load()
        registry = SessionRegistry()
        if document and "registry" in document:
            registry.restore_state(document["registry"])
        removed = await registry.cleanup(hours * 60 * 60 * 1000)
        if removed:
            await store.save(registry.serialize_state(), (document or {}).get("routing_cache", {}))
        return removed

    try:
        removed = asyncio.run(run())
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Removed {removed} session(s) older than {hours}h")


@app.command()
def repositories(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Repositories JSON file (defaults to REPOSITORIES_FILE)"
    ),
):
    """List configured repositories and their routing hints."""
    path = config or (Path(settings.REPOSITORIES_FILE) if settings.REPOSITORIES_FILE else None)
    if path is None or not path.exists():
        console.print("[red]Error:[/red] No repositories file configured")
        raise typer.Exit(1)

    table = Table(title=str(path))
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Workspace")
    table.add_column("Labels")
    table.add_column("Teams")
    table.add_column("Projects")
    table.add_column("Backend")
    for repo in load_repositories(path):
        table.add_row(
            repo.id,
            repo.name,
            repo.workspace_id,
            ", ".join(repo.routing_labels) or "-",
            ", ".join(repo.team_keys) or "-",
            ", ".join(repo.project_keys) or "-",
            repo.backend.value if repo.backend else settings.DEFAULT_BACKEND,
        )
    console.print(table)


if __name__ == "__main__":
    app()
