"""CLI commands for diarymind."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from diarymind import __logo__, __version__
from diarymind.config.loader import get_config_path, load_config, save_config
from diarymind.config.schema import Config
from diarymind.entries import JsonlEntrySource
from diarymind.logging import setup_logging
from diarymind.memory.errors import WorkflowStepError
from diarymind.providers.base import LLMProvider
from diarymind.providers.litellm_provider import LiteLLMProvider
from diarymind.service import MemoryService
from diarymind.workflows.runner import WorkflowRunner

app = typer.Typer(
    name="diarymind",
    help=f"{__logo__} diarymind - journal memory lifecycle engine",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} diarymind v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
):
    """diarymind - journal memory lifecycle engine."""
    pass


def _make_provider(config: Config) -> LLMProvider:
    p = config.provider
    return LiteLLMProvider(
        api_key=p.resolved_api_key or None,
        api_base=p.api_base,
        default_model=p.model,
        extra_headers=p.extra_headers,
        resilience_config=p.resilience,
    )


def _make_service() -> MemoryService:
    config = load_config()
    setup_logging(json_output=config.logging.json_output, level=config.logging.level)
    return MemoryService(config, provider=_make_provider(config))


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


@app.command()
def init(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
):
    """Write a default config file and create the workspace."""
    path = get_config_path()
    if path.exists() and not force:
        console.print(f"[yellow]Config already exists at {path}[/yellow] (use --force to overwrite)")
        raise typer.Exit()
    config = Config()
    save_config(config, path)
    config.workspace_path.mkdir(parents=True, exist_ok=True)
    console.print(f"[green]✓[/green] Created config at {path}")
    console.print(f"[green]✓[/green] Workspace at {config.workspace_path}")


@app.command("add-entry")
def add_entry(
    user_id: str = typer.Argument(..., help="User id"),
    text: str = typer.Argument(..., help="Entry text"),
    mood: str | None = typer.Option(None, "--mood", help="Mood label"),
    entry_date: str | None = typer.Option(None, "--date", help="Entry date (YYYY-MM-DD)"),
):
    """Append a journal entry to the workspace entry log."""
    config = load_config()
    entries = JsonlEntrySource(config.workspace_path)
    entry = entries.append_entry(user_id, text, entry_date=entry_date, mood_label=mood)
    console.print(f"Entry {entry.id} ({entry.entry_date})")


@app.command()
def extract(
    user_id: str = typer.Argument(..., help="User id"),
    entry_id: str = typer.Argument(..., help="Entry id"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for a triggered consolidation"),
):
    """Run memory extraction for one entry."""
    service = _make_service()

    async def _run():
        outcome = await service.process_entry(user_id, entry_id)
        failures = await service.wait_for_background() if wait else {}
        return outcome, failures

    try:
        outcome, failures = asyncio.run(_run())
    except WorkflowStepError as e:
        _fail(f"extraction failed at {e.step}: {e.cause}")
        return
    for run_id, error in failures.items():
        console.print(f"[yellow]Consolidation {run_id} crashed:[/yellow] {error}")
    if outcome is None:
        console.print(f"[yellow]Extraction already in progress for entry {entry_id}[/yellow]")
        return
    explicit = " (explicit request)" if outcome.is_explicit_request else ""
    console.print(
        f"Extraction {outcome.extraction_id}{explicit}: created={outcome.created} updated={outcome.updated} "
        f"confirmed={outcome.confirmed} dropped={outcome.dropped} failed={outcome.failed}"
    )


@app.command()
def retry(
    extraction_id: str = typer.Argument(..., help="Failed extraction id"),
):
    """Resume a failed extraction after its last completed step."""
    service = _make_service()
    try:
        outcome = asyncio.run(service.resume_extraction(extraction_id))
    except WorkflowStepError as e:
        _fail(f"extraction failed at {e.step}: {e.cause}")
        return
    if outcome is None:
        _fail(f"no failed extraction {extraction_id}")
        return
    console.print(f"Extraction {outcome.extraction_id}: created={outcome.created} updated={outcome.updated} confirmed={outcome.confirmed}")


@app.command()
def consolidate(
    user_id: str = typer.Argument(..., help="User id"),
):
    """Decay, then consolidate a user's memories if over the threshold."""
    service = _make_service()
    try:
        outcome = asyncio.run(service.consolidate(user_id))
    except WorkflowStepError as e:
        _fail(f"consolidation failed at {e.step}: {e.cause}")
        return
    if outcome.skipped:
        console.print(f"Decayed {outcome.decayed}; {outcome.active_before} active, no consolidation needed")
        return
    validity = "valid" if outcome.plan_valid else f"invalid ({outcome.plan_errors} problems)"
    console.print(
        f"Plan {validity}: merged={outcome.merged} deactivated={outcome.deactivated} "
        f"skipped_groups={outcome.skipped_groups} protected={outcome.protected} decayed={outcome.decayed}"
    )


@app.command()
def decay(
    user_id: str = typer.Argument(..., help="User id"),
):
    """Apply time-based decay to a user's memories."""
    service = _make_service()
    count = service.decay(user_id)
    console.print(f"Deactivated {count} memories")


@app.command()
def memories(
    user_id: str = typer.Argument(..., help="User id"),
    show_all: bool = typer.Option(False, "--all", help="Include inactive and superseded memories"),
):
    """List a user's memories."""
    service = _make_service()
    records = service.store.get_all_memories(user_id) if show_all else service.store.get_active_memories(user_id)
    if not records:
        console.print("No memories")
        return

    table = Table(title=f"Memories for {user_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Category")
    table.add_column("Imp", justify="right")
    table.add_column("Conf", justify="right")
    table.add_column("Seen", justify="right")
    table.add_column("State")
    table.add_column("Content")
    for r in records:
        if r.superseded_by:
            state = f"→ {r.superseded_by}"
        elif not r.is_active:
            state = "inactive"
        else:
            state = "[green]active[/green]"
        if r.user_confirmed:
            state += " ✓"
        table.add_row(
            r.id,
            r.memory_type,
            r.category,
            str(r.importance),
            f"{r.confidence:.2f}",
            str(r.mention_count),
            state,
            r.content,
        )
    console.print(table)


@app.command()
def context(
    user_id: str = typer.Argument(..., help="User id"),
    max_tokens: int = typer.Option(500, "--max-tokens", help="Token budget for the summary"),
):
    """Print the memory context used for reply generation."""
    service = _make_service()
    ctx = service.get_memory_context(user_id, max_tokens=max_tokens)
    if not ctx.summary:
        console.print("No memories")
        return
    console.print(ctx.summary, markup=False)


@app.command()
def forget(
    user_id: str = typer.Argument(..., help="User id"),
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation"),
):
    """Erase every memory of a user."""
    if not yes:
        typer.confirm(f"Erase all memories of {user_id}?", abort=True)
    service = _make_service()
    count = asyncio.run(service.clear_memories(user_id))
    console.print(f"Erased {count} memories")


@app.command()
def runs(
    workflow: str | None = typer.Option(None, "--workflow", help="memory-extraction or memory-consolidation"),
    limit: int = typer.Option(20, "--limit", help="Maximum runs to show"),
):
    """List recent workflow runs."""
    config = load_config()
    runner = WorkflowRunner(config.workspace_path / "workflows")
    items = runner.list_runs(workflow)[:limit]
    if not items:
        console.print("No runs")
        return

    table = Table(title="Workflow runs")
    table.add_column("Workflow")
    table.add_column("Run", style="cyan")
    table.add_column("Status")
    table.add_column("Steps")
    table.add_column("Error")
    for run in items:
        status = {"completed": "[green]completed[/green]", "failed": "[red]failed[/red]"}.get(run.status, run.status)
        steps = ", ".join(f"{name}:{step.get('status')}" for name, step in run.steps.items())
        table.add_row(run.workflow, run.run_id, status, steps, run.error or "")
    console.print(table)


@app.command("cleanup-extractions")
def cleanup_extractions():
    """Delete finished extraction ledger rows past the retention window."""
    service = _make_service()
    removed = service.cleanup_old_extractions()
    console.print(f"Removed {removed} old extractions")


if __name__ == "__main__":
    app()
