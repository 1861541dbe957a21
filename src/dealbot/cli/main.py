"""
CLI for the deal evaluation system.

Commands:
    dealbot create NAME      - Create a deal
    dealbot run DEAL_ID      - Drive the deal's run to completion
    dealbot advance DEAL_ID  - Advance a stalled run by one unit
    dealbot cancel DEAL_ID   - Cancel the active run
    dealbot status DEAL_ID   - Show runs, personas and the decision
    dealbot verify DEAL_ID   - Check the snapshot against a log replay
    dealbot rebuild-index DEAL_ID - Regenerate the SQLite projection
    dealbot config           - Show current configuration
    dealbot version          - Print version
"""

from __future__ import annotations

import asyncio
from typing import Annotated, Any, Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from dealbot import __version__
from dealbot.config import Settings, clear_settings_cache, get_settings
from dealbot.coordinator import DealPipeline, ResumeAdvancer
from dealbot.exceptions import ConfigurationError, DealbotError
from dealbot.logging import setup_logging
from dealbot.persistence import PersistenceManager
from dealbot.providers import HttpReasoningRunner, HttpSearchProvider, WebhookNotifier
from dealbot.state import AnalystConfig, DealInput, PersonaConfig

app = typer.Typer(
    name="dealbot",
    help="Dealbot - multi-persona deal evaluation",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)

T = TypeVar("T")


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


def _require_settings() -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'dealbot config' to see the current values."
        )
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    settings.ensure_directories()
    return settings


def _run(settings: Settings, action: Callable[[PersistenceManager], Awaitable[T]]) -> T:
    """Open persistence, run ``action`` and close, mapping errors to exit 1."""

    async def runner() -> T:
        persistence = PersistenceManager(settings=settings)
        await persistence.init()
        try:
            return await action(persistence)
        finally:
            await persistence.close()

    try:
        return asyncio.run(runner())
    except DealbotError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _build_pipeline(settings: Settings, persistence: PersistenceManager) -> DealPipeline:
    if not settings.REASONING_BASE_URL:
        raise ConfigurationError(
            "REASONING_BASE_URL is not set", {"setting": "REASONING_BASE_URL"}
        )

    runner = HttpReasoningRunner(
        settings.REASONING_BASE_URL,
        api_key=settings.REASONING_API_KEY,
        timeout_s=settings.LONG_TIMEOUT_S,
    )
    providers = []
    if settings.SEARCH_BASE_URL:
        providers.append(HttpSearchProvider(
            settings.SEARCH_BASE_URL,
            api_key=settings.SEARCH_API_KEY,
            timeout_s=settings.SHORT_TIMEOUT_S,
        ))
    notifier = (
        WebhookNotifier(settings.WEBHOOK_URL, timeout_s=settings.SHORT_TIMEOUT_S)
        if settings.WEBHOOK_URL
        else None
    )
    return DealPipeline(
        persistence,
        runner,
        providers=providers,
        notifier=notifier,
        settings=settings,
    )


async def _close_pipeline(pipeline: DealPipeline) -> None:
    for client in (pipeline.runner, *pipeline.gatherer.providers):
        close = getattr(client, "close", None)
        if close is not None:
            await close()


@app.command()
def create(
    name: Annotated[str, typer.Argument(help="Company or deal name")],
    domain: Annotated[
        Optional[str],
        typer.Option("--domain", "-d", help="Company web domain"),
    ] = None,
    firm_type: Annotated[
        str,
        typer.Option("--firm-type", "-f", help="Investor profile (early_vc, growth_vc, pe, ...)"),
    ] = "early_vc",
    aum: Annotated[
        Optional[str],
        typer.Option("--aum", help="Assets under management, free text"),
    ] = None,
    analyst: Annotated[
        Optional[list[str]],
        typer.Option("--analyst", "-a", help="Analyst specialization (repeatable)"),
    ] = None,
) -> None:
    """Create a deal. Prints the new deal ID."""
    settings = _require_settings()
    try:
        deal_input = DealInput(
            name=name,
            domain=domain,
            firm_type=firm_type,
            aum=aum,
            persona_config=PersonaConfig(
                analysts=[AnalystConfig(specialization=s) for s in analyst or []]
            ),
        )
    except ValueError as e:
        error_console.print(f"[red]Invalid deal input:[/red] {e}")
        raise typer.Exit(1)

    deal_id = _run(settings, lambda p: p.create_deal(deal_input))
    console.print(f"[bold green]Created[/bold green] {deal_id}")


@app.command()
def run(
    deal_id: Annotated[str, typer.Argument(help="Deal ID")],
    rerun: Annotated[
        bool,
        typer.Option("--rerun", help="Archive the previous run and start a fresh one"),
    ] = False,
) -> None:
    """Drive the deal's run to a terminal status.

    Resumes an interrupted or errored run from its first incomplete unit.
    """
    settings = _require_settings()

    async def action(persistence: PersistenceManager) -> Any:
        pipeline = _build_pipeline(settings, persistence)
        try:
            return await pipeline.run_pipeline(deal_id, start_new=rerun)
        finally:
            await _close_pipeline(pipeline)

    with console.status(f"Evaluating {deal_id}..."):
        result = _run(settings, action)

    if result is None:
        console.print("[yellow]Deal is already being evaluated.[/yellow]")
        return

    style = "green" if result.status.value == "complete" else "red"
    console.print()
    console.print(
        Panel(
            f"[bold]Run:[/bold] {result.run_id}\n"
            f"[bold]Status:[/bold] {result.status.value}\n"
            f"[bold]Decision:[/bold] {result.decision or '-'}\n"
            f"[bold]Average score:[/bold] {result.avg_score if result.avg_score is not None else '-'}\n"
            f"[bold]Weighted score:[/bold] {result.weighted_score if result.weighted_score is not None else '-'}\n"
            f"[bold]Degraded:[/bold] {', '.join(result.degraded) or 'none'}",
            title=f"[bold {style}]{deal_id}[/bold {style}]",
            border_style=style,
        )
    )
    if result.status.value == "error":
        raise typer.Exit(1)


@app.command()
def advance(deal_id: Annotated[str, typer.Argument(help="Deal ID")]) -> None:
    """Advance a stalled run by exactly one unit of work."""
    settings = _require_settings()

    async def action(persistence: PersistenceManager) -> str:
        pipeline = _build_pipeline(settings, persistence)
        try:
            return await ResumeAdvancer(pipeline, settings).advance_if_stalled(deal_id)
        finally:
            await _close_pipeline(pipeline)

    outcome = _run(settings, action)
    console.print(outcome)


@app.command()
def cancel(deal_id: Annotated[str, typer.Argument(help="Deal ID")]) -> None:
    """Cancel the deal's active run."""
    settings = _require_settings()

    async def action(persistence: PersistenceManager) -> bool:
        run = persistence.active_run(deal_id)
        if run is None:
            return False
        await persistence.cancel_run(deal_id, run.run_id)
        return True

    if _run(settings, action):
        console.print("[yellow]Run cancelled.[/yellow]")
    else:
        console.print("[dim]No active run.[/dim]")


@app.command()
def archive(deal_id: Annotated[str, typer.Argument(help="Deal ID")]) -> None:
    """Archive a deal. Its runs and events are kept."""
    settings = _require_settings()

    async def action(persistence: PersistenceManager) -> None:
        persistence.archive_deal(deal_id)

    _run(settings, action)
    console.print(f"[green]Archived[/green] {deal_id}")


@app.command()
def status(deal_id: Annotated[str, typer.Argument(help="Deal ID")]) -> None:
    """Show runs, persona outcomes and the current decision."""
    settings = _require_settings()

    async def action(persistence: PersistenceManager) -> Any:
        persistence.load_deal_input(deal_id)
        runs = persistence.list_runs(deal_id)
        personas = persistence.load_personas(deal_id, runs[-1].run_id) if runs else []
        markers = persistence.read_markers(deal_id, runs[-1].run_id) if runs else {}
        return runs, personas, markers, await persistence.snapshot(deal_id)

    runs, personas, markers, state = _run(settings, action)

    table = Table(title="Runs", show_header=True)
    table.add_column("Seq", style="cyan")
    table.add_column("Run ID")
    table.add_column("Status")
    table.add_column("Decision")
    table.add_column("Avg")
    table.add_column("Duration (ms)")
    for r in runs:
        table.add_row(
            str(r.seq),
            r.run_id,
            r.status.value,
            r.decision or "-",
            str(r.avg_score) if r.avg_score is not None else "-",
            str(r.duration_ms) if r.duration_ms is not None else "-",
        )
    console.print(table)

    if personas:
        persona_table = Table(title="Personas", show_header=True)
        persona_table.add_column("Persona", style="cyan")
        persona_table.add_column("Status")
        persona_table.add_column("Retries")
        persona_table.add_column("Latency (ms)")
        for p in personas:
            persona_table.add_row(
                p.persona_id,
                p.status.value,
                str(p.retry_count),
                str(p.latency_ms) if p.latency_ms is not None else "-",
            )
        console.print(persona_table)

    console.print(f"[bold]Completed units:[/bold] {', '.join(markers) or 'none'}")
    if state is not None:
        gate = state.decision_gate
        console.print(f"[bold]Decision:[/bold] {gate.decision.value}")
        for i, question in enumerate(gate.gating_questions, start=1):
            console.print(f"  {i}. {question}")


@app.command()
def verify(
    deal_id: Annotated[str, typer.Argument(help="Deal ID")],
    fix: Annotated[
        bool,
        typer.Option("--fix", help="Rewrite a diverging snapshot from the log"),
    ] = False,
) -> None:
    """Check that the stored snapshot equals a replay of the event log."""
    settings = _require_settings()
    matches = _run(settings, lambda p: p.verify_snapshot(deal_id))
    if matches:
        console.print("[green]Snapshot matches log replay.[/green]")
    elif fix:
        _run(settings, lambda p: p.rebuild_snapshot(deal_id))
        console.print("[yellow]Snapshot rewritten from log replay.[/yellow]")
    else:
        error_console.print("[red]Snapshot diverges from log replay.[/red] "
                            "Run 'dealbot verify --fix' to rewrite it.")
        raise typer.Exit(1)


@app.command("rebuild-index")
def rebuild_index(deal_id: Annotated[str, typer.Argument(help="Deal ID")]) -> None:
    """Drop and regenerate the deal's SQLite projection from its logs."""
    settings = _require_settings()
    count = _run(settings, lambda p: p.rebuild_index(deal_id))
    console.print(f"Replayed {count} events into the index.")


@app.command()
def config() -> None:
    """Show current configuration.

    Displays all configuration values with API keys redacted.
    """
    console.print()
    console.print("[bold]Dealbot Configuration[/bold]")
    console.print()

    settings = _get_settings_safe()
    if settings is None:
        error_console.print("[red]Configuration is invalid.[/red]")
        error_console.print("Check your environment variables or .env file.")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.redacted_display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"dealbot version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
