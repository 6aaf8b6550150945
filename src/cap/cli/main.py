"""
CLI for the case analysis pipeline.

Commands:
    cap analyze REQUEST.json - Run the pipeline in-process
    cap stream REQUEST.json - Run on a server and follow its event stream
    cap runs SUBJECT_ID - List ledger runs for a subject
    cap serve - Start the HTTP API
    cap config - Show current configuration
    cap version - Print version
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Any, Optional

import orjson
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cap import __version__
from cap.cli.progress import PipelineProgress
from cap.config import Settings, clear_settings_cache, get_settings
from cap.coordinator.assembler import summarize_result
from cap.coordinator.events import CompleteEvent, PipelineEvent, is_terminal
from cap.coordinator.executor import StageExecutor
from cap.coordinator.ledger import InMemoryRunLedger, RunLedger, SQLiteRunLedger
from cap.coordinator.orchestrator import Orchestrator, RunRequest
from cap.coordinator.outputs import UnifiedResult
from cap.coordinator.stages import DEFAULT_REGISTRY
from cap.exceptions import CAPError, ValidationError
from cap.llm import create_reasoning_client
from cap.logging import setup_logging

app = typer.Typer(
    name="cap",
    help="Case Analysis Pipeline - resumable multi-stage conversation analysis",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


def _load_payload(path: Path) -> dict[str, Any]:
    try:
        payload = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        error_console.print(f"[red]Error:[/red] Could not read {path}: {e}")
        raise typer.Exit(1)
    if not isinstance(payload, dict):
        error_console.print(f"[red]Error:[/red] {path} must contain a JSON object")
        raise typer.Exit(1)
    return payload


def _stage_names() -> list[tuple[str, str]]:
    return [(stage.id, stage.display_name) for stage in DEFAULT_REGISTRY]


def _print_summary(result: dict[str, Any]) -> None:
    summary = summarize_result(UnifiedResult.model_validate(result))
    console.print()
    console.print(
        Panel(
            f"[bold]Tone:[/bold] {summary['tone']}\n"
            f"[bold]Status:[/bold] {summary['status']}\n"
            f"[bold]Issues:[/bold] {summary['issues_created']} new, "
            f"{summary['issues_updated']} updated\n"
            f"[bold]Agreement violations:[/bold] {summary['violations']}\n"
            f"[bold]Detected agreements:[/bold] {summary['detected_agreements']}\n"
            f"[bold]People analyzed:[/bold] {summary['people_analyzed']}\n"
            f"[bold]Messages flagged:[/bold] {summary['messages_flagged']}",
            title="[bold green]Analysis Result[/bold green]",
            border_style="green",
        )
    )


async def _run_in_process(
    settings: Settings,
    ledger: RunLedger,
    request: RunRequest,
) -> PipelineEvent | None:
    client = create_reasoning_client(settings)
    orchestrator = Orchestrator(StageExecutor.from_settings(client, settings), ledger)
    await ledger.init()
    try:
        prepared = await orchestrator.prepare(request)
        console.print(
            f"[dim]Run {prepared.run_id}"
            f"{' (resuming)' if prepared.is_resume else ''}[/dim]\n"
        )

        terminal = None
        with PipelineProgress(console, request.subject_id, _stage_names()) as progress:
            progress.run_id = prepared.run_id
            async for event in orchestrator.execute(prepared):
                progress.handle_event(event)
                if is_terminal(event):
                    terminal = event
        return terminal
    finally:
        await ledger.close()
        await client.close()


@app.command()
def analyze(
    request_file: Annotated[Path, typer.Argument(help="JSON run request (camelCase)")],
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Use canned stage outputs, no API calls"),
    ] = False,
    ledger_path: Annotated[
        Optional[Path],
        typer.Option("--ledger", "-l", help="SQLite ledger file"),
    ] = None,
    memory: Annotated[
        bool,
        typer.Option("--memory", help="Keep the ledger in memory (no resume across runs)"),
    ] = False,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write the assembled result as JSON"),
    ] = None,
) -> None:
    """Run the analysis pipeline in-process with live progress.

    A subject whose last run failed is resumed from the failed stage.
    """
    if dry_run:
        settings: Settings | None = Settings(DRY_RUN=True)
    else:
        settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'cap config' to see what's missing."
        )
        raise typer.Exit(1)

    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    try:
        request = RunRequest.from_payload(_load_payload(request_file))
    except ValidationError as e:
        error_console.print(f"[red]Invalid request:[/red] {e}")
        raise typer.Exit(1)

    if memory:
        ledger: RunLedger = InMemoryRunLedger.from_settings(settings)
    else:
        ledger = SQLiteRunLedger(
            ledger_path or settings.LEDGER_PATH,
            stale_after_seconds=settings.RUN_STALE_AFTER_SECONDS,
            max_resume_attempts=settings.MAX_RESUME_ATTEMPTS,
        )

    try:
        terminal = asyncio.run(_run_in_process(settings, ledger, request))
    except CAPError as e:
        error_console.print(f"\n[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if not isinstance(terminal, CompleteEvent):
        message = getattr(terminal, "message", "Run ended without a result")
        error_console.print(f"\n[red]Analysis failed:[/red] {message}")
        error_console.print("[dim]Run the same command again to resume.[/dim]")
        raise typer.Exit(1)

    _print_summary(terminal.result)
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(orjson.dumps(terminal.result, option=orjson.OPT_INDENT_2))
        console.print(f"\n[bold]Result saved to:[/bold] {output}")
    console.print()


@app.command()
def stream(
    request_file: Annotated[Path, typer.Argument(help="JSON run request (camelCase)")],
    url: Annotated[
        str,
        typer.Option("--url", "-u", help="Pipeline server root URL"),
    ] = "http://127.0.0.1:8000",
) -> None:
    """Start a run on a server and follow its progress stream.

    Stopping with Ctrl-C stops listening only; the run continues server-side.
    """
    from cap.client.sse import run_pipeline_analysis

    payload = _load_payload(request_file)
    subject_id = str(payload.get("subjectId") or payload.get("conversationId") or "subject")
    final: dict[str, Any] = {}

    async def follow() -> None:
        with PipelineProgress(console, subject_id, _stage_names()) as progress:
            callbacks = progress.callbacks()
            on_complete = callbacks.on_complete

            def store_result(result: dict[str, Any]) -> None:
                final["result"] = result
                on_complete(result)

            callbacks.on_complete = store_result
            await run_pipeline_analysis(payload, callbacks, base_url=url)

    try:
        asyncio.run(follow())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped listening; the run continues on the server.[/yellow]")
        raise typer.Exit(130)

    if "result" not in final:
        raise typer.Exit(1)
    _print_summary(final["result"])
    console.print()


@app.command()
def runs(
    subject_id: Annotated[str, typer.Argument(help="Subject (conversation) ID")],
    ledger_path: Annotated[
        Optional[Path],
        typer.Option("--ledger", "-l", help="SQLite ledger file"),
    ] = None,
) -> None:
    """List ledger runs for a subject, newest first."""
    settings = _get_settings_safe() or Settings(DRY_RUN=True)
    ledger = SQLiteRunLedger(ledger_path or settings.LEDGER_PATH)

    async def fetch() -> list[Any]:
        await ledger.init()
        try:
            return await ledger.list_runs(subject_id)
        finally:
            await ledger.close()

    try:
        found = asyncio.run(fetch())
    except CAPError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if not found:
        console.print(f"[yellow]No runs for {subject_id}.[/yellow]")
        return

    table = Table(title=f"Runs for {subject_id}", show_header=True)
    table.add_column("Run ID", style="cyan")
    table.add_column("Status")
    table.add_column("Stages", justify="right")
    table.add_column("Failed At")
    table.add_column("Attempts", justify="right")
    table.add_column("Updated", style="dim")

    status_styles = {"completed": "green", "failed": "red", "running": "yellow"}
    for run in found:
        style = status_styles.get(run.status.value, "dim")
        table.add_row(
            run.id,
            f"[{style}]{run.status.value}[/{style}]",
            f"{len(run.completed_stages)}/{DEFAULT_REGISTRY.total_stages()}",
            run.failure_stage or "",
            str(run.attempts),
            run.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Bind port")] = 8000,
) -> None:
    """Start the HTTP API (server-sent events)."""
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'cap config' to see what's missing."
        )
        raise typer.Exit(1)

    from cap.api.server import main as serve_api

    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    serve_api(host=host, port=port)


@app.command()
def config() -> None:
    """Show current configuration.

    Displays all configuration values with API keys redacted.
    """
    console.print()
    console.print("[bold]Case Analysis Configuration[/bold]")
    console.print()

    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid or incomplete.[/red]")
        error_console.print()
        error_console.print("Required environment variables:")
        error_console.print("  - OPENROUTER_API_KEY (or DRY_RUN=true)")
        error_console.print()
        error_console.print("Create a .env file or set environment variables.")
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
    console.print(f"case-analysis-pipeline version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
