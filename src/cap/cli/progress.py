"""Rich progress display for the analysis pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Sequence

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cap.client.sse import AnalysisProgress, PipelineCallbacks
from cap.coordinator.events import (
    CompleteEvent,
    ErrorEvent,
    PipelineEvent,
    StageCompleteEvent,
    StageErrorEvent,
    StageStartEvent,
)


@dataclass
class StageInfo:
    """Information about a pipeline stage."""

    number: int
    stage_id: str
    name: str
    status: str = "pending"  # pending, running, complete, error, skipped
    detail: str = ""
    started_at: float | None = None
    completed_at: float | None = None

    @property
    def duration(self) -> float | None:
        """Get duration in seconds."""
        if self.started_at is None:
            return None
        end = self.completed_at or time.time()
        return end - self.started_at

    @property
    def duration_str(self) -> str:
        """Get formatted duration string."""
        d = self.duration
        if d is None:
            return ""
        if d < 60:
            return f"{d:.0f}s"
        return f"{int(d // 60)}m {int(d % 60)}s"


class PipelineProgress:
    """Live progress display driven by pipeline events."""

    STATUS_ICONS = {
        "pending": "[dim]...[/dim]",
        "running": "[yellow]...[/yellow]",
        "complete": "[green]OK[/green]",
        "skipped": "[dim]--[/dim]",
        "error": "[red]ERR[/red]",
    }

    def __init__(self, console: Console, subject_id: str, stages: Sequence[tuple[str, str]]) -> None:
        """Initialize progress display.

        Args:
            console: Rich console to write to.
            subject_id: Subject being analyzed.
            stages: (stage_id, display_name) pairs in execution order.
        """
        self.console = console
        self.subject_id = subject_id
        self.started_at = time.time()
        self.run_id: str | None = None

        self.stages: dict[str, StageInfo] = {
            stage_id: StageInfo(number=i + 1, stage_id=stage_id, name=name)
            for i, (stage_id, name) in enumerate(stages)
        }

        self.current_stage: str | None = None
        self.is_complete = False
        self.error_message: str | None = None

        self._live: Live | None = None

    def _build_display(self) -> Panel:
        """Build the progress display panel."""
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Stage", width=3, justify="right")
        table.add_column("Status", width=4)
        table.add_column("Name", width=24)
        table.add_column("Detail", style="dim")
        table.add_column("Time", width=8, justify="right", style="dim")

        for stage in self.stages.values():
            if stage.status == "running":
                name_style = "bold yellow"
            elif stage.status == "complete":
                name_style = "green"
            elif stage.status == "error":
                name_style = "red"
            else:
                name_style = "dim"

            table.add_row(
                f"{stage.number}.",
                self.STATUS_ICONS.get(stage.status, ""),
                Text(stage.name, style=name_style),
                stage.detail[:45] + "..." if len(stage.detail) > 45 else stage.detail,
                stage.duration_str,
            )

        footer = Text()
        if self.run_id:
            footer.append("Run: ", style="dim")
            footer.append(self.run_id, style="cyan")
            footer.append("  |  ", style="dim")
        footer.append("Elapsed: ", style="dim")
        footer.append(self._format_duration(time.time() - self.started_at), style="cyan")

        content = Group(table, Text(""), footer)

        if self.is_complete:
            title = f"[bold green]{self.subject_id} Analysis Complete[/bold green]"
            border_style = "green"
        elif self.error_message:
            title = f"[bold red]{self.subject_id} Analysis Failed[/bold red]"
            border_style = "red"
        else:
            title = f"[bold cyan]Analyzing {self.subject_id}...[/bold cyan]"
            border_style = "cyan"

        return Panel(content, title=title, border_style=border_style)

    def _format_duration(self, seconds: float) -> str:
        """Format duration as human-readable string."""
        if seconds < 60:
            return f"{seconds:.0f}s"
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        if minutes < 60:
            return f"{minutes}m {secs}s"
        return f"{minutes // 60}h {minutes % 60}m"

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._build_display())

    def start_stage(self, stage_id: str) -> None:
        """Mark a stage running; earlier untouched stages were resumed past."""
        stage = self.stages.get(stage_id)
        if stage is None:
            return
        for earlier in self.stages.values():
            if earlier.number < stage.number and earlier.status == "pending":
                earlier.status = "skipped"
                earlier.detail = "from previous run"
        stage.status = "running"
        stage.detail = ""
        stage.started_at = time.time()
        self.current_stage = stage_id
        self._refresh()

    def complete_stage(self, stage_id: str, duration_ms: int = 0) -> None:
        stage = self.stages.get(stage_id)
        if stage is None:
            return
        stage.status = "complete"
        stage.completed_at = time.time()
        if duration_ms:
            stage.detail = f"{duration_ms / 1000:.1f}s upstream"
        self._refresh()

    def mark_complete(self) -> None:
        """Mark the pipeline as complete."""
        self.is_complete = True
        self._refresh()

    def mark_error(self, message: str, stage_id: str | None = None) -> None:
        """Mark the pipeline as failed."""
        self.error_message = message
        stage = self.stages.get(stage_id or self.current_stage or "")
        if stage is not None:
            stage.status = "error"
            stage.detail = message[:50]
        self._refresh()

    def handle_event(self, event: PipelineEvent) -> None:
        """Apply an in-process pipeline event."""
        if isinstance(event, StageStartEvent):
            self.start_stage(event.stage)
        elif isinstance(event, StageCompleteEvent):
            self.complete_stage(event.stage, event.duration_ms)
        elif isinstance(event, CompleteEvent):
            self.mark_complete()
        elif isinstance(event, StageErrorEvent):
            self.mark_error(event.message, event.stage)
        elif isinstance(event, ErrorEvent):
            self.mark_error(event.message)

    def callbacks(self) -> PipelineCallbacks:
        """Callbacks for consuming a remote stream into this display."""

        def on_progress(progress: AnalysisProgress) -> None:
            self.start_stage(progress.stage)

        def on_complete(result: dict[str, Any]) -> None:
            self.mark_complete()

        return PipelineCallbacks(
            on_progress=on_progress,
            on_stage_complete=self.complete_stage,
            on_complete=on_complete,
            on_error=self.mark_error,
        )

    def __enter__(self) -> "PipelineProgress":
        """Start the live display."""
        self._live = Live(
            self._build_display(),
            console=self.console,
            refresh_per_second=4,
            transient=False,
            auto_refresh=True,
            get_renderable=self._build_display,
        )
        self._live.__enter__()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Stop the live display."""
        if self._live:
            self._live.update(self._build_display())
            self._live.__exit__(exc_type, exc_val, exc_tb)
            self._live = None
