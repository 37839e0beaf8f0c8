"""Terminal view of a post-processing run.

The view keeps its own copy of stage state, built only from bus events, and
redraws on a fixed tick. It never waits on the pipeline thread.
"""

import time
from dataclasses import dataclass

from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from pipeline.progress import (
    ProgressBus,
    ProgressEvent,
    RunFinished,
    StageFinished,
    StageProgress,
    StageStarted,
)

TICK_SECONDS = 0.1
SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
BAR_WIDTH = 24

STATUS_MARKS = {
    "pending": ("○", "dim"),
    "complete": ("✓", "green"),
    "failed": ("✗", "red bold"),
    "skipped": ("–", "yellow"),
}


@dataclass
class StageRow:
    name: str
    status: str = "pending"
    percent: float | None = None
    message: str = ""


def progress_bar(percent: float, width: int = BAR_WIDTH) -> str:
    filled = int(round(percent / 100 * width))
    return "━" * filled + "╺" + "─" * max(0, width - filled - 1) if filled < width else "━" * width


class ProcessingView:
    """Renders the stage list of one run from its progress events."""

    def __init__(
        self,
        stage_names: list[str],
        bus: ProgressBus,
        console: Console | None = None,
        tick: float = TICK_SECONDS,
    ):
        self.rows = [StageRow(name) for name in stage_names]
        self.bus = bus
        self.console = console or Console()
        self.tick = tick
        self.finished: RunFinished | None = None
        self._frame = 0

    def apply(self, event: ProgressEvent) -> None:
        """Fold one event into the view's state."""
        if isinstance(event, StageStarted):
            row = self.rows[event.index]
            row.status = "running"
            row.percent = None
        elif isinstance(event, StageProgress):
            row = self.rows[event.index]
            if row.percent is None or event.percent >= row.percent:
                row.percent = event.percent
        elif isinstance(event, StageFinished):
            row = self.rows[event.index]
            row.status = event.status
            row.message = event.message
            if event.status == "complete":
                row.percent = 100.0
        elif isinstance(event, RunFinished):
            self.finished = event

    def _status_cell(self, row: StageRow) -> Text:
        if row.status == "running":
            return Text(SPINNER_FRAMES[self._frame % len(SPINNER_FRAMES)], style="cyan")
        mark, style = STATUS_MARKS.get(row.status, ("?", ""))
        return Text(mark, style=style)

    def _progress_cell(self, row: StageRow) -> Text:
        if row.status == "running":
            if row.percent is None:
                return Text("working...", style="dim")
            return Text(f"{progress_bar(row.percent)} {row.percent:5.1f}%", style="cyan")
        if row.status in ("failed", "skipped"):
            return Text(row.message, style="red" if row.status == "failed" else "dim")
        if row.status == "complete":
            return Text(progress_bar(100.0), style="green")
        return Text("")

    def render(self) -> Group:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column(width=2)
        table.add_column("Stage", style="bold", min_width=22)
        table.add_column("Progress")
        for row in self.rows:
            table.add_row(self._status_cell(row), row.name, self._progress_cell(row))

        parts = [table]
        if self.finished is not None:
            if self.finished.status == "complete":
                parts.append(Text("\nProcessing complete", style="green bold"))
            else:
                parts.append(Text(f"\nProcessing failed: {self.finished.error}", style="red bold"))
        return Group(*parts)

    def run(self) -> RunFinished:
        """Poll the bus and redraw every tick until the run finishes."""
        with Live(self.render(), console=self.console, refresh_per_second=1 / self.tick, transient=False) as live:
            while self.finished is None:
                for event in self.bus.poll():
                    self.apply(event)
                self._frame += 1
                live.update(self.render())
                if self.finished is None:
                    time.sleep(self.tick)
        return self.finished
