"""Logging utility with Rich console output and file logging."""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme


# Custom theme for consistent styling
THEME = Theme({
    "info": "cyan",
    "success": "green",
    "warning": "yellow",
    "error": "red bold",
    "step": "blue",
    "recording": "red",
    "paused": "yellow",
    "dim": "dim",
})

# Level -> (theme style, console mark)
LEVEL_MARKS = {
    "INFO": ("info", "ℹ"),
    "SUCCESS": ("success", "✓"),
    "WARNING": ("warning", "⚠"),
    "ERROR": ("error", "✗"),
    "STEP": ("step", "→"),
}

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


class SessionLogger:
    """Logger that outputs to a Rich console and to a per-command log file.

    Safe to call from the post-processing thread while the main thread
    renders progress.
    """

    def __init__(
        self,
        command: str,
        logs_dir: Path | str = "./logs",
        console: Console | None = None,
        verbose: bool = False,
    ):
        """Initialize the logger.

        Args:
            command: The command name (e.g., 'start', 'stop') for log filename.
            logs_dir: Directory to store log files.
            console: Optional Rich console instance.
            verbose: Also show library debug logging on the console.
        """
        self.command = command
        self.logs_dir = Path(logs_dir)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

        # Create log file
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = self.logs_dir / f"{command}_{timestamp}.log"
        self._file_handle = open(self.log_file, "w", encoding="utf-8")
        self._lock = threading.Lock()

        # Rich console for terminal output
        self.console = console or Console(theme=THEME)
        self.verbose = verbose
        self._handlers: list[logging.Handler] = []

    def _write_to_file(self, level: str, message: str) -> None:
        """Write a log entry to the file."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with self._lock:
            if self._file_handle.closed:
                return
            self._file_handle.write(f"[{timestamp}] {level}: {message}\n")
            self._file_handle.flush()

    def configure_logging(self) -> None:
        """Route module loggers to the log file, and to the console when verbose."""
        root = logging.getLogger()
        root.setLevel(logging.DEBUG)

        file_handler = logging.FileHandler(self.log_file.with_suffix(".debug.log"), encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)
        self._handlers.append(file_handler)

        if self.verbose:
            console_handler = RichHandler(console=self.console, show_path=False)
            console_handler.setLevel(logging.DEBUG)
            root.addHandler(console_handler)
            self._handlers.append(console_handler)

    def _emit(self, level: str, message: str, **kwargs: Any) -> None:
        style, mark = LEVEL_MARKS[level]
        self.console.print(f"[{style}]{mark}[/{style}] {message}", **kwargs)
        self._write_to_file(level, message)

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit("INFO", message, **kwargs)

    def success(self, message: str, **kwargs: Any) -> None:
        self._emit("SUCCESS", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit("ERROR", message, **kwargs)

    def step(self, message: str, **kwargs: Any) -> None:
        """Log a pipeline or lifecycle step."""
        self._emit("STEP", message, **kwargs)

    def debug(self, message: str) -> None:
        """Log to the file only (and the console when verbose)."""
        if self.verbose:
            self.console.print(f"[dim]│ {message}[/dim]")
        self._write_to_file("DEBUG", message)

    def summary(self, title: str, rows: dict[str, str], style: str = "green") -> None:
        """Print a bordered two-column panel and log it as one line."""
        grid = Table.grid(padding=(0, 2))
        grid.add_column(style="bold")
        grid.add_column()
        for label, value in rows.items():
            grid.add_row(label, value)
        self.console.print(Panel(grid, title=f"[bold]{title}[/bold]", border_style=style, expand=False))
        self._write_to_file("SUMMARY", f"{title}: " + ", ".join(f"{k}={v}" for k, v in rows.items()))

    def close(self) -> None:
        """Close the log file and detach the handlers added by configure_logging."""
        root = logging.getLogger()
        for handler in self._handlers:
            root.removeHandler(handler)
            handler.close()
        self._handlers.clear()
        with self._lock:
            if self._file_handle:
                self._file_handle.close()

    def __enter__(self) -> "SessionLogger":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

