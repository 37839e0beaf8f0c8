"""Time tracking utilities."""

import time
from typing import Any


def format_duration(seconds: float) -> str:
    """Format seconds as 42.0s, 3m 07s or 1h 02m 05s."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins:02d}m {secs:02d}s"


def format_clock(seconds: float) -> str:
    """Format seconds as an HH:MM:SS recording clock."""
    hours, rest = divmod(int(max(0.0, seconds)), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class Timer:
    """Context manager for timing operations."""

    def __init__(self, name: str = "Operation"):
        self.name = name
        self.start_time: float | None = None
        self.end_time: float | None = None

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()

    @property
    def elapsed(self) -> float:
        """Elapsed time in seconds."""
        if self.start_time is None:
            return 0.0
        end = self.end_time or time.monotonic()
        return end - self.start_time

    @property
    def elapsed_str(self) -> str:
        return format_duration(self.elapsed)

    def start(self) -> None:
        self.start_time = time.monotonic()
        self.end_time = None

    def stop(self) -> float:
        """Stop the timer and return elapsed time."""
        self.end_time = time.monotonic()
        return self.elapsed
