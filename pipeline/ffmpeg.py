"""Thin wrapper over the ffmpeg and ffprobe executables.

ffmpeg is run with ``-progress pipe:1 -nostats`` so that progress arrives on
stdout as key=value lines, while stderr (which also carries filter output
such as loudnorm's JSON block) is collected on a reader thread.
"""

import json
import logging
import shutil
import subprocess
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from config import get_config

from .errors import ToolError, ToolTimeout

if TYPE_CHECKING:
    from utils.logger import SessionLogger

_module_logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

_PROGRESS_TIME_KEYS = ("out_time_us", "out_time_ms")  # both are microseconds


def parse_progress_line(line: str, duration_us: int) -> float | None:
    """Turn one ``-progress`` line into a percentage.

    Returns:
        Percentage in [0, 100], or None for lines that carry no position
        (other keys, N/A values, unknown duration).
    """
    key, sep, value = line.strip().partition("=")
    if not sep or key not in _PROGRESS_TIME_KEYS or duration_us <= 0:
        return None
    try:
        out_time_us = int(value)
    except ValueError:
        # N/A before the first frame is written
        return None
    if out_time_us < 0:
        return None
    return min(100.0, out_time_us / duration_us * 100.0)


class FFmpegRunner:
    """Runs ffmpeg/ffprobe with time limits and progress reporting."""

    def __init__(
        self,
        ffmpeg_bin: str | None = None,
        ffprobe_bin: str | None = None,
        timeout: float | None = None,
        logger: "SessionLogger | None" = None,
    ):
        """Initialize the runner.

        Args:
            ffmpeg_bin: ffmpeg executable (default from config).
            ffprobe_bin: ffprobe executable (default from config).
            timeout: Default limit in seconds for one invocation.
            logger: Optional SessionLogger for styled output.
        """
        config = get_config()
        self.ffmpeg_bin = ffmpeg_bin or config.ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin or config.ffprobe_bin
        self.timeout = timeout if timeout is not None else config.stage_timeout
        self.logger = logger

    def check_available(self) -> None:
        """Verify ffmpeg and ffprobe can be found.

        Raises:
            ToolError: If either executable is missing.
        """
        for tool in (self.ffmpeg_bin, self.ffprobe_bin):
            if shutil.which(tool) is None:
                _module_logger.error(f"{tool} not found on system PATH")
                raise ToolError(
                    tool,
                    None,
                    f"{tool} not found. Please install ffmpeg:\n"
                    "  macOS: brew install ffmpeg\n"
                    "  Ubuntu: apt-get install ffmpeg\n",
                )

    def run(
        self,
        args: list[str],
        duration: float | None = None,
        on_progress: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run ffmpeg to completion.

        Args:
            args: Arguments after the executable (inputs, filters, output).
            duration: Expected output duration in seconds, for percentages.
            on_progress: Called with a percentage as ffmpeg reports position.
            timeout: Override the default time limit.

        Returns:
            ffmpeg's stderr output.

        Raises:
            ToolError: If ffmpeg cannot start or exits non-zero.
            ToolTimeout: If the time limit is exceeded.
        """
        timeout = timeout if timeout is not None else self.timeout
        cmd = [self.ffmpeg_bin, "-hide_banner", "-nostats", "-progress", "pipe:1", *args]
        _module_logger.debug(f"Running: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise ToolError(self.ffmpeg_bin, None, str(e)) from e

        stderr_lines: list[str] = []
        reader = threading.Thread(
            target=lambda: stderr_lines.extend(process.stderr),
            daemon=True,
        )
        reader.start()

        timed_out = threading.Event()

        def _kill() -> None:
            timed_out.set()
            process.kill()

        timer = threading.Timer(timeout, _kill) if timeout else None
        if timer:
            timer.daemon = True
            timer.start()

        duration_us = int(duration * 1_000_000) if duration else 0
        try:
            for line in process.stdout:
                if on_progress is None:
                    continue
                percent = parse_progress_line(line, duration_us)
                if percent is not None:
                    on_progress(percent)
            process.wait()
        finally:
            if timer:
                timer.cancel()
            if process.poll() is None:
                process.kill()
                process.wait()
            reader.join(timeout=5.0)

        output = "".join(stderr_lines)
        if timed_out.is_set():
            _module_logger.error(f"ffmpeg timed out after {timeout:.0f}s")
            raise ToolTimeout(self.ffmpeg_bin, timeout)
        if process.returncode != 0:
            _module_logger.error(f"ffmpeg failed with return code {process.returncode}")
            raise ToolError(self.ffmpeg_bin, process.returncode, output)
        return output

    def _probe(self, path: Path, entries: list[str]) -> dict:
        cmd = [self.ffprobe_bin, "-v", "error", *entries, "-of", "json", str(path)]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ToolError(self.ffprobe_bin, None, str(e)) from e
        if result.returncode != 0:
            _module_logger.error(f"ffprobe failed with return code {result.returncode}: {result.stderr}")
            raise ToolError(self.ffprobe_bin, result.returncode, result.stderr)
        return json.loads(result.stdout or "{}")

    def probe_duration(self, path: Path) -> float:
        """Get the duration of a media file in seconds."""
        data = self._probe(path, ["-show_entries", "format=duration"])
        try:
            return float(data["format"]["duration"])
        except (KeyError, TypeError, ValueError) as e:
            raise ToolError(self.ffprobe_bin, 0, f"no duration reported for {path}") from e

    def probe_dimensions(self, path: Path) -> tuple[int, int]:
        """Get the width and height of a video file's first video stream."""
        data = self._probe(path, ["-select_streams", "v:0", "-show_entries", "stream=width,height"])
        try:
            stream = data["streams"][0]
            return int(stream["width"]), int(stream["height"])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ToolError(self.ffprobe_bin, 0, f"no video stream in {path}") from e
