"""Capture subprocess commands, spawning and termination.

Each capture source runs as its own OS process in its own process group:
  screen  wl-screenrec (Wayland), ffmpeg x11grab / avfoundation / gdigrab
  audio   pw-record (PipeWire), ffmpeg avfoundation / dshow
  webcam  ffmpeg v4l2 / avfoundation / dshow

Captures are stopped the way an interactive user would stop them: SIGINT
(Ctrl+C) to the whole group so the tool finalizes its container, then
SIGKILL after a bounded grace period.
"""

import logging
import os
import re
import signal
import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import psutil

from config import Config, get_config

from .models import CaptureKind, CaptureSource, RecordingOptions

if TYPE_CHECKING:
    from utils.logger import SessionLogger

_module_logger = logging.getLogger(__name__)

# Monitor geometry as reported by xrandr: 1920x1080+0+0 (or +0,0)
_GEOMETRY_RE = re.compile(r"^(\d+)x(\d+)\+(\d+)[+,](\d+)$")
_DEFAULT_GEOMETRY = (1920, 1080, 0, 0)


def detect_display_server() -> str:
    """Detect the platform's screen capture backend.

    Returns:
        One of "wayland", "x11", "darwin", "windows".
    """
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform == "win32":
        return "windows"
    session_type = os.getenv("XDG_SESSION_TYPE", "").lower()
    if session_type == "x11" or (not os.getenv("WAYLAND_DISPLAY") and os.getenv("DISPLAY")):
        return "x11"
    # Wayland or unknown
    return "wayland"


def parse_geometry(monitor: str) -> tuple[int, int, int, int]:
    """Parse a WxH+X+Y monitor geometry, falling back to 1920x1080 at the origin."""
    match = _GEOMETRY_RE.match(monitor.strip())
    if not match:
        return _DEFAULT_GEOMETRY
    width, height, x, y = (int(g) for g in match.groups())
    return width, height, x, y


def detect_webcam_device() -> str:
    """Find the first V4L2 video device.

    Raises:
        FileNotFoundError: If no /dev/video* device exists.
    """
    devices = sorted(Path("/dev").glob("video*"))
    if not devices:
        raise FileNotFoundError("No webcam device found (/dev/video*)")
    return str(devices[0])


class CaptureLauncher:
    """Builds and spawns the platform capture command for each source."""

    def __init__(
        self,
        config: Config | None = None,
        display_server: str | None = None,
        logger: "SessionLogger | None" = None,
    ):
        """Initialize the launcher.

        Args:
            config: Application config (default: global config).
            display_server: Override the detected backend.
            logger: Optional SessionLogger for styled output.
        """
        self.config = config or get_config()
        self.display_server = display_server or detect_display_server()
        self.logger = logger

    def build_source(
        self,
        kind: CaptureKind,
        options: RecordingOptions,
        output_dir: Path,
        part: int = 0,
    ) -> CaptureSource:
        """Resolve what to spawn for one capture source."""
        output_path = Path(output_dir) / kind.part_filename(part)
        return CaptureSource(
            kind=kind,
            output_path=output_path,
            command=self.build_command(kind, options, output_path),
            required=kind in options.required_sources,
        )

    def build_command(
        self,
        kind: CaptureKind,
        options: RecordingOptions,
        output_path: Path,
    ) -> list[str]:
        """Build the capture command line for a source."""
        if kind is CaptureKind.SCREEN:
            return self._screen_command(options, output_path)
        if kind is CaptureKind.AUDIO:
            return self._audio_command(options, output_path)
        return self._webcam_command(options, output_path)

    def _screen_command(self, options: RecordingOptions, output_path: Path) -> list[str]:
        ffmpeg = self.config.ffmpeg_bin
        fps = str(self.config.screen_fps)
        encode = ["-c:v", "libx264", "-preset", "ultrafast", "-pix_fmt", "yuv420p", "-y", str(output_path)]

        if self.display_server == "wayland":
            cmd = ["wl-screenrec"]
            if not options.hw_accel:
                cmd.append("--no-hw")
            if options.monitor:
                cmd.append(f"--output={options.monitor}")
            cmd.extend([f"--filename={output_path}", "--encode-pixfmt", "yuv420p"])
            return cmd

        if self.display_server == "x11":
            width, height, x, y = parse_geometry(options.monitor)
            display = os.getenv("DISPLAY", ":0")
            return [
                ffmpeg,
                "-f", "x11grab",
                "-framerate", fps,
                "-video_size", f"{width}x{height}",
                "-i", f"{display}+{x},{y}",
                *encode,
            ]

        if self.display_server == "darwin":
            screen = options.monitor or "1"
            return [
                ffmpeg,
                "-f", "avfoundation",
                "-capture_cursor", "1",
                "-framerate", fps,
                "-i", f"{screen}:none",
                *encode,
            ]

        return [ffmpeg, "-f", "gdigrab", "-framerate", fps, "-i", "desktop", *encode]

    def _audio_command(self, options: RecordingOptions, output_path: Path) -> list[str]:
        device = options.audio_device or self.config.audio_device

        if self.display_server in ("wayland", "x11"):
            return ["pw-record", "--target", device, str(output_path)]

        ffmpeg = self.config.ffmpeg_bin
        if self.display_server == "darwin":
            source = ["-f", "avfoundation", "-i", f":{options.audio_device or 'default'}"]
        else:
            source = ["-f", "dshow", "-i", f"audio={device}"]
        return [ffmpeg, *source, "-acodec", "pcm_s16le", "-y", str(output_path)]

    def _webcam_command(self, options: RecordingOptions, output_path: Path) -> list[str]:
        ffmpeg = self.config.ffmpeg_bin
        fps = options.webcam_fps or self.config.webcam_fps
        resolution = options.webcam_resolution or self.config.webcam_resolution
        encode = [
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-tune", "zerolatency",
            "-crf", "18",
            "-pix_fmt", "yuv420p",
            "-g", str(fps * 2),  # keyframe every 2 seconds
            "-y", str(output_path),
        ]

        if self.display_server in ("wayland", "x11"):
            device = options.webcam_device or detect_webcam_device()
            return [
                ffmpeg,
                "-f", "v4l2",
                "-input_format", "mjpeg",
                "-framerate", str(fps),
                "-video_size", resolution,
                "-i", device,
                *encode,
            ]

        if self.display_server == "darwin":
            source = ["-f", "avfoundation", "-framerate", str(fps), "-i", f"{options.webcam_device or '0'}:none"]
        else:
            source = ["-f", "dshow", "-i", f"video={options.webcam_device}"]
        return [ffmpeg, *source, *encode]

    def spawn(self, source: CaptureSource) -> subprocess.Popen:
        """Start a capture process in its own process group.

        The tool's stderr goes to a .log file beside the capture.

        Raises:
            OSError: If the executable cannot be started.
        """
        source.output_path.parent.mkdir(parents=True, exist_ok=True)
        log_path = source.output_path.with_suffix(".log")

        _module_logger.debug(f"Spawning {source.kind.value} capture: {' '.join(source.command)}")
        with open(log_path, "ab") as log_file:
            process = subprocess.Popen(
                source.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=log_file,
                start_new_session=True,  # new process group, immune to the terminal's Ctrl+C
            )
        if self.logger:
            self.logger.info(f"Started {source.kind.value} capture (pid {process.pid})")
        return process


def _signal_group(proc: psutil.Process, sig: int) -> None:
    """Send a signal to a capture's process group, or to the process alone."""
    if sys.platform == "win32":
        if sig == signal.SIGINT:
            proc.terminate()
        else:
            proc.kill()
        return
    try:
        pgid = os.getpgid(proc.pid)
    except ProcessLookupError:
        return
    if pgid == proc.pid:
        os.killpg(pgid, sig)
    else:
        proc.send_signal(sig)


def terminate_processes(pids: list[int], grace_period: float) -> list[int]:
    """Stop capture processes: SIGINT, wait up to the grace period, then SIGKILL.

    Args:
        pids: Capture PIDs (dead or unknown PIDs are ignored).
        grace_period: Seconds to wait for a graceful exit.

    Returns:
        PIDs that had to be force-killed.
    """
    procs = []
    for pid in pids:
        try:
            proc = psutil.Process(pid)
            _signal_group(proc, signal.SIGINT)
            procs.append(proc)
        except (psutil.NoSuchProcess, ProcessLookupError):
            _module_logger.debug(f"Capture process {pid} already exited")
        except (psutil.AccessDenied, PermissionError):
            _module_logger.warning(f"Not allowed to signal capture process {pid}")

    if not procs:
        return []

    _, alive = psutil.wait_procs(procs, timeout=grace_period)
    killed = []
    for proc in alive:
        _module_logger.warning(f"Capture process {proc.pid} ignored SIGINT, sending SIGKILL")
        try:
            _signal_group(proc, signal.SIGKILL)
            killed.append(proc.pid)
        except (psutil.NoSuchProcess, ProcessLookupError):
            _module_logger.debug(f"Capture process {proc.pid} exited before SIGKILL")
        except (psutil.AccessDenied, PermissionError):
            _module_logger.warning(f"Not allowed to kill capture process {proc.pid}")
    if alive:
        psutil.wait_procs(alive, timeout=grace_period)
    return killed
