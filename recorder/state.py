"""Filesystem-backed session state shared by every invocation on the host.

One fact per file: any process (including a crash-recovery path) can test for
a recording in progress with a single existence check, without parsing.
Reads never trust the files alone; every capture PID is cross-checked
against the live process table.
"""

import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import psutil

from config import get_config

from .models import (
    CaptureKind,
    CaptureProcess,
    Liveness,
    RecordingSession,
    SessionState,
)

_module_logger = logging.getLogger(__name__)

STATE_PREFIX = "screencaster"

# A live process created this long after its PID record was written is a
# different process that reused the PID.
PID_REUSE_TOLERANCE = 2.0

LivenessCheck = Callable[[int, float | None], bool]


def is_process_alive(pid: int, recorded_at: float | None = None) -> bool:
    """Check whether a PID belongs to a running (non-zombie) process.

    Args:
        pid: Process ID to check.
        recorded_at: When the PID was recorded (epoch seconds). A process
            created after this point is treated as a reused PID.
    """
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        if recorded_at is not None and proc.create_time() > recorded_at + PID_REUSE_TOLERANCE:
            return False
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True
    return True


class StateStore:
    """Persistence of the recording session at fixed, well-known paths."""

    def __init__(
        self,
        state_dir: Path | str | None = None,
        is_alive: LivenessCheck = is_process_alive,
    ):
        """Initialize the store.

        Args:
            state_dir: Directory holding the state files (default from config).
            is_alive: Liveness check used to reconcile recorded PIDs.
        """
        self.state_dir = Path(state_dir or get_config().state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._is_alive = is_alive

    # ------------------------------------------------------------------
    # Well-known paths
    # ------------------------------------------------------------------

    def pid_file(self, kind: CaptureKind) -> Path:
        return self.state_dir / f"{STATE_PREFIX}-{kind.file_key}.pid"

    def path_file(self, kind: CaptureKind) -> Path:
        return self.state_dir / f"{STATE_PREFIX}-{kind.file_key}.path"

    @property
    def status_file(self) -> Path:
        return self.state_dir / f"{STATE_PREFIX}.status"

    @property
    def stop_file(self) -> Path:
        return self.state_dir / f"{STATE_PREFIX}.stop"

    @property
    def monitor_file(self) -> Path:
        return self.state_dir / f"{STATE_PREFIX}.monitor"

    @property
    def output_dir_file(self) -> Path:
        return self.state_dir / f"{STATE_PREFIX}.outdir"

    @property
    def part_file(self) -> Path:
        return self.state_dir / f"{STATE_PREFIX}.part"

    @property
    def paused_file(self) -> Path:
        return self.state_dir / f"{STATE_PREFIX}.paused"

    @property
    def processing_file(self) -> Path:
        return self.state_dir / f"{STATE_PREFIX}.processing"

    # ------------------------------------------------------------------
    # Low-level file access
    # ------------------------------------------------------------------

    def _write(self, path: Path, text: str) -> None:
        """Write a fact atomically so readers never see a half-written file."""
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(tmp_path, path)

    def _read(self, path: Path) -> str | None:
        try:
            text = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return text or None

    def _read_int(self, path: Path) -> int:
        text = self._read(path)
        if text is None:
            return 0
        try:
            return int(text)
        except ValueError:
            _module_logger.warning(f"Ignoring malformed state file {path}: {text!r}")
            return 0

    def _remove(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def _mtime(self, path: Path) -> float | None:
        try:
            return path.stat().st_mtime
        except FileNotFoundError:
            return None

    # ------------------------------------------------------------------
    # Per-fact writers
    # ------------------------------------------------------------------

    def write_capture(self, kind: CaptureKind, pid: int, output_path: Path) -> None:
        """Record a capture's output path and PID (path first)."""
        self._write(self.path_file(kind), str(Path(output_path).absolute()))
        self._write(self.pid_file(kind), str(pid))

    def write_path(self, kind: CaptureKind, output_path: Path) -> None:
        self._write(self.path_file(kind), str(Path(output_path).absolute()))

    def remove_pid(self, kind: CaptureKind) -> None:
        self._remove(self.pid_file(kind))

    def remove_capture(self, kind: CaptureKind) -> None:
        """Forget a capture entirely (PID and path)."""
        self._remove(self.pid_file(kind))
        self._remove(self.path_file(kind))

    def write_marker(self, started_at: datetime) -> None:
        """Write the active-session marker.

        Raises:
            ValueError: If no capture path has been recorded yet.
        """
        if not any(self.path_file(kind).exists() for kind in CaptureKind):
            raise ValueError("Refusing to mark a session active without capture paths")
        self._write(self.status_file, started_at.isoformat())

    def write_monitor(self, monitor: str) -> None:
        self._write(self.monitor_file, monitor)

    def write_output_dir(self, output_dir: Path) -> None:
        self._write(self.output_dir_file, str(Path(output_dir).absolute()))

    def read_output_dir(self) -> Path | None:
        text = self._read(self.output_dir_file)
        return Path(text) if text else None

    def write_part(self, part: int) -> None:
        self._write(self.part_file, str(part))

    def read_part(self) -> int:
        return self._read_int(self.part_file)

    def mark_paused(self) -> None:
        self._write(self.paused_file, "paused")

    def clear_paused(self) -> None:
        self._remove(self.paused_file)

    def is_paused(self) -> bool:
        return self.paused_file.exists()

    def mark_processing(self, pid: int | None = None) -> None:
        """Record which invocation is post-processing the session."""
        self._write(self.processing_file, str(pid or os.getpid()))

    def clear_processing(self) -> None:
        self._remove(self.processing_file)

    # ------------------------------------------------------------------
    # Cross-process stop request
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask whichever invocation owns the captures to stop them."""
        self._write(self.stop_file, datetime.now().astimezone().isoformat())

    def stop_requested(self) -> bool:
        return self.stop_file.exists()

    def clear_stop_request(self) -> None:
        self._remove(self.stop_file)

    # ------------------------------------------------------------------
    # Session-level contract
    # ------------------------------------------------------------------

    def write(self, session: RecordingSession) -> None:
        """Persist a whole session.

        Capture paths and PIDs are written before the active marker, so a
        reader never observes an active session without capture paths.
        """
        if session.output_dir is not None:
            self.write_output_dir(session.output_dir)
        if session.monitor_id:
            self.write_monitor(session.monitor_id)
        self.write_part(session.part)

        for kind in CaptureKind:
            path = session.path_for(kind)
            if path is None:
                continue
            capture = session.captures.get(kind)
            if capture is not None and capture.pid > 0:
                self.write_capture(kind, capture.pid, path)
            else:
                self.write_path(kind, path)

        if session.state is SessionState.PAUSED:
            self.mark_paused()
        if session.state is SessionState.PROCESSING:
            self.mark_processing(session.processing_pid)
        if session.started_at is not None:
            self.write_marker(session.started_at)

    def read(self) -> RecordingSession | None:
        """Read and reconcile the persisted session.

        Returns:
            None when nothing is recorded. Otherwise a session whose state
            reflects actual process liveness; a session the files claim but
            no live process backs comes back as SessionState.STALE.
        """
        captures: dict[CaptureKind, CaptureProcess] = {}
        paths: dict[CaptureKind, Path] = {}

        for kind in CaptureKind:
            path_text = self._read(self.path_file(kind))
            if path_text:
                paths[kind] = Path(path_text)

            pid = self._read_int(self.pid_file(kind))
            if pid > 0:
                alive = self._is_alive(pid, self._mtime(self.pid_file(kind)))
                captures[kind] = CaptureProcess(
                    kind=kind,
                    pid=pid,
                    output_path=paths.get(kind),
                    liveness=Liveness.ALIVE if alive else Liveness.DEAD,
                )

        marker = self._read(self.status_file)
        paused = self.is_paused()
        processing_pid = self._read_int(self.processing_file)

        if not (marker or paths or captures or paused or processing_pid):
            return None

        started_at = None
        if marker:
            try:
                started_at = datetime.fromisoformat(marker)
            except ValueError:
                _module_logger.warning(f"Ignoring malformed status marker: {marker!r}")

        any_live = any(c.is_alive for c in captures.values())
        if processing_pid and self._is_alive(processing_pid, self._mtime(self.processing_file)):
            state = SessionState.PROCESSING
        elif paused and not any_live:
            state = SessionState.PAUSED
        elif any_live:
            state = SessionState.ACTIVE if marker else SessionState.STARTING
        else:
            state = SessionState.STALE

        return RecordingSession(
            state=state,
            started_at=started_at,
            monitor_id=self._read(self.monitor_file) or "",
            video_path=paths.get(CaptureKind.SCREEN),
            audio_path=paths.get(CaptureKind.AUDIO),
            webcam_path=paths.get(CaptureKind.WEBCAM),
            output_dir=self.read_output_dir(),
            part=self.read_part(),
            captures=captures,
            processing_pid=processing_pid or None,
        )

    def clear(self) -> None:
        """Remove every record, the active marker first."""
        self._remove(self.status_file)
        self._remove(self.paused_file)
        for kind in CaptureKind:
            self.remove_capture(kind)
        for path in (
            self.monitor_file,
            self.output_dir_file,
            self.part_file,
            self.processing_file,
            self.stop_file,
        ):
            self._remove(path)
