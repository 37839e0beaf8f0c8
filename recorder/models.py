"""Data models for recording sessions and capture processes."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path


class CaptureKind(StrEnum):
    """The three capture sources."""

    SCREEN = "screen"
    AUDIO = "audio"
    WEBCAM = "webcam"

    @property
    def file_key(self) -> str:
        """Key used in state file names (the screen capture is the 'video')."""
        return "video" if self is CaptureKind.SCREEN else self.value

    @property
    def extension(self) -> str:
        """File extension of the raw capture."""
        return ".wav" if self is CaptureKind.AUDIO else ".mp4"

    def part_filename(self, part: int) -> str:
        """Raw capture filename for a given part, e.g. screen_part000.mp4."""
        return f"{self.value}_part{part:03d}{self.extension}"


class Liveness(StrEnum):
    """Liveness of a recorded capture process."""

    ALIVE = "alive"
    DEAD = "dead"
    UNKNOWN = "unknown"


class SessionState(StrEnum):
    """Reconciled state of the persisted recording session."""

    ABSENT = "absent"
    STARTING = "starting"  # live captures, active marker not yet written
    ACTIVE = "active"
    PAUSED = "paused"
    PROCESSING = "processing"
    STALE = "stale"


@dataclass
class CaptureSource:
    """A capture source resolved at start time, before it is spawned."""

    kind: CaptureKind
    output_path: Path
    command: list[str]
    required: bool = False


@dataclass
class CaptureProcess:
    """One supervised capture subprocess."""

    kind: CaptureKind
    pid: int
    output_path: Path | None = None
    liveness: Liveness = Liveness.UNKNOWN

    @property
    def is_alive(self) -> bool:
        return self.liveness is Liveness.ALIVE


@dataclass
class RecordingOptions:
    """Options for starting a recording.

    The metadata fields (title, topic, presenter, number) only name the
    output folder; the pipeline never reads them.
    """

    monitor: str = ""
    record_screen: bool = True
    record_audio: bool = True
    record_webcam: bool = True
    required_sources: frozenset[CaptureKind] = frozenset()
    create_vertical: bool = True
    output_dir: Path | None = None
    audio_device: str = ""
    webcam_device: str = ""
    webcam_fps: int = 0
    webcam_resolution: str = ""
    hw_accel: bool = False

    # Recording metadata
    title: str = ""
    topic: str = ""
    presenter: str = ""
    number: int | None = None

    @property
    def enabled_sources(self) -> list[CaptureKind]:
        """Enabled capture sources in spawn order."""
        enabled = []
        if self.record_screen:
            enabled.append(CaptureKind.SCREEN)
        if self.record_audio:
            enabled.append(CaptureKind.AUDIO)
        if self.record_webcam:
            enabled.append(CaptureKind.WEBCAM)
        return enabled

    def to_dict(self) -> dict:
        """Convert to serializable dictionary (stored as recording settings)."""
        return {
            "monitor": self.monitor,
            "record_screen": self.record_screen,
            "record_audio": self.record_audio,
            "record_webcam": self.record_webcam,
            "required_sources": sorted(kind.value for kind in self.required_sources),
            "create_vertical": self.create_vertical,
            "output_dir": str(self.output_dir) if self.output_dir else None,
            "audio_device": self.audio_device,
            "webcam_device": self.webcam_device,
            "webcam_fps": self.webcam_fps,
            "webcam_resolution": self.webcam_resolution,
            "hw_accel": self.hw_accel,
            "title": self.title,
            "topic": self.topic,
            "presenter": self.presenter,
            "number": self.number,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecordingOptions":
        """Create from dictionary."""
        return cls(
            monitor=data.get("monitor", ""),
            record_screen=data.get("record_screen", True),
            record_audio=data.get("record_audio", True),
            record_webcam=data.get("record_webcam", True),
            required_sources=frozenset(CaptureKind(k) for k in data.get("required_sources", [])),
            create_vertical=data.get("create_vertical", True),
            output_dir=Path(data["output_dir"]) if data.get("output_dir") else None,
            audio_device=data.get("audio_device", ""),
            webcam_device=data.get("webcam_device", ""),
            webcam_fps=data.get("webcam_fps", 0),
            webcam_resolution=data.get("webcam_resolution", ""),
            hw_accel=data.get("hw_accel", False),
            title=data.get("title", ""),
            topic=data.get("topic", ""),
            presenter=data.get("presenter", ""),
            number=data.get("number"),
        )


@dataclass
class RecordingSession:
    """The single host-wide recording session, as reconciled from disk."""

    state: SessionState
    started_at: datetime | None = None
    monitor_id: str = ""
    video_path: Path | None = None
    audio_path: Path | None = None
    webcam_path: Path | None = None
    output_dir: Path | None = None
    part: int = 0
    captures: dict[CaptureKind, CaptureProcess] = field(default_factory=dict)
    processing_pid: int | None = None

    @property
    def active(self) -> bool:
        """True only for a marked session with at least one live capture."""
        return self.state is SessionState.ACTIVE

    @property
    def capture_paths(self) -> list[Path]:
        return [p for p in (self.video_path, self.audio_path, self.webcam_path) if p is not None]

    def path_for(self, kind: CaptureKind) -> Path | None:
        """Get the recorded output path for a capture kind."""
        return {
            CaptureKind.SCREEN: self.video_path,
            CaptureKind.AUDIO: self.audio_path,
            CaptureKind.WEBCAM: self.webcam_path,
        }[kind]

    def set_path(self, kind: CaptureKind, path: Path | None) -> None:
        """Set the output path for a capture kind."""
        if kind is CaptureKind.SCREEN:
            self.video_path = path
        elif kind is CaptureKind.AUDIO:
            self.audio_path = path
        else:
            self.webcam_path = path

    @property
    def live_captures(self) -> list[CaptureProcess]:
        return [c for c in self.captures.values() if c.is_alive]

    @property
    def recorded_kinds(self) -> list[CaptureKind]:
        """Capture kinds that have a recorded output path."""
        return [kind for kind in CaptureKind if self.path_for(kind) is not None]


@dataclass
class RecordingStatus:
    """Recording status polled by the presentation layer and the CLI."""

    is_recording: bool = False
    is_paused: bool = False
    is_processing: bool = False
    is_stale: bool = False
    start_time: datetime | None = None
    monitor: str = ""
    part: int = 0
    video_file: str = ""
    audio_file: str = ""
    webcam_file: str = ""
    video_pid: int = 0
    audio_pid: int = 0
    webcam_pid: int = 0
    recoverable_files: list[str] = field(default_factory=list)

    @classmethod
    def from_session(cls, session: RecordingSession | None) -> "RecordingStatus":
        """Build a status from a reconciled session."""
        if session is None:
            return cls()

        pids = {kind: proc.pid for kind, proc in session.captures.items()}
        status = cls(
            is_recording=session.active,
            is_paused=session.state is SessionState.PAUSED,
            is_processing=session.state is SessionState.PROCESSING,
            is_stale=session.state is SessionState.STALE,
            start_time=session.started_at,
            monitor=session.monitor_id,
            part=session.part,
            video_file=str(session.video_path or ""),
            audio_file=str(session.audio_path or ""),
            webcam_file=str(session.webcam_path or ""),
            video_pid=pids.get(CaptureKind.SCREEN, 0),
            audio_pid=pids.get(CaptureKind.AUDIO, 0),
            webcam_pid=pids.get(CaptureKind.WEBCAM, 0),
        )
        if status.is_stale:
            status.recoverable_files = [str(p) for p in session.capture_paths if p.exists()]
        return status

    @property
    def duration(self) -> float:
        """Seconds since the recording started (0 when idle)."""
        if self.start_time is None:
            return 0.0
        return (datetime.now(self.start_time.tzinfo) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to serializable dictionary."""
        return {
            "is_recording": self.is_recording,
            "is_paused": self.is_paused,
            "is_processing": self.is_processing,
            "is_stale": self.is_stale,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "monitor": self.monitor,
            "part": self.part,
            "video_file": self.video_file,
            "audio_file": self.audio_file,
            "webcam_file": self.webcam_file,
            "video_pid": self.video_pid,
            "audio_pid": self.audio_pid,
            "webcam_pid": self.webcam_pid,
            "recoverable_files": self.recoverable_files,
        }
