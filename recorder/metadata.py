"""Recording folder naming and the recording.json document."""

import json
import logging
import platform
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from .models import RecordingOptions

if TYPE_CHECKING:
    from utils.logger import SessionLogger

_module_logger = logging.getLogger(__name__)

RECORDING_INFO_FILE = "recording.json"

_FOLDER_NUMBER_RE = re.compile(r"^(\d{3,})-")
_MAX_SLUG_LENGTH = 50


def sanitize_for_filename(text: str) -> str:
    """Lowercase a title and reduce it to [a-z0-9-_] for use in a folder name."""
    text = text.lower().replace(" ", "-")
    text = re.sub(r"[^a-z0-9\-_]", "", text)
    text = re.sub(r"-+", "-", text).strip("-")
    return text[:_MAX_SLUG_LENGTH]


def next_recording_number(videos_dir: Path) -> int:
    """Next free recording number, one past the highest NNN- folder prefix."""
    videos_dir = Path(videos_dir)
    if not videos_dir.is_dir():
        return 1
    numbers = [
        int(match.group(1))
        for entry in videos_dir.iterdir()
        if entry.is_dir() and (match := _FOLDER_NUMBER_RE.match(entry.name))
    ]
    return max(numbers, default=0) + 1


@dataclass
class RecordingMetadata:
    """User-provided metadata for a recording (only used for naming)."""

    number: int
    title: str = ""
    topic: str = ""
    presenter: str = ""

    @property
    def folder_name(self) -> str:
        """Folder name in the form NNN-sanitized-title."""
        slug = sanitize_for_filename(self.title) or "recording"
        return f"{self.number:03d}-{slug}"

    @classmethod
    def from_options(cls, options: RecordingOptions, videos_dir: Path) -> "RecordingMetadata":
        number = options.number if options.number is not None else next_recording_number(videos_dir)
        return cls(
            number=number,
            title=options.title,
            topic=options.topic,
            presenter=options.presenter,
        )

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "title": self.title,
            "topic": self.topic,
            "presenter": self.presenter,
            "folder_name": self.folder_name,
        }


class RecordingInfoStatus(StrEnum):
    RECORDING = "recording"
    PAUSED = "paused"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RecordingInfo:
    """Everything known about one recording, saved as recording.json in its folder."""

    folder: Path
    metadata: RecordingMetadata
    status: RecordingInfoStatus = RecordingInfoStatus.RECORDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    monitor: str = ""
    hostname: str = field(default_factory=platform.node)
    settings: dict = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    processing: dict = field(default_factory=dict)

    @property
    def duration(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to serializable dictionary."""
        return {
            "folder": str(self.folder),
            "metadata": self.metadata.to_dict(),
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration,
            "monitor": self.monitor,
            "hostname": self.hostname,
            "settings": self.settings,
            "files": self.files,
            "processing": self.processing,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecordingInfo":
        """Create from dictionary."""
        meta = data.get("metadata", {})
        start_time = data.get("start_time")
        end_time = data.get("end_time")
        return cls(
            folder=Path(data["folder"]),
            metadata=RecordingMetadata(
                number=meta.get("number", 0),
                title=meta.get("title", ""),
                topic=meta.get("topic", ""),
                presenter=meta.get("presenter", ""),
            ),
            status=RecordingInfoStatus(data.get("status", "recording")),
            start_time=datetime.fromisoformat(start_time) if start_time else None,
            end_time=datetime.fromisoformat(end_time) if end_time else None,
            monitor=data.get("monitor", ""),
            hostname=data.get("hostname", ""),
            settings=data.get("settings", {}),
            files=data.get("files", {}),
            processing=data.get("processing", {}),
        )

    def save(self, logger: "SessionLogger | None" = None) -> Path:
        """Save recording info to recording.json in the recording folder."""
        self.folder.mkdir(parents=True, exist_ok=True)
        info_path = self.folder / RECORDING_INFO_FILE
        with open(info_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        if logger:
            logger.debug(f"Recording info saved: {info_path}")
        return info_path

    @classmethod
    def load(cls, folder: Path) -> "RecordingInfo | None":
        """Load recording info from a folder, or None when there is none."""
        info_path = Path(folder) / RECORDING_INFO_FILE
        if not info_path.exists():
            return None
        try:
            with open(info_path) as f:
                return cls.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            _module_logger.warning(f"Ignoring unreadable {info_path}: {e}")
            return None
