"""State of one post-processing run and of each of its stages."""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from .errors import StageFailure

if TYPE_CHECKING:
    from .stages import PipelineContext


class StageStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.COMPLETE, StageStatus.FAILED, StageStatus.SKIPPED)


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class InvalidTransition(RuntimeError):
    """A stage was moved against its state machine."""


@dataclass
class StageRecord:
    """Pending -> Running -> Complete | Failed | Skipped.

    While Running, progress only moves forward. None means indeterminate.
    """

    name: str
    status: StageStatus = StageStatus.PENDING
    progress: float | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    reason: str | None = None

    def start(self) -> None:
        if self.status is not StageStatus.PENDING:
            raise InvalidTransition(f"{self.name}: cannot start from {self.status}")
        self.status = StageStatus.RUNNING
        self.started_at = datetime.now()

    def update_progress(self, percent: float) -> bool:
        """Record progress; returns False when the update would move backwards."""
        if self.status is not StageStatus.RUNNING:
            raise InvalidTransition(f"{self.name}: progress while {self.status}")
        percent = max(0.0, min(100.0, percent))
        if self.progress is not None and percent < self.progress:
            return False
        self.progress = percent
        return True

    def finish(self, status: StageStatus, error: str | None = None, reason: str | None = None) -> None:
        if self.status is not StageStatus.RUNNING:
            raise InvalidTransition(f"{self.name}: cannot finish from {self.status}")
        if not status.terminal:
            raise InvalidTransition(f"{self.name}: {status} is not a terminal status")
        self.status = status
        self.finished_at = datetime.now()
        self.error = error
        self.reason = reason
        if status in (StageStatus.COMPLETE, StageStatus.SKIPPED):
            self.progress = 100.0

    @property
    def duration(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "reason": self.reason,
        }


@dataclass
class PipelineRun:
    """One execution of the post-processing stages."""

    stages: list[StageRecord]
    current_index: int = -1  # -1 until the first stage starts; only moves forward
    status: RunStatus = RunStatus.PENDING
    overall_error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    context: "PipelineContext | None" = None
    failure: StageFailure | None = None  # the fatal failure, if any
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def for_stages(cls, names: list[str]) -> "PipelineRun":
        return cls(stages=[StageRecord(name=name) for name in names])

    def advance_to(self, index: int) -> StageRecord:
        if index <= self.current_index:
            raise InvalidTransition(f"Stage index cannot move back from {self.current_index} to {index}")
        self.current_index = index
        return self.stages[index]

    @property
    def current(self) -> StageRecord | None:
        if 0 <= self.current_index < len(self.stages):
            return self.stages[self.current_index]
        return None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def finish(self, status: RunStatus, error: str | None = None) -> None:
        """Record the outcome. Waiters are only released by mark_done()."""
        self.status = status
        self.overall_error = error
        self.finished_at = datetime.now()

    def mark_done(self) -> None:
        self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the run finishes; returns False on timeout."""
        return self._done.wait(timeout)

    @property
    def failed_stages(self) -> list[StageRecord]:
        return [s for s in self.stages if s.status is StageStatus.FAILED]

    def summary(self) -> dict:
        """Processing summary stored in recording.json."""
        ctx = self.context
        return {
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stages": [s.to_dict() for s in self.stages],
            "errors": [f"{s.name}: {s.error}" for s in self.failed_stages],
            "merged_file": str(ctx.merged_path) if ctx and ctx.merged_path else None,
            "vertical_file": str(ctx.vertical_path) if ctx and ctx.vertical_path else None,
            "normalize_applied": bool(ctx and ctx.normalize_applied),
        }
