"""Errors raised by the recording session supervisor."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import CaptureKind, RecordingSession


class ScreencasterError(Exception):
    """Base class for all recording and processing errors."""


class AlreadyRecording(ScreencasterError):
    """A live session exists; the caller must stop it first."""

    def __init__(self, message: str = "Recording already in progress"):
        super().__init__(message)


class NotRecording(ScreencasterError):
    """An operation needed a session but none is in the required state."""


class CaptureSpawnFailure(ScreencasterError):
    """Capture sources could not be started.

    Raised only when a required source or every requested source failed.
    """

    def __init__(self, failures: "dict[CaptureKind, str]"):
        self.failures = failures
        if not failures:
            super().__init__("No capture sources enabled")
            return
        details = "; ".join(f"{kind.value}: {reason}" for kind, reason in failures.items())
        super().__init__(f"Failed to start capture ({details})")


class StaleSessionDetected(ScreencasterError):
    """Persisted state claims a recording but no live process backs it."""

    def __init__(self, session: "RecordingSession"):
        self.session = session
        files = ", ".join(str(p) for p in session.capture_paths) or "none"
        super().__init__(
            f"Found a stale recording session (recoverable files: {files}). "
            "Run 'recover' to process it or 'discard' to clear it."
        )
