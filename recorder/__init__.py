"""Recording session module.

This module provides:
- StateStore: Crash-safe session state shared across invocations
- CaptureLauncher: Build and spawn the platform capture commands
- RecordingInfo / RecordingMetadata: The recording folder and its recording.json

The supervisor lives in recorder.supervisor; it drives the post-processing
pipeline, which itself depends on this package's errors and models.
"""

from .capture import CaptureLauncher, terminate_processes
from .errors import (
    AlreadyRecording,
    CaptureSpawnFailure,
    NotRecording,
    ScreencasterError,
    StaleSessionDetected,
)
from .metadata import RecordingInfo, RecordingInfoStatus, RecordingMetadata
from .models import (
    CaptureKind,
    CaptureProcess,
    CaptureSource,
    Liveness,
    RecordingOptions,
    RecordingSession,
    RecordingStatus,
    SessionState,
)
from .state import StateStore, is_process_alive

__all__ = [
    "StateStore",
    "is_process_alive",
    "CaptureLauncher",
    "terminate_processes",
    "RecordingInfo",
    "RecordingInfoStatus",
    "RecordingMetadata",
    "CaptureKind",
    "CaptureProcess",
    "CaptureSource",
    "Liveness",
    "RecordingOptions",
    "RecordingSession",
    "RecordingStatus",
    "SessionState",
    "ScreencasterError",
    "AlreadyRecording",
    "CaptureSpawnFailure",
    "NotRecording",
    "StaleSessionDetected",
]
