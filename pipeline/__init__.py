"""Post-processing pipeline for finished recordings.

This module provides:
- PostProcessingPipeline: Run the stages in order on a background thread
- ProgressBus: Non-blocking progress events for the presentation layer
- MediaToolkit / FFmpegRunner: The ffmpeg invocations behind each stage
"""

from .errors import StageFailure, StageTimeout, ToolError, ToolTimeout
from .ffmpeg import FFmpegRunner
from .media import LoudnormStats, MediaToolkit
from .progress import ProgressBus, RunFinished, StageFinished, StageProgress, StageStarted
from .run import PipelineRun, RunStatus, StageRecord, StageStatus
from .runner import PostProcessingPipeline
from .stages import Complete, Failed, PipelineContext, Skipped, Stage, default_stages

__all__ = [
    "PostProcessingPipeline",
    "PipelineRun",
    "RunStatus",
    "StageRecord",
    "StageStatus",
    "PipelineContext",
    "Stage",
    "Complete",
    "Skipped",
    "Failed",
    "default_stages",
    "ProgressBus",
    "StageStarted",
    "StageProgress",
    "StageFinished",
    "RunFinished",
    "MediaToolkit",
    "LoudnormStats",
    "FFmpegRunner",
    "StageFailure",
    "StageTimeout",
    "ToolError",
    "ToolTimeout",
]
