"""The post-processing stages.

Every stage takes the context produced so far and returns one of three
outcomes. A stage never mutates the context it was given; when it fails
non-fatally the run simply continues with the previous context, which is
how a failed denoise falls back to the original audio.

    #  stage                  fatal
    1  Stop capture           always
    2  Denoise audio          never
    3  Analyze audio levels   never
    4  Normalize audio        only when there is no video
    5  Merge video & audio    always
    6  Vertical composite     never
"""

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from .ffmpeg import ProgressCallback
from .media import LoudnormStats, MediaToolkit

_module_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineContext:
    """Files and facts handed from one stage to the next."""

    output_dir: Path
    video_path: Path | None = None
    audio_path: Path | None = None
    webcam_path: Path | None = None
    processed_audio: Path | None = None
    loudness: LoudnormStats | None = None
    normalize_applied: bool = False
    merged_path: Path | None = None
    vertical_path: Path | None = None
    create_vertical: bool = True
    title: str = ""
    warnings: tuple[str, ...] = ()

    def replace(self, **changes) -> "PipelineContext":
        return dataclasses.replace(self, **changes)

    def warn(self, message: str) -> "PipelineContext":
        return self.replace(warnings=(*self.warnings, message))

    @property
    def primary_video(self) -> Path | None:
        """The video to merge: the screen capture, or the webcam without one."""
        return self.video_path or self.webcam_path

    @property
    def current_audio(self) -> Path | None:
        """Latest audio: processed if a stage produced one, otherwise the capture."""
        return self.processed_audio or self.audio_path

    @property
    def has_audio(self) -> bool:
        return self.audio_path is not None and self.audio_path.exists()


@dataclass(frozen=True)
class Complete:
    context: PipelineContext


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class Failed:
    error: str
    fatal: bool


StageOutcome = Union[Complete, Skipped, Failed]


class Stage:
    """One unit of post-processing."""

    name: str = "Stage"
    fatal: bool = False

    def is_fatal(self, ctx: PipelineContext) -> bool:
        """Whether a failure of this stage halts the run, given the context."""
        return self.fatal

    def run(self, ctx: PipelineContext, progress: ProgressCallback) -> StageOutcome:
        raise NotImplementedError


StopCapture = Callable[[PipelineContext], PipelineContext]


class StopCaptureStage(Stage):
    """Stop every capture and gather the finished capture files."""

    name = "Stop capture"
    fatal = True

    def __init__(self, stop_capture: StopCapture | None = None):
        """Initialize the stage.

        Args:
            stop_capture: Terminates the captures and returns the context with
                final capture paths. None when processing existing files.
        """
        self.stop_capture = stop_capture

    def run(self, ctx: PipelineContext, progress: ProgressCallback) -> StageOutcome:
        if self.stop_capture is not None:
            ctx = self.stop_capture(ctx)

        # Keep only captures that actually produced a file
        found = {}
        for field_name in ("video_path", "audio_path", "webcam_path"):
            path = getattr(ctx, field_name)
            if path is not None and not path.exists():
                _module_logger.warning(f"Capture file missing: {path}")
                ctx = ctx.warn(f"Capture file missing: {path.name}")
                path = None
            found[field_name] = path

        if not any(found.values()):
            return Failed("No capture files were produced", fatal=True)
        return Complete(ctx.replace(**found))


class DenoiseStage(Stage):
    name = "Denoise audio"

    def __init__(self, media: MediaToolkit):
        self.media = media

    def run(self, ctx: PipelineContext, progress: ProgressCallback) -> StageOutcome:
        if not ctx.has_audio:
            return Skipped("no audio recorded")
        if not self.media.audio_config.denoise_enabled:
            return Skipped("denoise disabled")
        output = ctx.output_dir / "audio-denoised.wav"
        self.media.denoise(ctx.current_audio, output, on_progress=progress)
        return Complete(ctx.replace(processed_audio=output))


class AnalyzeLevelsStage(Stage):
    name = "Analyze audio levels"

    def __init__(self, media: MediaToolkit):
        self.media = media

    def run(self, ctx: PipelineContext, progress: ProgressCallback) -> StageOutcome:
        if not ctx.has_audio:
            return Skipped("no audio recorded")
        if not self.media.audio_config.normalize_enabled:
            return Skipped("normalization disabled")
        stats = self.media.analyze_loudness(ctx.current_audio, on_progress=progress)
        return Complete(ctx.replace(loudness=stats))


class NormalizeStage(Stage):
    """Loudness normalization.

    Two-pass when levels were measured, single-pass towards the default
    target otherwise. A failure keeps the un-normalized audio; it only halts
    the run when there is no video, since the audio is then the whole output.
    """

    name = "Normalize audio"

    def __init__(self, media: MediaToolkit):
        self.media = media

    def is_fatal(self, ctx: PipelineContext) -> bool:
        return ctx.primary_video is None

    def run(self, ctx: PipelineContext, progress: ProgressCallback) -> StageOutcome:
        if not ctx.has_audio:
            return Skipped("no audio recorded")
        if not self.media.audio_config.normalize_enabled:
            return Skipped("normalization disabled")
        if ctx.loudness is None:
            _module_logger.info("No measured levels, normalizing towards the default target")
        output = ctx.output_dir / "audio-normalized.wav"
        self.media.normalize(ctx.current_audio, output, ctx.loudness, on_progress=progress)
        return Complete(ctx.replace(processed_audio=output, normalize_applied=True))


class MergeStage(Stage):
    name = "Merge video & audio"
    fatal = True

    def __init__(self, media: MediaToolkit):
        self.media = media

    def run(self, ctx: PipelineContext, progress: ProgressCallback) -> StageOutcome:
        video = ctx.primary_video
        if video is None:
            return Failed("No video recorded to merge", fatal=True)

        audio = ctx.current_audio if ctx.has_audio else None
        if audio is None:
            _module_logger.warning("No audio recorded, producing video-only output")
            ctx = ctx.warn("No audio recorded; merged output has no sound")

        output = ctx.output_dir / "merged.mp4"
        self.media.merge(video, audio, output, on_progress=progress)
        return Complete(ctx.replace(merged_path=output))


class VerticalCompositeStage(Stage):
    name = "Vertical composite"

    def __init__(self, media: MediaToolkit):
        self.media = media

    def run(self, ctx: PipelineContext, progress: ProgressCallback) -> StageOutcome:
        if not ctx.create_vertical:
            return Skipped("vertical video not requested")
        if ctx.video_path is None or ctx.webcam_path is None:
            return Skipped("needs both screen and webcam")
        audio = ctx.current_audio if ctx.has_audio else None
        output = ctx.output_dir / "vertical.mp4"
        self.media.vertical(ctx.video_path, ctx.webcam_path, audio, output, title=ctx.title, on_progress=progress)
        return Complete(ctx.replace(vertical_path=output))


def default_stages(media: MediaToolkit, stop_capture: StopCapture | None = None) -> list[Stage]:
    """The six post-processing stages in order."""
    return [
        StopCaptureStage(stop_capture),
        DenoiseStage(media),
        AnalyzeLevelsStage(media),
        NormalizeStage(media),
        MergeStage(media),
        VerticalCompositeStage(media),
    ]
