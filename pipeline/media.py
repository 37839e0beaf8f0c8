"""ffmpeg invocations for every media transformation the pipeline performs.

Layout of the vertical (9:16) composite, 1080x1920:
  screen scaled to full width at the top
  webcam centered in the space between the screen and the lower third
  a solid lower third from y=1280 carrying the optional title
"""

import json
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from config import AudioProcessingConfig, get_config

from .errors import ToolError
from .ffmpeg import FFmpegRunner, ProgressCallback

if TYPE_CHECKING:
    from utils.logger import SessionLogger

_module_logger = logging.getLogger(__name__)

VERTICAL_WIDTH = 1080
VERTICAL_HEIGHT = 1920
LOWER_THIRD_Y = VERTICAL_HEIGHT * 2 // 3  # 1280
LOWER_THIRD_COLOR = "white"
TITLE_COLOR = "black"

_JSON_BLOCK_RE = re.compile(r"\{[^{}]+\}")


@dataclass
class LoudnormStats:
    """Measured levels from a first-pass loudnorm analysis (ffmpeg reports strings)."""

    input_i: str
    input_tp: str
    input_lra: str
    input_thresh: str
    target_offset: str = "0.0"

    def to_dict(self) -> dict:
        return {
            "input_i": self.input_i,
            "input_tp": self.input_tp,
            "input_lra": self.input_lra,
            "input_thresh": self.input_thresh,
            "target_offset": self.target_offset,
        }


def parse_loudnorm_output(output: str) -> LoudnormStats:
    """Extract loudnorm stats from ffmpeg's stderr.

    The stats are the last JSON block in the output.

    Raises:
        ValueError: If no usable stats block is present.
    """
    blocks = _JSON_BLOCK_RE.findall(output)
    if not blocks:
        raise ValueError("No loudnorm stats found in ffmpeg output")
    try:
        data = json.loads(blocks[-1])
        return LoudnormStats(
            input_i=str(data["input_i"]),
            input_tp=str(data["input_tp"]),
            input_lra=str(data["input_lra"]),
            input_thresh=str(data["input_thresh"]),
            target_offset=str(data.get("target_offset", "0.0")),
        )
    except (json.JSONDecodeError, KeyError) as e:
        raise ValueError(f"Malformed loudnorm stats: {e}") from e


def escape_drawtext(text: str) -> str:
    """Escape text for ffmpeg's drawtext filter."""
    for char in ("\\", "'", ":", "%"):
        text = text.replace(char, "\\" + char)
    return text


def vertical_layout(
    screen_size: tuple[int, int],
    webcam_size: tuple[int, int],
) -> dict[str, int]:
    """Compute scaled sizes and offsets for the vertical composite.

    Dimensions are rounded down to even numbers, which libx264 requires.
    """
    screen_w, screen_h = screen_size
    webcam_w, webcam_h = webcam_size

    scaled_screen_h = screen_h * VERTICAL_WIDTH // screen_w // 2 * 2
    webcam_area_h = max(0, LOWER_THIRD_Y - scaled_screen_h)

    scaled_webcam_w = VERTICAL_WIDTH
    scaled_webcam_h = webcam_h * VERTICAL_WIDTH // webcam_w
    if scaled_webcam_h > webcam_area_h:
        scaled_webcam_h = webcam_area_h
        scaled_webcam_w = webcam_w * webcam_area_h // webcam_h

    scaled_webcam_w = max(2, scaled_webcam_w // 2 * 2)
    scaled_webcam_h = max(2, scaled_webcam_h // 2 * 2)

    return {
        "screen_w": VERTICAL_WIDTH,
        "screen_h": scaled_screen_h,
        "webcam_w": scaled_webcam_w,
        "webcam_h": scaled_webcam_h,
        "webcam_x": (VERTICAL_WIDTH - scaled_webcam_w) // 2,
        "webcam_y": scaled_screen_h,
    }


def build_vertical_filter(layout: dict[str, int], title: str = "") -> str:
    """Build the filter_complex graph for the vertical composite, ending in [outv]."""
    graph = (
        f"[0:v]scale={layout['screen_w']}:{layout['screen_h']}:flags=lanczos[screen];"
        f"[1:v]scale={layout['webcam_w']}:{layout['webcam_h']}:flags=lanczos[webcam];"
        f"color=black:size={VERTICAL_WIDTH}x{VERTICAL_HEIGHT}:duration=99999[bg];"
        f"[bg]drawbox=y={LOWER_THIRD_Y}:w={VERTICAL_WIDTH}:h={VERTICAL_HEIGHT - LOWER_THIRD_Y}"
        f":c={LOWER_THIRD_COLOR}:t=fill[canvas];"
        "[canvas][screen]overlay=(W-w)/2:0:shortest=1[with_screen];"
        f"[with_screen][webcam]overlay={layout['webcam_x']}:{layout['webcam_y']}[stacked]"
    )
    if title:
        graph += (
            f";[stacked]drawtext=text='{escape_drawtext(title)}':fontcolor={TITLE_COLOR}"
            f":fontsize=64:x=(w-text_w)/2:y={LOWER_THIRD_Y}+120[outv]"
        )
    else:
        graph += ";[stacked]null[outv]"
    return graph


class MediaToolkit:
    """Media transformations for the post-processing stages."""

    def __init__(
        self,
        runner: FFmpegRunner | None = None,
        audio_config: AudioProcessingConfig | None = None,
        logger: "SessionLogger | None" = None,
    ):
        """Initialize the toolkit.

        Args:
            runner: ffmpeg wrapper (default: one built from config).
            audio_config: Denoise and loudness settings (default from config).
            logger: Optional SessionLogger for styled output.
        """
        self.runner = runner or FFmpegRunner(logger=logger)
        self.audio_config = audio_config or get_config().audio
        self.logger = logger

    def _duration(self, path: Path) -> float | None:
        """Duration for progress reporting; None leaves progress indeterminate."""
        try:
            return self.runner.probe_duration(path)
        except ToolError as e:
            _module_logger.debug(f"Could not probe duration of {path}: {e}")
            return None

    def concat(self, parts: list[Path], output_path: Path) -> Path:
        """Join capture parts into one file.

        A single part is renamed into place; several are joined losslessly
        with the concat demuxer.

        Raises:
            FileNotFoundError: If none of the parts exist.
            ToolError: If ffmpeg fails.
        """
        existing = [p for p in parts if p.exists()]
        if not existing:
            raise FileNotFoundError(f"No capture parts found for {output_path.name}")
        if len(existing) == 1:
            shutil.move(existing[0], output_path)
            return output_path

        list_path = output_path.with_suffix(output_path.suffix + ".txt")
        with open(list_path, "w") as f:
            for part in existing:
                escaped = str(part.absolute()).replace("'", "'\\''")
                f.write(f"file '{escaped}'\n")
        try:
            self.runner.run(["-y", "-f", "concat", "-safe", "0", "-i", str(list_path), "-c", "copy", str(output_path)])
        finally:
            list_path.unlink(missing_ok=True)
        return output_path

    def denoise(self, input_path: Path, output_path: Path, on_progress: ProgressCallback | None = None) -> Path:
        """Remove low-frequency rumble and constant background noise."""
        cfg = self.audio_config
        audio_filter = f"highpass=f={cfg.highpass_freq},afftdn=nf={cfg.noise_floor}:tn={int(cfg.track_noise)}"
        self.runner.run(
            ["-y", "-i", str(input_path), "-af", audio_filter, "-c:a", "pcm_s16le", str(output_path)],
            duration=self._duration(input_path),
            on_progress=on_progress,
        )
        return output_path

    def analyze_loudness(self, input_path: Path, on_progress: ProgressCallback | None = None) -> LoudnormStats:
        """First loudnorm pass: measure the recording's levels.

        Raises:
            ToolError: If ffmpeg fails.
            ValueError: If ffmpeg printed no stats.
        """
        cfg = self.audio_config
        audio_filter = (
            f"loudnorm=I={cfg.target_loudness:.1f}:TP={cfg.true_peak:.1f}"
            f":LRA={cfg.loudness_range:.1f}:print_format=json"
        )
        output = self.runner.run(
            ["-i", str(input_path), "-af", audio_filter, "-f", "null", "-"],
            duration=self._duration(input_path),
            on_progress=on_progress,
        )
        return parse_loudnorm_output(output)

    def normalize(
        self,
        input_path: Path,
        output_path: Path,
        stats: LoudnormStats | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Normalize loudness.

        With measured stats this is the linear second pass; without them a
        single dynamic pass towards the default target.
        """
        cfg = self.audio_config
        audio_filter = f"loudnorm=I={cfg.target_loudness:.1f}:TP={cfg.true_peak:.1f}:LRA={cfg.loudness_range:.1f}"
        if stats is not None:
            audio_filter += (
                f":measured_I={stats.input_i}:measured_TP={stats.input_tp}"
                f":measured_LRA={stats.input_lra}:measured_thresh={stats.input_thresh}"
                f":offset={stats.target_offset}:linear=true"
            )
        audio_filter += ":print_format=summary"
        self.runner.run(
            ["-y", "-i", str(input_path), "-af", audio_filter, "-c:a", "pcm_s16le", str(output_path)],
            duration=self._duration(input_path),
            on_progress=on_progress,
        )
        return output_path

    def merge(
        self,
        video_path: Path,
        audio_path: Path | None,
        output_path: Path,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Mux the processed audio onto the video, or re-encode the video alone."""
        args = ["-y", "-i", str(video_path)]
        if audio_path is not None:
            args += ["-i", str(audio_path), "-map", "0:v", "-map", "1:a"]
        args += ["-c:v", "libx264", "-preset", "medium", "-crf", "18", "-r", "30", "-pix_fmt", "yuv420p"]
        if audio_path is not None:
            args += ["-c:a", "aac", "-b:a", "320k", "-shortest"]
        else:
            args += ["-an"]
        args.append(str(output_path))

        self.runner.run(args, duration=self._duration(video_path), on_progress=on_progress)
        return output_path

    def vertical(
        self,
        screen_path: Path,
        webcam_path: Path,
        audio_path: Path | None,
        output_path: Path,
        title: str = "",
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Compose screen, webcam and lower third into a 1080x1920 video."""
        layout = vertical_layout(
            self.runner.probe_dimensions(screen_path),
            self.runner.probe_dimensions(webcam_path),
        )
        duration = self._duration(screen_path)

        args = ["-y", "-i", str(screen_path), "-i", str(webcam_path)]
        if audio_path is not None:
            args += ["-i", str(audio_path)]
        args += ["-filter_complex", build_vertical_filter(layout, title), "-map", "[outv]"]
        if audio_path is not None:
            args += ["-map", "2:a", "-c:a", "aac", "-b:a", "320k"]
        else:
            args += ["-an"]
        args += ["-c:v", "libx264", "-preset", "medium", "-crf", "18", "-r", "30", "-pix_fmt", "yuv420p"]
        if duration:
            args += ["-t", f"{duration:.3f}"]
        args.append(str(output_path))

        self.runner.run(args, duration=duration, on_progress=on_progress)
        return output_path
