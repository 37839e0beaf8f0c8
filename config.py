"""Configuration and settings for screen recording and post-processing."""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class AudioProcessingConfig:
    """Audio post-processing settings.

    Loudness targets follow EBU R128 style two-pass loudnorm, tuned a little
    louder than broadcast because screencasts are mostly speech.
    """

    denoise_enabled: bool = True
    normalize_enabled: bool = True

    # Denoise filter chain: highpass + afftdn
    highpass_freq: int = 80  # Hz, removes low-frequency rumble
    noise_floor: int = -25  # dB, afftdn noise floor
    track_noise: bool = True  # let afftdn adapt to changing noise

    # Loudness normalization
    target_loudness: float = -14.0  # Integrated loudness in LUFS
    true_peak: float = -1.5  # Maximum true peak in dBTP
    loudness_range: float = 11.0  # Target loudness range in LU

    @classmethod
    def disabled(cls) -> "AudioProcessingConfig":
        """Create a config that passes audio through untouched."""
        return cls(denoise_enabled=False, normalize_enabled=False)


@dataclass
class Config:
    """Application configuration."""

    # Cross-process session state (one fact per file lives here)
    state_dir: Path = Path(tempfile.gettempdir())

    # Storage paths
    videos_dir: Path = Path.home() / "Videos" / "Screencasts"
    logs_dir: Path = Path("./logs")

    # Capture supervision
    stop_grace_period: float = 5.0  # Seconds to wait after SIGINT before SIGKILL
    spawn_check_delay: float = 0.5  # Seconds a capture must survive to count as started
    stop_poll_interval: float = 0.5  # Seconds between stop-signal file checks

    # Capture defaults
    screen_fps: int = 60
    webcam_fps: int = 60
    webcam_resolution: str = "1920x1080"
    audio_device: str = "@DEFAULT_SOURCE@"

    # Post-processing
    stage_timeout: float = 3600.0  # Seconds per external tool invocation
    progress_buffer: int = 64  # Progress events kept before dropping the oldest
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    audio: AudioProcessingConfig = field(default_factory=AudioProcessingConfig)

    # Desktop notifications via notify-send
    notifications: bool = True

    def __post_init__(self):
        """Apply environment overrides after initialization."""
        self.state_dir = Path(os.getenv("SCREENCASTER_STATE_DIR", self.state_dir))
        self.videos_dir = Path(os.getenv("SCREENCASTER_VIDEOS_DIR", self.videos_dir))
        self.logs_dir = Path(os.getenv("SCREENCASTER_LOGS_DIR", self.logs_dir))
        self.ffmpeg_bin = os.getenv("SCREENCASTER_FFMPEG", self.ffmpeg_bin)
        self.ffprobe_bin = os.getenv("SCREENCASTER_FFPROBE", self.ffprobe_bin)
        if os.getenv("SCREENCASTER_NO_NOTIFY"):
            self.notifications = False

        # Ensure the state directory exists
        self.state_dir.mkdir(parents=True, exist_ok=True)


# Global config instance
config = Config()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config


def reload_config() -> Config:
    """Rebuild the global configuration from the current environment."""
    global config
    config = Config()
    return config


def update_config(**kwargs) -> Config:
    """Update configuration with new values."""
    global config
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
    return config
