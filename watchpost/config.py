"""
Configuration module for the watchpost motion pipeline.

This module centralizes all configuration parameters including:
- Capture source selection (camera index or video file)
- Motion detection hysteresis thresholds
- Segment recording paths and pre/post roll
- Live stream listener and alert webhook settings

Every section is a frozen dataclass resolved from environment variables once
at startup by load_config(); the result is passed explicitly to each
component and never mutated.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

SUPPORTED_IMAGE_FORMATS = {
    "jpeg": ("JPEG", "image/jpeg"),
    "jpg": ("JPEG", "image/jpeg"),
    "png": ("PNG", "image/png"),
    "bmp": ("BMP", "image/bmp"),
}


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class CaptureConfig:
    """Frame source selection. video_file takes precedence over capture_index."""

    capture_index: int = field(default_factory=lambda: int(os.getenv("CAPTURE_INDEX", "0")))
    video_file: Optional[str] = field(default_factory=lambda: _env_optional("VIDEO_FILE"))

    # Ignored when reading from a file
    width: int = field(default_factory=lambda: int(os.getenv("CAPTURE_WIDTH", "640")))
    height: int = field(default_factory=lambda: int(os.getenv("CAPTURE_HEIGHT", "480")))
    framerate: int = field(default_factory=lambda: int(os.getenv("CAPTURE_FRAMERATE", "30")))

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"invalid frame size {self.width}x{self.height}")
        if self.framerate <= 0:
            raise ValueError(f"invalid framerate {self.framerate}")

    @property
    def is_file(self) -> bool:
        return self.video_file is not None

    @property
    def input_name(self) -> str:
        return self.video_file if self.video_file else str(self.capture_index)


@dataclass(frozen=True)
class MotionConfig:
    """Motion scoring and hysteresis parameters."""

    # Pixel difference threshold (0-255) for considering a pixel as "changed"
    pixel_threshold: int = field(default_factory=lambda: int(os.getenv("MOTION_PIXEL_THRESHOLD", "25")))

    # Percentage of changed pixels needed to count a frame as moving / still
    threshold_high: float = field(default_factory=lambda: float(os.getenv("MOTION_THRESHOLD_HIGH", "1.0")))
    threshold_low: float = field(default_factory=lambda: float(os.getenv("MOTION_THRESHOLD_LOW", "0.5")))

    # Consecutive frames required before switching state
    frames_on: int = field(default_factory=lambda: int(os.getenv("MOTION_FRAMES_ON", "5")))
    frames_off: int = field(default_factory=lambda: int(os.getenv("MOTION_FRAMES_OFF", "5")))

    # Take every Nth pixel in each direction before scoring (reduces CPU usage)
    downsample: int = field(default_factory=lambda: int(os.getenv("MOTION_DOWNSAMPLE", "4")))

    def __post_init__(self):
        if self.threshold_low > self.threshold_high:
            raise ValueError(
                f"threshold_low ({self.threshold_low}) must not exceed threshold_high ({self.threshold_high})"
            )
        if self.frames_on < 1 or self.frames_off < 1:
            raise ValueError("frames_on and frames_off must be at least 1")
        if self.downsample < 1:
            raise ValueError("downsample must be at least 1")


@dataclass(frozen=True)
class RecordingConfig:
    """Configuration for motion-triggered recording with pre/post roll."""

    directory: str = field(default_factory=lambda: os.getenv("RECORDINGS_DIR", "./recordings"))

    # strftime template for the segment file name (extension is added)
    filename_format: str = field(default_factory=lambda: os.getenv("FILENAME_FORMAT", "%Y-%m-%d_%H-%M-%S"))

    # Pre-roll: seconds of video kept before motion starts
    pre_roll_seconds: float = field(default_factory=lambda: float(os.getenv("PRE_ROLL_SECONDS", "1.0")))

    # Post-roll: seconds recorded after motion stops before the file is closed
    post_roll_seconds: float = field(default_factory=lambda: float(os.getenv("POST_ROLL_SECONDS", "2.0")))

    # Burn the capture time into recorded frames
    overlay: bool = field(default_factory=lambda: _env_bool("OVERLAY"))
    overlay_border: int = field(default_factory=lambda: int(os.getenv("OVERLAY_BORDER", "2")))

    def __post_init__(self):
        if self.pre_roll_seconds < 0 or self.post_roll_seconds < 0:
            raise ValueError("pre/post roll durations must not be negative")
        if not self.filename_format:
            raise ValueError("filename_format must not be empty")


@dataclass(frozen=True)
class StreamConfig:
    """Live MJPEG-style stream listener. An empty address disables streaming."""

    listen_address: str = field(default_factory=lambda: os.getenv("STREAM_LISTEN_ADDRESS", "127.0.0.1:8740"))
    image_format: str = field(default_factory=lambda: os.getenv("STREAM_IMAGE_FORMAT", ".jpeg"))

    def __post_init__(self):
        if self.listen_address:
            host, sep, port = self.listen_address.rpartition(":")
            if not sep or not host or not port.isdigit():
                raise ValueError(f"stream listen address must be host:port, got {self.listen_address!r}")
        if self.format_key not in SUPPORTED_IMAGE_FORMATS:
            raise ValueError(f"unsupported stream image format {self.image_format!r}")

    @property
    def enabled(self) -> bool:
        return bool(self.listen_address)

    @property
    def host_port(self) -> Tuple[str, int]:
        host, _, port = self.listen_address.rpartition(":")
        return host.strip("[]"), int(port)

    @property
    def format_key(self) -> str:
        return self.image_format.strip().lstrip(".").lower()

    @property
    def pil_format(self) -> str:
        return SUPPORTED_IMAGE_FORMATS[self.format_key][0]

    @property
    def content_type(self) -> str:
        return SUPPORTED_IMAGE_FORMATS[self.format_key][1]


@dataclass(frozen=True)
class AlertConfig:
    """Webhook alerting. An empty webhook URL disables delivery."""

    webhook_url: str = field(default_factory=lambda: os.getenv("ALERT_WEBHOOK_URL", ""))
    channel: str = field(default_factory=lambda: os.getenv("ALERT_CHANNEL", "#cam"))
    user: str = field(default_factory=lambda: os.getenv("ALERT_USER", "detector"))

    # Minimum seconds between two alerts, even across episodes
    cooldown_seconds: float = field(default_factory=lambda: float(os.getenv("ALERT_COOLDOWN_SECONDS", "5.0")))
    timeout_seconds: float = field(default_factory=lambda: float(os.getenv("ALERT_TIMEOUT_SECONDS", "5.0")))
    retries: int = field(default_factory=lambda: int(os.getenv("ALERT_RETRIES", "1")))

    def __post_init__(self):
        if self.cooldown_seconds < 0:
            raise ValueError("alert cooldown must not be negative")
        if self.timeout_seconds <= 0:
            raise ValueError("alert timeout must be positive")
        if self.retries < 0:
            raise ValueError("alert retries must not be negative")

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    capture: CaptureConfig = field(default_factory=CaptureConfig)
    motion: MotionConfig = field(default_factory=MotionConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    alert: AlertConfig = field(default_factory=AlertConfig)

    quiet: bool = field(default_factory=lambda: _env_bool("QUIET"))
    verbose: bool = field(default_factory=lambda: _env_bool("VERBOSE"))

    def __post_init__(self):
        # Overlay only makes sense on live capture
        if self.capture.is_file and self.recording.overlay:
            object.__setattr__(self, "recording", replace(self.recording, overlay=False))

    @property
    def log_level(self) -> int:
        """Root log level: quiet keeps only fatal diagnostics, verbose adds debug output."""
        if self.quiet:
            return logging.ERROR
        if self.verbose:
            return logging.DEBUG
        return logging.INFO


def load_config() -> AppConfig:
    """
    Resolve the configuration from the environment.

    Raises:
        ValueError: if any value is malformed or inconsistent.
    """
    return AppConfig()
