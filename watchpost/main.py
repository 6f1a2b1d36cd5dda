#!/usr/bin/env python3
"""
watchpost - Main Entry Point

Captures frames from a camera or a video file, detects motion, records one
video segment per motion episode, serves a live image stream over HTTP and
posts a webhook alert when motion starts.

Architecture:
    ┌─────────────┐    ┌─────────────┐
    │  Grabber    │───▶│  Detector   │
    │ (GStreamer) │    │ (hysteresis)│
    └─────────────┘    └──────┬──────┘
                              │ fan-out
           ┌──────────────────┼──────────────────┐
           ▼                  ▼                  ▼
    ┌─────────────┐    ┌─────────────┐    ┌─────────────┐
    │  Recorder   │    │ Broadcaster │    │  Dispatcher │
    │ (.mkv/epis.)│    │ (HTTP view) │    │  (webhook)  │
    └─────────────┘    └─────────────┘    └─────────────┘

Configuration (via environment variables):
    CAPTURE_INDEX            - Camera index, /dev/videoN (default: 0)
    VIDEO_FILE               - Read from this file instead of a camera
    CAPTURE_WIDTH/HEIGHT     - Camera frame size (default: 640x480)
    CAPTURE_FRAMERATE        - Camera framerate (default: 30)
    MOTION_PIXEL_THRESHOLD   - Pixel change threshold 0-255 (default: 25)
    MOTION_THRESHOLD_HIGH    - % of frame changed to count as motion (default: 1.0)
    MOTION_THRESHOLD_LOW     - % of frame changed to count as still (default: 0.5)
    MOTION_FRAMES_ON/OFF     - Consecutive frames before switching (default: 5/5)
    MOTION_DOWNSAMPLE        - Pixel stride used for scoring (default: 4)
    RECORDINGS_DIR           - Directory for recorded segments (default: ./recordings)
    FILENAME_FORMAT          - strftime template for segment names
    PRE_ROLL_SECONDS         - Seconds of video before motion to include (default: 1)
    POST_ROLL_SECONDS        - Seconds after motion stops to include (default: 2)
    OVERLAY / OVERLAY_BORDER - Burn capture time into recordings (camera only)
    STREAM_LISTEN_ADDRESS    - host:port of the live stream, empty disables it
    STREAM_IMAGE_FORMAT      - .jpeg, .png or .bmp (default: .jpeg)
    ALERT_WEBHOOK_URL        - Incoming webhook URL, empty disables alerts
    ALERT_CHANNEL/USER       - Webhook channel and username
    ALERT_COOLDOWN_SECONDS   - Minimum seconds between alerts (default: 5)
    QUIET / VERBOSE          - Log level ERROR / DEBUG

Usage:
    python -m watchpost.main

    # Or with environment variables:
    VIDEO_FILE=clip.mp4 RECORDINGS_DIR=/tmp/out python -m watchpost.main

Exit codes:
    0 - end of input or stopped by SIGINT/SIGTERM
    1 - capture failure
    2 - invalid configuration
"""

import logging
import signal
import sys

import gi
gi.require_version('Gst', '1.0')
from gi.repository import Gst

from watchpost.alerts import AlertDispatcher
from watchpost.config import AppConfig, load_config
from watchpost.frames import SourceError
from watchpost.motion_detector import MotionDetector
from watchpost.orchestrator import EXIT_FAILURE, Orchestrator, ShutdownReason
from watchpost.pipeline import FrameGrabber, VideoWriter
from watchpost.recorder import SegmentRecorder, lead_frame_count
from watchpost.streamer import FrameBroadcaster, StreamServer, create_app

EXIT_CONFIG_ERROR = 2

logger = logging.getLogger("watchpost")


def setup_logging(config: AppConfig):
    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    # uvicorn installs its own handlers; keep its access log out of ours
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def print_banner():
    """Print application startup banner."""
    print("=" * 60)
    print("  watchpost")
    print("  Motion detection, recording, streaming and alerting")
    print("=" * 60)
    print()


def print_config(config: AppConfig, grabber: FrameGrabber):
    """Print the effective settings."""
    print("[CONFIG] Current settings:")
    print(f"  ==> Input:            {config.capture.input_name}")
    print(f"  ==> Framerate:        {grabber.fps:g}")
    print(f"  ==> Frame size:       {grabber.width}x{grabber.height}")
    print(f"  ==> Printing overlay: {config.recording.overlay}")
    print(f"  ==> Output directory: {config.recording.directory}")
    print(f"  ==> File name format: {config.recording.filename_format}")
    print(f"  ==> Pre/post roll:    {config.recording.pre_roll_seconds}s / {config.recording.post_roll_seconds}s")
    print(
        f"  ==> Motion:           high={config.motion.threshold_high}% low={config.motion.threshold_low}% "
        f"on={config.motion.frames_on} off={config.motion.frames_off}"
    )
    if config.stream.enabled:
        print(f"  ==> Live stream:      http://{config.stream.listen_address}/stream")
    print(f"  ==> Alerts:           {'enabled' if config.alert.enabled else 'disabled'}")
    print()


def build_orchestrator(config: AppConfig, grabber: FrameGrabber) -> Orchestrator:
    """Wire all components around an opened grabber."""
    detector = MotionDetector.from_config(config.motion)

    recorder = SegmentRecorder(
        directory=config.recording.directory,
        filename_format=config.recording.filename_format,
        writer_factory=VideoWriter.factory(
            grabber.fps,
            overlay=config.recording.overlay,
            overlay_border=config.recording.overlay_border,
        ),
        lead_frames=lead_frame_count(config.recording.pre_roll_seconds, grabber.fps),
        trail_seconds=config.recording.post_roll_seconds,
    )

    broadcaster = FrameBroadcaster()
    server = None
    if config.stream.enabled:
        host, port = config.stream.host_port
        server = StreamServer(create_app(broadcaster, config.stream), host, port)

    dispatcher = AlertDispatcher.from_config(config.alert)

    return Orchestrator(grabber, detector, recorder, broadcaster, dispatcher, server)


def main() -> int:
    """Main entry point for the motion pipeline."""
    try:
        config = load_config()
    except ValueError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR

    setup_logging(config)

    # Initialize GStreamer
    logger.debug("Initializing GStreamer...")
    Gst.init(None)

    grabber = FrameGrabber.from_config(config.capture)
    try:
        grabber.open()
    except SourceError as e:
        logger.error(f"Cannot open input {config.capture.input_name}: {e}")
        grabber.close()
        return EXIT_FAILURE

    if not config.quiet:
        print_banner()
        print_config(config, grabber)

    try:
        orchestrator = build_orchestrator(config, grabber)
    except OSError as e:
        logger.error(f"Cannot prepare output: {e}")
        grabber.close()
        return EXIT_FAILURE

    def signal_handler(signum, frame):
        """Handle SIGINT/SIGTERM for graceful shutdown."""
        signal_name = signal.Signals(signum).name
        if orchestrator.request_shutdown(ShutdownReason.SIGNAL):
            logger.info(f"Received {signal_name}, initiating graceful shutdown...")

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        exit_code = orchestrator.run()
    except OSError as e:
        logger.error(f"Cannot start live stream: {e}")
        grabber.close()
        return EXIT_FAILURE

    if not config.quiet:
        print("\nwatchpost: done!")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
