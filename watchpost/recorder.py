"""
Segment Recorder Module.

Turns the detector's classified frame stream into one video file per motion
episode, bracketed by pre-roll and post-roll footage.

State machine:
    IDLE ──ACTIVE──▶ RECORDING ──IDLE──▶ FINALIZING ──trail elapsed──▶ IDLE
                         ▲                    │
                         └──────ACTIVE────────┘

While IDLE the most recent frames are kept in a ring buffer; when an episode
starts they are written first so the file includes the lead-in. While a file
is open it is named `<final>.part`; finalizing closes the writer and renames
it into place.

Log messages:
    [SESSION] Started recording <path>
    [SESSION] Ended recording <path> (<n> frames)
"""

import logging
import math
import os
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, List, Optional, Protocol

from watchpost.frames import DetectedFrame, Frame

logger = logging.getLogger(__name__)

SEGMENT_EXTENSION = ".mkv"
PARTIAL_SUFFIX = ".part"


class SegmentWriter(Protocol):
    def write(self, frame: Frame) -> None: ...

    def close(self) -> None: ...


WriterFactory = Callable[[str, Frame], SegmentWriter]


class RecorderState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZING = "finalizing"


@dataclass
class Segment:
    """The file currently being written for an open episode."""

    writer: SegmentWriter
    path: str  # temporary path while open
    final_path: str
    start_time: float
    frame_count: int = 0


def lead_frame_count(pre_roll_seconds: float, fps: float) -> int:
    """Number of frames to retain for the given pre-roll at the source framerate."""
    if pre_roll_seconds <= 0 or fps <= 0:
        return 0
    return int(math.ceil(pre_roll_seconds * fps))


class SegmentRecorder:
    """
    Records motion episodes to video files.

    Usage:
        recorder = SegmentRecorder(
            directory="/recordings",
            filename_format="%Y-%m-%d_%H-%M-%S",
            writer_factory=open_writer,
            lead_frames=30,
            trail_seconds=2.0,
        )
        for item in detected_frames:
            recorder.handle(item)
        recorder.close()
    """

    def __init__(
        self,
        directory: str,
        filename_format: str,
        writer_factory: WriterFactory,
        lead_frames: int = 0,
        trail_seconds: float = 0.0,
    ):
        """
        Initialize the recorder.

        Args:
            directory: Output directory for finished segments
            filename_format: strftime template for segment names
            writer_factory: Callable(path, first_frame) returning an open writer
            lead_frames: Frames kept before an episode and written at its start
            trail_seconds: Frame time recorded after motion stops
        """
        self.directory = directory
        self.filename_format = filename_format
        self.writer_factory = writer_factory
        self.trail_seconds = trail_seconds

        self._state = RecorderState.IDLE
        self._lead: Deque[Frame] = deque(maxlen=max(0, lead_frames))
        self._segment: Optional[Segment] = None
        self._idle_since: Optional[float] = None

        self.completed: List[str] = []  # final paths of finished segments
        self.failed: int = 0

        Path(directory).mkdir(parents=True, exist_ok=True)

    def handle(self, item: DetectedFrame):
        """Advance the state machine by one classified frame."""
        frame, transition = item.frame, item.transition

        if transition is not None:
            if transition.is_active:
                if self._state is RecorderState.IDLE:
                    if not self._open_segment(frame):
                        return
                elif self._state is RecorderState.FINALIZING:
                    logger.info("[SESSION] Motion resumed, continuing current segment")
                    self._state = RecorderState.RECORDING
                    self._idle_since = None
            elif self._state is RecorderState.RECORDING:
                self._state = RecorderState.FINALIZING
                self._idle_since = transition.timestamp

        if self._state is RecorderState.IDLE:
            self._lead.append(frame)
            return

        if not self._write(frame):
            return

        if (
            self._state is RecorderState.FINALIZING
            and frame.timestamp - self._idle_since >= self.trail_seconds
        ):
            self._finalize()

    def close(self):
        """Finalize any open segment immediately (shutdown path)."""
        if self._segment is not None:
            logger.info("[SESSION] Shutdown requested, finalizing open segment")
            self._finalize()
        self._lead.clear()

    def _segment_paths(self, frame: Frame):
        stem = frame.wallclock.strftime(self.filename_format)
        final = os.path.join(self.directory, stem + SEGMENT_EXTENSION)

        # Handle potential filename collision (same second)
        counter = 1
        while os.path.exists(final) or os.path.exists(final + PARTIAL_SUFFIX):
            final = os.path.join(self.directory, f"{stem}_{counter}{SEGMENT_EXTENSION}")
            counter += 1
        return final + PARTIAL_SUFFIX, final

    def _open_segment(self, frame: Frame) -> bool:
        first = self._lead[0] if self._lead else frame
        path, final_path = self._segment_paths(frame)
        Path(final_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            writer = self.writer_factory(path, first)
        except OSError as e:
            logger.warning(f"[SESSION] Failed to open segment {final_path}: {e}")
            self.failed += 1
            self._lead.clear()
            return False

        self._segment = Segment(
            writer=writer,
            path=path,
            final_path=final_path,
            start_time=first.timestamp,
        )
        self._state = RecorderState.RECORDING
        logger.info(f"[SESSION] Started recording {final_path}")

        lead = list(self._lead)
        self._lead.clear()
        for buffered in lead:
            if not self._write(buffered):
                return False
        return True

    def _write(self, frame: Frame) -> bool:
        segment = self._segment
        try:
            segment.writer.write(frame)
        except OSError as e:
            logger.warning(f"[SESSION] Write failed for {segment.final_path}, aborting segment: {e}")
            self.failed += 1
            self._finalize()
            return False
        segment.frame_count += 1
        return True

    def _finalize(self):
        segment, self._segment = self._segment, None
        self._state = RecorderState.IDLE
        self._idle_since = None

        try:
            segment.writer.close()
        except OSError as e:
            logger.warning(f"[SESSION] Closing {segment.final_path} failed, file may be truncated: {e}")

        try:
            if os.path.exists(segment.path):
                os.replace(segment.path, segment.final_path)
        except OSError as e:
            logger.warning(f"[SESSION] Failed to rename {segment.path}: {e}")
            return

        self.completed.append(segment.final_path)
        logger.info(
            f"[SESSION] Ended recording {segment.final_path} ({segment.frame_count} frames)"
        )

    @property
    def state(self) -> RecorderState:
        return self._state

    @property
    def segment(self) -> Optional[Segment]:
        return self._segment
