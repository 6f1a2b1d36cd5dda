"""
Shared fixtures and fakes for watchpost tests.

Nothing here touches GStreamer: frames carry plain integers (or small numpy
images) as their pixels, the scorer looks scores up by frame index, and
writers record frame indices in memory while creating placeholder files.
"""

import sys
import threading
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from watchpost.frames import DetectedFrame, Frame, MotionState, SegmentWriteError, SourceError, Transition  # noqa: E402

# Power of two so frame timestamps are exact binary fractions
FPS = 32.0
EPOCH = datetime(2026, 1, 2, 3, 4, 5)


def make_frame(index: int, image=None, width: int = 4, height: int = 4) -> Frame:
    return Frame(
        index=index,
        timestamp=index / FPS,
        image=index if image is None else image,
        width=width,
        height=height,
        wallclock=EPOCH + timedelta(seconds=index / FPS),
    )


def transition(state: MotionState, frame: Frame) -> Transition:
    return Transition(state=state, timestamp=frame.timestamp, wallclock=frame.wallclock, frame_index=frame.index)


def detected(index: int, state: MotionState = None) -> DetectedFrame:
    frame = make_frame(index)
    return DetectedFrame(frame, transition(state, frame) if state else None)


def scenario_scores(high: float = 5.0, low: float = 0.0, tail: int = 200):
    """300 idle, 10 rising, 50 active, 10 falling, then idle frames."""
    return [low] * 300 + [high] * 10 + [high] * 50 + [low] * 10 + [low] * tail


class ScriptedScorer:
    """Returns scores[current_index]; images are the frame indices."""

    def __init__(self, scores):
        self.scores = scores
        self.calls = 0

    def __call__(self, previous, current):
        self.calls += 1
        return self.scores[current]


class FakeWriter:
    def __init__(self, path: str, fail_after=None):
        self.path = path
        self.fail_after = fail_after
        self.frames = []
        self.closed = False
        Path(path).write_bytes(b"")

    def write(self, frame: Frame):
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise SegmentWriteError("No space left on device")
        self.frames.append(frame.index)
        with open(self.path, "ab") as fh:
            fh.write(b"x")

    def close(self):
        self.closed = True


class FakeWriterFactory:
    def __init__(self, fail_after=None):
        self.fail_after = fail_after
        self.writers = []

    def __call__(self, path: str, first_frame: Frame) -> FakeWriter:
        writer = FakeWriter(path, self.fail_after)
        self.writers.append(writer)
        return writer


class ListSource:
    """
    Frame source replaying a fixed list of frames.

    Args:
        frames: Frames to return, in order
        error_at: Position at which read() raises SourceError
        on_exhausted: Called once when the list runs out; the source then
            behaves like a live camera and waits for cancellation
    """

    def __init__(self, frames, error_at=None, on_exhausted=None):
        self.frames = list(frames)
        self.error_at = error_at
        self.on_exhausted = on_exhausted
        self.closed = False
        self._pos = 0

    def read(self, cancel: threading.Event = None):
        if self.error_at is not None and self._pos == self.error_at:
            raise SourceError("VIDIOC_DQBUF: No such device")
        if self._pos >= len(self.frames):
            if self.on_exhausted is None:
                return None
            callback, self.on_exhausted = self.on_exhausted, None
            callback()
            while not cancel.wait(0.05):
                pass
            return None
        frame = self.frames[self._pos]
        self._pos += 1
        return frame

    def close(self):
        self.closed = True


class FakeMessenger:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    def payload(self, text, timestamp):
        return {"channel": "#cam", "username": "detector", "text": text, "timestamp": int(timestamp)}

    def send(self, payload):
        if self.error is not None:
            raise self.error
        self.sent.append(payload)

    def close(self):
        pass


@pytest.fixture
def writer_factory():
    return FakeWriterFactory()


@pytest.fixture
def recordings_dir(tmp_path):
    """Temporary directory for recorded segments."""
    out = tmp_path / "recordings"
    out.mkdir()
    return out
