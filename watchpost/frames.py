"""
Shared data types passed between pipeline stages.

Frames are produced once by the grabber and then shared read-only by every
consumer, so they are frozen and their pixel buffers are marked read-only.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import numpy as np


class SourceError(RuntimeError):
    """The frame source can no longer deliver frames (fatal to the pipeline)."""


class SegmentWriteError(OSError):
    """Writing to the current video segment failed."""


class MotionState(Enum):
    IDLE = "idle"
    ACTIVE = "active"


@dataclass(frozen=True)
class Frame:
    """A single captured video frame."""

    index: int
    timestamp: float  # monotonic seconds (PTS for file sources)
    image: Any
    width: int
    height: int
    wallclock: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if isinstance(self.image, np.ndarray):
            self.image.flags.writeable = False


@dataclass(frozen=True)
class Transition:
    """A debounced change of motion state, emitted on the frame that caused it."""

    state: MotionState
    timestamp: float
    wallclock: datetime
    frame_index: int

    @property
    def is_active(self) -> bool:
        return self.state is MotionState.ACTIVE


@dataclass(frozen=True)
class DetectedFrame:
    """Detector output: the frame plus the transition it triggered, if any."""

    frame: Frame
    transition: Optional[Transition] = None
