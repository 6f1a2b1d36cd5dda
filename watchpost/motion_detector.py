"""
Motion Detection Module.

Implements frame differencing-based motion scoring and a hysteresis state
machine that turns the raw per-frame score into a debounced stream of
IDLE/ACTIVE transitions.

Algorithm:
1. Convert frame to grayscale and subsample it
2. Compare with previous frame using absolute difference
3. Apply threshold to identify changed pixels
4. Score = percentage of frame with motion
5. Switch to ACTIVE after `frames_on` consecutive scores >= threshold_high,
   back to IDLE after `frames_off` consecutive scores < threshold_low
"""

import logging
from typing import Any, Callable, Optional

import numpy as np

from watchpost.frames import DetectedFrame, Frame, MotionState, Transition

logger = logging.getLogger(__name__)

Scorer = Callable[[Any, Any], float]

# ITU-R BT.601 luma weights
_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float32)


def _to_gray(image: np.ndarray, downsample: int) -> np.ndarray:
    if image.ndim == 3:
        image = image[::downsample, ::downsample, :3].astype(np.float32) @ _LUMA
    else:
        image = image[::downsample, ::downsample]
    return image.astype(np.int16)


def frame_difference_score(
    previous: np.ndarray,
    current: np.ndarray,
    pixel_threshold: int = 25,
    downsample: int = 1,
) -> float:
    """
    Percentage (0.0-100.0) of pixels that changed by more than pixel_threshold.

    Frames of different shape (e.g. after a caps renegotiation) score 0.
    """
    if previous.shape != current.shape:
        return 0.0

    diff = np.abs(_to_gray(current, downsample) - _to_gray(previous, downsample))
    total_pixels = diff.size
    if total_pixels == 0:
        return 0.0
    changed_pixels = int(np.count_nonzero(diff > pixel_threshold))
    return (changed_pixels / total_pixels) * 100.0


def make_scorer(pixel_threshold: int, downsample: int) -> Scorer:
    def score(previous, current) -> float:
        return frame_difference_score(previous, current, pixel_threshold, downsample)
    return score


class MotionDetector:
    """
    Hysteresis motion classifier for a single video stream.

    Usage:
        detector = MotionDetector(
            scorer=make_scorer(25, 4),
            threshold_high=1.0,
            threshold_low=0.5,
            frames_on=5,
            frames_off=5,
        )

        for frame in frames:
            result = detector.process(frame)
            if result.transition:
                ...
    """

    def __init__(
        self,
        scorer: Scorer,
        threshold_high: float,
        threshold_low: float,
        frames_on: int = 5,
        frames_off: int = 5,
    ):
        """
        Initialize the motion detector.

        Args:
            scorer: Function (previous_image, current_image) -> motion score
            threshold_high: Score a frame must reach to count towards ACTIVE
            threshold_low: Score a frame must stay under to count towards IDLE
            frames_on: Consecutive qualifying frames needed to become ACTIVE
            frames_off: Consecutive qualifying frames needed to become IDLE
        """
        if threshold_low > threshold_high:
            raise ValueError("threshold_low must not exceed threshold_high")
        if frames_on < 1 or frames_off < 1:
            raise ValueError("frames_on and frames_off must be at least 1")

        self.scorer = scorer
        self.threshold_high = threshold_high
        self.threshold_low = threshold_low
        self.frames_on = frames_on
        self.frames_off = frames_off

        # State
        self._state = MotionState.IDLE
        self._last_transition: Optional[Transition] = None
        self._consecutive: int = 0
        self._previous: Optional[Frame] = None

    @classmethod
    def from_config(cls, motion_config) -> "MotionDetector":
        return cls(
            scorer=make_scorer(motion_config.pixel_threshold, motion_config.downsample),
            threshold_high=motion_config.threshold_high,
            threshold_low=motion_config.threshold_low,
            frames_on=motion_config.frames_on,
            frames_off=motion_config.frames_off,
        )

    def process(self, frame: Frame) -> DetectedFrame:
        """
        Classify one frame.

        The first frame only becomes the baseline for the next comparison.

        Returns:
            The frame, with a Transition attached if the state changed on it.
        """
        previous, self._previous = self._previous, frame
        if previous is None:
            return DetectedFrame(frame)

        score = self.scorer(previous.image, frame.image)

        if self._state is MotionState.IDLE:
            qualifies = score >= self.threshold_high
            needed = self.frames_on
            target = MotionState.ACTIVE
        else:
            qualifies = score < self.threshold_low
            needed = self.frames_off
            target = MotionState.IDLE

        if not qualifies:
            self._consecutive = 0
            return DetectedFrame(frame)

        self._consecutive += 1
        if self._consecutive < needed:
            return DetectedFrame(frame)

        self._consecutive = 0
        self._state = target
        transition = Transition(
            state=target,
            timestamp=frame.timestamp,
            wallclock=frame.wallclock,
            frame_index=frame.index,
        )
        self._last_transition = transition
        logger.debug(f"[MOTION] {target.value} at frame {frame.index} (score={score:.2f})")
        return DetectedFrame(frame, transition)

    @property
    def state(self) -> MotionState:
        return self._state

    @property
    def last_transition(self) -> Optional[Transition]:
        return self._last_transition
