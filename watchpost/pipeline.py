"""
GStreamer Pipeline Module.

All frame acquisition and segment encoding goes through GStreamer.

Capture pipelines end in an appsink delivering packed RGB frames:

    camera:  v4l2src ─▶ caps(WxH@F) ─▶ videoconvert ─▶ RGB ─▶ appsink
    file:    filesrc ─▶ decodebin ─▶ videoconvert ─▶ RGB ─▶ appsink

Segment writers start from an appsrc fed with those frames:

    appsrc ─▶ videoconvert ─▶ [textoverlay] ─▶ videoconvert ─▶ x264enc ─▶ matroskamux ─▶ filesink

Notes:
- File sources are not clock-synchronized; frames come out as fast as they
  decode, stamped with their presentation timestamps
- Live camera appsinks drop old buffers when the pipeline falls behind
- Gst.init() must have been called before any of this is used
"""

import logging
import threading
import time
from typing import Optional

import numpy as np

import gi
gi.require_version('Gst', '1.0')
gi.require_version('GstApp', '1.0')
from gi.repository import GLib, Gst, GstApp  # noqa: F401  (GstApp registers appsink/appsrc signals)

from watchpost.frames import Frame, SegmentWriteError, SourceError

logger = logging.getLogger(__name__)

PULL_TIMEOUT = 100 * Gst.MSECOND
DEFAULT_FPS = 30.0
OVERLAY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class FrameGrabber:
    """
    Pull-based frame source backed by a GStreamer appsink.

    Usage:
        grabber = FrameGrabber.from_camera(0, 640, 480, 30)
        grabber.open()
        frame = grabber.read(cancel)
        while frame is not None:
            ...
            frame = grabber.read(cancel)
        grabber.close()
    """

    def __init__(self, description: str, input_name: str, live: bool, fps: Optional[float] = None):
        """
        Args:
            description: gst-launch style pipeline ending in `appsink name=sink`
            input_name: Human readable input for log messages
            live: True for cameras (wallclock timestamps), False for files
            fps: Nominal framerate, or None to read it from the negotiated caps
        """
        self.description = description
        self.input_name = input_name
        self.live = live
        self.pipeline: Optional[Gst.Pipeline] = None
        self._appsink = None
        self._bus = None
        self._index = 0
        self._fps = fps
        self._width = 0
        self._height = 0

    @classmethod
    def from_camera(cls, index: int, width: int, height: int, framerate: int) -> "FrameGrabber":
        description = (
            f"v4l2src device=/dev/video{index} ! "
            f"video/x-raw,width={width},height={height},framerate={framerate}/1 ! "
            "videoconvert ! video/x-raw,format=RGB ! "
            "appsink name=sink emit-signals=false max-buffers=2 drop=true sync=false"
        )
        grabber = cls(description, input_name=str(index), live=True, fps=float(framerate))
        grabber._width, grabber._height = width, height
        return grabber

    @classmethod
    def from_file(cls, path: str) -> "FrameGrabber":
        description = (
            f"filesrc location={_quote(path)} ! decodebin ! "
            "videoconvert ! video/x-raw,format=RGB ! "
            "appsink name=sink emit-signals=false max-buffers=4 drop=false sync=false"
        )
        return cls(description, input_name=path, live=False)

    @classmethod
    def from_config(cls, capture_config) -> "FrameGrabber":
        if capture_config.is_file:
            return cls.from_file(capture_config.video_file)
        return cls.from_camera(
            capture_config.capture_index,
            capture_config.width,
            capture_config.height,
            capture_config.framerate,
        )

    def open(self, timeout: float = 10.0):
        """
        Build and start the pipeline, waiting for it to preroll.

        Raises:
            SourceError: if the pipeline cannot be built or started.
        """
        try:
            self.pipeline = Gst.parse_launch(self.description)
        except GLib.Error as e:
            raise SourceError(f"cannot build capture pipeline for {self.input_name}: {e.message}")

        self._appsink = self.pipeline.get_by_name("sink")
        self._bus = self.pipeline.get_bus()

        ret = self.pipeline.set_state(Gst.State.PLAYING)
        if ret == Gst.StateChangeReturn.FAILURE:
            self._raise_bus_error()
            raise SourceError(f"cannot start capture from {self.input_name}")

        ret, _, _ = self.pipeline.get_state(int(timeout * Gst.SECOND))
        if ret == Gst.StateChangeReturn.FAILURE:
            self._raise_bus_error()
            raise SourceError(f"capture from {self.input_name} failed to start")

        self._read_caps()
        logger.info(
            f"Capture started: input={self.input_name} "
            f"size={self._width}x{self._height} fps={self.fps:g}"
        )

    def _read_caps(self):
        pad = self._appsink.get_static_pad("sink")
        caps = pad.get_current_caps() if pad else None
        if caps is None:
            return
        structure = caps.get_structure(0)
        self._width = structure.get_int("width")[1]
        self._height = structure.get_int("height")[1]
        ok, num, den = structure.get_fraction("framerate")
        if ok and num > 0 and den > 0 and self._fps is None:
            self._fps = num / den

    def _raise_bus_error(self):
        """Drain pending bus messages, raising on the first error."""
        if self._bus is None:
            return
        while True:
            message = self._bus.pop()
            if message is None:
                return
            if message.type == Gst.MessageType.ERROR:
                err, debug = message.parse_error()
                logger.debug(f"capture error detail: {debug}")
                raise SourceError(f"{self.input_name}: {err.message}")
            if message.type == Gst.MessageType.WARNING:
                warn, _ = message.parse_warning()
                logger.warning(f"input={self.input_name} {warn.message}")

    def read(self, cancel: Optional[threading.Event] = None) -> Optional[Frame]:
        """
        Return the next frame, or None at end of stream or on cancellation.

        Raises:
            SourceError: if the device or decoder reports an error.
        """
        while cancel is None or not cancel.is_set():
            self._raise_bus_error()
            sample = self._appsink.emit("try-pull-sample", PULL_TIMEOUT)
            if sample is None:
                if self._appsink.is_eos():
                    return None
                continue
            return self._to_frame(sample)
        return None

    def _to_frame(self, sample) -> Frame:
        buffer = sample.get_buffer()
        structure = sample.get_caps().get_structure(0)
        width = structure.get_int("width")[1]
        height = structure.get_int("height")[1]

        success, map_info = buffer.map(Gst.MapFlags.READ)
        if not success:
            raise SourceError(f"{self.input_name}: cannot map frame buffer")
        try:
            data = np.frombuffer(map_info.data, dtype=np.uint8)
            # Rows may be padded to a 4 byte stride
            stride = data.size // height
            image = data.reshape(height, stride)[:, :width * 3].reshape(height, width, 3).copy()
        finally:
            buffer.unmap(map_info)

        if self.live or buffer.pts == Gst.CLOCK_TIME_NONE:
            timestamp = time.monotonic()
        else:
            timestamp = buffer.pts / Gst.SECOND

        frame = Frame(index=self._index, timestamp=timestamp, image=image, width=width, height=height)
        self._index += 1
        return frame

    def close(self):
        if self.pipeline is not None:
            self.pipeline.set_state(Gst.State.NULL)
            self.pipeline = None

    @property
    def fps(self) -> float:
        return self._fps or DEFAULT_FPS

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height


class VideoWriter:
    """Encodes frames into a Matroska file through an appsrc pipeline."""

    def __init__(self, path: str, width: int, height: int, fps: float, overlay: bool = False, overlay_border: int = 2):
        self.path = path
        self.fps = fps
        self._frame_count = 0
        self._duration = int(Gst.SECOND / fps)

        overlay_stage = ""
        if overlay:
            pad = max(0, overlay_border) * 4
            overlay_stage = (
                "textoverlay name=overlay valignment=top halignment=left "
                f"xpad={pad} ypad={pad} draw-outline={'true' if overlay_border > 0 else 'false'} "
                'font-desc="Sans 14" ! videoconvert ! '
            )

        fps_num, fps_den = Gst.util_double_to_fraction(fps)
        description = (
            "appsrc name=src is-live=false format=time block=false "
            f"caps=video/x-raw,format=RGB,width={width},height={height},framerate={fps_num}/{fps_den} ! "
            "videoconvert ! "
            f"{overlay_stage}"
            "x264enc tune=zerolatency speed-preset=ultrafast ! "
            f"matroskamux ! filesink location={_quote(path)}"
        )
        try:
            self.pipeline = Gst.parse_launch(description)
        except GLib.Error as e:
            raise SegmentWriteError(f"cannot build writer pipeline: {e.message}")

        self._appsrc = self.pipeline.get_by_name("src")
        self._overlay = self.pipeline.get_by_name("overlay") if overlay else None
        self._bus = self.pipeline.get_bus()

        if self.pipeline.set_state(Gst.State.PLAYING) == Gst.StateChangeReturn.FAILURE:
            try:
                self._check_bus()
            finally:
                self.pipeline.set_state(Gst.State.NULL)
            raise SegmentWriteError(f"cannot start writer for {path}")

    @classmethod
    def factory(cls, fps: float, overlay: bool = False, overlay_border: int = 2):
        """Return a writer factory usable by SegmentRecorder."""
        def open_writer(path: str, first_frame: Frame) -> "VideoWriter":
            return cls(path, first_frame.width, first_frame.height, fps, overlay, overlay_border)
        return open_writer

    def _check_bus(self):
        while True:
            message = self._bus.pop()
            if message is None:
                return
            if message.type == Gst.MessageType.ERROR:
                err, _ = message.parse_error()
                raise SegmentWriteError(f"{self.path}: {err.message}")

    def write(self, frame: Frame):
        self._check_bus()
        if self._overlay is not None:
            self._overlay.set_property("text", frame.wallclock.strftime(OVERLAY_TIME_FORMAT))

        buffer = Gst.Buffer.new_wrapped(np.ascontiguousarray(frame.image).tobytes())
        buffer.pts = self._frame_count * self._duration
        buffer.duration = self._duration
        ret = self._appsrc.emit("push-buffer", buffer)
        if ret != Gst.FlowReturn.OK:
            raise SegmentWriteError(f"{self.path}: push-buffer returned {ret.value_nick}")
        self._frame_count += 1

    def close(self, timeout: float = 10.0):
        """Send EOS, wait for the muxer to flush, and tear the pipeline down."""
        if self.pipeline is None:
            return
        try:
            self._appsrc.emit("end-of-stream")
            message = self._bus.timed_pop_filtered(
                int(timeout * Gst.SECOND),
                Gst.MessageType.EOS | Gst.MessageType.ERROR
            )
            if message is not None and message.type == Gst.MessageType.ERROR:
                err, _ = message.parse_error()
                raise SegmentWriteError(f"{self.path}: {err.message}")
            if message is None:
                logger.warning(f"Timed out flushing {self.path}")
        finally:
            self.pipeline.set_state(Gst.State.NULL)
            self.pipeline = None
