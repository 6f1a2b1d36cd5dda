"""
Orchestrator Module.

Wires the capture → detect → fan-out pipeline and owns its lifecycle.

Threads and channels:

    Grabber ──raw──▶ Detector ──┬──records──▶ Recorder      (bounded, blocking)
                                ├──slot─────▶ Broadcaster   (latest frame, never blocks)
                                └──alerts───▶ Dispatcher    (bounded, non-blocking offer)

Shutdown is a single event set once by request_shutdown(). The grabber stops
first; a close notice then flows down every channel so each consumer drains
what it already has and finishes (the recorder finalizes its open segment,
the broadcaster ends every viewer stream) before run() returns.
"""

import logging
import threading
from enum import Enum
from typing import Callable, List, Optional, Protocol

from watchpost.alerts import AlertDispatcher
from watchpost.channels import Channel
from watchpost.frames import Frame, SourceError
from watchpost.motion_detector import MotionDetector
from watchpost.recorder import SegmentRecorder
from watchpost.streamer import FrameBroadcaster

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

JOIN_POLL = 0.5


class FrameSource(Protocol):
    def read(self, cancel: Optional[threading.Event] = None) -> Optional[Frame]: ...

    def close(self) -> None: ...


class ShutdownReason(Enum):
    SIGNAL = "signal"
    END_OF_STREAM = "end of stream"
    SOURCE_ERROR = "source error"
    INTERNAL_ERROR = "internal error"


class Orchestrator:
    """
    Runs one pipeline until end of stream, a fatal source error, or a signal.

    Usage:
        orchestrator = Orchestrator(grabber, detector, recorder, broadcaster, dispatcher, server)
        signal.signal(signal.SIGTERM, lambda *_: orchestrator.request_shutdown())
        sys.exit(orchestrator.run())
    """

    def __init__(
        self,
        source: FrameSource,
        detector: MotionDetector,
        recorder: SegmentRecorder,
        broadcaster: FrameBroadcaster,
        dispatcher: AlertDispatcher,
        server=None,
        raw_capacity: int = 32,
        record_capacity: int = 8,
        alert_capacity: int = 64,
    ):
        self.source = source
        self.detector = detector
        self.recorder = recorder
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher
        self.server = server

        self._raw = Channel(raw_capacity, "raw")
        self._records = Channel(record_capacity, "records")
        self._alerts = Channel(alert_capacity, "alerts")

        self._shutdown = threading.Event()
        self._shutdown_lock = threading.RLock()
        self._reason: Optional[ShutdownReason] = None
        self._threads: List[threading.Thread] = []
        self.frames_captured = 0

    def request_shutdown(self, reason: ShutdownReason = ShutdownReason.SIGNAL) -> bool:
        """
        Ask the pipeline to stop. Safe to call from any thread or signal handler.

        Returns:
            True for the call that actually initiated shutdown, False afterwards.
        """
        with self._shutdown_lock:
            if self._shutdown.is_set():
                logger.debug(f"Shutdown already in progress, ignoring {reason.value}")
                return False
            self._reason = reason
            self._shutdown.set()
        logger.info(f"Shutting down ({reason.value})...")
        return True

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    @property
    def reason(self) -> Optional[ShutdownReason]:
        return self._reason

    def _spawn(self, name: str, target: Callable[[], None]) -> threading.Thread:
        def guarded():
            try:
                target()
            except Exception:
                logger.exception(f"{name} thread crashed")
                self.request_shutdown(ShutdownReason.INTERNAL_ERROR)

        thread = threading.Thread(target=guarded, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)
        return thread

    def _grab_loop(self):
        try:
            while not self._shutdown.is_set():
                try:
                    frame = self.source.read(self._shutdown)
                except SourceError as e:
                    logger.error(f"Frame source failed: {e}")
                    self.request_shutdown(ShutdownReason.SOURCE_ERROR)
                    break

                if frame is None:
                    if not self._shutdown.is_set():
                        logger.info("End of stream reached")
                        self.request_shutdown(ShutdownReason.END_OF_STREAM)
                    break

                self.frames_captured += 1
                if not self._raw.send(frame):
                    break
        finally:
            self._raw.close()
            self.source.close()

    def _detect_loop(self):
        try:
            for frame in self._raw:
                item = self.detector.process(frame)
                if item.transition is not None:
                    logger.info(
                        f"[MOTION] {item.transition.state.value} at frame {item.frame.index}"
                    )
                    if not self._alerts.offer(item.transition):
                        logger.warning("Alert queue full, dropping transition")
                self.broadcaster.publish(item.frame)
                if not self._records.send(item) and not self._shutdown.is_set():
                    logger.warning("Recorder is gone, frame not recorded")
        finally:
            self._raw.abandon()
            self._records.close()
            self.broadcaster.close()
            self._alerts.close()

    def _record_loop(self):
        try:
            for item in self._records:
                self.recorder.handle(item)
        finally:
            self._records.abandon()
            self.recorder.close()

    def _alert_loop(self):
        try:
            self.dispatcher.run(self._alerts)
        finally:
            self._alerts.abandon()

    def _join(self, thread: threading.Thread, timeout: Optional[float] = None):
        waited = 0.0
        while thread.is_alive():
            thread.join(JOIN_POLL)
            waited += JOIN_POLL
            if timeout is not None and waited >= timeout:
                logger.warning(f"{thread.name} thread did not stop in time")
                return

    def run(self) -> int:
        """
        Run until shutdown and tear everything down in order.

        Returns:
            Process exit code: 0 for end of stream or an external signal,
            1 for a fatal source error or a crashed component.

        Raises:
            OSError: if the stream server cannot be started.
        """
        if self.server is not None:
            self.server.start()

        recorder = self._spawn("Recorder", self._record_loop)
        broadcaster = self._spawn("Broadcaster", self.broadcaster.run)
        alerts = self._spawn("AlertDispatcher", self._alert_loop)
        detector = self._spawn("Detector", self._detect_loop)
        grabber = self._spawn("Grabber", self._grab_loop)

        logger.info("Motion pipeline running. Press Ctrl+C to stop.")

        # Source stops first, then consumers drain and finalize
        self._join(grabber)
        self._join(detector)
        self._join(recorder)
        self._join(broadcaster)
        if self.server is not None:
            self.server.stop()
        self._join(alerts, timeout=30)

        logger.info(
            f"Pipeline stopped: {self.frames_captured} frames captured, "
            f"{len(self.recorder.completed)} segments recorded"
        )
        last = self.detector.last_transition
        if last is not None:
            logger.info(f"[MOTION] Last transition: {last.state.value} at frame {last.frame_index}")
        if self._reason in (ShutdownReason.SOURCE_ERROR, ShutdownReason.INTERNAL_ERROR):
            return EXIT_FAILURE
        return EXIT_OK
