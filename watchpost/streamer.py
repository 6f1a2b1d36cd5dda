"""
Live Stream Module.

Fans the classified frame stream out to any number of HTTP viewers without
ever stalling the pipeline.

Every subscriber owns a single-slot cell holding the latest frame it has not
consumed yet. Publishing overwrites the slot, so a slow viewer silently loses
stale frames while the producer and the other viewers carry on at full rate.
Each viewer is served by its own streaming response that pulls from its slot
and encodes at its own pace.

Endpoints:
    GET /, /stream  -> multipart/x-mixed-replace stream of still images
    GET /snapshot   -> latest frame as a single image
    GET /health     -> JSON {status, subscribers, frames_published, frames_dropped}
"""

import io
import itertools
import logging
import threading
import time
from typing import Callable, Dict, Iterator, Optional

import numpy as np
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from PIL import Image

from watchpost.frames import Frame

logger = logging.getLogger(__name__)

BOUNDARY = "frame"
POLL_INTERVAL = 0.5


class LatestFrameSlot:
    """Capacity-1 cell: put() replaces any unconsumed frame instead of waiting."""

    def __init__(self):
        self._cond = threading.Condition()
        self._frame: Optional[Frame] = None
        self._closed = False
        self.dropped = 0

    def put(self, frame: Frame) -> bool:
        with self._cond:
            if self._closed:
                return False
            if self._frame is not None:
                self.dropped += 1
            self._frame = frame
            self._cond.notify()
            return True

    def take(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """
        Return the pending frame, waiting up to `timeout` for one.

        Returns:
            The frame, or None if the wait timed out.

        Raises:
            EOFError: if the slot is closed and empty.
        """
        with self._cond:
            if self._frame is None and not self._closed:
                self._cond.wait(timeout)
            frame, self._frame = self._frame, None
            if frame is None and self._closed:
                raise EOFError("slot closed")
            return frame

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed


class Subscriber:
    """One connected viewer."""

    def __init__(self, subscriber_id: int, peer: str):
        self.id = subscriber_id
        self.peer = peer
        self.slot = LatestFrameSlot()
        self.last_frame_id = -1

    def next_frame(self, timeout: Optional[float] = None) -> Optional[Frame]:
        frame = self.slot.take(timeout)
        if frame is not None:
            self.last_frame_id = frame.index
        return frame

    @property
    def dropped(self) -> int:
        return self.slot.dropped


class FrameBroadcaster:
    """
    Distributes frames to subscribers with drop-oldest backpressure.

    publish() is called from the detector thread and returns immediately;
    run() is the broadcaster's own thread, copying each frame into every
    subscriber slot.
    """

    def __init__(self):
        self._ingress = LatestFrameSlot()
        self._subscribers: Dict[int, Subscriber] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._closed = False
        self._latest: Optional[Frame] = None
        self.frames_published = 0

    def publish(self, frame: Frame) -> bool:
        """Hand a frame to the broadcaster thread. Never blocks."""
        return self._ingress.put(frame)

    def run(self):
        """Broadcaster loop; returns once close() has been called."""
        logger.info("[STREAM] Broadcaster thread started")
        try:
            while True:
                try:
                    frame = self._ingress.take(timeout=POLL_INTERVAL)
                except EOFError:
                    break
                if frame is not None:
                    self.deliver(frame)
        finally:
            self._close_subscribers()
            logger.info("[STREAM] Broadcaster thread stopped")

    def deliver(self, frame: Frame):
        """Overwrite every subscriber's slot with `frame`."""
        self._latest = frame
        self.frames_published += 1
        with self._lock:
            subscribers = list(self._subscribers.values())
        for subscriber in subscribers:
            subscriber.slot.put(frame)

    def subscribe(self, peer: str = "") -> Subscriber:
        subscriber = Subscriber(next(self._ids), peer)
        with self._lock:
            if self._closed:
                subscriber.slot.close()
            else:
                self._subscribers[subscriber.id] = subscriber
        return subscriber

    def unsubscribe(self, subscriber: Subscriber):
        with self._lock:
            removed = self._subscribers.pop(subscriber.id, None)
        subscriber.slot.close()
        if removed is not None:
            logger.info(
                f"[STREAM] Client {subscriber.peer} disconnected "
                f"({subscriber.dropped} frames dropped)"
            )

    def close(self):
        """Stop accepting frames and end every subscriber stream."""
        self._ingress.close()
        self._close_subscribers()

    def _close_subscribers(self):
        with self._lock:
            self._closed = True
            subscribers = list(self._subscribers.values())
        for subscriber in subscribers:
            subscriber.slot.close()

    @property
    def latest(self) -> Optional[Frame]:
        return self._latest

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def frames_dropped(self) -> int:
        with self._lock:
            return sum(s.dropped for s in self._subscribers.values())


def encode_image(frame: Frame, pil_format: str = "JPEG") -> bytes:
    """Encode a frame's RGB (or grayscale) pixels with Pillow."""
    image = Image.fromarray(np.asarray(frame.image, dtype=np.uint8))
    buf = io.BytesIO()
    if pil_format == "JPEG":
        image.save(buf, format=pil_format, quality=80)
    else:
        image.save(buf, format=pil_format)
    return buf.getvalue()


def multipart_stream(
    broadcaster: FrameBroadcaster,
    subscriber: Subscriber,
    encoder: Callable[[Frame], bytes],
    content_type: str,
) -> Iterator[bytes]:
    """Yield one multipart part per frame until the subscriber is closed."""
    try:
        while True:
            try:
                frame = subscriber.next_frame(timeout=POLL_INTERVAL)
            except EOFError:
                return
            if frame is None:
                continue
            try:
                data = encoder(frame)
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"[STREAM] Failed to encode frame for {subscriber.peer}: {e}")
                return
            header = (
                f"--{BOUNDARY}\r\n"
                f"Content-Type: {content_type}\r\n"
                f"Content-Length: {len(data)}\r\n\r\n"
            ).encode("ascii")
            yield header + data + b"\r\n"
    finally:
        broadcaster.unsubscribe(subscriber)


def create_app(broadcaster: FrameBroadcaster, stream_config) -> FastAPI:
    """Build the HTTP app serving the live stream of `broadcaster`."""
    app = FastAPI(title="watchpost")
    pil_format = stream_config.pil_format
    content_type = stream_config.content_type

    def encoder(frame: Frame) -> bytes:
        return encode_image(frame, pil_format)

    @app.get("/")
    @app.get("/stream")
    def stream(request: Request):
        peer = f"{request.client.host}:{request.client.port}" if request.client else "unknown"
        subscriber = broadcaster.subscribe(peer)
        logger.info(f"[STREAM] HTTP Client Connected from {peer}")
        return StreamingResponse(
            multipart_stream(broadcaster, subscriber, encoder, content_type),
            media_type=f"multipart/x-mixed-replace; boundary={BOUNDARY}",
            headers={"Cache-Control": "no-cache, no-store"},
        )

    @app.get("/snapshot")
    def snapshot():
        frame = broadcaster.latest
        if frame is None:
            return JSONResponse({"error": "no frame available yet"}, status_code=503)
        return Response(encoder(frame), media_type=content_type)

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "subscribers": broadcaster.subscriber_count,
            "frames_published": broadcaster.frames_published,
            "frames_dropped": broadcaster.frames_dropped,
        }

    return app


class StreamServer:
    """Runs the stream app under uvicorn on a background thread."""

    def __init__(self, app: FastAPI, host: str, port: int):
        self.host = host
        self.port = port
        self._server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level="warning",
                timeout_graceful_shutdown=2,
            )
        )
        self._thread: Optional[threading.Thread] = None

    def start(self, timeout: float = 5.0):
        """
        Start serving and wait until the socket is bound.

        Raises:
            OSError: if the server failed to start in time.
        """
        self._thread = threading.Thread(target=self._server.run, name="StreamServer", daemon=True)
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                raise OSError(f"stream server failed to listen on {self.host}:{self.port}")
            time.sleep(0.05)
        logger.info(f"[STREAM] Listening on http://{self.host}:{self.port}/stream")

    def stop(self, timeout: float = 5.0):
        if self._thread is None:
            return
        self._server.should_exit = True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("[STREAM] Server did not stop in time")
        self._thread = None
