"""
Bounded message channels between pipeline threads.

A Channel is a bounded queue with an explicit close notice. Receivers iterate
until the notice arrives; once a receiver stops iterating (normally or by
exception) every pending and future send returns immediately, so a dead
consumer can never wedge its producer.
"""

import queue
import threading
from typing import Any, Iterator

POLL_INTERVAL = 0.1

_CLOSED = object()


class Channel:
    """Single-consumer bounded channel with cooperative, interruptible waits."""

    def __init__(self, maxsize: int, name: str = "channel"):
        self.name = name
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._receiver_gone = threading.Event()

    def send(self, item: Any) -> bool:
        """
        Block until the item is queued.

        Returns:
            False if the receiver has stopped consuming.
        """
        while not self._receiver_gone.is_set():
            try:
                self._queue.put(item, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def offer(self, item: Any) -> bool:
        """Queue the item only if there is room right now."""
        if self._receiver_gone.is_set():
            return False
        try:
            self._queue.put_nowait(item)
            return True
        except queue.Full:
            return False

    def close(self) -> bool:
        """Send the close notice; the receiver ends after draining."""
        return self.send(_CLOSED)

    def receive(self) -> Any:
        """
        Wait for the next item.

        Raises:
            EOFError: when the close notice is received.
        """
        item = self._queue.get()
        if item is _CLOSED:
            raise EOFError(self.name)
        return item

    def __iter__(self) -> Iterator[Any]:
        try:
            while True:
                try:
                    yield self.receive()
                except EOFError:
                    return
        finally:
            self.abandon()

    def abandon(self):
        """Stop consuming; pending and future sends return False."""
        self._receiver_gone.set()

