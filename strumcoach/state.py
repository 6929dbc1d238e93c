"""Thread-safe state containers shared between worker threads and callers."""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Observable(Generic[T]):
    """Last-value-wins container with synchronous subscribers.

    Readers always see the most recent value; there is no queue and no
    backpressure. Subscribers run on the publishing thread, in publish order,
    outside the internal lock.
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        with self._lock:
            return self._value

    def set(self, value: T) -> None:
        with self._lock:
            self._value = value
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(value)
            except Exception:
                logger.exception("Subscriber raised while handling update")

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe


class AppendOnlyLog(Generic[T]):
    """Mutex-guarded append-only buffer (timestamps, calibration samples)."""

    def __init__(self) -> None:
        self._items: list[T] = []
        self._lock = threading.Lock()

    def append(self, item: T) -> None:
        with self._lock:
            self._items.append(item)

    def snapshot(self) -> list[T]:
        with self._lock:
            return list(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


_CLOSE = object()


class DelayedDispatcher:
    """Deliver callbacks no sooner than ``submit time + delay``.

    A single worker drains a FIFO; with a fixed delay, submission order is
    also due order, so deliveries stay ordered.
    """

    def __init__(self, delay_seconds: float = 0.0, name: str = "delayed-dispatch") -> None:
        self.delay_seconds = max(0.0, delay_seconds)
        self._queue: queue.Queue = queue.Queue()
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def submit(self, callback: Callable[..., None], *args) -> None:
        if self._closed.is_set():
            return
        due = time.monotonic() + self.delay_seconds
        self._queue.put((due, callback, args))

    def close(self, timeout: float = 1.0) -> None:
        """Cancel pending deliveries and stop the worker. Idempotent."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put(_CLOSE)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                return
            due, callback, args = item
            # Event.wait doubles as a cancellable sleep
            remaining = due - time.monotonic()
            if remaining > 0 and self._closed.wait(remaining):
                return
            if self._closed.is_set():
                return
            try:
                callback(*args)
            except Exception:
                logger.exception("Delayed callback failed")
