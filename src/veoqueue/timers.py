from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol, TypeVar

from .app_logging import LOGGER_NAME, log_with_fields
from .utils import utc_now

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        return utc_now()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class TimerHandle:
    """A scheduled callback; ``interval`` is set for repeating timers."""

    def __init__(self, name: str, callback: Callable[[], None], interval: float | None = None) -> None:
        self.name = name
        self.callback = callback
        self.interval = interval
        self.due: float | None = None
        self.cancelled = False

    @property
    def active(self) -> bool:
        return not self.cancelled and self.due is not None

    def cancel(self) -> None:
        self.cancelled = True
        self.due = None


@dataclass(order=True, slots=True)
class _Entry:
    due: float
    seq: int
    handle: TimerHandle = field(compare=False)


class TimerQueue:
    """Single heap of due-times driving every scheduled callback.

    Blocking work (remote calls, downloads) runs on an executor through
    ``run_in_executor``; its completion callback is handed back to this loop,
    so only the loop thread ever touches actor state or the job store.
    """

    def __init__(self, clock: Clock, logger: logging.Logger | None = None) -> None:
        self.clock = clock
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._heap: list[_Entry] = []
        self._seq = itertools.count()
        self._ready: deque[tuple[str, Callable[[], None]]] = deque()
        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._in_flight = 0

    def call_later(self, delay: float, callback: Callable[[], None], name: str) -> TimerHandle:
        handle = TimerHandle(name, callback)
        self._push(handle, max(0.0, delay))
        return handle

    def call_every(
        self,
        interval: float,
        callback: Callable[[], None],
        name: str,
        first_delay: float | None = None,
    ) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        handle = TimerHandle(name, callback, interval=interval)
        self._push(handle, interval if first_delay is None else max(0.0, first_delay))
        return handle

    def call_soon_threadsafe(self, callback: Callable[[], None], name: str) -> None:
        with self._lock:
            self._ready.append((name, callback))
        self._wakeup.set()

    def run_in_executor(
        self,
        executor: Executor,
        work: Callable[[], T],
        on_done: Callable[[Future[T]], None],
        name: str,
    ) -> Future[T]:
        """Run ``work`` on ``executor`` and call ``on_done(future)`` back on this loop."""
        future = executor.submit(work)
        self._in_flight += 1
        future.add_done_callback(lambda done: self.call_soon_threadsafe(lambda: self._finish(done, on_done), name))
        return future

    def _finish(self, future: Future[T], on_done: Callable[[Future[T]], None]) -> None:
        self._in_flight -= 1
        on_done(future)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _push(self, handle: TimerHandle, delay: float) -> None:
        handle.due = self.clock.monotonic() + delay
        heapq.heappush(self._heap, _Entry(handle.due, next(self._seq), handle))

    def _discard_stale(self) -> None:
        while self._heap:
            head = self._heap[0]
            if head.handle.cancelled or head.handle.due != head.due:
                heapq.heappop(self._heap)
                continue
            return

    def _take_ready(self) -> list[tuple[str, Callable[[], None]]]:
        with self._lock:
            ready = list(self._ready)
            self._ready.clear()
        return ready

    def pending_count(self) -> int:
        return sum(1 for entry in self._heap if not entry.handle.cancelled and entry.handle.due == entry.due)

    def next_due_in(self) -> float | None:
        self._discard_stale()
        if not self._heap:
            return None
        return max(0.0, self._heap[0].due - self.clock.monotonic())

    def wait(self, timeout: float | None) -> None:
        """Block until a timer may be due or a worker result has arrived."""
        with self._lock:
            if self._ready:
                return
            self._wakeup.clear()
        if self._in_flight:
            self._wakeup.wait(timeout)
        elif timeout is not None and timeout > 0:
            self.clock.sleep(timeout)

    def _invoke(self, name: str, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "timer_callback_failed",
                timer=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def run_due(self) -> int:
        ran = 0
        while True:
            ready = self._take_ready()
            for name, callback in ready:
                self._invoke(name, callback)
            ran += len(ready)

            self._discard_stale()
            if self._heap and self._heap[0].due <= self.clock.monotonic():
                entry = heapq.heappop(self._heap)
                handle = entry.handle
                if handle.interval is not None:
                    self._push(handle, handle.interval)
                else:
                    handle.due = None
                self._invoke(handle.name, handle.callback)
                ran += 1
                continue
            if not ready:
                return ran
