from __future__ import annotations

import heapq
import itertools
import logging
import os
import selectors
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger("ptybus.loop")


class TimerHandle:
    __slots__ = ("when", "_callback", "_args", "cancelled")

    def __init__(self, when: float, callback: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        self.when = when
        self._callback = callback
        self._args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def _run(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._callback(*self._args)


class SessionLoop:
    """Single-threaded selector loop driving one PTY session.

    Every PTY read, timer and socket callback runs on the thread calling
    ``run_forever``. Other threads hand work over with ``call_soon_threadsafe``.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._selector = selectors.DefaultSelector()
        self._timers: List[Tuple[float, int, TimerHandle]] = []
        self._counter = itertools.count()
        self._ready: Deque[Tuple[Callable[..., Any], Tuple[Any, ...]]] = deque()
        self._lock = threading.Lock()
        self._readers: Dict[int, Callable[[], None]] = {}
        self._running = False
        self._closed = False
        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        os.set_blocking(self._wake_w, False)
        self._selector.register(self._wake_r, selectors.EVENT_READ, data=None)

    def time(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle(self.time() + max(0.0, float(delay)), callback, args)
        heapq.heappush(self._timers, (handle.when, next(self._counter), handle))
        return handle

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        with self._lock:
            self._ready.append((callback, args))

    def call_soon_threadsafe(self, callback: Callable[..., Any], *args: Any) -> None:
        self.call_soon(callback, *args)
        self._wake()

    def _wake(self) -> None:
        try:
            os.write(self._wake_w, b"x")
        except (BlockingIOError, OSError):
            pass

    def add_reader(self, fd: int, callback: Callable[[], None]) -> None:
        if fd in self._readers:
            self._selector.modify(fd, selectors.EVENT_READ, data=callback)
        else:
            self._selector.register(fd, selectors.EVENT_READ, data=callback)
        self._readers[fd] = callback

    def remove_reader(self, fd: int) -> bool:
        if self._readers.pop(fd, None) is None:
            return False
        try:
            self._selector.unregister(fd)
        except (KeyError, ValueError, OSError):
            pass
        return True

    def _next_timeout(self, limit: Optional[float]) -> Optional[float]:
        with self._lock:
            if self._ready:
                return 0.0
        while self._timers and self._timers[0][2].cancelled:
            heapq.heappop(self._timers)
        timeout = limit
        if self._timers:
            due = max(0.0, self._timers[0][0] - self.time())
            timeout = due if timeout is None else min(timeout, due)
        return timeout

    def run_once(self, timeout: Optional[float] = None) -> None:
        for key, _mask in self._selector.select(self._next_timeout(timeout)):
            if key.data is None:
                try:
                    while os.read(self._wake_r, 4096):
                        pass
                except (BlockingIOError, OSError):
                    pass
                continue
            key.data()

        now = self.time()
        due: List[TimerHandle] = []
        while self._timers and self._timers[0][0] <= now:
            due.append(heapq.heappop(self._timers)[2])
        for handle in due:
            self._run_callback(handle._run)

        with self._lock:
            ready = list(self._ready)
            self._ready.clear()
        for callback, args in ready:
            self._run_callback(callback, *args)

    @staticmethod
    def _run_callback(callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("loop callback failed")

    def run_forever(self) -> None:
        self._running = True
        try:
            while self._running:
                self.run_once(timeout=1.0)
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False
        self._wake()

    def is_running(self) -> bool:
        return self._running

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._running = False
        self._readers.clear()
        try:
            self._selector.close()
        except Exception:
            pass
        for fd in (self._wake_r, self._wake_w):
            try:
                os.close(fd)
            except OSError:
                pass
