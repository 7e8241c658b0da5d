from __future__ import annotations

import codecs
import itertools
import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, Optional, Protocol, Tuple

from ..util.terminal_render import ScreenModel

logger = logging.getLogger("ptybus.distributor")

# An observer receives (kind, text) where kind is "output", "replay" or "snapshot".
Observer = Callable[[str, str], None]


class TerminalModel(Protocol):
    def feed(self, data: bytes) -> None: ...

    def serialize_screen(self) -> str: ...

    def serialize_scrollback(self) -> str: ...

    def resize(self, cols: int, rows: int) -> None: ...


class RingBuffer:
    """Capped byte buffer, oldest bytes dropped first."""

    def __init__(self, max_bytes: int = 512 * 1024) -> None:
        self.max_bytes = max(1, int(max_bytes))
        self._chunks: Deque[bytes] = deque()
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        if len(chunk) >= self.max_bytes:
            self._chunks.clear()
            self._chunks.append(bytes(chunk[-self.max_bytes:]))
            self._size = self.max_bytes
            return
        self._chunks.append(bytes(chunk))
        self._size += len(chunk)
        while self._size > self.max_bytes:
            drop = self._chunks.popleft()
            excess = self._size - self.max_bytes
            if len(drop) > excess:
                self._chunks.appendleft(drop[excess:])
                self._size -= excess
            else:
                self._size -= len(drop)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)

    def clear(self) -> None:
        self._chunks.clear()
        self._size = 0


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


class OutputDistributor:
    """Fans raw PTY output out to the ring buffer, the terminal model and observers."""

    def __init__(
        self,
        *,
        ring_bytes: int = 512 * 1024,
        model: Optional[TerminalModel] = None,
        cols: int = 80,
        rows: int = 24,
    ) -> None:
        self.ring = RingBuffer(ring_bytes)
        self.model: TerminalModel = model if model is not None else ScreenModel(cols=cols, rows=rows)
        self._lock = threading.Lock()
        self._observers: Dict[int, Observer] = {}
        self._ids = itertools.count(1)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self._lock:
            self.ring.append(chunk)
            self.model.feed(chunk)
            text = self._decoder.decode(chunk)
            observers = list(self._observers.items())
        if not text:
            return
        for oid, observer in observers:
            try:
                observer("output", text)
            except Exception:
                logger.debug(f"observer {oid} write failed; unsubscribing")
                self.unsubscribe(oid)

    def backfill(self, mode: str = "full") -> Tuple[str, str]:
        """Return (kind, data) an attaching observer should receive first."""
        with self._lock:
            if mode == "screen":
                return "snapshot", self.model.serialize_screen()
            if len(self.ring):
                return "replay", _decode(self.ring.getvalue())
            return "snapshot", self.model.serialize_scrollback()

    def subscribe(self, observer: Observer, mode: str = "full") -> Optional[int]:
        kind, data = self.backfill(mode)
        if data:
            try:
                observer(kind, data)
            except Exception:
                logger.debug("observer write failed during backfill")
                return None
        with self._lock:
            oid = next(self._ids)
            self._observers[oid] = observer
        return oid

    def unsubscribe(self, oid: int) -> bool:
        with self._lock:
            return self._observers.pop(oid, None) is not None

    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers)

    def resize(self, cols: int, rows: int) -> None:
        with self._lock:
            self.model.resize(cols, rows)

    def clear(self) -> None:
        with self._lock:
            self.ring.clear()
