"""Marker-based request/reply over an interactive terminal.

One turn runs at a time. Starting a turn types the request plus an
instruction to print a unique marker line when done, then submits. The first
marker occurrence in the output is the terminal echoing the request; output up
to it is discarded. The next occurrence ends the turn. Output in between is
streamed to the requester as delta messages, and every turn ends with exactly
one done message (reason marker, idle, timeout, exit or fallback).
"""
from __future__ import annotations

import codecs
import logging
import re
import secrets
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Optional

from ..contracts.v1 import TurnEndReason, TurnInput, encode_delta, encode_done
from ..errors import BusError, EchoNotObserved, MarkerTimeout, ProcessExit
from ..kernel.settings import PtySettings
from .controller import PtySessionController, SessionState
from .headless import FallbackRunner
from .hygiene import ChromeFilter, OutputCleaner

logger = logging.getLogger("ptybus.turns")

ReplySink = Callable[[str, str], None]

_LEADING_BLANK_LINES = re.compile(r"\A(?:[ \t]*\n)+")


def make_marker(prefix: str = "__PTYBUS_DONE_") -> str:
    return f"{prefix}{int(time.time() * 1000)}_{secrets.token_hex(6)}__"


def build_prompt(text: str, marker: str) -> str:
    if not marker:
        return text
    return f"{text}\n\nWhen you have finished, print the following marker on a line by itself:\n{marker}"


def _partial_marker_len(buf: str, marker: str) -> int:
    """Length of the longest buffer suffix that is a proper prefix of marker."""
    for k in range(min(len(marker) - 1, len(buf)), 0, -1):
        if buf.endswith(marker[:k]):
            return k
    return 0


@dataclass
class Turn:
    publisher: str
    text: str
    raw: bool = False
    marker: str = ""
    seq: int = 0


class TurnProtocolEngine:
    def __init__(
        self,
        loop: Any,
        controller: PtySessionController,
        *,
        reply_sink: ReplySink,
        settings: Optional[PtySettings] = None,
        fallback: Optional[FallbackRunner] = None,
        marker_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.loop = loop
        self.controller = controller
        self.settings = settings or controller.settings
        self.fallback = fallback
        self._reply_sink = reply_sink
        prefix = controller.capabilities.marker_prefix
        self._marker_factory = marker_factory or (lambda: make_marker(prefix))
        controller.listener = self

        self.queue: Deque[Turn] = deque()
        self.current: Optional[Turn] = None
        self.completed = 0
        self.dropped = 0
        self._suppressing = False
        self._buffer = ""
        self._cleaner = OutputCleaner()
        self._chrome = ChromeFilter()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._flush_timer = None
        self._idle_timer = None
        self._watchdog_timer = None
        self._echo_timer = None

    @property
    def busy(self) -> bool:
        return self.current is not None

    def _extra(self, turn: Optional[Turn] = None, **fields: Any) -> dict:
        turn = turn or self.current
        out = {"subscriber": self.controller.subscriber, **fields}
        if turn is not None:
            out.setdefault("marker", turn.marker)
            out.setdefault("target", turn.publisher)
            if turn.seq:
                out.setdefault("seq", turn.seq)
        return out

    # -- intake ---------------------------------------------------------------

    def submit(self, publisher: str, message: str, *, seq: int = 0) -> Optional[Turn]:
        parsed = TurnInput.parse(message)
        if not parsed.text:
            return None
        turn = Turn(
            publisher=publisher or "unknown",
            text=parsed.text,
            raw=parsed.raw,
            marker="" if parsed.raw else self._marker_factory(),
            seq=seq,
        )
        if len(self.queue) >= self.settings.queue_limit:
            old = self.queue.popleft()
            self.dropped += 1
            logger.warning("turn queue full; dropping oldest", extra=self._extra(old))
        self.queue.append(turn)
        self._advance()
        return turn

    def _advance(self) -> None:
        if self.current is not None or not self.queue:
            return
        state = self.controller.state
        if state is SessionState.FALLBACK:
            self._start_fallback(self.queue.popleft())
            return
        if state is not SessionState.READY_IDLE:
            return
        turn = self.queue.popleft()
        if not self.controller.begin_turn():
            self.queue.appendleft(turn)
            return
        self._start(turn)

    def _start(self, turn: Turn) -> None:
        self.current = turn
        self._buffer = ""
        self._cleaner.reset()
        self._watchdog_timer = self.loop.call_later(self.settings.watchdog_timeout, self._on_watchdog, turn)
        logger.info("turn started", extra=self._extra(turn))
        if turn.raw:
            self.controller.write(turn.text)
            # No marker can end a raw turn; start the idle clock now.
            self._arm_idle()
            return
        self._suppressing = True
        self._echo_timer = self.loop.call_later(self.settings.echo_timeout, self._on_echo_timeout, turn)
        self.controller.inject(build_prompt(turn.text, turn.marker))

    # -- output ---------------------------------------------------------------

    def on_ready(self) -> None:
        self._advance()

    def on_output(self, data: bytes) -> None:
        if self.current is None:
            return
        text = self._cleaner.feed(self._decoder.decode(data))
        if not text and not self._cleaner.pending():
            return
        self._buffer += text
        self._arm_idle()
        self._scan()

    def _scan(self) -> None:
        turn = self.current
        if turn is None:
            return
        if turn.raw or not turn.marker:
            self._schedule_flush()
            return
        if self._suppressing:
            idx = self._find_marker(turn.marker)
            if idx == -1:
                return
            self._buffer = _LEADING_BLANK_LINES.sub("", self._buffer[idx + len(turn.marker):])
            self._end_suppression()
        idx = self._find_marker(turn.marker)
        if idx != -1:
            before = self._buffer[:idx]
            self._buffer = ""
            self._deliver(turn, before)
            self._finish("marker")
            return
        self._schedule_flush()

    def _find_marker(self, marker: str) -> int:
        idx = self._buffer.find(marker)
        if idx != -1:
            return idx
        held = self._cleaner.pending()
        if held and marker in self._buffer[-len(marker):] + held:
            # A marker redrawn after a CR is still in the cleaner's held line.
            self._buffer += self._cleaner.release_line()
            idx = self._buffer.find(marker)
        return idx

    def _end_suppression(self) -> None:
        self._suppressing = False
        if self._echo_timer is not None:
            self._echo_timer.cancel()
            self._echo_timer = None

    def _on_echo_timeout(self, turn: Turn) -> None:
        self._echo_timer = None
        if turn is not self.current or not self._suppressing:
            return
        logger.warning(str(EchoNotObserved(turn.marker)), extra=self._extra(turn))
        self._suppressing = False
        self._scan()

    def _schedule_flush(self) -> None:
        if self._flush_timer is None and self._buffer:
            self._flush_timer = self.loop.call_later(self.settings.flush_delay, self._flush, self.current)

    def _flush(self, turn: Turn) -> None:
        self._flush_timer = None
        if turn is not self.current or self._suppressing:
            return
        hold = _partial_marker_len(self._buffer, turn.marker) if turn.marker else 0
        ready = self._buffer[: len(self._buffer) - hold]
        chunk = ready[: self.settings.chunk_size]
        if not chunk:
            return
        self._buffer = self._buffer[len(chunk):]
        self._deliver(turn, chunk)
        if len(ready) > len(chunk):
            self._schedule_flush()

    def _drain_buffer(self, turn: Turn) -> None:
        rest = self._buffer + self._cleaner.flush()
        self._buffer = ""
        size = self.settings.chunk_size
        for i in range(0, len(rest), size):
            self._deliver(turn, rest[i : i + size])

    def _deliver(self, turn: Turn, text: str) -> None:
        text = self._chrome.filter(text)
        if text.strip():
            self._send(turn, encode_delta(text))

    def _send(self, turn: Turn, message: str) -> None:
        try:
            self._reply_sink(turn.publisher, message)
        except (BusError, OSError) as e:
            logger.warning(f"reply not delivered: {e}", extra=self._extra(turn))

    # -- timers ---------------------------------------------------------------

    def _arm_idle(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
        self._idle_timer = self.loop.call_later(self.settings.idle_timeout, self._on_idle, self.current)

    def _on_idle(self, turn: Turn) -> None:
        self._idle_timer = None
        if turn is not self.current:
            return
        self._drain_buffer(turn)
        self._finish("idle")

    def _on_watchdog(self, turn: Turn) -> None:
        self._watchdog_timer = None
        if turn is not self.current:
            return
        action = self.settings.watchdog_action
        exc = MarkerTimeout(turn.marker, seconds=self.settings.watchdog_timeout, action=action)
        logger.warning(str(exc), extra=self._extra(turn, reason="timeout"))
        self._drain_buffer(turn)
        self._finish("timeout", detail=str(exc), advance=False)
        if action == "fallback":
            self.controller.fallback("marker timeout")
        else:
            self.controller.restart("marker timeout")
        self._advance()

    def _cancel_timers(self) -> None:
        for name in ("_flush_timer", "_idle_timer", "_watchdog_timer", "_echo_timer"):
            handle = getattr(self, name)
            if handle is not None:
                handle.cancel()
                setattr(self, name, None)

    # -- completion -------------------------------------------------------------

    def _finish(self, reason: TurnEndReason, detail: Optional[str] = None, *, advance: bool = True) -> None:
        turn = self.current
        if turn is None:
            return
        self._cancel_timers()
        self.current = None
        self._suppressing = False
        self._buffer = ""
        self._cleaner.reset()
        self.completed += 1
        self.controller.end_turn()
        self._send(turn, encode_done(reason, detail))
        logger.info(f"turn done: {reason}", extra=self._extra(turn, reason=reason))
        if advance:
            self._advance()

    def on_exit(self, exc: ProcessExit) -> None:
        turn = self.current
        if turn is None:
            return
        self._drain_buffer(turn)
        self._finish("exit", detail=str(exc), advance=False)

    def on_fallback(self, reason: str) -> None:
        if self.current is not None:
            # A PTY turn cannot complete once the process is gone.
            self._finish("exit", detail=reason, advance=False)
        self._advance()

    # -- fallback ---------------------------------------------------------------

    def _start_fallback(self, turn: Turn) -> None:
        self.current = turn
        if self.fallback is None:
            self._finish("fallback", detail="no fallback runner configured")
            return
        if turn.raw:
            self._finish("fallback", detail="raw input is not supported in fallback mode")
            return
        logger.info("turn handed to fallback", extra=self._extra(turn))
        runner = self.fallback

        def _work() -> None:
            try:
                reply, error = runner.run(turn.text), None
            except Exception as e:
                reply, error = "", str(e)
            self.loop.call_soon_threadsafe(self._on_fallback_result, turn, reply, error)

        threading.Thread(target=_work, name=f"ptybus-fallback:{turn.publisher}", daemon=True).start()

    def _on_fallback_result(self, turn: Turn, reply: str, error: Optional[str]) -> None:
        if turn is not self.current:
            return
        if error:
            logger.error(f"fallback run failed: {error}", extra=self._extra(turn))
        elif reply:
            self._send(turn, encode_delta(reply))
        self._finish("fallback", detail=error)
