"""Terminal output hygiene.

Raw PTY output is cleaned before any marker scan or delivery: ANSI escape
sequences are stripped, carriage-return overwrites are collapsed the way a
terminal would render them, and known interactive-UI chrome lines are dropped.
Cursor-position queries are answered separately on the raw byte stream.
"""
from __future__ import annotations

import re
from typing import Iterable, List, Pattern, Tuple

# CSI, OSC (BEL or ST terminated), charset designation, then any other
# two-byte escape.
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[()*+][0-9A-Za-z]"
    r"|\x1b[@-Z\\-_]"
    r"|\x1b[=>78]"
)
_ANSI_PARTIAL_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*\x1b?|[()*+])?$")
_MAX_PARTIAL = 4096

# Other C0 controls that never belong in a reply (keeps \t, \n, \r).
_CTRL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1a\x1c-\x1f\x7f]")

CURSOR_QUERY = b"\x1b[6n"

DEFAULT_CHROME_PATTERNS: Tuple[str, ...] = (
    r"(?:\besc|ctrl\+c|press \S+)\s+to interrupt",
    r"\?\s+for shortcuts",
    r"ctrl\+c to (?:exit|quit)",
    r"context left until auto-compact",
    r"print the following marker",
    r"__PTYBUS_DONE_[0-9A-Za-z_]*",
)


def strip_ansi(text: str) -> str:
    return _CTRL_RE.sub("", _ANSI_RE.sub("", text))


def collapse_carriage_returns(text: str) -> str:
    """Keep only the text after the final CR of every line."""
    text = text.replace("\r\n", "\n")
    if "\r" not in text:
        return text
    lines = text.split("\n")
    return "\n".join(line.rsplit("\r", 1)[-1] for line in lines)


class OutputCleaner:
    """Incremental strip_ansi + collapse_carriage_returns.

    An escape sequence split across chunks is held until complete. The
    trailing unterminated line is held while it contains a CR, since a later
    chunk may still overwrite it.
    """

    def __init__(self) -> None:
        self._escape_tail = ""
        self._line_tail = ""

    def feed(self, text: str) -> str:
        data = self._escape_tail + text
        self._escape_tail = ""
        partial = _ANSI_PARTIAL_RE.search(data)
        if partial is not None and len(data) - partial.start() <= _MAX_PARTIAL:
            self._escape_tail = data[partial.start():]
            data = data[: partial.start()]
        data = self._line_tail + strip_ansi(data)
        self._line_tail = ""

        if data.endswith("\r"):
            self._line_tail = "\r"
            data = data[:-1]
        cut = data.rfind("\n")
        last_line = data[cut + 1:]
        if "\r" in last_line:
            self._line_tail = last_line + self._line_tail
            data = data[: cut + 1]
        return collapse_carriage_returns(data)

    def pending(self) -> str:
        """Rendered form of the held line, without consuming it."""
        return collapse_carriage_returns(self._line_tail).rstrip("\r")

    def release_line(self) -> str:
        """Give up the held line as rendered so far; escape state is kept."""
        data, self._line_tail = self._line_tail, ""
        return collapse_carriage_returns(data).rstrip("\r")

    def flush(self) -> str:
        data = self._line_tail
        self._line_tail = ""
        self._escape_tail = ""
        return collapse_carriage_returns(data).rstrip("\r")

    def reset(self) -> None:
        self._escape_tail = ""
        self._line_tail = ""


class ChromeFilter:
    def __init__(self, patterns: Iterable[str] = DEFAULT_CHROME_PATTERNS) -> None:
        self._patterns: List[Pattern[str]] = [re.compile(p, re.IGNORECASE) for p in patterns]

    def is_chrome(self, line: str) -> bool:
        return any(p.search(line) for p in self._patterns)

    def filter(self, text: str) -> str:
        if not text:
            return text
        kept = [line for line in text.split("\n") if not (line.strip() and self.is_chrome(line))]
        return "\n".join(kept)


class CursorQueryResponder:
    """Counts cursor-position queries (CSI 6n) in a raw byte stream."""

    def __init__(self) -> None:
        self._tail = b""

    def feed(self, data: bytes) -> int:
        buf = self._tail + data
        count = buf.count(CURSOR_QUERY)
        keep = len(CURSOR_QUERY) - 1
        tail = buf[-keep:] if len(buf) >= keep else buf
        # Drop a tail that already belongs to a counted query.
        if buf.endswith(CURSOR_QUERY):
            tail = b""
        self._tail = tail
        return count

    @staticmethod
    def report(row: int = 1, col: int = 1) -> bytes:
        return f"\x1b[{int(row)};{int(col)}R".encode("ascii")
