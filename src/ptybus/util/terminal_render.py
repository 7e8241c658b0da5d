from __future__ import annotations

import codecs
from typing import Optional


_HR_CHARS = set("─━-=═")


def _is_horizontal_rule(line: str) -> bool:
    t = (line or "").strip()
    if len(t) < 20:
        return False
    # Long decorative rulers compare equal regardless of width.
    return all((ch in _HR_CHARS) for ch in t)


def _normalize_for_compaction(line: str) -> str:
    s = (line or "").rstrip()
    if not s:
        return ""
    if _is_horizontal_rule(s):
        return "<HR>"
    return s


def _parse_csi_params(param_str: str) -> list[int]:
    out: list[int] = []
    for p in (param_str or "").split(";"):
        p = p.strip()
        if not p:
            continue
        try:
            out.append(int(p))
        except ValueError:
            continue
    return out


def _ensure_col(line: list[str], col: int) -> None:
    if col < 0:
        return
    if len(line) <= col:
        line.extend([" "] * (col + 1 - len(line)))


def _compact_consecutive_duplicate_lines(lines: list[str]) -> list[str]:
    out: list[str] = []
    last: Optional[str] = None
    for line in lines:
        cur = _normalize_for_compaction(line)
        if last is not None and cur == last:
            continue
        out.append(line)
        last = cur
    return out


def _compact_consecutive_duplicate_blocks(
    lines: list[str],
    *,
    min_block_lines: int = 3,
    max_block_lines: int = 60,
) -> list[str]:
    """Remove consecutive repeated blocks of lines (common in TUI re-renders).

    This keeps the first occurrence and drops immediately repeated copies.
    """
    n = len(lines)
    if n <= 1:
        return lines

    min_k = max(1, int(min_block_lines))
    max_k_cap = max(1, int(max_block_lines))
    norm = [_normalize_for_compaction(x) for x in lines]

    out: list[str] = []
    i = 0
    while i < n:
        max_k = min(max_k_cap, (n - i) // 2)
        k_found = 0
        # Prefer larger blocks so whole frames collapse instead of tiny patterns.
        for k in range(max_k, min_k - 1, -1):
            if norm[i : i + k] == norm[i + k : i + 2 * k]:
                k_found = k
                break
        if not k_found:
            out.append(lines[i])
            i += 1
            continue

        out.extend(lines[i : i + k_found])
        i += k_found
        while i + k_found <= n and norm[i : i + k_found] == norm[i - k_found : i]:
            i += k_found

    return out


class ScreenModel:
    """Incremental, best-effort terminal model for replay snapshots.

    Handles cursor movement, erase sequences and line wrapping so TUI redraws
    don't duplicate frames. Rows scrolled off the top of the screen stay in
    the scrollback, capped at ``max_lines``. This is not a full terminal
    emulator.
    """

    def __init__(self, *, cols: int = 80, rows: int = 24, max_lines: int = 5000) -> None:
        self.cols = int(cols)
        self.rows = int(rows)
        self.max_lines = max(int(rows), int(max_lines))
        self._buf: list[list[str]] = [[]]
        self._row = 0
        self._col = 0
        self._top = 0
        self._saved = (0, 0)
        self._pending = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    # -- geometry -------------------------------------------------------------

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            return
        self.cols = int(cols)
        self.rows = int(rows)
        self.max_lines = max(self.rows, self.max_lines)
        self._scroll_into_view()

    def _ensure_row(self, row: int) -> None:
        while len(self._buf) <= row:
            self._buf.append([])

    def _scroll_into_view(self) -> None:
        if self.rows > 0 and self._row - self._top >= self.rows:
            self._top = self._row - self.rows + 1
        overflow = len(self._buf) - self.max_lines
        if overflow > 0:
            del self._buf[:overflow]
            self._row = max(0, self._row - overflow)
            self._top = max(0, self._top - overflow)

    def _move_to(self, row: int, col: int) -> None:
        self._row = max(0, row)
        self._col = max(0, col)
        self._ensure_row(self._row)
        self._scroll_into_view()

    # -- erase ----------------------------------------------------------------

    def _erase_in_line(self, mode: int) -> None:
        self._ensure_row(self._row)
        line = self._buf[self._row]
        col = self._col
        if mode == 2:
            self._buf[self._row] = []
            return
        if mode == 1:
            if col <= 0:
                return
            _ensure_col(line, col - 1)
            for i in range(0, col):
                line[i] = " "
            return
        if col < len(line):
            del line[col:]

    def _erase_in_display(self, mode: int) -> None:
        if mode in (2, 3):
            for r in range(self._top, len(self._buf)):
                self._buf[r] = []
            if mode == 3:
                del self._buf[: self._top]
                self._row -= self._top
                self._top = 0
            return
        if mode == 1:
            for r in range(self._top, self._row):
                self._buf[r] = []
            self._erase_in_line(1)
            return
        self._erase_in_line(0)
        for r in range(self._row + 1, len(self._buf)):
            self._buf[r] = []

    # -- input ----------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        self._feed_text(self._decoder.decode(data))

    def _put(self, ch: str) -> None:
        if self.cols > 0 and self._col >= self.cols:
            self._move_to(self._row + 1, 0)
        self._ensure_row(self._row)
        line = self._buf[self._row]
        _ensure_col(line, self._col)
        line[self._col] = ch
        self._col += 1

    def _csi(self, final: str, params: list[int]) -> None:
        row, col = self._row, self._col
        first = params[0] if params else None
        if final in ("H", "f"):
            r = params[0] if len(params) >= 1 else 1
            c = params[1] if len(params) >= 2 else 1
            self._move_to(self._top + r - 1, c - 1)
        elif final == "A":
            self._row = max(self._top, row - (first or 1))
        elif final == "B":
            self._move_to(row + (first or 1), col)
        elif final == "C":
            self._col = col + (first or 1)
        elif final == "D":
            self._col = max(0, col - (first or 1))
        elif final == "G":
            self._col = max(0, (first or 1) - 1)
        elif final == "d":
            self._move_to(self._top + (first or 1) - 1, col)
        elif final == "J":
            self._erase_in_display(first or 0)
        elif final == "K":
            self._erase_in_line(first or 0)
        elif final == "s":
            self._saved = (row - self._top, col)
        elif final == "u":
            self._move_to(self._top + self._saved[0], self._saved[1])

    def _feed_text(self, text: str) -> None:
        s = self._pending + text.replace("\r\n", "\n")
        self._pending = ""
        i = 0
        n = len(s)
        while i < n:
            ch = s[i]

            if ch == "\x1b":
                if i + 1 >= n:
                    self._pending = s[i:]
                    return
                nxt = s[i + 1]

                # OSC: ESC ] ... BEL  OR  ESC ] ... ESC \
                if nxt == "]":
                    j = i + 2
                    done = False
                    while j < n:
                        if s[j] == "\x07":
                            j += 1
                            done = True
                            break
                        if s[j] == "\x1b" and j + 1 < n and s[j + 1] == "\\":
                            j += 2
                            done = True
                            break
                        j += 1
                    if not done:
                        self._pending = s[i:]
                        return
                    i = j
                    continue

                # CSI: ESC [ ... <final>
                if nxt == "[":
                    j = i + 2
                    private = j < n and s[j] in "?>="
                    if private:
                        j += 1
                    param_start = j
                    while j < n and not ("@" <= s[j] <= "~"):
                        j += 1
                    if j >= n:
                        self._pending = s[i:]
                        return
                    if not private:
                        self._csi(s[j], _parse_csi_params(s[param_start:j]))
                    i = j + 1
                    continue

                # Other ESC: ignore.
                i += 2
                continue

            if ch == "\n":
                self._move_to(self._row + 1, 0)
            elif ch == "\r":
                self._col = 0
            elif ch == "\b":
                self._col = max(0, self._col - 1)
            elif ch == "\t":
                self._col = (self._col // 8 + 1) * 8
            elif ch >= " " and ch != "\x7f":
                self._put(ch)
            i += 1

    # -- output ---------------------------------------------------------------

    def _lines(self, start: int, end: Optional[int] = None) -> list[str]:
        out = ["".join(line).rstrip() for line in self._buf[start:end]]
        while out and not out[-1].strip():
            out.pop()
        return out

    def serialize_screen(self) -> str:
        end = self._top + self.rows if self.rows > 0 else None
        return "\n".join(self._lines(self._top, end))

    def serialize_scrollback(self, *, compact: bool = True) -> str:
        out_lines = self._lines(0)
        if compact:
            out_lines = _compact_consecutive_duplicate_lines(out_lines)
            out_lines = _compact_consecutive_duplicate_blocks(out_lines)
        return "\n".join(out_lines).rstrip()


def render_transcript(text: str, *, compact: bool = True) -> str:
    """Render a readable transcript from raw terminal output (no wrapping)."""
    if not text:
        return ""
    model = ScreenModel(cols=0, rows=0)
    model._feed_text(text)
    return model.serialize_scrollback(compact=compact)
