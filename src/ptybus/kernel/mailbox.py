"""Per-subscriber mailbox files and the rename-based drain protocol.

A drainer claims ``pending.jsonl`` by renaming it to
``pending.jsonl.processing.<pid>.<ns>.<n>``. Rename is atomic, so exactly one
caller wins; a loser sees the source vanish and simply yields until the next
poll. Processing files left behind by a drainer that died between rename and
delete are claimed the same way by the next drain, so nothing is lost.
"""
from __future__ import annotations

import itertools
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import DrainContention
from ..paths import BusPaths
from ..util.fs import append_jsonl, parse_jsonl, truncate_file
from .registry import pid_alive

logger = logging.getLogger("ptybus.mailbox")

_PROCESSING = ".processing."
_COUNTER = itertools.count()

# Processing files this old are treated as abandoned even if the pid lives on.
STALE_PROCESSING_SECONDS = 30.0


def _owner_pid(path: Path) -> int:
    tail = path.name.split(_PROCESSING, 1)[-1]
    try:
        return int(tail.split(".", 1)[0])
    except ValueError:
        return 0


class MailboxStore:
    def __init__(
        self,
        paths: BusPaths,
        *,
        pid_check: Callable[[int], bool] = pid_alive,
        stale_after: float = STALE_PROCESSING_SECONDS,
    ) -> None:
        self.paths = paths
        self._pid_check = pid_check
        self._stale_after = float(stale_after)

    # -- pull cursor -------------------------------------------------------

    def offset(self, subscriber: str) -> int:
        p = self.paths.offset_path(subscriber)
        try:
            return int(p.read_text(encoding="utf-8").strip() or 0)
        except (OSError, ValueError):
            return 0

    def set_offset(self, subscriber: str, seq: int) -> None:
        p = self.paths.offset_path(subscriber)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(f"{int(seq)}\n", encoding="utf-8")

    # -- queue -------------------------------------------------------------

    def ensure(self, subscriber: str) -> Path:
        d = self.paths.queue_dir(subscriber)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def enqueue(self, subscriber: str, event: Dict[str, Any]) -> bool:
        """Append unless the subscriber's pull cursor already covers this seq."""
        seq = int(event.get("seq") or 0)
        if seq <= self.offset(subscriber):
            return False
        append_jsonl(self.paths.pending_path(subscriber), event)
        return True

    def check(self, subscriber: str) -> List[Dict[str, Any]]:
        p = self.paths.pending_path(subscriber)
        try:
            return parse_jsonl(p.read_text(encoding="utf-8", errors="replace"))
        except OSError:
            return []

    def ack(self, subscriber: str) -> int:
        count = len(self.check(subscriber))
        truncate_file(self.paths.pending_path(subscriber))
        return count

    def remove(self, subscriber: str) -> None:
        shutil.rmtree(self.paths.queue_dir(subscriber), ignore_errors=True)
        try:
            self.paths.offset_path(subscriber).unlink()
        except FileNotFoundError:
            pass

    # -- drain -------------------------------------------------------------

    def _processing_name(self, pending: Path) -> Path:
        return pending.with_name(f"{pending.name}{_PROCESSING}{os.getpid()}.{time.time_ns()}.{next(_COUNTER)}")

    def _claim(self, source: Path, pending: Path) -> Path:
        dest = self._processing_name(pending)
        try:
            os.rename(source, dest)
        except OSError as e:
            raise DrainContention(f"{source.name}: {e.strerror or e}") from e
        return dest

    def _abandoned(self, path: Path) -> bool:
        owner = _owner_pid(path)
        if owner != os.getpid() and not self._pid_check(owner):
            return True
        try:
            age = time.time() - path.stat().st_ctime
        except OSError:
            return False
        return age > self._stale_after

    def _read_claimed(self, claimed: Path, pending: Path) -> Optional[str]:
        try:
            text = claimed.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning(f"mailbox read failed, rolling back: {e}")
            if not pending.exists():
                try:
                    os.rename(claimed, pending)
                except OSError:
                    pass
            return None
        try:
            claimed.unlink()
        except OSError:
            pass
        return text

    def drain(self, subscriber: str) -> List[Dict[str, Any]]:
        """Exclusively take every pending event; ``[]`` when there is nothing to
        take or another drainer won this round."""
        pending = self.paths.pending_path(subscriber)
        claimed: List[Path] = []

        orphans = sorted(pending.parent.glob(f"{pending.name}{_PROCESSING}*")) if pending.parent.exists() else []
        for orphan in orphans:
            if not self._abandoned(orphan):
                continue
            try:
                claimed.append(self._claim(orphan, pending))
                logger.info(f"recovering abandoned drain file {orphan.name}", extra={"subscriber": subscriber})
            except DrainContention:
                continue

        try:
            claimed.append(self._claim(pending, pending))
        except DrainContention as e:
            if not claimed:
                logger.debug(f"drain yielded: {e}", extra={"subscriber": subscriber})
                return []

        events: List[Dict[str, Any]] = []
        for path in claimed:
            text = self._read_claimed(path, pending)
            if text:
                events.extend(parse_jsonl(text))
        events.sort(key=lambda ev: int(ev.get("seq") or 0))
        return events
