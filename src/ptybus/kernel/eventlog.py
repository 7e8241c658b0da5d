from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..contracts.v1 import Event, EventKind
from ..paths import BusPaths
from ..util.file_lock import locked
from ..util.fs import append_jsonl, iter_jsonl, read_last_lines
from ..util.time import utc_date, utc_now

logger = logging.getLogger("ptybus.eventlog")

# Tail lines inspected per partition when looking for the last valid record.
_TAIL_LINES = 64


class EventLog:
    """Append-only, date-partitioned JSONL log; source of the global seq."""

    def __init__(self, paths: BusPaths, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.paths = paths
        self.events_dir = paths.events_dir
        self._clock = clock

    def partitions(self) -> List[Path]:
        if not self.events_dir.exists():
            return []
        return sorted(p for p in self.events_dir.glob("*.jsonl") if p.is_file())

    def current_partition(self) -> Path:
        return self.events_dir / f"{utc_date(self._clock())}.jsonl"

    @staticmethod
    def _last_seq(path: Path) -> int:
        for line in reversed(read_last_lines(path, _TAIL_LINES)):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                continue
            seq = obj.get("seq") if isinstance(obj, dict) else None
            if isinstance(seq, int) and not isinstance(seq, bool) and seq > 0:
                return seq
        return 0

    def next_seq(self) -> int:
        """max(seq)+1 over the last valid line of each partition, newest first."""
        best = 0
        for path in reversed(self.partitions()):
            best = max(best, self._last_seq(path))
        return best + 1

    def append(self, event: Event) -> Dict[str, Any]:
        payload = event.model_dump()
        append_jsonl(self.current_partition(), payload)
        return payload

    def publish(
        self,
        *,
        kind: EventKind,
        event_name: str,
        publisher: str,
        target: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Event:
        """Allocate the next seq and append, serialized across processes."""
        self.events_dir.mkdir(parents=True, exist_ok=True)
        with locked(self.paths.seq_lock_path):
            event = Event(
                seq=self.next_seq(),
                kind=kind,
                event=event_name,
                publisher=publisher,
                target=target,
                data=dict(data or {}),
            )
            self.append(event)
        logger.debug("event appended", extra={"seq": event.seq, "target": target})
        return event

    def iter_events(self) -> Iterator[Dict[str, Any]]:
        for path in self.partitions():
            for obj in iter_jsonl(path):
                seq = obj.get("seq")
                if isinstance(seq, int) and not isinstance(seq, bool):
                    yield obj
