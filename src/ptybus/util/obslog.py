from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, TextIO


_CONFIGURED: Dict[str, bool] = {}

# Correlation keys copied from `extra={...}` into the JSON payload.
_CONTEXT_KEYS = ("subscriber", "seq", "target", "marker", "reason", "state", "attempt", "pid")


def _utc_ts_iso(ts: float) -> str:
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except (OverflowError, OSError, ValueError):
        return ""


class JsonlFormatter(logging.Formatter):
    """One JSON object per line; small stable field set plus correlation keys."""

    def __init__(self, *, component: str):
        super().__init__()
        self._component = str(component or "").strip() or "ptybus"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _utc_ts_iso(getattr(record, "created", 0.0) or 0.0),
            "level": str(record.levelname or ""),
            "logger": str(record.name or ""),
            "component": self._component,
            "msg": record.getMessage(),
        }
        for k in _CONTEXT_KEYS:
            v = getattr(record, k, None)
            if v is None:
                continue
            sv = str(v).strip()
            if sv:
                payload[k] = sv
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        try:
            return json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError):
            return '{"component":"%s","level":"%s","msg":"(log serialization failed)"}' % (
                self._component,
                payload.get("level", "INFO"),
            )


def _parse_level(level: str, default: int = logging.INFO) -> int:
    s = str(level or "").strip().upper()
    if not s:
        return default
    v = getattr(logging, s, default)
    return v if isinstance(v, int) else default


def setup_root_json_logging(
    *,
    component: str,
    level: str = "",
    stream: Optional[TextIO] = None,
    log_path: Optional[Path] = None,
    force: bool = False,
) -> None:
    """Configure root logging once per process.

    Level defaults to ``PTYBUS_LOG_LEVEL`` (then INFO). With ``log_path`` the
    JSONL records go to that file instead of stderr.
    """
    key = f"root:{component}"
    if _CONFIGURED.get(key) and not force:
        return
    _CONFIGURED[key] = True

    lvl = _parse_level(level or os.environ.get("PTYBUS_LOG_LEVEL", ""))
    root = logging.getLogger()
    root.setLevel(lvl)

    if force:
        for h in list(root.handlers):
            root.removeHandler(h)

    for h in root.handlers:
        if isinstance(h.formatter, JsonlFormatter):
            h.setLevel(lvl)
            return

    handler: logging.Handler
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(log_path), encoding="utf-8")
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(JsonlFormatter(component=component))
    root.addHandler(handler)
