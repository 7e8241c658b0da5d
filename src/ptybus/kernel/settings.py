"""Settings for PTY sessions.

Settings are stored in <home>/bus/settings.yaml under the ``pty:`` section.
Missing or malformed values fall back to the defaults below, clamped to sane
ranges. A few environment variables override the file.
"""
from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict

import yaml  # type: ignore

from ..paths import BusPaths
from ..util.fs import atomic_write_text

WATCHDOG_ACTIONS = ("restart", "fallback")


@dataclass
class PtySettings:
    cols: int = 80
    rows: int = 24
    # No output for this long after spawn means the agent is ready.
    quiet_window: float = 3.0
    max_restarts: int = 3
    restart_base_delay: float = 1.0
    restart_max_delay: float = 10.0
    # A run longer than this resets the restart counter.
    stability_window: float = 30.0
    queue_limit: int = 200
    settle_delay: float = 0.2
    submit_delay: float = 0.1
    echo_timeout: float = 1.5
    flush_delay: float = 0.12
    chunk_size: int = 2000
    idle_timeout: float = 30.0
    watchdog_timeout: float = 120.0
    watchdog_action: str = "restart"
    poll_interval: float = 0.2
    heartbeat_interval: float = 30.0
    ring_buffer_bytes: int = 512 * 1024

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_int(v: Any, default: int, *, min_value: int, max_value: int) -> int:
    try:
        n = int(v)
    except Exception:
        n = int(default)
    if n < min_value:
        n = min_value
    if n > max_value:
        n = max_value
    return int(n)


def _as_float(v: Any, default: float, *, min_value: float, max_value: float) -> float:
    if isinstance(v, bool):
        return float(default)
    try:
        x = float(v)
    except Exception:
        x = float(default)
    if x != x:
        x = float(default)
    if x < min_value:
        x = min_value
    if x > max_value:
        x = max_value
    return x


def _as_choice(v: Any, default: str, choices: tuple) -> str:
    s = str(v).strip().lower() if v is not None else ""
    return s if s in choices else str(default)


# (min, max) per numeric key.
_LIMITS: Dict[str, tuple] = {
    "cols": (10, 1000),
    "rows": (5, 500),
    "quiet_window": (0.0, 60.0),
    "max_restarts": (0, 100),
    "restart_base_delay": (0.0, 300.0),
    "restart_max_delay": (0.0, 3600.0),
    "stability_window": (0.0, 86400.0),
    "queue_limit": (1, 100000),
    "settle_delay": (0.0, 10.0),
    "submit_delay": (0.0, 10.0),
    "echo_timeout": (0.0, 60.0),
    "flush_delay": (0.0, 10.0),
    "chunk_size": (1, 1_000_000),
    "idle_timeout": (0.1, 86400.0),
    "watchdog_timeout": (0.1, 86400.0),
    "poll_interval": (0.01, 60.0),
    "heartbeat_interval": (0.1, 86400.0),
    "ring_buffer_bytes": (1024, 64 * 1024 * 1024),
}


def settings_from_dict(raw: Any) -> PtySettings:
    """Return merged/validated settings from a ``pty:`` mapping."""
    base = PtySettings()
    if not isinstance(raw, dict):
        return base
    for f in fields(PtySettings):
        if f.name not in raw:
            continue
        current = getattr(base, f.name)
        value = raw.get(f.name)
        if f.name == "watchdog_action":
            setattr(base, f.name, _as_choice(value, current, WATCHDOG_ACTIONS))
            continue
        lo, hi = _LIMITS[f.name]
        if isinstance(current, int):
            setattr(base, f.name, _as_int(value, current, min_value=lo, max_value=hi))
        else:
            setattr(base, f.name, _as_float(value, current, min_value=lo, max_value=hi))
    return base


def _read_doc(paths: BusPaths) -> Dict[str, Any]:
    p = paths.settings_path
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        return doc if isinstance(doc, dict) else {}
    except Exception:
        return {}


def load_settings(paths: BusPaths) -> PtySettings:
    """Load settings.yaml, then apply environment overrides."""
    settings = settings_from_dict(_read_doc(paths).get("pty"))
    action = os.environ.get("PTYBUS_PTY_WATCHDOG_ACTION")
    if action:
        settings.watchdog_action = _as_choice(action, settings.watchdog_action, WATCHDOG_ACTIONS)
    return settings


def save_settings(paths: BusPaths, settings: PtySettings) -> None:
    doc = _read_doc(paths)
    doc["pty"] = settings.to_dict()
    p = paths.settings_path
    p.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(p, yaml.safe_dump(doc, allow_unicode=True, sort_keys=False))
