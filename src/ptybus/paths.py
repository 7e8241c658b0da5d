from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def safe_name(subscriber: str) -> str:
    """Filesystem-safe form of a subscriber id (``codex:abc`` -> ``codex_abc``)."""
    return str(subscriber or "").replace(":", "_").replace("/", "_")


def ptybus_home(project_root: Path) -> Path:
    env = os.environ.get("PTYBUS_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path(project_root) / ".ptybus").resolve()


@dataclass(frozen=True)
class BusPaths:
    home: Path

    @property
    def bus_dir(self) -> Path:
        return self.home / "bus"

    @property
    def events_dir(self) -> Path:
        return self.bus_dir / "events"

    @property
    def seq_lock_path(self) -> Path:
        return self.events_dir / ".seq.lock"

    @property
    def agents_path(self) -> Path:
        return self.bus_dir / "agents.json"

    @property
    def agents_lock_path(self) -> Path:
        return self.bus_dir / "agents.lock"

    @property
    def queues_dir(self) -> Path:
        return self.bus_dir / "queues"

    @property
    def offsets_dir(self) -> Path:
        return self.bus_dir / "offsets"

    @property
    def run_dir(self) -> Path:
        return self.bus_dir / "run"

    @property
    def settings_path(self) -> Path:
        return self.bus_dir / "settings.yaml"

    def queue_dir(self, subscriber: str) -> Path:
        return self.queues_dir / safe_name(subscriber)

    def pending_path(self, subscriber: str) -> Path:
        return self.queue_dir(subscriber) / "pending.jsonl"

    def offset_path(self, subscriber: str) -> Path:
        return self.offsets_dir / f"{safe_name(subscriber)}.offset"

    def socket_path(self, subscriber: str) -> Path:
        return self.run_dir / f"{safe_name(subscriber)}.sock"

    def ensure(self) -> "BusPaths":
        for d in (self.bus_dir, self.events_dir, self.queues_dir, self.offsets_dir, self.run_dir):
            d.mkdir(parents=True, exist_ok=True)
        return self


def bus_paths(project_root: Path) -> BusPaths:
    return BusPaths(home=ptybus_home(project_root))
