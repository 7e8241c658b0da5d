from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .runner import AgentRunner

logger = logging.getLogger("ptybus.supervisor")


class SessionSupervisor:
    """Running sessions keyed by subscriber id, one loop thread each."""

    def __init__(self, project_root: Path, *, runner_factory: Callable[..., AgentRunner] = AgentRunner) -> None:
        self.project_root = Path(project_root)
        self._factory = runner_factory
        self._lock = threading.Lock()
        self._sessions: Dict[str, Tuple[AgentRunner, threading.Thread]] = {}

    def _drop_if_same(self, subscriber: str, runner: AgentRunner) -> None:
        with self._lock:
            entry = self._sessions.get(subscriber)
            if entry is not None and entry[0] is runner:
                self._sessions.pop(subscriber, None)

    def start(self, subscriber: str, **kwargs: Any) -> AgentRunner:
        key = str(subscriber or "").strip()
        if not key:
            raise ValueError("missing subscriber id")
        with self._lock:
            existing = self._sessions.get(key)
        if existing is not None and existing[1].is_alive():
            return existing[0]

        runner = self._factory(self.project_root, key, **kwargs)

        def _run() -> None:
            try:
                runner.run()
            except Exception:
                logger.exception("session loop crashed", extra={"subscriber": key})
            finally:
                self._drop_if_same(key, runner)

        thread = threading.Thread(target=_run, name=f"ptybus-session:{key}", daemon=True)
        with self._lock:
            self._sessions[key] = (runner, thread)
        thread.start()
        logger.info("session started", extra={"subscriber": key})
        return runner

    def get(self, subscriber: str) -> Optional[AgentRunner]:
        with self._lock:
            entry = self._sessions.get(str(subscriber or "").strip())
        return entry[0] if entry is not None else None

    def running(self) -> List[str]:
        with self._lock:
            return sorted(k for k, (_, t) in self._sessions.items() if t.is_alive())

    def stop(self, subscriber: str, *, timeout: float = 5.0) -> bool:
        with self._lock:
            entry = self._sessions.pop(str(subscriber or "").strip(), None)
        if entry is None:
            return False
        runner, thread = entry
        runner.request_stop()
        thread.join(timeout)
        return not thread.is_alive()

    def stop_all(self, *, timeout: float = 5.0) -> None:
        with self._lock:
            items = list(self._sessions.items())
            self._sessions.clear()
        for _, (runner, _thread) in items:
            runner.request_stop()
        for _, (_runner, thread) in items:
            thread.join(timeout)
