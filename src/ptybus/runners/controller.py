from __future__ import annotations

import logging
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from ..errors import ProcessExit, RestartExhausted
from ..kernel.agents import AgentCapabilities
from ..kernel.settings import PtySettings
from .hygiene import CursorQueryResponder
from .pty import spawn_pty

logger = logging.getLogger("ptybus.pty")

ESC = b"\x1b"
CR = b"\r"


class SessionState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    WARMUP = "warmup"
    READY_IDLE = "ready_idle"
    BUSY = "busy"
    RESTARTING = "restarting"
    FALLBACK = "fallback"


class SessionListener(Protocol):
    def on_ready(self) -> None: ...

    def on_output(self, data: bytes) -> None: ...

    def on_exit(self, exc: ProcessExit) -> None: ...

    def on_fallback(self, reason: str) -> None: ...


class PtySessionController:
    """Lifecycle of one agent's PTY child: spawn, warmup, restart/backoff, fallback.

    All methods must be called on the owning loop's thread.
    """

    def __init__(
        self,
        loop: Any,
        *,
        command: str,
        args: Sequence[str],
        cwd: Path,
        env: Dict[str, str],
        capabilities: AgentCapabilities,
        settings: Optional[PtySettings] = None,
        spawner: Callable[..., Any] = spawn_pty,
        listener: Optional[SessionListener] = None,
        subscriber: str = "",
    ) -> None:
        self.loop = loop
        self.command = command
        self.args = list(args)
        self.cwd = cwd
        self.env = dict(env)
        self.capabilities = capabilities
        self.settings = settings or PtySettings()
        self.cols = self.settings.cols
        self.rows = self.settings.rows
        self.listener = listener
        self.subscriber = subscriber
        self.output_taps: List[Callable[[bytes], None]] = []

        self._spawner = spawner
        self._proc: Optional[Any] = None
        self._state = SessionState.STOPPED
        self._spawned_at = 0.0
        self.restart_count = 0
        self.spawn_count = 0
        self._quiet_timer = None
        self._restart_timer = None
        self._cpr = CursorQueryResponder()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pid(self) -> int:
        return int(getattr(self._proc, "pid", 0) or 0)

    @property
    def tty(self) -> str:
        return str(getattr(self._proc, "tty", "") or "")

    def _log_extra(self, **fields: Any) -> Dict[str, Any]:
        return {"subscriber": self.subscriber, "state": self._state.value, **fields}

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug(f"{self._state.value} -> {state.value}", extra=self._log_extra())
            self._state = state

    def _cancel_timers(self) -> None:
        for name in ("_quiet_timer", "_restart_timer"):
            handle = getattr(self, name)
            if handle is not None:
                handle.cancel()
                setattr(self, name, None)

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        if self._state not in (SessionState.STOPPED, SessionState.RESTARTING):
            return
        self._restart_timer = None
        self._set_state(SessionState.STARTING)
        self._spawned_at = self.loop.time()
        env = {**self.capabilities.extra_env, **self.env}
        try:
            proc = self._spawner(self.command, self.args, cwd=self.cwd, env=env, cols=self.cols, rows=self.rows)
        except (OSError, ValueError) as e:
            logger.error(f"spawn failed: {e}", extra=self._log_extra())
            self._handle_crash()
            return
        self.spawn_count += 1
        self._proc = proc
        self._cpr = CursorQueryResponder()
        self._set_state(SessionState.WARMUP)
        proc.attach(self.loop, partial(self._on_data, proc), partial(self._on_exit, proc))
        logger.info(
            f"spawned {self.command} (attempt {self.restart_count})",
            extra=self._log_extra(pid=proc.pid, attempt=self.restart_count),
        )
        self._arm_quiet()

    def _arm_quiet(self) -> None:
        if self._quiet_timer is not None:
            self._quiet_timer.cancel()
        self._quiet_timer = self.loop.call_later(self.settings.quiet_window, self._on_quiet)

    def _on_quiet(self) -> None:
        self._quiet_timer = None
        if self._state is not SessionState.WARMUP:
            return
        self._set_state(SessionState.READY_IDLE)
        logger.info("session ready", extra=self._log_extra(pid=self.pid))
        if self.listener is not None:
            self.listener.on_ready()

    def stop(self) -> None:
        """Deliberate stop; the exit that follows is reported, never restarted."""
        self._cancel_timers()
        self._set_state(SessionState.STOPPED)
        proc = self._proc
        if proc is not None:
            proc.kill()

    def restart(self, reason: str = "manual") -> None:
        if self._state in (SessionState.STOPPED, SessionState.FALLBACK):
            return
        logger.warning(f"restarting session: {reason}", extra=self._log_extra(reason=reason))
        # Drop the handle first so the old process's exit callback is stale.
        proc, self._proc = self._proc, None
        self._cancel_timers()
        if proc is not None:
            proc.kill()
        self._set_state(SessionState.RESTARTING)
        self.start()

    def fallback(self, reason: str) -> None:
        if self._state in (SessionState.STOPPED, SessionState.FALLBACK):
            return
        proc, self._proc = self._proc, None
        self._cancel_timers()
        if proc is not None:
            proc.kill()
        self._enter_fallback(reason)

    def _enter_fallback(self, reason: str) -> None:
        self._set_state(SessionState.FALLBACK)
        logger.error(f"pty mode abandoned: {reason}", extra=self._log_extra(reason=reason))
        if self.listener is not None:
            self.listener.on_fallback(reason)

    # -- child callbacks --------------------------------------------------------

    def _on_data(self, proc: Any, data: bytes) -> None:
        if proc is not self._proc:
            return
        for _ in range(self._cpr.feed(data)):
            proc.write(CursorQueryResponder.report())
        for tap in list(self.output_taps):
            tap(data)
        if self._state is SessionState.WARMUP:
            # Startup noise: discard and keep waiting for quiet.
            self._arm_quiet()
            return
        if self._state in (SessionState.READY_IDLE, SessionState.BUSY) and self.listener is not None:
            self.listener.on_output(data)

    def _on_exit(self, proc: Any, exit_code: Optional[int], sig: Optional[int]) -> None:
        if proc is not self._proc:
            logger.debug("ignoring exit of replaced process", extra=self._log_extra(pid=getattr(proc, "pid", 0)))
            return
        self._proc = None
        if self._quiet_timer is not None:
            self._quiet_timer.cancel()
            self._quiet_timer = None
        deliberate = self._state is SessionState.STOPPED
        exc = ProcessExit(deliberate=deliberate, exit_code=exit_code, signal=sig)
        if deliberate:
            logger.info(str(exc), extra=self._log_extra())
        else:
            logger.warning(str(exc), extra=self._log_extra())
        if self.listener is not None:
            self.listener.on_exit(exc)
        if not deliberate:
            self._handle_crash()

    def _handle_crash(self) -> None:
        ran = self.loop.time() - self._spawned_at
        if ran > self.settings.stability_window:
            self.restart_count = 0
        self.restart_count += 1
        if self.restart_count > self.settings.max_restarts:
            exc = RestartExhausted(self.restart_count, self.settings.max_restarts)
            self._enter_fallback(str(exc))
            return
        delay = min(self.restart_count * self.settings.restart_base_delay, self.settings.restart_max_delay)
        self._set_state(SessionState.RESTARTING)
        logger.warning(
            f"restart {self.restart_count}/{self.settings.max_restarts} in {delay:g}s",
            extra=self._log_extra(attempt=self.restart_count),
        )
        self._restart_timer = self.loop.call_later(delay, self.start)

    # -- turn bookkeeping ---------------------------------------------------------

    def begin_turn(self) -> bool:
        if self._state is not SessionState.READY_IDLE:
            return False
        self._set_state(SessionState.BUSY)
        return True

    def end_turn(self) -> None:
        if self._state is SessionState.BUSY:
            self._set_state(SessionState.READY_IDLE)

    # -- input ----------------------------------------------------------------------

    def write(self, data: Any) -> bool:
        proc = self._proc
        if proc is None:
            return False
        if isinstance(data, str):
            data = data.encode("utf-8")
        return bool(proc.write(data))

    def inject(self, text: str) -> bool:
        """Type ``text``, then submit with separate ESC and CR writes."""
        proc = self._proc
        if proc is None or not self.write(text):
            return False
        settle = self.settings.settle_delay
        if self.capabilities.escape_before_submit:
            self.loop.call_later(settle, self._write_if_current, proc, ESC)
            self.loop.call_later(settle + self.settings.submit_delay, self._write_if_current, proc, CR)
        else:
            self.loop.call_later(settle, self._write_if_current, proc, CR)
        return True

    def _write_if_current(self, proc: Any, data: bytes) -> None:
        if proc is self._proc:
            proc.write(data)

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            return
        self.cols = int(cols)
        self.rows = int(rows)
        if self._proc is not None:
            self._proc.resize(self.cols, self.rows)
