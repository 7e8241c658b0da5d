from __future__ import annotations

import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

import termios

logger = logging.getLogger("ptybus.pty")

DataCallback = Callable[[bytes], None]
ExitCallback = Callable[[Optional[int], Optional[int]], None]


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    try:
        winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
    except Exception:
        pass


def _best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except Exception:
        try:
            os.kill(pid, sig)
        except Exception:
            pass


class PtyProcess:
    """A child process attached to a pseudo-terminal.

    Reads are delivered through the owning loop's reader callback; the exit
    callback fires exactly once, after EOF on the master side and reaping.
    """

    def __init__(
        self,
        *,
        command: Iterable[str],
        cwd: Path,
        env: Dict[str, str],
        cols: int = 80,
        rows: int = 24,
    ) -> None:
        cmd = [str(x) for x in command if isinstance(x, str) and str(x).strip()]
        if not cmd:
            raise ValueError("empty command")

        master_fd, slave_fd = pty.openpty()
        _set_winsize(master_fd, cols=cols, rows=rows)
        os.set_blocking(master_fd, False)
        try:
            self.tty = os.ttyname(slave_fd)
        except OSError:
            self.tty = ""

        proc_env = os.environ.copy()
        proc_env.update({k: v for k, v in env.items() if isinstance(k, str) and isinstance(v, str)})
        proc_env.setdefault("TERM", "xterm-256color")

        def _preexec() -> None:
            try:
                os.setsid()
            except Exception:
                pass
            try:
                fcntl.ioctl(0, termios.TIOCSCTTY, 0)
            except Exception:
                pass

        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(cwd),
                env=proc_env,
                close_fds=True,
                preexec_fn=_preexec,
            )
        except Exception:
            os.close(master_fd)
            raise
        finally:
            try:
                os.close(slave_fd)
            except Exception:
                pass

        self._master_fd = master_fd
        self._loop = None
        self._on_data: Optional[DataCallback] = None
        self._on_exit: Optional[ExitCallback] = None
        self._exited = False

    @property
    def pid(self) -> int:
        return int(getattr(self._proc, "pid", 0) or 0)

    def is_running(self) -> bool:
        return not self._exited and self._proc.poll() is None

    def attach(self, loop, on_data: DataCallback, on_exit: ExitCallback) -> None:
        self._loop = loop
        self._on_data = on_data
        self._on_exit = on_exit
        loop.add_reader(self._master_fd, self._on_readable)

    def _on_readable(self) -> None:
        while True:
            try:
                chunk = os.read(self._master_fd, 65536)
            except BlockingIOError:
                return
            except OSError:
                # EIO once the slave side is gone.
                self._finish()
                return
            if not chunk:
                self._finish()
                return
            if self._on_data is not None:
                self._on_data(chunk)

    def _finish(self) -> None:
        if self._exited:
            return
        self._exited = True
        if self._loop is not None:
            self._loop.remove_reader(self._master_fd)
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        try:
            rc = self._proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            _best_effort_killpg(self.pid, signal.SIGKILL)
            rc = self._proc.wait()
        code: Optional[int] = rc if rc >= 0 else None
        sig: Optional[int] = -rc if rc < 0 else None
        logger.debug(f"pty child exited code={code} signal={sig}", extra={"pid": self.pid})
        if self._on_exit is not None:
            self._on_exit(code, sig)

    def write(self, data: bytes) -> bool:
        """Write to the master fd, retrying on a full buffer and partial writes."""
        if not data:
            return True
        if self._exited:
            return False

        remaining = data
        max_attempts = 50
        attempt = 0

        while remaining and attempt < max_attempts:
            try:
                written = os.write(self._master_fd, remaining)
                if written <= 0:
                    return False
                remaining = remaining[written:]
                attempt = 0
            except BlockingIOError:
                attempt += 1
                time.sleep(0.1)
            except OSError:
                return False

        return len(remaining) == 0

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0 or self._exited:
            return
        _set_winsize(self._master_fd, cols=int(cols), rows=int(rows))
        _best_effort_killpg(self.pid, signal.SIGWINCH)

    def kill(self) -> None:
        """SIGTERM the process group, escalating to SIGKILL after a second.

        The exit callback still arrives through the loop once the master
        side reports EOF.
        """
        _best_effort_killpg(self.pid, signal.SIGTERM)
        deadline = time.time() + 1.0
        while time.time() < deadline:
            if self._proc.poll() is not None:
                return
            time.sleep(0.05)
        if self._proc.poll() is None:
            _best_effort_killpg(self.pid, signal.SIGKILL)


def spawn_pty(
    command: str,
    args: Iterable[str],
    *,
    cwd: Path,
    env: Dict[str, str],
    cols: int,
    rows: int,
) -> PtyProcess:
    return PtyProcess(command=[command, *list(args)], cwd=cwd, env=env, cols=cols, rows=rows)
