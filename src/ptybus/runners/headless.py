"""Non-interactive execution used once a session falls back from PTY mode.

A fallback runner takes one prompt and returns the complete reply. It runs
off the session loop thread; the turn engine posts the result back.
"""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from ..kernel.agents import CAPABILITIES, AgentKind
from ..util.terminal_render import render_transcript

logger = logging.getLogger("ptybus.headless")


class FallbackRunner(Protocol):
    def run(self, prompt: str) -> str: ...


class HeadlessError(RuntimeError):
    pass


def _decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="replace")


class CommandFallback:
    """Run ``command + [prompt]`` once and return its rendered stdout."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Optional[Dict[str, str]] = None,
        timeout: float = 600.0,
    ) -> None:
        self.command: List[str] = [str(x) for x in command if str(x).strip()]
        if not self.command:
            raise ValueError("empty fallback command")
        self.cwd = cwd
        self.env = env
        self.timeout = float(timeout)

    def run(self, prompt: str) -> str:
        argv = [*self.command, prompt]
        logger.info(f"headless run: {self.command[0]}")
        try:
            proc = subprocess.run(
                argv,
                cwd=str(self.cwd),
                env=self.env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise HeadlessError(f"headless run timed out after {self.timeout:g}s") from e
        except OSError as e:
            raise HeadlessError(f"headless run failed to start: {e}") from e
        if proc.returncode != 0:
            tail = _decode(proc.stderr).strip().splitlines()[-5:]
            raise HeadlessError(f"headless run exited {proc.returncode}: {' | '.join(tail)}")
        # Captured as bytes so CR overwrites reach the renderer intact.
        return render_transcript(_decode(proc.stdout))


def default_fallback(kind: AgentKind, *, cwd: Path, env: Optional[Dict[str, str]] = None) -> Optional[CommandFallback]:
    caps = CAPABILITIES[kind]
    if not caps.command or not caps.headless_args:
        return None
    return CommandFallback([caps.command, *caps.headless_args], cwd=cwd, env=env)
