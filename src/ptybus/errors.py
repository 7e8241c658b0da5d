"""Error taxonomy shared by the bus kernel and the PTY runners.

Only ``TargetNotFound``, ``NicknameConflict`` and ``SubscriberNotFound`` reach
callers of the bus API. The rest are raised and handled inside the component
that owns them, or handed to listeners and loggers as values.
"""
from __future__ import annotations

from typing import Optional


class BusError(Exception):
    """Base class for ptybus errors."""


class TargetNotFound(BusError):
    def __init__(self, target: str) -> None:
        super().__init__(f'Target "{target}" not found')
        self.target = target


class NicknameConflict(BusError):
    def __init__(self, nickname: str) -> None:
        super().__init__(f'Nickname "{nickname}" already exists')
        self.nickname = nickname


class SubscriberNotFound(BusError):
    def __init__(self, subscriber: str) -> None:
        super().__init__(f'Subscriber "{subscriber}" not found')
        self.subscriber = subscriber


class DrainContention(BusError):
    """Another drainer claimed the mailbox first (or it does not exist)."""


class EchoNotObserved(BusError):
    def __init__(self, marker: str) -> None:
        super().__init__(f"echo of marker {marker} not observed; leaving suppression")
        self.marker = marker


class MarkerTimeout(BusError):
    def __init__(self, marker: str, *, seconds: float, action: str) -> None:
        super().__init__(f"marker timeout after {seconds:g}s; action={action}")
        self.marker = marker
        self.seconds = seconds
        self.action = action


class ProcessExit(BusError):
    def __init__(self, *, deliberate: bool, exit_code: Optional[int] = None, signal: Optional[int] = None) -> None:
        kind = "stopped" if deliberate else "crashed"
        super().__init__(f"process {kind} code={exit_code} signal={signal or ''}".rstrip())
        self.deliberate = deliberate
        self.exit_code = exit_code
        self.signal = signal


class RestartExhausted(BusError):
    def __init__(self, attempts: int, max_restarts: int) -> None:
        super().__init__(f"restart limit reached ({attempts} > {max_restarts}); switching to fallback")
        self.attempts = attempts
        self.max_restarts = max_restarts


class SocketProtocolError(BusError):
    """Malformed control-socket request."""
