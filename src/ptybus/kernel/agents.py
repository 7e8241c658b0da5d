"""Closed set of agent kinds and what each one needs from the PTY layer."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple


class AgentKind(str, Enum):
    CLAUDE_CODE = "claude-code"
    CODEX = "codex"
    GEMINI = "gemini"
    CUSTOM = "custom"


@dataclass(frozen=True)
class AgentCapabilities:
    command: str
    args: Tuple[str, ...] = ()
    nickname_prefix: str = ""
    aliases: Tuple[str, ...] = ()
    # Dismiss autocomplete overlays with ESC before the submit keystroke.
    escape_before_submit: bool = True
    marker_prefix: str = "__PTYBUS_DONE_"
    # argv after the command for one-shot, non-interactive runs.
    headless_args: Tuple[str, ...] = ()
    extra_env: Dict[str, str] = field(default_factory=dict)


CAPABILITIES: Dict[AgentKind, AgentCapabilities] = {
    AgentKind.CLAUDE_CODE: AgentCapabilities(
        command="claude",
        nickname_prefix="claude",
        aliases=("claude", "claude-code"),
        headless_args=("-p",),
    ),
    AgentKind.CODEX: AgentCapabilities(
        command="codex",
        args=("--no-alt-screen", "--sandbox", "workspace-write"),
        nickname_prefix="codex",
        aliases=("codex",),
        headless_args=("exec",),
    ),
    AgentKind.GEMINI: AgentCapabilities(
        command="gemini",
        nickname_prefix="gemini",
        aliases=("gemini", "gemini-cli"),
        headless_args=("-p",),
    ),
    AgentKind.CUSTOM: AgentCapabilities(
        command="",
        nickname_prefix="agent",
        aliases=("custom",),
        escape_before_submit=False,
    ),
}

_ALIASES: Dict[str, AgentKind] = {alias: kind for kind, caps in CAPABILITIES.items() for alias in caps.aliases}


def normalize_agent_type(value: str) -> str:
    """Canonical agent-type string; unknown types pass through lower-cased."""
    text = str(value or "").strip().lower()
    if not text:
        return ""
    kind = _ALIASES.get(text)
    return kind.value if kind is not None else text


def parse_agent_kind(value: str) -> AgentKind:
    """Validate an agent type at session start. Raises ValueError when unknown."""
    text = str(value or "").strip().lower()
    kind = _ALIASES.get(text)
    if kind is None:
        try:
            kind = AgentKind(text)
        except ValueError:
            known = ", ".join(k.value for k in AgentKind)
            raise ValueError(f"unknown agent kind: {value!r} (expected one of: {known})") from None
    return kind


def nickname_prefix(agent_type: str) -> str:
    text = normalize_agent_type(agent_type)
    kind = _ALIASES.get(text)
    if kind is not None and kind is not AgentKind.CUSTOM:
        return CAPABILITIES[kind].nickname_prefix
    return text or "agent"


def resolve_command(kind: AgentKind) -> Tuple[str, List[str]]:
    """Agent binary and argv; ``PTYBUS_PTY_CMD``/``PTYBUS_PTY_ARGS`` override."""
    raw_cmd = os.environ.get("PTYBUS_PTY_CMD", "").strip()
    if raw_cmd:
        raw_args = os.environ.get("PTYBUS_PTY_ARGS", "").strip()
        return raw_cmd, [a for a in raw_args.split() if a]
    caps = CAPABILITIES[kind]
    if not caps.command:
        raise ValueError(f"agent kind {kind.value!r} has no default command; set PTYBUS_PTY_CMD")
    return caps.command, list(caps.args)
