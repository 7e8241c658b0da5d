from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from ..contracts.v1 import CONTROLLER_ID, SubscriberMeta
from ..errors import NicknameConflict, SubscriberNotFound
from ..paths import BusPaths
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json
from ..util.time import age_seconds, utc_now_iso
from .agents import nickname_prefix, normalize_agent_type

logger = logging.getLogger("ptybus.registry")

HEARTBEAT_TIMEOUT_SECONDS = 30.0

_AUTO_NICK_RE = re.compile(r"^(?P<prefix>.+)-(?P<n>\d+)$")


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Sandboxes may forbid signalling a live process.
        return True
    except OSError:
        return False
    return True


def _joined_pid() -> int:
    raw = os.environ.get("PTYBUS_PARENT_PID", "").strip()
    try:
        pid = int(raw)
    except ValueError:
        pid = 0
    return pid if pid > 0 else os.getpid()


def subscriber_id_for(session_id: str, agent_type: str) -> str:
    if session_id == CONTROLLER_ID:
        return CONTROLLER_ID
    return f"{agent_type}:{session_id}"


@dataclass
class JoinResult:
    subscriber: str
    nickname: str
    # Older entries evicted because they claimed the same terminal device.
    replaced: List[str] = field(default_factory=list)


class SubscriberRegistry:
    """Identity, nickname and liveness of every subscriber (agents.json)."""

    def __init__(
        self,
        paths: BusPaths,
        *,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT_SECONDS,
        pid_check: Callable[[int], bool] = pid_alive,
    ) -> None:
        self.paths = paths
        self.heartbeat_timeout = float(heartbeat_timeout)
        self._pid_check = pid_check

    # -- persistence -------------------------------------------------------

    def _read(self) -> Tuple[Dict[str, object], Dict[str, SubscriberMeta]]:
        doc = read_json(self.paths.agents_path)
        raw = doc.get("agents")
        agents: Dict[str, SubscriberMeta] = {}
        if isinstance(raw, dict):
            for sid, meta in raw.items():
                if not isinstance(sid, str) or not isinstance(meta, dict):
                    continue
                try:
                    agents[sid] = SubscriberMeta.model_validate(meta)
                except ValidationError:
                    logger.warning(f"dropping malformed subscriber entry: {sid}")
        return doc, agents

    def _write(self, doc: Dict[str, object], agents: Dict[str, SubscriberMeta]) -> None:
        doc.setdefault("v", 1)
        doc.setdefault("created_at", utc_now_iso())
        doc["updated_at"] = utc_now_iso()
        doc["agents"] = {sid: meta.model_dump() for sid, meta in agents.items()}
        atomic_write_json(self.paths.agents_path, doc)

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, SubscriberMeta]]:
        """Locked read-modify-write of the subscriber table."""
        with locked(self.paths.agents_lock_path):
            doc, agents = self._read()
            yield agents
            self._write(doc, agents)

    def load(self) -> Dict[str, SubscriberMeta]:
        return self._read()[1]

    # -- liveness ----------------------------------------------------------

    def heartbeat_fresh(self, meta: SubscriberMeta) -> bool:
        age = age_seconds(meta.last_seen)
        return age is not None and age <= self.heartbeat_timeout

    def is_alive(self, meta: SubscriberMeta) -> bool:
        if meta.status == "inactive":
            return False
        if meta.pid and self._pid_check(meta.pid):
            return True
        if self.heartbeat_fresh(meta):
            return True
        if meta.pid:
            return False
        return meta.status == "active"

    # -- nickname helpers ----------------------------------------------------

    @staticmethod
    def _nickname_taken(agents: Dict[str, SubscriberMeta], nickname: str, exclude: str) -> bool:
        return any(
            sid != exclude and meta.status == "active" and meta.nickname == nickname
            for sid, meta in agents.items()
        )

    @staticmethod
    def _auto_nickname(agents: Dict[str, SubscriberMeta], agent_type: str) -> str:
        prefix = nickname_prefix(agent_type)
        highest = 0
        for meta in agents.values():
            m = _AUTO_NICK_RE.match(meta.nickname or "")
            if m and m.group("prefix") == prefix:
                highest = max(highest, int(m.group("n")))
        return f"{prefix}-{highest + 1}"

    # -- operations --------------------------------------------------------

    def join(
        self,
        session_id: str,
        agent_type: str,
        nickname: Optional[str] = None,
        *,
        pid: Optional[int] = None,
        tty: str = "",
        launch_mode: str = "",
    ) -> JoinResult:
        agent_type = str(agent_type or "").strip() or "unknown-agent"
        subscriber = subscriber_id_for(session_id, agent_type)
        tty = tty if tty.startswith("/dev/") and tty != "/dev/tty" else ""
        with self.transaction() as agents:
            existing = agents.get(subscriber)
            if existing is not None and existing.nickname:
                final_nick = existing.nickname
            elif nickname:
                if self._nickname_taken(agents, nickname, subscriber):
                    raise NicknameConflict(nickname)
                final_nick = nickname
            else:
                final_nick = self._auto_nickname(agents, agent_type)

            replaced: List[str] = []
            if tty:
                for sid, meta in list(agents.items()):
                    if sid != subscriber and meta.tty == tty:
                        replaced.append(sid)
                        del agents[sid]

            extra = dict(existing.model_extra or {}) if existing is not None else {}
            agents[subscriber] = SubscriberMeta(
                agent_type=agent_type,
                nickname=final_nick,
                status="active",
                joined_at=existing.joined_at if existing is not None else utc_now_iso(),
                last_seen=utc_now_iso(),
                pid=int(pid) if pid else _joined_pid(),
                tty=tty or (existing.tty if existing is not None and launch_mode != "internal-pty" else ""),
                launch_mode=launch_mode,
                **extra,
            )
        logger.info(f"joined {subscriber} ({final_nick})", extra={"subscriber": subscriber})
        return JoinResult(subscriber=subscriber, nickname=final_nick, replaced=replaced)

    def leave(self, subscriber: str) -> bool:
        with self.transaction() as agents:
            meta = agents.get(subscriber)
            if meta is None:
                return False
            meta.status = "inactive"
            meta.last_seen = utc_now_iso()
        logger.info(f"left {subscriber}", extra={"subscriber": subscriber})
        return True

    def unregister(self, subscriber: str) -> bool:
        with self.transaction() as agents:
            return agents.pop(subscriber, None) is not None

    def rename(self, subscriber: str, new_nickname: str) -> Tuple[str, str, str]:
        nick = str(new_nickname or "").strip()
        if not nick:
            raise ValueError("nickname must not be empty")
        with self.transaction() as agents:
            meta = agents.get(subscriber)
            if meta is None:
                raise SubscriberNotFound(subscriber)
            if self._nickname_taken(agents, nick, subscriber):
                raise NicknameConflict(nick)
            old = meta.nickname
            meta.nickname = nick
        return subscriber, old, nick

    def heartbeat(self, subscriber: str) -> bool:
        with self.transaction() as agents:
            meta = agents.get(subscriber)
            if meta is None:
                return False
            meta.last_seen = utc_now_iso()
            return True

    def get(self, subscriber: str) -> Optional[SubscriberMeta]:
        return self.load().get(subscriber)

    def active(self) -> Dict[str, SubscriberMeta]:
        return {sid: meta for sid, meta in self.load().items() if self.is_alive(meta)}

    def sweep(self) -> List[str]:
        """Mark subscribers whose process is gone and heartbeat is stale inactive."""
        changed: List[str] = []
        with self.transaction() as agents:
            for sid, meta in agents.items():
                if meta.status != "active" or not meta.pid:
                    continue
                if self._pid_check(meta.pid) or self.heartbeat_fresh(meta):
                    continue
                meta.status = "inactive"
                changed.append(sid)
        for sid in changed:
            logger.info(f"marked inactive: {sid}", extra={"subscriber": sid})
        return changed
