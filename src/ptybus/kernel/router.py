from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..contracts.v1 import ConsumeResult, Event, EventKind, SendResult
from ..errors import TargetNotFound
from ..paths import BusPaths, bus_paths
from .eventlog import EventLog
from .mailbox import MailboxStore
from .registry import JoinResult, SubscriberRegistry
from .targets import WILDCARD, looks_like_subscriber_id, resolve_target, target_matches, type_candidates

logger = logging.getLogger("ptybus.bus")


class MessageRouter:
    """send/broadcast/check/ack/consume on top of the log, registry and mailboxes."""

    def __init__(
        self,
        paths: BusPaths,
        *,
        eventlog: Optional[EventLog] = None,
        registry: Optional[SubscriberRegistry] = None,
        mailboxes: Optional[MailboxStore] = None,
    ) -> None:
        self.paths = paths.ensure()
        self.eventlog = eventlog or EventLog(paths)
        self.registry = registry or SubscriberRegistry(paths)
        self.mailboxes = mailboxes or MailboxStore(paths)

    @classmethod
    def for_project(cls, project_root: Path) -> "MessageRouter":
        return cls(bus_paths(project_root))

    # -- membership ----------------------------------------------------------

    def join(self, session_id: str, agent_type: str, nickname: Optional[str] = None, **kwargs: Any) -> JoinResult:
        result = self.registry.join(session_id, agent_type, nickname, **kwargs)
        for sid in result.replaced:
            self.mailboxes.remove(sid)
        self.mailboxes.ensure(result.subscriber)
        return result

    def leave(self, subscriber: str) -> bool:
        return self.registry.leave(subscriber)

    def rename(self, subscriber: str, new_nickname: str) -> Dict[str, str]:
        sid, old, new = self.registry.rename(subscriber, new_nickname)
        try:
            self.emit(
                WILDCARD,
                "agent_renamed",
                {"agent_id": sid, "old_nickname": old, "new_nickname": new},
                publisher=sid,
            )
        except TargetNotFound:
            pass
        return {"subscriber": sid, "old_nickname": old, "new_nickname": new}

    def sweep(self) -> List[str]:
        dead = self.registry.sweep()
        for sid in dead:
            self.mailboxes.remove(sid)
        return dead

    def _touch_publisher(self, publisher: str) -> str:
        if not publisher or publisher == "unknown" or not looks_like_subscriber_id(publisher):
            return publisher or "unknown"
        if self.registry.get(publisher) is None:
            agent_type, _, session_id = publisher.partition(":")
            if session_id:
                self.join(session_id, agent_type)
        else:
            self.registry.heartbeat(publisher)
        return publisher

    # -- routing -------------------------------------------------------------

    def emit(
        self,
        target: str,
        event_name: str,
        data: Optional[Dict[str, Any]] = None,
        publisher: str = "unknown",
        *,
        kind: EventKind = "status/agent",
    ) -> SendResult:
        targets = resolve_target(target, self.registry.load())
        if not targets:
            raise TargetNotFound(target)
        event = self.eventlog.publish(
            kind=kind,
            event_name=event_name,
            publisher=publisher,
            target=target,
            data=data,
        )
        payload = event.model_dump()
        for sid in targets:
            if not self.mailboxes.enqueue(sid, payload):
                logger.debug(f"skip enqueue: cursor already past seq for {sid}", extra={"seq": event.seq})
        return SendResult(seq=event.seq, targets=targets)

    def send(self, target: str, message: str, publisher: str = "unknown") -> SendResult:
        publisher = self._touch_publisher(publisher)
        result = self.emit(target, "message", {"message": message}, publisher, kind="message/targeted")
        logger.info(
            f"message sent: seq={result.seq} -> {', '.join(result.targets)}",
            extra={"seq": result.seq, "target": target},
        )
        return result

    def broadcast(self, message: str, publisher: str = "unknown") -> SendResult:
        return self.send(WILDCARD, message, publisher)

    # -- consumption -----------------------------------------------------------

    def check(self, subscriber: str) -> List[Dict[str, Any]]:
        self.registry.heartbeat(subscriber)
        return self.mailboxes.check(subscriber)

    def drain(self, subscriber: str) -> List[Event]:
        out: List[Event] = []
        for raw in self.mailboxes.drain(subscriber):
            try:
                out.append(Event.model_validate(raw))
            except ValueError:
                logger.warning("dropping malformed mailbox entry", extra={"subscriber": subscriber})
        return out

    def ack(self, subscriber: str) -> int:
        return self.mailboxes.ack(subscriber)

    def consume(self, subscriber: str, from_beginning: bool = False) -> ConsumeResult:
        offset = 0 if from_beginning else self.mailboxes.offset(subscriber)
        agents = self.registry.load()
        consumed: List[Dict[str, Any]] = []
        for ev in self.eventlog.iter_events():
            seq = int(ev["seq"])
            if seq <= offset:
                continue
            if target_matches(str(ev.get("target") or ""), subscriber, agents):
                consumed.append(ev)
                offset = max(offset, seq)
        if consumed:
            self.mailboxes.set_offset(subscriber, offset)
        return ConsumeResult(consumed=consumed, new_offset=offset)

    def resolve_candidates(self, my_id: str, agent_type: str) -> Dict[str, Any]:
        candidates = type_candidates(my_id, agent_type, self.registry.load())
        return {"single": candidates[0]["id"] if len(candidates) == 1 else None, "candidates": candidates}
