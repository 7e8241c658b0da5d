from __future__ import annotations

from typing import Dict, List, Mapping

from ..contracts.v1 import CONTROLLER_ID, SubscriberMeta
from .agents import normalize_agent_type

WILDCARD = "*"


def looks_like_subscriber_id(target: str) -> bool:
    return ":" in target or target == CONTROLLER_ID


def _is_active(meta: SubscriberMeta) -> bool:
    return meta.status == "active"


def resolve_target(target: str, agents: Mapping[str, SubscriberMeta]) -> List[str]:
    """Map a target string to subscriber ids.

    Precedence: exact/id-shaped id, nickname, active subscribers of an agent
    type, then ``*`` for every active subscriber. No match yields ``[]``.
    """
    target = str(target or "").strip()
    if not target:
        return []

    if target in agents or looks_like_subscriber_id(target):
        return [target]

    by_nick = [sid for sid, meta in agents.items() if meta.nickname == target]
    if by_nick:
        active = [sid for sid in by_nick if _is_active(agents[sid])]
        return [(active or by_nick)[0]]

    wanted = normalize_agent_type(target)
    by_type = [
        sid
        for sid, meta in agents.items()
        if _is_active(meta) and normalize_agent_type(meta.agent_type) == wanted
    ]
    if by_type:
        return by_type

    if target == WILDCARD:
        return [sid for sid, meta in agents.items() if _is_active(meta)]

    return []


def target_matches(target: str, subscriber: str, agents: Mapping[str, SubscriberMeta]) -> bool:
    """Whether an already-logged event's target addressed ``subscriber``."""
    target = str(target or "")
    if target == WILDCARD or target == subscriber:
        return True
    meta = agents.get(subscriber)
    if meta is None:
        return False
    if meta.nickname and target == meta.nickname:
        return True
    return normalize_agent_type(target) == normalize_agent_type(meta.agent_type)


def type_candidates(my_id: str, agent_type: str, agents: Mapping[str, SubscriberMeta]) -> List[Dict[str, str]]:
    wanted = normalize_agent_type(agent_type)
    return [
        {
            "id": sid,
            "nickname": meta.nickname,
            "agent_type": meta.agent_type,
            "last_seen": meta.last_seen,
        }
        for sid, meta in agents.items()
        if sid != my_id and _is_active(meta) and normalize_agent_type(meta.agent_type) == wanted
    ]
