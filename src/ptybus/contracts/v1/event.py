from __future__ import annotations

from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


EventKind = Literal[
    "message/targeted",
    "status/agent",
]


class Event(BaseModel):
    """One routed bus record. Immutable once appended to the event log."""

    seq: int
    timestamp: str = Field(default_factory=utc_now_iso)
    kind: EventKind = "message/targeted"
    event: str = "message"
    publisher: str = "unknown"
    target: str
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore", frozen=True)

    @property
    def message(self) -> str:
        msg = self.data.get("message")
        return msg if isinstance(msg, str) else ""


class SendResult(BaseModel):
    seq: int
    targets: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class ConsumeResult(BaseModel):
    consumed: list[Dict[str, Any]] = Field(default_factory=list)
    new_offset: int = 0

    model_config = ConfigDict(extra="forbid")
