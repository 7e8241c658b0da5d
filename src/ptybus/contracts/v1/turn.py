from __future__ import annotations

import json
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


TurnEndReason = Literal["marker", "idle", "timeout", "exit", "fallback"]


class StreamDelta(BaseModel):
    stream: bool = True
    delta: str

    model_config = ConfigDict(extra="forbid")


class StreamDone(BaseModel):
    stream: bool = True
    done: bool = True
    reason: TurnEndReason
    detail: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class TurnInput(BaseModel):
    """Decoded inbound message: plain text or a raw keystroke payload."""

    raw: bool = False
    text: str = ""

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def parse(cls, message: str) -> "TurnInput":
        if not message:
            return cls()
        try:
            obj = json.loads(message)
        except ValueError:
            return cls(text=message)
        if isinstance(obj, dict):
            if obj.get("raw") and isinstance(obj.get("data"), str):
                return cls(raw=True, text=obj["data"])
            if isinstance(obj.get("text"), str):
                return cls(text=obj["text"])
        return cls(text=message)


def encode_delta(text: str) -> str:
    return StreamDelta(delta=text).model_dump_json()


def encode_done(reason: TurnEndReason, detail: Optional[str] = None) -> str:
    return StreamDone(reason=reason, detail=detail).model_dump_json(exclude_none=True)
