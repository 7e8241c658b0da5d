"""Newline-delimited JSON protocol spoken on a session's control socket."""
from __future__ import annotations

from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


RequestType = Literal["inject", "raw", "resize", "subscribe"]
SubscribeMode = Literal["full", "screen"]
ResponseType = Literal["subscribed", "output", "replay", "snapshot", "error"]


class PtySocketRequest(BaseModel):
    type: RequestType
    data: str = ""
    cols: int = Field(default=0, ge=0)
    rows: int = Field(default=0, ge=0)
    mode: SubscribeMode = "full"

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_payload(self) -> "PtySocketRequest":
        if self.type == "resize" and (self.cols <= 0 or self.rows <= 0):
            raise ValueError("resize requires positive cols and rows")
        if self.type in ("inject", "raw") and not self.data:
            raise ValueError(f"{self.type} requires data")
        return self


def response(kind: ResponseType, **fields: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": kind}
    out.update(fields)
    return out
