from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


SubscriberStatus = Literal["active", "inactive"]

# Bus controller identity; joins without the "{type}:" prefix.
CONTROLLER_ID = "bus-controller"


class SubscriberMeta(BaseModel):
    agent_type: str
    nickname: str = ""
    status: SubscriberStatus = "active"
    joined_at: str = Field(default_factory=utc_now_iso)
    last_seen: str = Field(default_factory=utc_now_iso)
    pid: int = 0
    tty: str = ""
    launch_mode: str = ""

    # Unknown keys written by other tools are preserved across rewrites.
    model_config = ConfigDict(extra="allow")
