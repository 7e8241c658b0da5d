from __future__ import annotations

from .event import ConsumeResult, Event, EventKind, SendResult
from .pty_socket import PtySocketRequest, RequestType, SubscribeMode, response
from .subscriber import CONTROLLER_ID, SubscriberMeta, SubscriberStatus
from .turn import StreamDelta, StreamDone, TurnEndReason, TurnInput, encode_delta, encode_done

__all__ = [
    "CONTROLLER_ID",
    "ConsumeResult",
    "Event",
    "EventKind",
    "PtySocketRequest",
    "RequestType",
    "SendResult",
    "StreamDelta",
    "StreamDone",
    "SubscribeMode",
    "SubscriberMeta",
    "SubscriberStatus",
    "TurnEndReason",
    "TurnInput",
    "encode_delta",
    "encode_done",
    "response",
]
