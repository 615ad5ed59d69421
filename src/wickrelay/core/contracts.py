from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple, Union

from wickrelay.core.errors import FrameError

__all__ = [
    "SEND_MESSAGE",
    "RECEIVE_MESSAGE",
    "BROADCAST",
    "Handler",
    "Hook",
    "InboundRequest",
    "OutboundReply",
    "BroadcastEvent",
    "Transport",
    "wire_event",
    "local_event",
    "encode_frame",
    "decode_frame",
]


# --------- Logical event names (the wire adds a namespace prefix) ---------
SEND_MESSAGE = "send_message"
RECEIVE_MESSAGE = "receive_message"
BROADCAST = "broadcast"

# A handler takes the request payload and returns a value or an awaitable.
Handler = Callable[[Any], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True, slots=True)
class Hook:
    type: str
    handler: Handler


@dataclass(slots=True)
class InboundRequest:
    type: str
    data: Any = None
    request_id: Any = None

    @classmethod
    def from_dict(cls, d: Any) -> "InboundRequest":
        if not isinstance(d, dict):
            raise FrameError(f"send_message payload must be an object, got {type(d).__name__}")
        msg_type = d.get("type")
        if not isinstance(msg_type, str):
            raise FrameError(f"send_message payload needs a string 'type', got {msg_type!r}")
        return cls(type=msg_type, data=d.get("data"), request_id=d.get("request_id"))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data, "request_id": self.request_id}


@dataclass(slots=True)
class OutboundReply:
    data: Any
    request_id: Any
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {"data": self.data, "request_id": self.request_id}
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass(slots=True)
class BroadcastEvent:
    type: str
    data: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data}


class Transport(Protocol):
    """What the dispatcher needs from a connection layer."""

    async def emit(self, conn: Any, event: str, data: Any) -> None: ...

    async def broadcast(self, event: str, data: Any) -> None: ...


# --------- Wire framing ---------

def wire_event(namespace: str, name: str) -> str:
    return f"{namespace}.{name}" if namespace else name


def local_event(namespace: str, wire_name: str) -> Optional[str]:
    """Strip the namespace; None if the event belongs to another namespace."""
    if not namespace:
        return wire_name
    prefix = namespace + "."
    if not wire_name.startswith(prefix):
        return None
    return wire_name[len(prefix):]


def encode_frame(event: str, data: Any) -> str:
    return json.dumps({"type": event, "data": data}, ensure_ascii=False)


def decode_frame(raw: Union[str, bytes]) -> Tuple[str, Any]:
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FrameError(f"invalid JSON frame: {e}") from e
    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
        raise FrameError("frame must be an object with a string 'type'")
    return msg["type"], msg.get("data")
