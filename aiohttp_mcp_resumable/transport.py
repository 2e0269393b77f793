"""Event-stream framing and the send handle wrapping an open SSE response."""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from aiohttp import web
from aiohttp_sse import EventSourceResponse, sse_response

__all__ = [
    "KEEPALIVE_FRAME",
    "EventChannel",
    "EventSourceResponse",
    "Frame",
    "MessageConverter",
    "SSEChannel",
    "open_event_stream",
]

logger = logging.getLogger(__name__)

# Comment line, ignored by event-stream parsers
KEEPALIVE_FRAME = b": keepalive\n\n"


class MessageConverter:
    """Converts JSON-RPC payloads to their wire representation."""

    @staticmethod
    def to_string(payload: Any) -> str:
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

    @staticmethod
    def size(payload: Any) -> int:
        return len(MessageConverter.to_string(payload).encode())


@dataclass(frozen=True, slots=True)
class Frame:
    """One event of the stream."""

    data: str
    event_id: str | None = None

    def encode(self) -> bytes:
        lines = []
        if self.event_id is not None:
            lines.append(f"id: {self.event_id}\n")
        lines.extend(f"data: {line}\n" for line in self.data.splitlines() or [""])
        lines.append("\n")
        return "".join(lines).encode()

    @classmethod
    def from_payload(cls, payload: Any, event_id: str | None = None) -> "Frame":
        return cls(data=MessageConverter.to_string(payload), event_id=event_id)


class EventChannel(ABC):
    """Handle able to push bytes to the remote peer."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Write raw bytes. Raises if the peer is gone."""

    @abstractmethod
    async def close(self) -> None:
        """Stop writing to the peer."""


class SSEChannel(EventChannel):
    __slots__ = ("_response",)

    def __init__(self, response: EventSourceResponse) -> None:
        self._response = response

    @property
    def response(self) -> EventSourceResponse:
        return self._response

    async def send(self, data: bytes) -> None:
        await self._response.write(data)

    async def close(self) -> None:
        self._response.stop_streaming()


def open_event_stream(request: web.Request, headers: dict[str, str] | None = None):  # noqa: ANN201
    """Start an event-stream response. Use as ``async with open_event_stream(request) as response``.

    Streams answer POST calls as well as GET ones.
    """
    logger.debug("Opening event stream for %s %s", request.method, request.path)
    return sse_response(request, headers=headers, sep="\n", allow_all_methods=True)
