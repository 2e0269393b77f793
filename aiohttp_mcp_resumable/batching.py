"""Coalescing of outbound messages into event-stream frames."""

from collections.abc import Iterable
from enum import Enum
from typing import Any

from .events import EventPayload
from .transport import MessageConverter

__all__ = ["MessageKind", "coalesce", "message_kind"]

# Largest serialized group sent as one frame
DEFAULT_MAX_BATCH_BYTES = 32 * 1024
DEFAULT_MAX_BATCH_ITEMS = 5


class MessageKind(str, Enum):  # for Py10 compatibility
    REQUEST = "request"
    NOTIFICATION = "notification"
    RESPONSE = "response"

    def __str__(self) -> str:  # for Py11+ compatibility
        return self.value


def message_kind(message: dict[str, Any]) -> MessageKind:
    if "method" in message:
        return MessageKind.REQUEST if "id" in message else MessageKind.NOTIFICATION
    return MessageKind.RESPONSE


def coalesce(
    messages: Iterable[dict[str, Any]],
    max_bytes: int = DEFAULT_MAX_BATCH_BYTES,
    max_items: int = DEFAULT_MAX_BATCH_ITEMS,
) -> list[EventPayload]:
    """
    Group consecutive messages of the same kind.

    Order is preserved. A group of one stays a plain message, larger groups
    become lists. Requests are never grouped, and a message that alone exceeds
    ``max_bytes`` gets a frame of its own.
    """
    groups: list[list[dict[str, Any]]] = []
    current: list[dict[str, Any]] = []
    current_kind: MessageKind | None = None
    # Serialized size of ``current`` as a JSON array: brackets plus separators
    current_size = 2

    for message in messages:
        kind = message_kind(message)
        size = MessageConverter.size(message)
        fits = (
            current
            and kind is current_kind
            and kind is not MessageKind.REQUEST
            and len(current) < max_items
            and current_size + 1 + size <= max_bytes
        )
        if not fits:
            if current:
                groups.append(current)
            current, current_kind, current_size = [], kind, 2
        current.append(message)
        current_size += size + (1 if len(current) > 1 else 0)

    if current:
        groups.append(current)
    return [group[0] if len(group) == 1 else group for group in groups]
