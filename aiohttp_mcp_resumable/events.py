import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from .storage import Clock, KeyValueStore

__all__ = ["EventLog", "EventPayload", "SequenceToken"]

logger = logging.getLogger(__name__)

# Decimal string of a per-session counter, strictly increasing in append order
SequenceToken = str
# One JSON-RPC message, or a coalesced batch of them
EventPayload = dict[str, Any] | list[dict[str, Any]]

# Counters are zero-padded in keys so lexicographic key order is numeric order
_TOKEN_WIDTH = 20


class EventLog:
    """
    Per-session append-only log of outbound messages.

    Tokens come from the store's atomic counter, so concurrent appends to the same
    session need no further coordination, and replay is a key range scan that
    starts right after the presented token.
    """

    def __init__(self, store: KeyValueStore, event_ttl: float | None = 60 * 60, clock: Clock = time.time) -> None:
        self._store = store
        self._event_ttl = event_ttl
        self._clock = clock

    @staticmethod
    def _prefix(session_id: str) -> str:
        return f"events:{session_id}:"

    @staticmethod
    def _counter_key(session_id: str) -> str:
        return f"seq:{session_id}"

    @classmethod
    def _event_key(cls, session_id: str, position: int) -> str:
        return f"{cls._prefix(session_id)}{position:0{_TOKEN_WIDTH}d}"

    @staticmethod
    def parse_token(token: str | None) -> int | None:
        """Return the numeric position of a token, or None if it is not one."""
        if token is None:
            return None
        token = token.strip()
        if not (token.isascii() and token.isdigit()) or len(token) > _TOKEN_WIDTH:
            return None
        return int(token)

    async def append(self, session_id: str, payload: EventPayload) -> SequenceToken:
        position = await self._store.increment(self._counter_key(session_id))
        record = {"payload": payload, "created_at": self._clock()}
        await self._store.set(self._event_key(session_id, position), record, ttl=self._event_ttl)
        token = str(position)
        logger.debug("Appended event %s to session %s", token, session_id)
        return token

    async def since(self, session_id: str, token: str | None) -> AsyncIterator[tuple[SequenceToken, EventPayload]]:
        """
        Yield ``(token, payload)`` for every event appended after ``token``, oldest first.

        An unknown or malformed token yields nothing.
        """
        position = self.parse_token(token)
        if position is None:
            logger.debug("Ignoring malformed replay token %r for session %s", token, session_id)
            return

        prefix = self._prefix(session_id)
        async for key, record in self._store.scan(prefix, start_after=self._event_key(session_id, position)):
            yield str(int(key[len(prefix) :])), record["payload"]

    async def purge(self, session_id: str) -> None:
        removed = await self._store.delete_prefix(self._prefix(session_id))
        await self._store.delete(self._counter_key(session_id))
        logger.debug("Purged %d event(s) of session %s", removed, session_id)
