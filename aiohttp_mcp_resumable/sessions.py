import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from uuid import uuid4

from .storage import Clock, KeyValueStore

__all__ = ["ResolvedSession", "Session", "SessionCloseCallback", "SessionStore"]

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"

SessionCloseCallback = Callable[[str], Awaitable[None]]


@dataclass(slots=True)
class Session:
    """Stored record of a logical client session."""

    id: str
    created_at: float
    last_activity: float
    message_count: int = 0

    def is_expired(self, now: float, timeout: float) -> bool:
        return now - self.last_activity >= timeout


@dataclass(frozen=True, slots=True)
class ResolvedSession:
    """The session an inbound HTTP call belongs to, resolved once per call."""

    session_id: str
    created: bool = False


class SessionStore:
    """
    Session lifecycle on top of a key-value store.

    The store does not know about event logs, connections or in-flight requests.
    Whatever must be released together with a session registers a callback with
    ``on_close`` and receives the session ID on termination or expiry.
    """

    def __init__(
        self,
        store: KeyValueStore,
        session_timeout: float = 30 * 60,
        sweep_interval: float = 60.0,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._session_timeout = session_timeout
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._last_sweep = clock()
        self._close_callbacks: list[SessionCloseCallback] = []

    @property
    def session_timeout(self) -> float:
        return self._session_timeout

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    def on_close(self, callback: SessionCloseCallback) -> None:
        """Register a coroutine called with the session ID when a session is terminated or expires."""
        self._close_callbacks.append(callback)

    async def create(self) -> str:
        now = self._clock()
        session = Session(id=uuid4().hex, created_at=now, last_activity=now)
        await self._store.set(self._key(session.id), asdict(session))
        logger.info("Created session %s", session.id)
        return session.id

    async def get(self, session_id: str) -> Session | None:
        """Return the session record, whether expired or not."""
        data = await self._store.get(self._key(session_id))
        if data is None:
            return None
        return Session(**data)

    async def validate(self, session_id: str) -> bool:
        """Return True if the session exists and is not expired.

        An expired session is destroyed as a side effect. Also runs the periodic
        expiry sweep when it is due.
        """
        if self._clock() - self._last_sweep >= self._sweep_interval:
            await self.sweep()

        session = await self.get(session_id)
        if session is None:
            return False
        if session.is_expired(self._clock(), self._session_timeout):
            logger.info("Session %s expired", session_id)
            await self._destroy(session_id)
            return False
        return True

    async def touch(self, session_id: str) -> None:
        """Record activity on the session. No-op if the session does not exist."""
        session = await self.get(session_id)
        if session is None:
            return
        session.last_activity = self._clock()
        session.message_count += 1
        # A concurrent terminate wins: the conditional write never recreates the key
        written = await self._store.set(self._key(session_id), asdict(session), only_if_exists=True)
        if not written:
            logger.debug("Session %s disappeared during touch", session_id)

    async def terminate(self, session_id: str) -> None:
        """Destroy the session and everything registered to go with it. Safe to repeat."""
        logger.info("Terminating session %s", session_id)
        await self._destroy(session_id)

    async def sweep(self) -> int:
        """Destroy every expired session and return how many were removed."""
        self._last_sweep = now = self._clock()
        expired = [
            data["id"]
            async for _, data in self._store.scan(SESSION_KEY_PREFIX)
            if Session(**data).is_expired(now, self._session_timeout)
        ]
        for session_id in expired:
            await self._destroy(session_id)
        if expired:
            logger.info("Expiry sweep removed %d session(s)", len(expired))
        return len(expired)

    async def _destroy(self, session_id: str) -> None:
        await self._store.delete(self._key(session_id))
        for callback in self._close_callbacks:
            try:
                await callback(session_id)
            except Exception:
                logger.exception("Error releasing resources of session %s", session_id)
