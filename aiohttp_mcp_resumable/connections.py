import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

import anyio

from .storage import Clock
from .transport import KEEPALIVE_FRAME, EventChannel, Frame

__all__ = ["Connection", "ConnectionId", "ConnectionKind", "ConnectionRegistry"]

logger = logging.getLogger(__name__)

ConnectionId = str

# Errors a write to a vanished peer may raise
_SEND_ERRORS = (OSError, RuntimeError, anyio.BrokenResourceError, anyio.ClosedResourceError)


class ConnectionKind(str, Enum):  # for Py10 compatibility
    """Shape of the physical HTTP call carrying a connection."""

    # Long-lived GET subscription, kept alive by the heartbeat
    STREAM = "stream"
    # Event stream answering one POST, closed once its results are sent
    RESPONSE = "response"

    def __str__(self) -> str:  # for Py11+ compatibility
        return self.value


@dataclass(slots=True, kw_only=True)
class Connection:
    id: ConnectionId
    session_id: str
    kind: ConnectionKind
    channel: EventChannel
    sequence: int
    last_activity: float
    closed: bool = False
    closed_event: anyio.Event = field(default_factory=anyio.Event)


class ConnectionRegistry:
    """
    Live physical connections, grouped by session.

    The registry is the only writer of every channel it holds: pushes,
    keepalives and closes all go through it so frames of two writers never
    interleave on one connection.
    """

    def __init__(
        self,
        heartbeat_interval: float = 30.0,
        clock: Clock = time.monotonic,
        keepalive_timeout: float | None = None,
    ) -> None:
        self._heartbeat_interval = heartbeat_interval
        # A peer that stops reading blocks writes once buffers fill up
        self._keepalive_timeout = keepalive_timeout if keepalive_timeout is not None else heartbeat_interval
        self._clock = clock
        self._sessions: dict[str, dict[ConnectionId, Connection]] = {}
        self._sequence = itertools.count()

    @property
    def heartbeat_interval(self) -> float:
        return self._heartbeat_interval

    def __len__(self) -> int:
        return sum(len(connections) for connections in self._sessions.values())

    def register(self, session_id: str, channel: EventChannel, kind: ConnectionKind) -> ConnectionId:
        connection = Connection(
            id=uuid4().hex,
            session_id=session_id,
            kind=kind,
            channel=channel,
            sequence=next(self._sequence),
            last_activity=self._clock(),
        )
        self._sessions.setdefault(session_id, {})[connection.id] = connection
        logger.debug("Registered %s connection %s for session %s", kind, connection.id, session_id)
        return connection.id

    def unregister(self, session_id: str, connection_id: ConnectionId) -> None:
        connections = self._sessions.get(session_id)
        if connections is None:
            return
        connection = connections.pop(connection_id, None)
        if not connections:
            # Sessions outlive their connections, only the empty bucket goes away
            del self._sessions[session_id]
        if connection is not None:
            self._mark_closed(connection)
            logger.debug("Unregistered connection %s of session %s", connection_id, session_id)

    def get(self, session_id: str, connection_id: ConnectionId) -> Connection | None:
        return self._sessions.get(session_id, {}).get(connection_id)

    def connections_for(self, session_id: str) -> list[Connection]:
        return [connection for connection in self._sessions.get(session_id, {}).values() if not connection.closed]

    def active_for(self, session_id: str) -> Connection | None:
        """Most recently active open connection of the session, the latest registered on ties."""
        return max(
            self.connections_for(session_id),
            key=lambda connection: (connection.last_activity, connection.sequence),
            default=None,
        )

    async def push(self, session_id: str, connection_id: ConnectionId, frame: Frame) -> bool:
        """Write one frame. Returns False if the connection is gone or the write failed."""
        return await self._send(session_id, connection_id, frame.encode())

    async def keepalive(self, session_id: str, connection_id: ConnectionId) -> bool:
        return await self._send(session_id, connection_id, KEEPALIVE_FRAME)

    async def _send(self, session_id: str, connection_id: ConnectionId, data: bytes) -> bool:
        connection = self.get(session_id, connection_id)
        if connection is None or connection.closed:
            return False
        try:
            await connection.channel.send(data)
        except _SEND_ERRORS as e:
            logger.info("Connection %s of session %s is gone: %s", connection_id, session_id, e)
            self.unregister(session_id, connection_id)
            return False
        connection.last_activity = self._clock()
        return True

    async def wait_closed(self, session_id: str, connection_id: ConnectionId) -> None:
        """Block until the connection is closed or removed."""
        connection = self.get(session_id, connection_id)
        if connection is None:
            return
        await connection.closed_event.wait()

    async def close(self, session_id: str, connection_id: ConnectionId) -> None:
        connection = self.get(session_id, connection_id)
        if connection is None:
            return
        self.unregister(session_id, connection_id)
        await self._close_channel(connection)

    async def close_all(self, session_id: str) -> None:
        connections = list(self._sessions.pop(session_id, {}).values())
        for connection in connections:
            self._mark_closed(connection)
            await self._close_channel(connection)
        if connections:
            logger.debug("Closed %d connection(s) of session %s", len(connections), session_id)

    async def close_everything(self) -> None:
        for session_id in list(self._sessions):
            await self.close_all(session_id)

    async def heartbeat(self) -> int:
        """Send a keepalive to every long-lived connection at once and return how many were evicted."""
        evicted = 0

        async def ping(connection: Connection) -> None:
            nonlocal evicted
            alive = False
            with anyio.move_on_after(self._keepalive_timeout) as scope:
                alive = await self.keepalive(connection.session_id, connection.id)
            if scope.cancelled_caught:
                logger.info("Connection %s of session %s stalled on keepalive", connection.id, connection.session_id)
                await self.close(connection.session_id, connection.id)
            if not alive:
                evicted += 1

        streams = [
            connection
            for connections in self._sessions.values()
            for connection in connections.values()
            if connection.kind is ConnectionKind.STREAM
        ]
        async with anyio.create_task_group() as tg:
            for connection in streams:
                tg.start_soon(ping, connection)
        if evicted:
            logger.info("Heartbeat evicted %d connection(s)", evicted)
        return evicted

    async def run_heartbeat(self) -> None:
        while True:
            await anyio.sleep(self._heartbeat_interval)
            await self.heartbeat()

    @staticmethod
    def _mark_closed(connection: Connection) -> None:
        connection.closed = True
        connection.closed_event.set()

    @staticmethod
    async def _close_channel(connection: Connection) -> None:
        try:
            await connection.channel.close()
        except _SEND_ERRORS as e:
            logger.debug("Error closing connection %s: %s", connection.id, e)
